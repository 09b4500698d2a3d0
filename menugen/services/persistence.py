# menugen/services/persistence.py
import logging
from typing import Any, Dict, List, Tuple

from menugen.core.errors import PersistenceError
from menugen.core.store import MenuStore
from menugen.models.menu import DraftMenu
from menugen.utils.currency_detector import detect_currency_from_prices
from menugen.utils.price_parser import parse_price_cents

logger = logging.getLogger(__name__)

DEFAULT_SECTION_NAME = "Menu"


class PersistenceMapper:
    """Normalizes an extracted draft into section and dish rows and writes them in one go"""

    def __init__(self, store: MenuStore, default_currency: str = "USD"):
        self.store = store
        self.default_currency = default_currency

    def build_rows(self, draft: DraftMenu) -> Tuple[str, List[Dict[str, Any]]]:
        currency = detect_currency_from_prices(draft.price_strings, default=self.default_currency)

        sections = []
        for section_index, section in enumerate(draft.sections):
            dishes = []
            for dish_index, dish in enumerate(section.dishes):
                price_cents = parse_price_cents(dish.price)
                if dish.price and price_cents is None:
                    logger.info(f"Keeping unparsed price text {dish.price!r} for '{dish.name}'")
                dishes.append({
                    "name": dish.name,
                    "position": dish_index,
                    "price_cents": price_cents,
                    "raw_price_string": dish.price,
                })
            sections.append({
                "name": section.name or DEFAULT_SECTION_NAME,
                "position": section_index,
                "dishes": dishes,
            })
        return currency, sections

    async def persist(self, menu_id: str, draft: DraftMenu) -> List[Dict[str, Any]]:
        """Write the draft atomically; returns the created dish rows"""
        currency, sections = self.build_rows(draft)
        try:
            dishes = await self.store.persist_structure(menu_id, currency, sections)
        except PersistenceError:
            raise
        except Exception as e:
            logger.error(f"Unexpected store error persisting menu {menu_id}: {str(e)}")
            raise PersistenceError(f"Failed to persist menu structure: {str(e)}")

        logger.info(f"Persisted {len(sections)} sections and {len(dishes)} dishes for menu {menu_id} ({currency})")
        return dishes
