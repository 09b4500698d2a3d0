# menugen/core/store.py
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional


class MenuStore(ABC):
    """Persistence contract for menus, sections and dishes.

    Records are plain dicts keyed by column name. Every mutating method is a
    single atomic operation against the backing store; in particular
    ``persist_structure`` is all-or-nothing and ``settle_dish`` moves a dish out
    of PENDING and bumps the menu's processed counter in one step, returning
    ``None`` when the dish was already terminal.
    """

    @abstractmethod
    async def get_menu(self, menu_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def find_menu_by_hash(self, image_hash: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def create_menu(self, image_hash: str, original_filename: Optional[str]) -> Dict[str, Any]:
        """Insert a PENDING menu; raises DuplicateFingerprintError on a hash collision"""

    @abstractmethod
    async def persist_structure(
        self, menu_id: str, currency: str, sections: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """Create every section and dish, set total_dishes and move the menu to PROCESSING.

        ``sections`` items look like ``{"name", "position", "dishes": [{"name",
        "position", "price_cents", "raw_price_string"}]}``. Returns the created
        dish rows in insertion order. Raises PersistenceError and leaves no rows
        behind on any failure.
        """

    @abstractmethod
    async def transition_menu(
        self,
        menu_id: str,
        status: str,
        allowed_from: Iterable[str],
        failure_code: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> bool:
        """Set the menu status only if the current status is in ``allowed_from``"""

    @abstractmethod
    async def settle_dish(
        self,
        dish_id: str,
        status: str,
        description: Optional[str] = None,
        image_url: Optional[str] = None,
        image_source: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> Optional[Dict[str, int]]:
        """Move a PENDING dish to a terminal status and count it as processed.

        Returns ``{"processed_dishes", "total_dishes"}`` after the increment, or
        ``None`` if the dish was not PENDING.
        """

    @abstractmethod
    async def list_sections(self, menu_id: str) -> List[Dict[str, Any]]:
        ...
    @abstractmethod
    async def list_dishes(self, menu_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """Dishes in menu order: section position, then dish position"""


def in_menu_order(dishes: List[Dict[str, Any]], sections: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Sort dish rows by their section's position, then their own; dishes without a section go last"""
    section_positions = {section["id"]: section["position"] for section in sections}

    def menu_order(dish):
        section_position = section_positions.get(dish.get("section_id"))
        return (section_position is None, section_position or 0, dish["position"])

    return sorted(dishes, key=menu_order)
