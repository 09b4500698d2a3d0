# menugen/core/memory_store.py
import asyncio
import copy
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from menugen.core.errors import DuplicateFingerprintError, PersistenceError
from menugen.core.store import MenuStore, in_menu_order
from menugen.models.menu import DishStatus, MenuStatus, TERMINAL_MENU_STATUSES

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.utcnow().isoformat()


class InMemoryMenuStore(MenuStore):
    """Process-local store with the same atomicity guarantees as the database.

    A single asyncio lock serializes every mutation, which stands in for the
    transaction and row-lock behaviour of the Postgres functions.
    """

    def __init__(self):
        self.menus: Dict[str, Dict[str, Any]] = {}
        self.sections: Dict[str, Dict[str, Any]] = {}
        self.dishes: Dict[str, Dict[str, Any]] = {}
        self._hash_index: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get_menu(self, menu_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            menu = self.menus.get(menu_id)
            return copy.deepcopy(menu) if menu else None

    async def find_menu_by_hash(self, image_hash: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            menu_id = self._hash_index.get(image_hash)
            return copy.deepcopy(self.menus[menu_id]) if menu_id else None

    async def create_menu(self, image_hash: str, original_filename: Optional[str]) -> Dict[str, Any]:
        async with self._lock:
            if image_hash in self._hash_index:
                raise DuplicateFingerprintError(f"Menu with image hash {image_hash[:12]} already exists")
            now = _now()
            menu = {
                "id": str(uuid.uuid4()),
                "image_hash": image_hash,
                "original_filename": original_filename,
                "status": MenuStatus.PENDING.value,
                "failure_code": None,
                "failure_reason": None,
                "currency": None,
                "total_dishes": 0,
                "processed_dishes": 0,
                "created_at": now,
                "updated_at": now,
                "completed_at": None,
            }
            self.menus[menu["id"]] = menu
            self._hash_index[image_hash] = menu["id"]
            return copy.deepcopy(menu)

    async def persist_structure(
        self, menu_id: str, currency: str, sections: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        async with self._lock:
            menu = self.menus.get(menu_id)
            if menu is None:
                raise PersistenceError(f"Menu {menu_id} does not exist")
            if menu["status"] != MenuStatus.PENDING.value:
                raise PersistenceError(f"Menu {menu_id} is {menu['status']}, expected PENDING")
            if any(d["menu_id"] == menu_id for d in self.dishes.values()):
                raise PersistenceError(f"Menu {menu_id} already has dishes")

            # Stage everything first so a bad row leaves nothing behind
            staged_sections = []
            staged_dishes = []
            now = _now()
            for section in sections:
                section_row = {
                    "id": str(uuid.uuid4()),
                    "menu_id": menu_id,
                    "name": section["name"],
                    "position": section["position"],
                }
                staged_sections.append(section_row)
                for dish in section["dishes"]:
                    if not dish.get("name"):
                        raise PersistenceError("Dish name must not be empty")
                    staged_dishes.append({
                        "id": str(uuid.uuid4()),
                        "menu_id": menu_id,
                        "section_id": section_row["id"],
                        "name": dish["name"],
                        "price_cents": dish.get("price_cents"),
                        "currency": currency,
                        "raw_price_string": dish.get("raw_price_string"),
                        "description": None,
                        "image_url": None,
                        "image_source": None,
                        "status": DishStatus.PENDING.value,
                        "failure_reason": None,
                        "position": dish["position"],
                        "created_at": now,
                        "updated_at": now,
                    })

            positions = [s["position"] for s in staged_sections]
            if len(positions) != len(set(positions)):
                raise PersistenceError("Section positions must be unique per menu")

            for row in staged_sections:
                self.sections[row["id"]] = row
            for row in staged_dishes:
                self.dishes[row["id"]] = row
            menu.update({
                "currency": currency,
                "total_dishes": len(staged_dishes),
                "status": MenuStatus.PROCESSING.value,
                "updated_at": now,
            })
            return copy.deepcopy(staged_dishes)

    async def transition_menu(
        self,
        menu_id: str,
        status: str,
        allowed_from: Iterable[str],
        failure_code: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> bool:
        async with self._lock:
            menu = self.menus.get(menu_id)
            if menu is None or menu["status"] not in set(allowed_from):
                return False
            now = _now()
            menu["status"] = status
            menu["updated_at"] = now
            if status == MenuStatus.FAILED.value:
                menu["failure_code"] = failure_code
                menu["failure_reason"] = failure_reason
            if status in TERMINAL_MENU_STATUSES:
                menu["completed_at"] = now
            return True

    async def settle_dish(
        self,
        dish_id: str,
        status: str,
        description: Optional[str] = None,
        image_url: Optional[str] = None,
        image_source: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> Optional[Dict[str, int]]:
        async with self._lock:
            dish = self.dishes.get(dish_id)
            if dish is None or dish["status"] != DishStatus.PENDING.value:
                return None
            now = _now()
            dish.update({
                "status": status,
                "description": description,
                "image_url": image_url,
                "image_source": image_source,
                "failure_reason": failure_reason,
                "updated_at": now,
            })
            menu = self.menus[dish["menu_id"]]
            menu["processed_dishes"] = min(menu["processed_dishes"] + 1, menu["total_dishes"])
            menu["updated_at"] = now
            return {
                "processed_dishes": menu["processed_dishes"],
                "total_dishes": menu["total_dishes"],
            }

    async def list_sections(self, menu_id: str) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = [copy.deepcopy(s) for s in self.sections.values() if s["menu_id"] == menu_id]
        return sorted(rows, key=lambda s: s["position"])

    async def list_dishes(self, menu_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = [
                copy.deepcopy(d) for d in self.dishes.values()
                if d["menu_id"] == menu_id and (status is None or d["status"] == status)
            ]
            sections = [s for s in self.sections.values() if s["menu_id"] == menu_id]
            return in_menu_order(rows, sections)
