# menugen/core/supabase_store.py
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from postgrest.exceptions import APIError

from menugen.core.async_supabase import AsyncSupabaseClient
from menugen.core.errors import DuplicateFingerprintError, PersistenceError
from menugen.core.store import MenuStore, in_menu_order
from menugen.models.menu import MenuStatus, TERMINAL_MENU_STATUSES

logger = logging.getLogger(__name__)

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


class SupabaseMenuStore(MenuStore):
    """MenuStore backed by Supabase tables and the functions in sql/menu_pipeline.sql"""

    def __init__(self, db: AsyncSupabaseClient):
        self.db = db

    @staticmethod
    def _first(response) -> Optional[Dict[str, Any]]:
        rows = getattr(response, "data", None) or []
        return rows[0] if rows else None

    async def get_menu(self, menu_id: str) -> Optional[Dict[str, Any]]:
        response = await self.db.table_select("menus", "*", eq={"id": menu_id}, limit=1)
        return self._first(response)

    async def find_menu_by_hash(self, image_hash: str) -> Optional[Dict[str, Any]]:
        response = await self.db.table_select("menus", "*", eq={"image_hash": image_hash}, limit=1)
        return self._first(response)

    async def create_menu(self, image_hash: str, original_filename: Optional[str]) -> Dict[str, Any]:
        try:
            response = await self.db.table_insert("menus", {
                "image_hash": image_hash,
                "original_filename": original_filename,
                "status": MenuStatus.PENDING.value,
            })
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise DuplicateFingerprintError(f"Menu with image hash {image_hash[:12]} already exists")
            raise PersistenceError(f"Failed to create menu: {e.message}")

        menu = self._first(response)
        if menu is None:
            raise PersistenceError("Menu insert returned no row")
        return menu

    async def persist_structure(
        self, menu_id: str, currency: str, sections: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        # One function call is one transaction: either every row lands or none do
        try:
            response = await self.db.rpc("persist_menu_structure", {
                "p_menu_id": menu_id,
                "p_currency": currency,
                "p_sections": sections,
            })
        except APIError as e:
            raise PersistenceError(f"Failed to persist menu structure: {e.message}")
        return getattr(response, "data", None) or []

    async def transition_menu(
        self,
        menu_id: str,
        status: str,
        allowed_from: Iterable[str],
        failure_code: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> bool:
        now = datetime.utcnow().isoformat()
        data: Dict[str, Any] = {"status": status, "updated_at": now}
        if status == MenuStatus.FAILED.value:
            data["failure_code"] = failure_code
            data["failure_reason"] = failure_reason
        if status in TERMINAL_MENU_STATUSES:
            data["completed_at"] = now

        response = await self.db.table_update(
            "menus", data, eq={"id": menu_id}, in_={"status": list(allowed_from)}
        )
        return bool(getattr(response, "data", None))

    async def settle_dish(
        self,
        dish_id: str,
        status: str,
        description: Optional[str] = None,
        image_url: Optional[str] = None,
        image_source: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> Optional[Dict[str, int]]:
        response = await self.db.rpc("settle_dish", {
            "p_dish_id": dish_id,
            "p_status": status,
            "p_description": description,
            "p_image_url": image_url,
            "p_image_source": image_source,
            "p_failure_reason": failure_reason,
        })
        row = self._first(response)
        if row is None:
            return None
        return {
            "processed_dishes": row["processed_dishes"],
            "total_dishes": row["total_dishes"],
        }

    async def list_sections(self, menu_id: str) -> List[Dict[str, Any]]:
        response = await self.db.table_select(
            "menu_sections", "*", eq={"menu_id": menu_id}, order={"position": False}
        )
        return getattr(response, "data", None) or []

    async def list_dishes(self, menu_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        eq = {"menu_id": menu_id}
        if status is not None:
            eq["status"] = status
        response = await self.db.table_select("dishes", "*", eq=eq, order={"position": False})
        dishes = getattr(response, "data", None) or []
        if not dishes:
            return []
        return in_menu_order(dishes, await self.list_sections(menu_id))
