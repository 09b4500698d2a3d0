# menugen/services/pipeline.py
import asyncio
import logging
from datetime import datetime

from menugen.core.errors import ErrorKind, ExtractionError, MenuGenError, PersistenceError, StructureValidationError
from menugen.core.store import MenuStore
from menugen.models.menu import DishStatus, MenuStatus
from menugen.services.enrichment import EnrichmentScheduler
from menugen.services.persistence import PersistenceMapper
from menugen.services.progress_tracker import ProgressTracker

logger = logging.getLogger(__name__)

NON_TERMINAL = [MenuStatus.PENDING.value, MenuStatus.PROCESSING.value]


class MenuPipeline:
    """Drives one menu from PENDING to COMPLETE or FAILED.

    Extraction and persistence run strictly in order; enrichment starts only
    after the structure is committed. The whole run is bounded by ``timeout``
    and can be cancelled; either way dishes left PENDING are settled FAILED and
    the menu fails with PIPELINE_TIMEOUT or CANCELLED.
    """

    def __init__(
        self,
        store: MenuStore,
        extractor,
        mapper: PersistenceMapper,
        scheduler: EnrichmentScheduler,
        tracker: ProgressTracker,
        timeout: float = 600.0,
    ):
        self.store = store
        self.extractor = extractor
        self.mapper = mapper
        self.scheduler = scheduler
        self.tracker = tracker
        self.timeout = timeout

    async def run(self, menu_id: str, image_bytes: bytes) -> None:
        start_time = datetime.utcnow()
        logger.info(f"Starting menu processing for {menu_id}")

        try:
            await asyncio.wait_for(self._run_stages(menu_id, image_bytes), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Menu {menu_id} exceeded the {self.timeout:.0f}s processing limit")
            await self._abort(menu_id, ErrorKind.PIPELINE_TIMEOUT, f"Processing exceeded {self.timeout:.0f}s")
        except asyncio.CancelledError:
            logger.warning(f"Processing of menu {menu_id} was cancelled")
            await self._abort(menu_id, ErrorKind.CANCELLED, "Processing was cancelled")
            raise
        except Exception as e:
            logger.error(f"Error processing menu {menu_id}: {str(e)}", exc_info=True)
            await self._abort(menu_id, ErrorKind.INTERNAL, f"Unexpected error: {str(e)}")

        total_time = (datetime.utcnow() - start_time).total_seconds()
        logger.info(f"Menu {menu_id} pipeline finished in {total_time:.2f}s")

    async def _run_stages(self, menu_id: str, image_bytes: bytes) -> None:
        try:
            draft = await self.extractor.extract(image_bytes)
        except (StructureValidationError, ExtractionError) as e:
            await self._fail_menu(menu_id, e)
            return

        try:
            dishes = await self.mapper.persist(menu_id, draft)
        except PersistenceError as e:
            await self._fail_menu(menu_id, e)
            return

        await self.tracker.start_tracking(menu_id, len(dishes))
        await self.scheduler.run(menu_id, dishes)
        await self._settle_pending(menu_id, ErrorKind.INTERNAL, "Enrichment did not finish")

        if await self.store.transition_menu(menu_id, MenuStatus.COMPLETE.value, [MenuStatus.PROCESSING.value]):
            await self.tracker.finish(menu_id, MenuStatus.COMPLETE.value)
            logger.info(f"Menu {menu_id} completed with {len(dishes)} dishes")
        else:
            logger.warning(f"Menu {menu_id} left PROCESSING before completion")

    async def _fail_menu(self, menu_id: str, error: MenuGenError) -> None:
        logger.error(f"Menu {menu_id} failed with {error.kind.value}: {error.message}")
        if await self.store.transition_menu(
            menu_id,
            MenuStatus.FAILED.value,
            NON_TERMINAL,
            failure_code=error.kind.value,
            failure_reason=error.message,
        ):
            await self.tracker.finish(menu_id, MenuStatus.FAILED.value, error=error.to_dict())

    async def _settle_pending(self, menu_id: str, kind: ErrorKind, message: str) -> int:
        """Settle every dish still PENDING as FAILED; returns how many were settled"""
        pending = await self.store.list_dishes(menu_id, status=DishStatus.PENDING.value)
        settled = 0
        for dish in pending:
            counters = await self.tracker.record_dish_settled(
                menu_id,
                dish["id"],
                DishStatus.FAILED.value,
                failure_reason=f"{kind.value}: {message}",
            )
            if counters is not None:
                settled += 1
        if settled:
            logger.warning(f"Settled {settled} unfinished dishes of menu {menu_id} as FAILED ({kind.value})")
        return settled

    async def _abort(self, menu_id: str, kind: ErrorKind, message: str) -> None:
        try:
            await self._settle_pending(menu_id, kind, message)
            await self._fail_menu(menu_id, MenuGenError(message, kind=kind))
        except Exception as e:
            logger.error(f"Failed to record {kind.value} for menu {menu_id}: {str(e)}", exc_info=True)
