# menugen/services/enrichment.py
import logging
from collections import defaultdict
from functools import partial
from typing import Any, Dict, List

from menugen.core.errors import ErrorKind
from menugen.core.tasks import WorkerPool
from menugen.models.menu import DishStatus
from menugen.services.progress_tracker import ProgressTracker

logger = logging.getLogger(__name__)


class EnrichmentScheduler:
    """Fans dish enrichment out over a bounded worker pool and joins it.

    A dish whose description fails is settled FAILED and gets no image. A dish
    whose image fails is still settled COMPLETE with its description. Either
    way every dish is settled exactly once through the tracker.
    """

    def __init__(self, descriptions, images, tracker: ProgressTracker, concurrency: int = 3):
        self.descriptions = descriptions
        self.images = images
        self.tracker = tracker
        self.pool = WorkerPool(concurrency)
        # Per-menu in-flight task counts, kept for monitoring
        self.in_flight: Dict[str, int] = defaultdict(int)
        self.max_in_flight: Dict[str, int] = defaultdict(int)

    async def run(self, menu_id: str, dishes: List[Dict[str, Any]]) -> List[Any]:
        """Enrich every dish; returns per-dish final status (or the exception that escaped)"""
        logger.info(f"Enriching {len(dishes)} dishes for menu {menu_id} with width {self.pool.width}")
        try:
            results = await self.pool.run(dishes, partial(self._enrich_dish, menu_id))
        finally:
            self.in_flight.pop(menu_id, None)
            peak = self.max_in_flight.pop(menu_id, 0)

        completed = sum(1 for r in results if r == DishStatus.COMPLETE.value)
        failed = sum(1 for r in results if r == DishStatus.FAILED.value)
        logger.info(
            f"Enrichment for menu {menu_id} finished: {completed} complete, {failed} failed, "
            f"peak concurrency {peak}"
        )
        return results

    async def _enrich_dish(self, menu_id: str, dish: Dict[str, Any]) -> str:
        self.in_flight[menu_id] += 1
        self.max_in_flight[menu_id] = max(self.max_in_flight[menu_id], self.in_flight[menu_id])
        try:
            return await self._describe_and_illustrate(menu_id, dish)
        finally:
            self.in_flight[menu_id] -= 1

    async def _describe_and_illustrate(self, menu_id: str, dish: Dict[str, Any]) -> str:
        dish_id, name = dish["id"], dish["name"]

        try:
            description = await self.descriptions.generate(name)
        except Exception as e:
            logger.error(f"Failed to generate description for dish {dish_id} ('{name}'): {str(e)}")
            await self.tracker.record_dish_settled(
                menu_id,
                dish_id,
                DishStatus.FAILED.value,
                failure_reason=f"{ErrorKind.ENRICHMENT_DESCRIPTION.value}: {str(e)}",
            )
            return DishStatus.FAILED.value

        image = None
        try:
            image = await self.images.generate(name)
        except Exception as e:
            logger.warning(f"{ErrorKind.ENRICHMENT_IMAGE.value} for dish {dish_id} ('{name}'), continuing without image: {str(e)}")

        await self.tracker.record_dish_settled(
            menu_id,
            dish_id,
            DishStatus.COMPLETE.value,
            description=description,
            image_url=image.url if image else None,
            image_source=image.source if image else None,
        )
        return DishStatus.COMPLETE.value
