# menugen/services/progress_tracker.py
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from datetime import datetime
import asyncio
from collections import defaultdict
import logging

from menugen.core.store import MenuStore
from menugen.models.menu import MenuStatus, TERMINAL_DISH_STATUSES

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Dict[str, Any]], Awaitable[None]]

# Marks the end of a subscription's delivery queue
_CLOSED = object()


class _Subscription:
    """One subscriber's ordered delivery queue, drained by its own task"""

    def __init__(self, menu_id: str, callback: ProgressCallback, timeout: float):
        self.menu_id = menu_id
        self.callback = callback
        self.timeout = timeout
        self.queue: asyncio.Queue = asyncio.Queue()
        self.task = asyncio.create_task(self._deliver(), name=f"progress:{menu_id}")

    async def _deliver(self):
        while True:
            view = await self.queue.get()
            try:
                if view is _CLOSED:
                    return
                await asyncio.wait_for(self.callback(view), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Progress subscriber for menu {self.menu_id} took longer than {self.timeout}s, skipped update")
            except Exception as e:
                logger.error(f"Error notifying subscriber: {e}")
            finally:
                self.queue.task_done()

    def push(self, view: Dict[str, Any]):
        self.queue.put_nowait(view)

    def close(self):
        self.queue.put_nowait(_CLOSED)


class ProgressTracker:
    """Owns the processed/total dish counters for menus in flight.

    The durable counter lives on the menu row and only moves through
    ``MenuStore.settle_dish``, which is atomic and refuses to settle a dish
    twice. The tracker keeps a snapshot per menu for push subscribers
    (the progress WebSocket) and never lets that snapshot move backwards.
    Subscribers are fed through their own queues; a slow one never holds up
    a pipeline.
    """

    def __init__(self, store: MenuStore, cleanup_delay: float = 300, notify_timeout: float = 5.0):
        self.store = store
        self.cleanup_delay = cleanup_delay
        self.notify_timeout = notify_timeout
        self._progress_data: Dict[str, Dict[str, Any]] = {}
        self._subscribers: Dict[str, List[_Subscription]] = defaultdict(list)
        self._closing: Set[_Subscription] = set()
        self._cleanup_tasks: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    async def start_tracking(self, menu_id: str, total_dishes: int) -> None:
        """Start tracking a menu whose dishes have just been persisted"""
        async with self._lock:
            self._progress_data[menu_id] = {
                "menu_id": menu_id,
                "status": MenuStatus.PROCESSING.value,
                "processed_dishes": 0,
                "total_dishes": total_dishes,
                "progress": 0 if total_dishes else 100,
                "started_at": datetime.utcnow(),
            }
            logger.info(f"Started tracking menu {menu_id} with {total_dishes} dishes")
            self._publish(menu_id, self._progress_data[menu_id])

    async def record_dish_settled(self, menu_id: str, dish_id: str, status: str, **fields) -> Optional[Dict[str, int]]:
        """Persist a dish's terminal state and count it once.

        Returns the menu counters after the increment, or None when the dish
        had already been settled.
        """
        if status not in TERMINAL_DISH_STATUSES:
            raise ValueError(f"Dish {dish_id} cannot settle as {status}")
        counters = await self.store.settle_dish(dish_id, status, **fields)
        if counters is None:
            logger.warning(f"Dish {dish_id} of menu {menu_id} was already settled")
            return None

        async with self._lock:
            data = self._progress_data.get(menu_id)
            if data is not None:
                processed = max(data["processed_dishes"], counters["processed_dishes"])
                total = counters["total_dishes"]
                data["processed_dishes"] = processed
                data["total_dishes"] = total
                data["progress"] = round(processed / total * 100) if total else 100
                data["last_dish"] = {"dish_id": dish_id, "status": status}
                self._publish(menu_id, data)

        return counters

    async def finish(self, menu_id: str, status: str, error: Optional[Dict[str, str]] = None) -> None:
        """Publish the menu's terminal status and schedule the snapshot for cleanup"""
        async with self._lock:
            data = self._progress_data.setdefault(menu_id, {
                "menu_id": menu_id,
                "processed_dishes": 0,
                "total_dishes": 0,
                "progress": 0,
                "started_at": datetime.utcnow(),
            })
            data["status"] = status
            data["completed_at"] = datetime.utcnow()
            data["total_duration"] = (data["completed_at"] - data["started_at"]).total_seconds()
            if error:
                data["error"] = error

            self._publish(menu_id, data)

        if self.cleanup_delay <= 0:
            await self._cleanup(menu_id)
        else:
            task = asyncio.create_task(self._cleanup(menu_id, self.cleanup_delay))
            self._cleanup_tasks.add(task)
            task.add_done_callback(self._cleanup_tasks.discard)

    async def _cleanup(self, menu_id: str, delay: float = 0):
        """Drop snapshot and subscribers once clients have had time to read the final state"""
        if delay:
            await asyncio.sleep(delay)
        async with self._lock:
            self._progress_data.pop(menu_id, None)
            for subscription in self._subscribers.pop(menu_id, []):
                self._retire(subscription)

    async def get_progress(self, menu_id: str) -> Optional[Dict[str, Any]]:
        """Get current progress for a menu"""
        async with self._lock:
            data = self._progress_data.get(menu_id)
            if data:
                return self._public_view(data)
            return None

    @staticmethod
    def _public_view(data: Dict[str, Any]) -> Dict[str, Any]:
        view = {
            "menu_id": data["menu_id"],
            "status": data.get("status"),
            "processed_dishes": data["processed_dishes"],
            "total_dishes": data["total_dishes"],
            "progress": data["progress"],
            "elapsed_time": (datetime.utcnow() - data["started_at"]).total_seconds(),
        }
        if "error" in data:
            view["error"] = data["error"]
        return view

    async def subscribe(self, menu_id: str, callback: ProgressCallback):
        """Register ``callback`` for the menu's updates, starting with its current snapshot"""
        async with self._lock:
            subscription = _Subscription(menu_id, callback, self.notify_timeout)
            self._subscribers[menu_id].append(subscription)
            data = self._progress_data.get(menu_id)
            if data is not None:
                subscription.push(self._public_view(data))

    async def unsubscribe(self, menu_id: str, callback: ProgressCallback):
        async with self._lock:
            subscriptions = self._subscribers.get(menu_id, [])
            for subscription in [s for s in subscriptions if s.callback == callback]:
                subscriptions.remove(subscription)
                self._retire(subscription)

    def _publish(self, menu_id: str, data: Dict[str, Any]):
        """Queue a snapshot for every subscriber of the menu; caller holds the lock"""
        subscriptions = self._subscribers.get(menu_id)
        if not subscriptions:
            return
        view = self._public_view(data)
        for subscription in subscriptions:
            subscription.push(view)

    def _retire(self, subscription: _Subscription):
        """Let a subscription deliver what is already queued, then stop"""
        subscription.close()
        self._closing.add(subscription)
        subscription.task.add_done_callback(lambda _: self._closing.discard(subscription))

    async def flush(self):
        """Wait until every queued update has been delivered or timed out"""
        async with self._lock:
            subscriptions = [s for subs in self._subscribers.values() for s in subs]
            subscriptions.extend(self._closing)
        await asyncio.gather(*(s.queue.join() for s in subscriptions))

    async def close(self):
        for task in list(self._cleanup_tasks):
            task.cancel()
        await asyncio.gather(*self._cleanup_tasks, return_exceptions=True)

        async with self._lock:
            subscriptions = [s for subs in self._subscribers.values() for s in subs]
            subscriptions.extend(self._closing)
            self._subscribers.clear()
        for subscription in subscriptions:
            subscription.task.cancel()
        await asyncio.gather(*(s.task for s in subscriptions), return_exceptions=True)
