# menugen/core/tasks.py
import asyncio
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Sequence, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class WorkerPool:
    """Run a handler over a batch of items with at most ``width`` in flight.

    Exactly ``min(width, len(items))`` workers drain a shared queue, so the
    bound holds no matter how the handler behaves. A handler exception is
    captured in the result slot for its item and never stops the other workers.
    """

    def __init__(self, width: int):
        if width < 1:
            raise ValueError("WorkerPool width must be at least 1")
        self.width = width

    async def run(
        self,
        items: Sequence[T],
        handler: Callable[[T], Awaitable[R]],
    ) -> List[Union[R, Exception]]:
        queue: asyncio.Queue = asyncio.Queue()
        for index, item in enumerate(items):
            queue.put_nowait((index, item))

        results: List[Any] = [None] * len(items)

        async def worker():
            while True:
                try:
                    index, item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    results[index] = await handler(item)
                except Exception as e:
                    logger.error(f"Worker task for {item!r} failed: {str(e)}")
                    results[index] = e

        workers = [asyncio.create_task(worker()) for _ in range(min(self.width, len(items)))]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        return results


class BackgroundSupervisor:
    """Owns detached per-key background tasks and gives callers a join point"""

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def spawn(self, key: str, coro: Coroutine) -> asyncio.Task:
        """Start ``coro`` in the background unless a task for ``key`` is still running"""
        existing = self._tasks.get(key)
        if existing is not None and not existing.done():
            coro.close()
            logger.info(f"Background task {key} already running, not starting another")
            return existing

        task = asyncio.create_task(coro, name=f"pipeline:{key}")
        self._tasks[key] = task
        task.add_done_callback(partial(self._on_done, key))
        logger.info(f"Started background task {key}")
        return task

    def _on_done(self, key: str, task: asyncio.Task):
        if self._tasks.get(key) is task:
            self._tasks.pop(key, None)
        if task.cancelled():
            logger.info(f"Background task {key} was cancelled")
        elif task.exception() is not None:
            logger.error(f"Background task {key} crashed: {task.exception()!r}")

    def is_running(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    @property
    def running_keys(self) -> List[str]:
        return [key for key, task in self._tasks.items() if not task.done()]

    async def join(self, key: str, timeout: float = None) -> None:
        """Wait for the task for ``key`` to finish; no-op if none is running"""
        task = self._tasks.get(key)
        if task is None:
            return
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            raise asyncio.TimeoutError(f"Background task {key} did not finish in {timeout}s")

    async def join_all(self, timeout: float = None) -> None:
        tasks = set(self._tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                raise asyncio.TimeoutError(f"{len(pending)} background task(s) still running")

    async def cancel(self, key: str) -> bool:
        """Cancel the task for ``key`` and wait for its cleanup to finish"""
        task = self._tasks.get(key)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return True

    async def shutdown(self) -> None:
        keys = self.running_keys
        if keys:
            logger.info(f"Cancelling {len(keys)} running background task(s)")
        for key in keys:
            await self.cancel(key)
