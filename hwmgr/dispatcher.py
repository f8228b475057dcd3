"""In-process delivery of reconcile requests.

Pools are queued by identifier. A pool is never reconciled by two workers
at once, while different pools progress in parallel. Results and errors
decide when a pool is queued again.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable

from hwmgr.errors import HwMgrError
from hwmgr.logging import get_logger
from hwmgr.reconciler import ReconcileResult

logger = get_logger(__name__)

ReconcileFn = Callable[[str], Awaitable[ReconcileResult]]


class ReconcileDispatcher:
    """Work queue feeding pool identifiers to a reconcile function.

    Args:
        reconcile: Called with a pool identifier for each delivery.
        workers: Number of concurrent workers.
        error_backoff: Requeue delay in seconds for errors without a hint.
    """

    def __init__(self, reconcile: ReconcileFn, workers: int = 4, error_backoff: float = 60.0) -> None:
        self._reconcile = reconcile
        self.workers = workers
        self.error_backoff = error_backoff
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._queued: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: list[asyncio.Task] = []

    def lock(self, pool_id: str) -> asyncio.Lock:
        """The lock serializing all work on ``pool_id``."""
        return self._locks.setdefault(pool_id, asyncio.Lock())

    def enqueue(self, pool_id: str, delay: float = 0.0) -> None:
        """Queue a pool now, or after ``delay`` seconds.

        A pool already waiting in the queue is not queued twice. A delayed
        requeue replaces any earlier pending one.
        """
        if delay > 0:
            timer = self._timers.pop(pool_id, None)
            if timer is not None:
                timer.cancel()
            loop = asyncio.get_running_loop()
            self._timers[pool_id] = loop.call_later(delay, self._fire, pool_id)
            return
        if pool_id in self._queued:
            return
        self._queued.add(pool_id)
        self._queue.put_nowait(pool_id)

    def forget(self, pool_id: str) -> None:
        """Drop the pending requeue and idle lock of a pool that no longer exists."""
        timer = self._timers.pop(pool_id, None)
        if timer is not None:
            timer.cancel()
        lock = self._locks.get(pool_id)
        if lock is not None and not lock.locked():
            del self._locks[pool_id]

    def _fire(self, pool_id: str) -> None:
        self._timers.pop(pool_id, None)
        self.enqueue(pool_id)

    async def run_once(self, pool_id: str) -> ReconcileResult | None:
        """Reconcile one pool under its lock and schedule the follow-up."""
        async with self.lock(pool_id):
            try:
                result = await self._reconcile(pool_id)
            except HwMgrError as e:
                delay = e.retry_after or self.error_backoff
                logger.error(
                    "reconcile_failed",
                    pool_id=pool_id,
                    code=e.code,
                    error=e.message,
                    requeue_after=delay,
                )
                self.enqueue(pool_id, delay)
                return None

        if result.requeue_after is not None:
            self.enqueue(pool_id, result.requeue_after)
        return result

    async def _worker(self, index: int) -> None:
        while True:
            pool_id = await self._queue.get()
            self._queued.discard(pool_id)
            try:
                await self.run_once(pool_id)
            except Exception:
                logger.exception("reconcile_crashed", pool_id=pool_id, worker=index)
                self.enqueue(pool_id, self.error_backoff)
            finally:
                self._queue.task_done()

    async def start(self, pool_ids: Iterable[str] = ()) -> None:
        """Start the workers, queueing ``pool_ids`` for an initial resync."""
        for pool_id in pool_ids:
            self.enqueue(pool_id)
        self._tasks = [asyncio.create_task(self._worker(i)) for i in range(self.workers)]
        logger.info("dispatcher_started", workers=self.workers, queued=len(self._queued))

    async def join(self) -> None:
        """Wait until every queued pool has been processed once."""
        await self._queue.join()

    async def stop(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("dispatcher_stopped")
