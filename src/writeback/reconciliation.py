"""Per-key serialized task runner for asynchronous persistence.

Tasks sharing a key never run concurrently; tasks for different keys run
in parallel on the event loop. A task queued for a key that has not started
yet is replaced by a newer one (coalescing), so a burst of updates to one
entity turns into a single reconciliation.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Awaitable, Callable, Sequence

from writeback.constants import RETRY_DELAYS_SECS

logger = logging.getLogger(__name__)

TaskFn = Callable[[], Awaitable[None]]
RetryFn = Callable[[int], Awaitable[None]]


class ReconciliationQueue:
    """Run reconciliation tasks, at most one at a time per key.

    - ``enqueue()`` schedules a task to run as soon as the key is free.
    - ``schedule_retry()`` re-enqueues after a backoff delay chosen by the
      previous attempt count; one scheduled retry per key at a time.
    - Task exceptions are logged, never propagated.
    """

    def __init__(self, retry_delays: Sequence[float] = RETRY_DELAYS_SECS) -> None:
        if not retry_delays:
            raise ValueError("retry_delays must not be empty")
        self._retry_delays = tuple(retry_delays)
        self._locks: dict[str, asyncio.Lock] = {}
        self._queued: dict[str, TaskFn] = {}
        self._retries: dict[str, asyncio.Task[None]] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._total_runs = 0
        self._total_failures = 0
        self._stopping = False

    def _get_lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def retry_delay(self, attempt: int) -> float:
        """Backoff before the retry that follows ``attempt`` previous tries."""
        return self._retry_delays[min(max(attempt, 0), len(self._retry_delays) - 1)]

    # -- scheduling -------------------------------------------------------------

    def enqueue(self, key: str, fn: TaskFn) -> None:
        """Queue ``fn`` to run exclusively with respect to other ``key`` tasks."""
        if key in self._queued:
            logger.debug("Coalescing reconciliation for %s into queued task.", key)
            self._queued[key] = fn
            return
        logger.debug("Queued reconciliation for %s.", key)
        self._queued[key] = fn
        task = asyncio.get_running_loop().create_task(self._run(key))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def schedule_retry(self, key: str, fn: RetryFn, attempt: int) -> None:
        """Run ``fn(attempt + 1)`` for ``key`` after the backoff for ``attempt``."""
        if self._stopping:
            logger.info("Queue stopping; not scheduling retry for %s.", key)
            return
        if key in self._retries:
            logger.debug("Retry already scheduled for %s; ignoring.", key)
            return
        delay = self.retry_delay(attempt)
        logger.info("Scheduling retry #%d for %s in %.1fs.", attempt + 1, key, delay)
        task = asyncio.get_running_loop().create_task(
            self._retry_later(key, fn, attempt, delay)
        )
        self._retries[key] = task
        task.add_done_callback(functools.partial(self._forget_retry, key))

    def _forget_retry(self, key: str, task: asyncio.Task[None]) -> None:
        # a retry cancelled before it started never reaches its finally block
        if self._retries.get(key) is task:
            del self._retries[key]

    async def _retry_later(self, key: str, fn: RetryFn, attempt: int, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        finally:
            self._retries.pop(key, None)
        self.enqueue(key, functools.partial(fn, attempt + 1))

    async def _run(self, key: str) -> None:
        async with self._get_lock(key):
            fn = self._queued.pop(key, None)
            if fn is None:
                return
            self._total_runs += 1
            try:
                await fn()
            except Exception:
                self._total_failures += 1
                logger.exception("Error running reconciliation task for %s.", key)

    # -- lifecycle --------------------------------------------------------------

    async def join(self, timeout: float | None = None) -> None:
        """Wait until nothing is queued, running or scheduled for retry."""

        async def _drain() -> None:
            while True:
                pending = list(self._tasks) + list(self._retries.values())
                if not pending:
                    return
                await asyncio.gather(*pending, return_exceptions=True)

        await asyncio.wait_for(_drain(), timeout)

    async def stop(self, timeout: float | None = None) -> None:
        """Cancel scheduled retries and wait for queued/running tasks."""
        self._stopping = True
        retries = list(self._retries.values())
        for task in retries:
            task.cancel()
        self._retries.clear()
        if retries:
            await asyncio.gather(*retries, return_exceptions=True)
            logger.info("Cancelled %d scheduled retr%s.", len(retries), "y" if len(retries) == 1 else "ies")
        try:
            await self.join(timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Reconciliation queue did not drain within %ss (%d task(s) left).",
                timeout, len(self._tasks),
            )

    @property
    def is_empty(self) -> bool:
        return not (self._queued or self._tasks or self._retries)

    @property
    def size(self) -> int:
        """Number of queued tasks plus scheduled retries."""
        return len(self._queued) + len(self._retries)

    def health(self) -> dict[str, object]:
        return {
            "queued": len(self._queued),
            "running_or_waiting": len(self._tasks),
            "scheduled_retries": sorted(self._retries),
            "total_runs": self._total_runs,
            "total_failures": self._total_failures,
        }
