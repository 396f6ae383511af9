"""
RequestDeduplicator - the in-flight table.

Maps a request fingerprint to the task executing it. A fingerprint has at
most one task at a time; everyone asking for it while the task runs shares
its outcome, result or exception alike.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


class RequestDeduplicator:
    """
    Coalesces concurrent executions that share a fingerprint.

    An entry lives from the moment its task is created until the task
    settles. Waiters go through asyncio.shield, so a waiter that gives up
    (timeout, cancellation) leaves the shared task running.

    Usage:
        dedup = RequestDeduplicator()

        data = await dedup.dedupe(key, lambda: fetch(endpoint, payload))

        # Or, when the caller needs to know whether it joined someone else
        task, joined = await dedup.acquire(key, lambda: fetch(endpoint, payload))
        data = await asyncio.shield(task)
    """

    def __init__(self, debug: bool = False):
        self._in_flight: dict[str, asyncio.Task[Any]] = {}
        self._lock = asyncio.Lock()
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def acquire(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> tuple["asyncio.Task[T]", bool]:
        """
        Return the task for *key*, starting *request_fn* if none is running.

        The second element is True when an existing task was joined.
        """
        async with self._lock:
            task = self._in_flight.get(key)
            if task is not None:
                self._stats.joined += 1
                self._log(f"JOIN {key[:50]}...")
                return task, True

            self._stats.started += 1
            self._log(f"START {key[:50]}...")
            task = asyncio.create_task(self._run(key, request_fn))
            task.add_done_callback(_mark_retrieved)
            self._in_flight[key] = task
            return task, False

    async def dedupe(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Await the shared outcome for *key*."""
        task, _ = await self.acquire(key, request_fn)
        return await asyncio.shield(task)

    async def _run(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await request_fn()
        finally:
            # cancel_all() may already have replaced or dropped the entry
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]
            self._log(f"SETTLED {key[:50]}...")

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    async def cancel_all(self) -> int:
        """Cancel every running task. Used at teardown."""
        async with self._lock:
            tasks = list(self._in_flight.values())
            self._in_flight.clear()

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"[Deduplicator] Cancelled {len(tasks)} in-flight requests")
        return len(tasks)

    def get_in_flight_count(self) -> int:
        return len(self._in_flight)

    def get_in_flight_keys(self) -> list[str]:
        return list(self._in_flight)

    def get_stats(self) -> "DeduplicatorStats":
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")


def _mark_retrieved(task: asyncio.Task) -> None:
    # All waiters may have walked away before the task settled
    if not task.cancelled():
        task.exception()


@dataclass
class DeduplicatorStats:
    """In-flight table counters."""

    started: int = 0
    joined: int = 0
    in_flight: int = 0

    @property
    def dedup_rate(self) -> float:
        """Share of lookups answered by a task that was already running."""
        lookups = self.started + self.joined
        return self.joined / lookups if lookups else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "started": self.started,
            "joined": self.joined,
            "in_flight": self.in_flight,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }
