"""
RequestScheduler - serialized FIFO dispatch with minimum spacing.

Work is admitted with submit() and dispatched by a single drain loop:
- strict FIFO order
- at most max_concurrent items executing at once (default 1)
- at least min_spacing seconds between the start of a dispatch and the
  previous dispatch or completion, whichever came last
- a failed item still consumes its slot; nothing is retried here
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from loguru import logger

from callgate.services.clock import Clock, system_clock
from callgate.services.errors import ConfigurationError, SchedulerClosedError

Work = Callable[[], Awaitable[Any]]


@dataclass
class QueueItem:
    """One admitted unit of work and the future its submitter awaits."""

    work: Work
    future: asyncio.Future
    label: str = ""
    submitted_at: float = 0.0


class RequestScheduler:
    """
    Serialized request scheduler.

    Usage:
        scheduler = RequestScheduler(min_spacing=1.0)

        result = await scheduler.submit(lambda: call_api(...))
    """

    def __init__(
        self,
        min_spacing: float = 1.0,
        max_concurrent: int = 1,
        clock: Clock = system_clock,
        debug: bool = False,
    ):
        self._validate_spacing(min_spacing)
        self._validate_concurrency(max_concurrent)
        self._min_spacing = min_spacing
        self._max_concurrent = max_concurrent
        self._clock = clock
        self._debug = debug

        self._queue: deque[QueueItem] = deque()
        self._draining = False
        self._closed = False
        self._drain_task: asyncio.Task | None = None
        self._running: set[asyncio.Task] = set()
        self._in_progress = 0
        self._slot_released = asyncio.Event()
        self._last_dispatch: float | None = None
        self._stats = SchedulerStats()

    @staticmethod
    def _validate_spacing(seconds: float) -> None:
        if seconds < 0:
            raise ConfigurationError(f"min_spacing must be >= 0, got {seconds}")

    @staticmethod
    def _validate_concurrency(value: int) -> None:
        if value < 1:
            raise ConfigurationError(f"max_concurrent must be >= 1, got {value}")

    @property
    def min_spacing(self) -> float:
        return self._min_spacing

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    def set_min_spacing(self, seconds: float) -> None:
        """Change spacing for subsequent dispatches."""
        self._validate_spacing(seconds)
        self._min_spacing = seconds
        logger.info(f"[RequestScheduler] min_spacing set to {seconds}s")

    def set_max_concurrent(self, value: int) -> None:
        """Change the concurrency bound for subsequent dispatches."""
        self._validate_concurrency(value)
        self._max_concurrent = value
        self._slot_released.set()
        logger.info(f"[RequestScheduler] max_concurrent set to {value}")

    def submit(self, work: Work, label: str = "") -> asyncio.Future:
        """
        Append *work* to the queue and return a pending future.

        Never blocks; the drain loop is started if it is not running.
        Must be called from inside the event loop.
        """
        if self._closed:
            raise SchedulerClosedError("Scheduler is closed")

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._queue.append(
            QueueItem(
                work=work,
                future=future,
                label=label,
                submitted_at=self._clock.monotonic(),
            )
        )
        self._stats.submitted += 1
        self._log(f"QUEUED: {label or 'request'} ({len(self._queue)} waiting)")

        if not self._draining:
            self._draining = True
            self._drain_task = loop.create_task(self._drain())
        return future

    async def _drain(self) -> None:
        """Dispatch queued items until the queue is empty."""
        self._log(f"Starting queue processing ({len(self._queue)} requests)")
        try:
            while self._queue:
                while self._in_progress >= self._max_concurrent:
                    self._slot_released.clear()
                    await self._slot_released.wait()

                if self._last_dispatch is not None:
                    wait = self._min_spacing - (
                        self._clock.monotonic() - self._last_dispatch
                    )
                    if wait > 0:
                        self._log(f"Waiting {wait:.3f}s before next request")
                        self._stats.total_wait_seconds += wait
                        await self._clock.sleep(wait)

                # Left queued during the wait so close() can reject it
                item = self._queue.popleft()
                self._last_dispatch = self._clock.monotonic()
                self._in_progress += 1
                self._stats.dispatched += 1
                self._log(
                    f"DISPATCH: {item.label or 'request'} ({len(self._queue)} remaining)"
                )

                task = asyncio.create_task(self._run(item))
                self._running.add(task)
                task.add_done_callback(self._running.discard)
        finally:
            self._draining = False
            self._log("Queue processing complete")

    async def _run(self, item: QueueItem) -> None:
        """Execute one item and settle its future."""
        try:
            result = await item.work()
        except asyncio.CancelledError:
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as e:
            self._stats.failed += 1
            logger.warning(
                f"[RequestScheduler] Request failed: {item.label or 'request'}: {e}"
            )
            if not item.future.done():
                item.future.set_exception(e)
        else:
            self._stats.succeeded += 1
            if not item.future.done():
                item.future.set_result(result)
        finally:
            # Failures consume a slot too
            self._last_dispatch = self._clock.monotonic()
            self._in_progress -= 1
            self._slot_released.set()

    async def join(self) -> None:
        """Wait until the queue is empty and nothing is executing."""
        while self._draining or self._running:
            if self._drain_task is not None and not self._drain_task.done():
                await asyncio.wait({self._drain_task})
            if self._running:
                await asyncio.wait(set(self._running))

    async def close(self) -> int:
        """
        Stop the scheduler at process teardown.

        Queued items that never started are rejected with
        SchedulerClosedError; executing items are cancelled.

        Returns:
            Number of queued items rejected.
        """
        self._closed = True
        rejected = 0
        while self._queue:
            item = self._queue.popleft()
            if not item.future.done():
                item.future.set_exception(SchedulerClosedError("Scheduler closed"))
                # Nobody may be awaiting this one
                item.future.exception()
            rejected += 1

        tasks = [t for t in (self._drain_task, *self._running) if t and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if rejected:
            logger.info(f"[RequestScheduler] Closed, {rejected} queued requests rejected")
        return rejected

    def get_status(self) -> dict[str, Any]:
        """Queue status snapshot."""
        return {
            "queue_length": len(self._queue),
            "is_draining": self._draining,
            "in_progress": self._in_progress,
            "min_spacing": self._min_spacing,
            "max_concurrent": self._max_concurrent,
            "closed": self._closed,
            "stats": self._stats.to_dict(),
        }

    def get_stats(self) -> "SchedulerStats":
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[RequestScheduler] {message}")


@dataclass
class SchedulerStats:
    """Scheduler statistics."""

    submitted: int = 0
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    total_wait_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "submitted": self.submitted,
            "dispatched": self.dispatched,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "total_wait_seconds": round(self.total_wait_seconds, 3),
        }
