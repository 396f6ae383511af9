"""
Clock - time source shared by the scheduler and the cache.

The scheduler measures spacing on the monotonic clock; cache entries carry
wall-clock timestamps so they stay meaningful in a persistent tier.
"""

import asyncio
import time
from datetime import datetime


class Clock:
    """System clock. Subclass to control time in tests."""

    def now(self) -> datetime:
        """Current wall-clock time."""
        return datetime.now()

    def monotonic(self) -> float:
        """Monotonic seconds, for measuring intervals."""
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        """Suspend the current task without blocking the loop."""
        await asyncio.sleep(seconds)


system_clock = Clock()
