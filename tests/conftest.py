"""Shared test fixtures."""
from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callgate.datastore.engine import build_session_factory, create_tables
from callgate.services.clock import Clock
from callgate.services.storage import MemoryStorage


class FakeClock(Clock):
    """Manually driven clock; sleep() advances time instead of waiting."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)) -> None:
        self._start = start
        self._elapsed = 0.0

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def monotonic(self) -> float:
        return self._elapsed

    def advance(self, seconds: float) -> None:
        self._elapsed += seconds

    async def sleep(self, seconds: float) -> None:
        self._elapsed += max(0.0, seconds)
        await asyncio.sleep(0)


class RecordingUpstream:
    """Fake upstream that records every call it receives."""

    def __init__(self, clock: Clock, error: Exception | None = None) -> None:
        self.clock = clock
        self.error = error
        self.gate: asyncio.Event | None = None
        self.calls: list[tuple[str, Any, float]] = []

    async def __call__(self, endpoint: str, payload: Any) -> Any:
        self.calls.append((endpoint, payload, self.clock.monotonic()))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return {"endpoint": endpoint, "payload": payload, "call": len(self.calls)}


class FlakyStorage(MemoryStorage):
    """In-memory storage whose writes and deletes fail with OSError once broken."""

    def __init__(self) -> None:
        super().__init__()
        self.broken = False

    def set(self, key: str, value: str) -> None:
        if self.broken:
            raise OSError("disk unavailable")
        super().set(key, value)

    def delete(self, key: str) -> None:
        if self.broken:
            raise OSError("disk unavailable")
        super().delete(key)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def upstream(clock: FakeClock) -> RecordingUpstream:
    return RecordingUpstream(clock)


@pytest.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine, factory = build_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}")
    await create_tables(engine)
    yield factory
    await engine.dispose()
