"""
Structured cache tier - entries queryable by tag and endpoint.

InMemoryStructuredTier keeps a bounded LRU in process; SQLStructuredTier
persists rows through SQLAlchemy so they can be queried across restarts.
"""

import copy
import json
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callgate.datastore.repositories import CachedResponseRepository, decode_tags
from callgate.services.errors import CacheError
from callgate.services.types import CacheEntry


class StructuredTier(ABC):
    """Abstract structured tier. Validity is decided by the caller."""

    @abstractmethod
    async def get(self, fingerprint: str) -> CacheEntry | None:
        """Return the stored entry, expired or not."""

    @abstractmethod
    async def put(self, entry: CacheEntry) -> None:
        """Store *entry*, replacing any entry with the same fingerprint."""

    @abstractmethod
    async def delete(self, fingerprint: str) -> bool:
        """Remove one entry."""

    @abstractmethod
    async def query_by_tag(
        self,
        tags: list[str],
        now: datetime,
        max_age: timedelta | None = None,
    ) -> list[CacheEntry]:
        """Unexpired entries carrying any of *tags*, newest first."""

    @abstractmethod
    async def invalidate_endpoint(self, endpoint: str) -> list[str]:
        """Remove every entry for *endpoint*. Returns the removed fingerprints."""

    @abstractmethod
    async def purge_expired(self, now: datetime) -> list[str]:
        """Remove entries whose expiry has passed. Returns the removed fingerprints."""

    @abstractmethod
    async def clear(self) -> list[str]:
        """Remove everything. Returns the removed fingerprints."""

    @abstractmethod
    async def size(self) -> int:
        """Number of stored entries."""


def _detached(entry: CacheEntry) -> CacheEntry:
    return replace(entry, data=copy.deepcopy(entry.data))


class InMemoryStructuredTier(StructuredTier):
    """
    LRU structured tier backed by OrderedDict.

    Payloads are deep-copied on the way in and out, so a caller mutating
    its result cannot change what later hits see.

    Args:
        max_entries: Entries kept before the least-recently-used is dropped.
    """

    def __init__(self, max_entries: int = 100):
        self._max_entries = max_entries
        self._store: OrderedDict[str, CacheEntry] = OrderedDict()

    async def get(self, fingerprint: str) -> CacheEntry | None:
        entry = self._store.get(fingerprint)
        if entry is None:
            return None
        self._store.move_to_end(fingerprint)
        return _detached(entry)

    async def put(self, entry: CacheEntry) -> None:
        self._store.pop(entry.fingerprint, None)
        self._store[entry.fingerprint] = _detached(entry)
        while len(self._store) > self._max_entries:
            self._store.popitem(last=False)

    async def delete(self, fingerprint: str) -> bool:
        return self._store.pop(fingerprint, None) is not None

    async def query_by_tag(
        self,
        tags: list[str],
        now: datetime,
        max_age: timedelta | None = None,
    ) -> list[CacheEntry]:
        wanted = set(tags)
        matches = [
            entry
            for entry in self._store.values()
            if entry.is_valid(now)
            and (not wanted or wanted.intersection(entry.tags))
            and (max_age is None or entry.age(now) <= max_age)
        ]
        matches.sort(key=lambda e: e.created_at, reverse=True)
        return [_detached(entry) for entry in matches]

    async def invalidate_endpoint(self, endpoint: str) -> list[str]:
        keys = [k for k, e in self._store.items() if e.endpoint == endpoint]
        for key in keys:
            del self._store[key]
        return keys

    async def purge_expired(self, now: datetime) -> list[str]:
        keys = [k for k, e in self._store.items() if not e.is_valid(now)]
        for key in keys:
            del self._store[key]
        return keys

    async def clear(self) -> list[str]:
        keys = list(self._store)
        self._store.clear()
        return keys

    async def size(self) -> int:
        return len(self._store)


class SQLStructuredTier(StructuredTier):
    """
    Structured tier stored in a SQL database.

    Payloads are stored as JSON; a payload that cannot be serialized raises
    CacheError from put().
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    def _to_entry(row) -> CacheEntry:
        return CacheEntry(
            fingerprint=row.fingerprint,
            endpoint=row.endpoint,
            data=json.loads(row.payload_json),
            created_at=row.created_at,
            expires_at=row.expires_at,
            tags=decode_tags(row.tags),
        )

    async def get(self, fingerprint: str) -> CacheEntry | None:
        async with self._session_factory() as session:
            row = await CachedResponseRepository(session).get(fingerprint)
            return self._to_entry(row) if row else None

    async def put(self, entry: CacheEntry) -> None:
        async with self._session_factory() as session:
            try:
                await CachedResponseRepository(session).upsert(
                    fingerprint=entry.fingerprint,
                    endpoint=entry.endpoint,
                    data=entry.data,
                    tags=entry.tags,
                    created_at=entry.created_at,
                    expires_at=entry.expires_at,
                )
            except (TypeError, ValueError) as e:
                await session.rollback()
                raise CacheError(
                    f"Payload for {entry.fingerprint[:50]} is not JSON-serializable: {e}"
                ) from e
            await session.commit()

    async def delete(self, fingerprint: str) -> bool:
        async with self._session_factory() as session:
            deleted = await CachedResponseRepository(session).delete(fingerprint)
            await session.commit()
            return deleted > 0

    async def query_by_tag(
        self,
        tags: list[str],
        now: datetime,
        max_age: timedelta | None = None,
    ) -> list[CacheEntry]:
        since = now - max_age if max_age is not None else None
        async with self._session_factory() as session:
            rows = await CachedResponseRepository(session).query_by_tags(
                tags, now=now, since=since
            )
            return [self._to_entry(row) for row in rows]

    async def invalidate_endpoint(self, endpoint: str) -> list[str]:
        async with self._session_factory() as session:
            deleted = await CachedResponseRepository(session).delete_by_endpoint(endpoint)
            await session.commit()
            return deleted

    async def purge_expired(self, now: datetime) -> list[str]:
        async with self._session_factory() as session:
            deleted = await CachedResponseRepository(session).delete_expired(now)
            await session.commit()
            return deleted

    async def clear(self) -> list[str]:
        async with self._session_factory() as session:
            deleted = await CachedResponseRepository(session).clear()
            await session.commit()
            return deleted

    async def size(self) -> int:
        async with self._session_factory() as session:
            return await CachedResponseRepository(session).count()
