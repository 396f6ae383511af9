"""
CacheStore - two-tier response cache with per-entry TTL.

Tiers:
- Structured tier: entries queryable by tag/endpoint (in-memory LRU or SQL)
- Persistent tier: flat quota-bounded key-value storage, used as fallback

Writes go to both tiers. When the persistent tier runs out of quota the
oldest quarter of its entries is evicted and the write retried once; if it
still does not fit, the write is dropped. Caching never fails a request.
"""

import asyncio
import json
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Sequence

from loguru import logger

from callgate.services.clock import Clock, system_clock
from callgate.services.errors import CapacityError, QuotaExceededError
from callgate.services.fingerprint import endpoint_of
from callgate.services.storage import KeyValueStorage, MemoryStorage
from callgate.services.structured import InMemoryStructuredTier, StructuredTier
from callgate.services.types import CacheEntry, CacheResult

PERSISTENT_PREFIX = "cache:"
EVICTION_FRACTION = 0.25


class CacheStore:
    """
    Two-tier cache keyed by request fingerprint.

    Usage:
        cache = CacheStore(persistent=FileStorage("cache.json"))

        result = await cache.get(key)
        if result:
            return result.data

        data = await fetch_data()
        await cache.put(key, data, ttl=timedelta(hours=6))
    """

    def __init__(
        self,
        structured: StructuredTier | None = None,
        persistent: KeyValueStorage | None = None,
        clock: Clock = system_clock,
        debug: bool = False,
    ):
        self._structured = structured or InMemoryStructuredTier()
        self._persistent = persistent if persistent is not None else MemoryStorage()
        self._clock = clock
        self._debug = debug
        self._lock = asyncio.Lock()
        self._stats = CacheStats()

    @property
    def structured(self) -> StructuredTier:
        return self._structured

    @property
    def persistent(self) -> KeyValueStorage:
        return self._persistent

    async def get(self, fingerprint: str) -> CacheResult | None:
        """
        Get a valid cached value.

        Returns CacheResult if an unexpired entry exists, None otherwise.
        Expired entries found on the way are removed.
        """
        async with self._lock:
            now = self._clock.now()

            entry = await self._structured_get(fingerprint)
            if entry is not None:
                if entry.is_valid(now):
                    self._stats.hits += 1
                    self._log(f"HIT: {fingerprint[:50]}...")
                    return CacheResult(
                        data=entry.data,
                        from_cache="structured",
                        created_at=entry.created_at,
                        expires_at=entry.expires_at,
                    )
                await self._purge(fingerprint)
                self._stats.expired += 1
                self._stats.misses += 1
                self._log(f"EXPIRED: {fingerprint[:50]}...")
                return None

            entry = self._persistent_get(fingerprint)
            if entry is None:
                self._stats.misses += 1
                self._log(f"MISS: {fingerprint[:50]}...")
                return None

            if not entry.is_valid(now):
                self._persistent_delete(PERSISTENT_PREFIX + fingerprint)
                self._stats.expired += 1
                self._stats.misses += 1
                self._log(f"EXPIRED: {fingerprint[:50]}...")
                return None

            # Promote so the next read stays on the fast tier
            await self._structured_put(entry)
            self._stats.hits += 1
            self._log(f"HIT (persistent): {fingerprint[:50]}...")
            return CacheResult(
                data=entry.data,
                from_cache="persistent",
                created_at=entry.created_at,
                expires_at=entry.expires_at,
            )

    async def put(
        self,
        fingerprint: str,
        data: Any,
        ttl: timedelta,
        tags: Sequence[str] = (),
    ) -> bool:
        """
        Store *data* in both tiers with expires_at = now + ttl.

        A zero TTL means "never cache" and is a no-op. Returns True when the
        entry was stored in the structured tier.
        """
        if ttl <= timedelta(0):
            self._log(f"SKIP (ttl=0): {fingerprint[:50]}...")
            return False

        endpoint = endpoint_of(fingerprint)
        now = self._clock.now()
        entry = CacheEntry(
            fingerprint=fingerprint,
            endpoint=endpoint,
            data=data,
            created_at=now,
            expires_at=now + ttl,
            tags=tuple(dict.fromkeys((endpoint, *tags))),
        )

        async with self._lock:
            stored = await self._structured_put(entry)

            try:
                self._persistent_put(entry)
            except (CapacityError, OSError) as e:
                self._stats.dropped += 1
                logger.warning(f"[CacheStore] {e}; entry not persisted")

            self._stats.writes += 1
            self._log(f"SET: {fingerprint[:50]}... (TTL: {ttl.total_seconds()}s)")
            return stored

    async def delete(self, fingerprint: str) -> None:
        """Delete a single entry from both tiers."""
        async with self._lock:
            await self._purge(fingerprint)
            self._log(f"DELETE: {fingerprint[:50]}...")

    async def query_by_tag(
        self,
        tags: list[str],
        max_age: timedelta | None = None,
    ) -> list[CacheEntry]:
        """Unexpired structured-tier entries carrying any of *tags*."""
        async with self._lock:
            return await self._structured.query_by_tag(
                tags, now=self._clock.now(), max_age=max_age
            )

    async def invalidate_endpoint(self, endpoint: str) -> int:
        """
        Remove every entry cached for *endpoint*.

        Returns:
            Number of distinct fingerprints removed from either tier.
        """
        async with self._lock:
            removed = set(await self._structured.invalidate_endpoint(endpoint))
            for key in self._persistent_keys():
                fingerprint = key[len(PERSISTENT_PREFIX):]
                if endpoint_of(fingerprint) == endpoint and self._persistent_delete(key):
                    removed.add(fingerprint)

            if removed:
                self._log(f"INVALIDATE: {len(removed)} entries for '{endpoint}'")
            return len(removed)

    async def cleanup_expired(self) -> int:
        """Remove expired entries from both tiers. Returns distinct fingerprints removed."""
        async with self._lock:
            now = self._clock.now()
            removed = set(await self._structured.purge_expired(now))

            for key in self._persistent_keys():
                fingerprint = key[len(PERSISTENT_PREFIX):]
                entry = self._persistent_get(fingerprint)
                if entry is None or not entry.is_valid(now):
                    if self._persistent_delete(key):
                        removed.add(fingerprint)

            self._stats.expired += len(removed)
            if removed:
                self._log(f"CLEANUP: {len(removed)} expired entries removed")
            return len(removed)

    async def clear_all(self) -> int:
        """Remove every entry from both tiers. Returns distinct fingerprints removed."""
        async with self._lock:
            removed = set(await self._structured.clear())
            for key in self._persistent_keys():
                if self._persistent_delete(key):
                    removed.add(key[len(PERSISTENT_PREFIX):])
            logger.info(f"[CacheStore] Cleared {len(removed)} entries")
            return len(removed)

    async def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        self._stats.structured_size = await self._structured.size()
        self._stats.persistent_size = len(self._persistent_keys())
        return self._stats

    # Persistent tier helpers

    def _persistent_keys(self) -> list[str]:
        return [k for k in self._persistent.keys() if k.startswith(PERSISTENT_PREFIX)]

    def _persistent_delete(self, key: str) -> bool:
        try:
            self._persistent.delete(key)
        except OSError as e:
            logger.warning(f"[CacheStore] Persistent delete failed for {key[:50]}: {e}")
            return False
        return True

    def _persistent_get(self, fingerprint: str) -> CacheEntry | None:
        key = PERSISTENT_PREFIX + fingerprint
        raw = self._persistent.get(key)
        if raw is None:
            return None

        try:
            record = json.loads(raw)
            return CacheEntry(
                fingerprint=fingerprint,
                endpoint=endpoint_of(fingerprint),
                data=record["data"],
                created_at=datetime.fromtimestamp(record["timestamp"]),
                expires_at=datetime.fromtimestamp(record["expiresAt"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"[CacheStore] Dropping corrupt entry {key[:50]}: {e}")
            self._persistent_delete(key)
            return None

    def _persistent_put(self, entry: CacheEntry) -> None:
        key = PERSISTENT_PREFIX + entry.fingerprint
        try:
            value = json.dumps(
                {
                    "data": entry.data,
                    "timestamp": entry.created_at.timestamp(),
                    "expiresAt": entry.expires_at.timestamp(),
                },
                ensure_ascii=False,
            )
        except (TypeError, ValueError):
            self._log(f"SKIP persistent (not JSON): {entry.fingerprint[:50]}...")
            return

        try:
            self._persistent.set(key, value)
            return
        except QuotaExceededError:
            evicted = self._evict_oldest()
            self._log(f"QUOTA: evicted {evicted} entries, retrying {key[:50]}...")

        try:
            self._persistent.set(key, value)
        except QuotaExceededError as e:
            raise CapacityError(
                f"Persistent tier full after evicting oldest entries ({e})"
            ) from e

    def _evict_oldest(self) -> int:
        """Remove the oldest quarter (by creation time) of persistent entries."""
        ages: list[tuple[float, str]] = []
        for key in self._persistent_keys():
            try:
                timestamp = float(json.loads(self._persistent.get(key) or "{}")["timestamp"])
            except (ValueError, KeyError, TypeError):
                timestamp = 0.0
            ages.append((timestamp, key))

        if not ages:
            return 0

        ages.sort()
        to_remove = max(1, math.ceil(len(ages) * EVICTION_FRACTION))
        for _, key in ages[:to_remove]:
            self._persistent.delete(key)

        self._stats.evictions += to_remove
        logger.info(f"[CacheStore] Evicted {to_remove} oldest persistent entries")
        return to_remove

    # Structured tier helpers

    async def _structured_get(self, fingerprint: str) -> CacheEntry | None:
        try:
            return await self._structured.get(fingerprint)
        except Exception as e:
            logger.warning(f"[CacheStore] Structured tier read failed: {e}")
            return None

    async def _structured_put(self, entry: CacheEntry) -> bool:
        try:
            await self._structured.put(entry)
            return True
        except Exception as e:
            logger.warning(f"[CacheStore] Structured tier write failed: {e}")
            return False

    async def _purge(self, fingerprint: str) -> None:
        try:
            await self._structured.delete(fingerprint)
        except Exception as e:
            logger.warning(f"[CacheStore] Structured tier delete failed: {e}")
        self._persistent_delete(PERSISTENT_PREFIX + fingerprint)

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CacheStore] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    expired: int = 0
    writes: int = 0
    evictions: int = 0
    dropped: int = 0
    structured_size: int = 0
    persistent_size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "expired": self.expired,
            "writes": self.writes,
            "evictions": self.evictions,
            "dropped": self.dropped,
            "structured_size": self.structured_size,
            "persistent_size": self.persistent_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
