"""
RequestGateway - single entry point for every outbound call.

Combines:
- CacheStore for TTL-bounded response caching
- RequestDeduplicator so one fingerprint has at most one call in flight
- RequestScheduler for serialized, spaced upstream dispatch
- TTLPolicy for per-endpoint freshness
- CallTracker for usage instrumentation
"""

import asyncio
import copy
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Sequence

from loguru import logger

from callgate.services.cache import CacheStore
from callgate.services.clock import Clock, system_clock
from callgate.services.deduplicator import RequestDeduplicator
from callgate.services.errors import ServiceError, UpstreamError
from callgate.services.fingerprint import fingerprint
from callgate.services.metrics import CallTracker
from callgate.services.scheduler import RequestScheduler
from callgate.services.ttl_policy import TTLPolicy

if TYPE_CHECKING:
    from callgate.services.maintenance import CacheMaintenance
    from callgate.settings import Settings

Upstream = Callable[[str, Any], Awaitable[Any]]


@dataclass
class RequestResult:
    """Result from a gateway request."""

    data: Any
    endpoint: str
    fingerprint: str
    from_cache: str | None = None  # 'structured' | 'persistent' | None
    deduplicated: bool = False


class RequestGateway:
    """
    Cached, deduplicated, serialized access to an upstream.

    Usage:
        gateway = RequestGateway(upstream=HttpUpstream(base_url))

        data = await gateway.invoke("market-trends", {"idea": "X"})

        # Bypass the cache read, still coalesced and queued
        data = await gateway.invoke("market-trends", {"idea": "X"}, use_cache=False)
    """

    def __init__(
        self,
        upstream: Upstream,
        scheduler: RequestScheduler | None = None,
        cache: CacheStore | None = None,
        ttl_policy: TTLPolicy | None = None,
        deduplicator: RequestDeduplicator | None = None,
        tracker: CallTracker | None = None,
        clock: Clock = system_clock,
        debug: bool = False,
    ):
        self._upstream = upstream
        self._clock = clock
        self._debug = debug
        self._scheduler = scheduler or RequestScheduler(clock=clock, debug=debug)
        self._cache = cache or CacheStore(clock=clock, debug=debug)
        self._ttl_policy = ttl_policy or TTLPolicy()
        self._deduplicator = deduplicator or RequestDeduplicator(debug=debug)
        self._tracker = tracker or CallTracker()
        self._maintenance: "CacheMaintenance | None" = None

    @property
    def scheduler(self) -> RequestScheduler:
        return self._scheduler

    @property
    def cache(self) -> CacheStore:
        return self._cache

    @property
    def ttl_policy(self) -> TTLPolicy:
        return self._ttl_policy

    @property
    def tracker(self) -> CallTracker:
        return self._tracker

    def attach_maintenance(self, maintenance: "CacheMaintenance") -> None:
        """Tie a maintenance job's lifetime to this gateway."""
        self._maintenance = maintenance

    async def invoke(
        self,
        endpoint: str,
        payload: Any = None,
        *,
        use_cache: bool = True,
        ttl: timedelta | None = None,
        tags: Sequence[str] = (),
    ) -> Any:
        """Return the upstream result for (endpoint, payload)."""
        result = await self.request(
            endpoint, payload, use_cache=use_cache, ttl=ttl, tags=tags
        )
        return result.data

    async def request(
        self,
        endpoint: str,
        payload: Any = None,
        *,
        use_cache: bool = True,
        ttl: timedelta | None = None,
        tags: Sequence[str] = (),
    ) -> RequestResult:
        """
        Resolve a request through cache, in-flight table and scheduler.

        Args:
            endpoint: Logical endpoint name
            payload: JSON-compatible request body
            use_cache: When False, skip the cache read (force refresh)
            ttl: Override the policy TTL for this result
            tags: Extra tags stored with the cached entry

        Returns:
            RequestResult with the data and where it came from

        Raises:
            CanonicalizationError: If payload cannot be fingerprinted
            UpstreamError: If the upstream call failed
        """
        key = fingerprint(endpoint, payload)

        if use_cache:
            cached = await self._cache.get(key)
            if cached is not None:
                self._tracker.record_cache_hit(endpoint)
                return RequestResult(
                    data=cached.data,
                    endpoint=endpoint,
                    fingerprint=key,
                    from_cache=cached.from_cache,
                )

        # None and {} share a fingerprint, so they must share a body too
        request_payload = copy.deepcopy(payload) if payload is not None else {}

        async def fetch_and_store() -> Any:
            return await self._fetch_and_store(endpoint, request_payload, key, ttl, tags)

        task, joined = await self._deduplicator.acquire(key, fetch_and_store)
        data = await asyncio.shield(task)

        if joined:
            self._tracker.record_coalesced(endpoint)
        return RequestResult(
            data=data,
            endpoint=endpoint,
            fingerprint=key,
            deduplicated=joined,
        )

    async def _fetch_and_store(
        self,
        endpoint: str,
        payload: Any,
        key: str,
        ttl: timedelta | None,
        tags: Sequence[str],
    ) -> Any:
        """Queue the upstream call; cache the result on success only."""
        data = await self._scheduler.submit(
            lambda: self._call_upstream(endpoint, payload), label=endpoint
        )

        effective_ttl = ttl if ttl is not None else self._ttl_policy.resolve(endpoint)
        await self._cache.put(key, data, effective_ttl, tags=tags)
        return data

    async def _call_upstream(self, endpoint: str, payload: Any) -> Any:
        """Run the upstream collaborator, translating failures to UpstreamError."""
        started = self._clock.monotonic()
        try:
            data = await self._upstream(endpoint, payload)
        except ServiceError:
            self._record(endpoint, False, started)
            raise
        except Exception as e:
            self._record(endpoint, False, started)
            raise UpstreamError(
                f"Upstream call to '{endpoint}' failed: {type(e).__name__}: {e}",
                endpoint=endpoint,
            ) from e

        self._record(endpoint, True, started)
        return data

    def _record(self, endpoint: str, success: bool, started: float) -> None:
        self._tracker.record_call(
            endpoint,
            success,
            self._clock.monotonic() - started,
            when=self._clock.now(),
        )

    async def query_cache(
        self,
        tags: list[str],
        max_age: timedelta | None = None,
    ) -> list[Any]:
        """Cached results carrying any of *tags*, newest first."""
        entries = await self._cache.query_by_tag(tags, max_age=max_age)
        return [entry.data for entry in entries]

    async def clear_cache(self, endpoint: str | None = None) -> int:
        """Clear cached results for one endpoint, or everything. Returns entries removed."""
        if endpoint:
            return await self._cache.invalidate_endpoint(endpoint)
        return await self._cache.clear_all()

    async def get_health_status(self) -> dict[str, Any]:
        """Aggregate status of every component."""
        cache_stats = await self._cache.get_stats()
        return {
            "cache": cache_stats.to_dict(),
            "scheduler": self._scheduler.get_status(),
            "deduplicator": self._deduplicator.get_stats().to_dict(),
            "endpoints": self._tracker.snapshot(),
            "ttl_policy": self._ttl_policy.as_dict(),
            "maintenance": bool(self._maintenance and self._maintenance.is_running),
        }

    async def close(self) -> None:
        """Stop maintenance, cancel in-flight work and close the upstream."""
        if self._maintenance:
            self._maintenance.stop()
        await self._deduplicator.cancel_all()
        await self._scheduler.close()

        close = getattr(self._upstream, "close", None)
        if close is not None:
            await close()
        logger.debug("RequestGateway closed")

    async def __aenter__(self) -> "RequestGateway":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()


# Process-wide gateway instance
_global_gateway: RequestGateway | None = None
_owns_database = False


async def init_gateway(
    upstream: Upstream,
    settings: "Settings | None" = None,
    clock: Clock = system_clock,
    start_maintenance: bool = True,
) -> RequestGateway:
    """
    Build the process-wide gateway from settings.

    Must be called once at startup; raises RuntimeError if already initialized.
    """
    global _global_gateway, _owns_database
    if _global_gateway is not None:
        raise RuntimeError("Gateway already initialized. Call close_gateway() first.")

    from callgate.datastore.engine import get_session_factory, init_db
    from callgate.services.maintenance import CacheMaintenance
    from callgate.services.storage import FileStorage, MemoryStorage
    from callgate.services.structured import InMemoryStructuredTier, SQLStructuredTier
    from callgate.settings import global_settings

    settings = settings or global_settings

    if settings.database_url:
        await init_db(settings.database_url, echo=settings.database_echo)
        structured = SQLStructuredTier(get_session_factory())
        _owns_database = True
    else:
        structured = InMemoryStructuredTier(max_entries=settings.memory_max_entries)

    if settings.storage_path:
        persistent = FileStorage(settings.storage_path, settings.storage_max_bytes)
    else:
        persistent = MemoryStorage(settings.storage_max_bytes)

    cache = CacheStore(
        structured=structured,
        persistent=persistent,
        clock=clock,
        debug=settings.debug,
    )
    gateway = RequestGateway(
        upstream=upstream,
        scheduler=RequestScheduler(
            min_spacing=settings.min_spacing_seconds,
            max_concurrent=settings.max_concurrent,
            clock=clock,
            debug=settings.debug,
        ),
        cache=cache,
        ttl_policy=TTLPolicy(default=timedelta(hours=settings.default_ttl_hours)),
        clock=clock,
        debug=settings.debug,
    )

    if start_maintenance:
        maintenance = CacheMaintenance(cache, settings.cleanup_interval_minutes)
        maintenance.start()
        gateway.attach_maintenance(maintenance)

    _global_gateway = gateway
    logger.info(
        f"Gateway initialized (spacing={settings.min_spacing_seconds}s, "
        f"max_concurrent={settings.max_concurrent})"
    )
    return gateway


def get_gateway() -> RequestGateway:
    """Get the process-wide gateway."""
    if _global_gateway is None:
        raise RuntimeError("Gateway not initialized. Call init_gateway() first.")
    return _global_gateway


async def close_gateway() -> None:
    """Tear down the process-wide gateway."""
    global _global_gateway, _owns_database
    if _global_gateway:
        await _global_gateway.close()
        _global_gateway = None

    if _owns_database:
        from callgate.datastore.engine import close_db

        await close_db()
        _owns_database = False
