"""
Service layer - coordination of every outbound upstream call.

Provides:
- RequestScheduler: Serialized FIFO dispatch with minimum spacing
- CacheStore: Two-tier response cache with TTL and quota eviction
- RequestDeduplicator: Coalesces concurrent identical requests
- TTLPolicy: Per-endpoint freshness table
- RequestGateway: Unified entry point combining all of the above
"""

from callgate.services.errors import (
    ServiceError,
    ConfigurationError,
    CanonicalizationError,
    UpstreamError,
    UpstreamTimeoutError,
    RateLimitError,
    CacheError,
    CapacityError,
    QuotaExceededError,
    SchedulerClosedError,
)
from callgate.services.clock import Clock, system_clock
from callgate.services.fingerprint import fingerprint
from callgate.services.types import CacheEntry, CacheResult
from callgate.services.storage import KeyValueStorage, MemoryStorage, FileStorage
from callgate.services.structured import (
    StructuredTier,
    InMemoryStructuredTier,
    SQLStructuredTier,
)
from callgate.services.cache import CacheStore, CacheStats
from callgate.services.scheduler import RequestScheduler, SchedulerStats
from callgate.services.deduplicator import RequestDeduplicator
from callgate.services.ttl_policy import TTLPolicy, DEFAULT_TTL, DEFAULT_TTL_TABLE
from callgate.services.metrics import CallTracker, EndpointMetrics
from callgate.services.upstream import HttpUpstream
from callgate.services.gateway import (
    RequestGateway,
    RequestResult,
    init_gateway,
    get_gateway,
    close_gateway,
)

__all__ = [
    # Errors
    "ServiceError",
    "ConfigurationError",
    "CanonicalizationError",
    "UpstreamError",
    "UpstreamTimeoutError",
    "RateLimitError",
    "CacheError",
    "CapacityError",
    "QuotaExceededError",
    "SchedulerClosedError",
    # Primitives
    "Clock",
    "system_clock",
    "fingerprint",
    # Cache
    "CacheEntry",
    "CacheResult",
    "KeyValueStorage",
    "MemoryStorage",
    "FileStorage",
    "StructuredTier",
    "InMemoryStructuredTier",
    "SQLStructuredTier",
    "CacheStore",
    "CacheStats",
    # Scheduler
    "RequestScheduler",
    "SchedulerStats",
    # Deduplicator
    "RequestDeduplicator",
    # TTL
    "TTLPolicy",
    "DEFAULT_TTL",
    "DEFAULT_TTL_TABLE",
    # Instrumentation
    "CallTracker",
    "EndpointMetrics",
    # Gateway
    "HttpUpstream",
    "RequestGateway",
    "RequestResult",
    "init_gateway",
    "get_gateway",
    "close_gateway",
]
