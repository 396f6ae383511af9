"""Tests for services/gateway.py: RequestGateway and the process-wide instance."""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from callgate.services.cache import CacheStore
from callgate.services.errors import CanonicalizationError, RateLimitError, UpstreamError
from callgate.services.gateway import (
    RequestGateway,
    close_gateway,
    get_gateway,
    init_gateway,
)
from callgate.services.storage import FileStorage, MemoryStorage
from callgate.services.structured import SQLStructuredTier
from callgate.settings import Settings
from tests.conftest import FakeClock, RecordingUpstream


@pytest.fixture
def gateway(clock: FakeClock, upstream: RecordingUpstream) -> RequestGateway:
    return RequestGateway(
        upstream=upstream,
        cache=CacheStore(persistent=MemoryStorage(), clock=clock),
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Cache behaviour
# ---------------------------------------------------------------------------


async def test_second_identical_request_served_from_cache(
    gateway: RequestGateway, upstream: RecordingUpstream
) -> None:
    first = await gateway.request("market-trends", {"idea": "X"})
    second = await gateway.request("market-trends", {"idea": "X"})

    assert len(upstream.calls) == 1
    assert first.from_cache is None
    assert second.from_cache == "structured"
    assert second.data == first.data
    assert gateway.tracker.get("market-trends").cache_hits == 1


async def test_key_order_does_not_change_identity(
    gateway: RequestGateway, upstream: RecordingUpstream
) -> None:
    await gateway.invoke("market-trends", {"idea": "X", "region": "EU"})
    await gateway.invoke("market-trends", {"region": "EU", "idea": "X"})

    assert len(upstream.calls) == 1


async def test_distinct_payloads_are_distinct_requests(
    gateway: RequestGateway, upstream: RecordingUpstream
) -> None:
    await gateway.invoke("market-trends", {"idea": "X"})
    await gateway.invoke("market-trends", {"idea": "Y"})
    await gateway.invoke("google-trends", {"idea": "X"})

    assert [call[0] for call in upstream.calls] == [
        "market-trends",
        "market-trends",
        "google-trends",
    ]


async def test_endpoint_ttl_is_honoured(
    gateway: RequestGateway, upstream: RecordingUpstream, clock: FakeClock
) -> None:
    await gateway.invoke("reddit-sentiment", {"idea": "X"})

    clock.advance(timedelta(hours=11, minutes=59).total_seconds())
    await gateway.invoke("reddit-sentiment", {"idea": "X"})
    assert len(upstream.calls) == 1

    clock.advance(timedelta(minutes=2).total_seconds())
    data = await gateway.invoke("reddit-sentiment", {"idea": "X"})
    assert len(upstream.calls) == 2
    assert data["call"] == 2


async def test_zero_ttl_endpoint_is_never_cached(
    gateway: RequestGateway, upstream: RecordingUpstream
) -> None:
    await gateway.invoke("generate-session-title", {"text": "hello"})
    await gateway.invoke("generate-session-title", {"text": "hello"})

    assert len(upstream.calls) == 2


async def test_per_call_ttl_override(
    gateway: RequestGateway, upstream: RecordingUpstream, clock: FakeClock
) -> None:
    await gateway.invoke("market-trends", {"idea": "X"}, ttl=timedelta(seconds=30))

    clock.advance(31)
    await gateway.invoke("market-trends", {"idea": "X"})

    assert len(upstream.calls) == 2


async def test_use_cache_false_forces_refresh(
    gateway: RequestGateway, upstream: RecordingUpstream
) -> None:
    await gateway.invoke("market-trends", {"idea": "X"})
    refreshed = await gateway.invoke("market-trends", {"idea": "X"}, use_cache=False)
    cached = await gateway.invoke("market-trends", {"idea": "X"})

    assert len(upstream.calls) == 2
    assert refreshed["call"] == 2
    assert cached == refreshed


async def test_payload_is_copied_before_dispatch(
    gateway: RequestGateway, upstream: RecordingUpstream
) -> None:
    payload = {"ideas": ["X"]}
    await gateway.invoke("market-trends", payload)
    payload["ideas"].append("Y")

    assert upstream.calls[0][1] == {"ideas": ["X"]}


async def test_missing_payload_is_sent_as_empty_object(
    gateway: RequestGateway, upstream: RecordingUpstream
) -> None:
    await gateway.invoke("market-trends")
    await gateway.invoke("market-trends", {})

    assert len(upstream.calls) == 1
    assert upstream.calls[0][1] == {}


async def test_mutating_a_result_does_not_touch_the_cache(
    gateway: RequestGateway, upstream: RecordingUpstream
) -> None:
    first = await gateway.invoke("market-trends", {"idea": "X"})
    first["payload"]["idea"] = "changed"

    second = await gateway.invoke("market-trends", {"idea": "X"})

    assert len(upstream.calls) == 1
    assert second["payload"] == {"idea": "X"}


async def test_unwritable_persistent_tier_still_returns_result(
    clock: FakeClock, upstream: RecordingUpstream, tmp_path
) -> None:
    (tmp_path / "blocker").write_text("not a directory", encoding="utf-8")
    cache = CacheStore(
        persistent=FileStorage(tmp_path / "blocker" / "cache.json"), clock=clock
    )
    gateway = RequestGateway(upstream=upstream, cache=cache, clock=clock)

    data = await gateway.invoke("market-trends", {"idea": "X"})
    again = await gateway.request("market-trends", {"idea": "X"})

    assert data["call"] == 1
    assert again.from_cache == "structured"
    assert len(upstream.calls) == 1
    assert (await cache.get_stats()).dropped == 1


# ---------------------------------------------------------------------------
# Coalescing
# ---------------------------------------------------------------------------


async def test_concurrent_identical_requests_call_upstream_once(
    gateway: RequestGateway, upstream: RecordingUpstream
) -> None:
    first, second = await asyncio.gather(
        gateway.request("market-trends", {"idea": "X"}),
        gateway.request("market-trends", {"idea": "X"}),
    )

    assert len(upstream.calls) == 1
    assert first.data == second.data
    assert [first.deduplicated, second.deduplicated] == [False, True]
    assert gateway.tracker.get("market-trends").coalesced == 1


async def test_concurrent_failure_reaches_every_caller_once(
    clock: FakeClock,
) -> None:
    upstream = RecordingUpstream(clock, error=RateLimitError("market-trends", 30))
    gateway = RequestGateway(upstream=upstream, clock=clock)

    results = await asyncio.gather(
        gateway.invoke("market-trends", {"idea": "X"}),
        gateway.invoke("market-trends", {"idea": "X"}),
        return_exceptions=True,
    )

    assert len(upstream.calls) == 1
    assert all(isinstance(r, RateLimitError) for r in results)
    assert results[0] is results[1]


async def test_caller_timeout_does_not_cancel_shared_call(
    gateway: RequestGateway, upstream: RecordingUpstream
) -> None:
    upstream.gate = asyncio.Event()

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(gateway.invoke("market-trends", {"idea": "X"}), 0.01)

    upstream.gate.set()
    await gateway.invoke("market-trends", {"idea": "X"})
    result = await gateway.request("market-trends", {"idea": "X"})

    assert len(upstream.calls) == 1
    assert result.from_cache == "structured"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


async def test_failures_are_not_cached(clock: FakeClock) -> None:
    upstream = RecordingUpstream(clock, error=UpstreamError("down", endpoint="market-trends"))
    gateway = RequestGateway(upstream=upstream, clock=clock)

    with pytest.raises(UpstreamError):
        await gateway.invoke("market-trends", {"idea": "X"})

    upstream.error = None
    data = await gateway.invoke("market-trends", {"idea": "X"})

    assert data["call"] == 2
    metrics = gateway.tracker.get("market-trends")
    assert metrics.calls == 2
    assert metrics.failures == 1


async def test_unexpected_exception_is_wrapped(clock: FakeClock) -> None:
    cause = RuntimeError("socket closed")
    gateway = RequestGateway(upstream=RecordingUpstream(clock, error=cause), clock=clock)

    with pytest.raises(UpstreamError) as exc_info:
        await gateway.invoke("market-trends", {"idea": "X"})

    assert exc_info.value.__cause__ is cause
    assert exc_info.value.endpoint == "market-trends"


async def test_unfingerprintable_payload_never_reaches_scheduler(
    gateway: RequestGateway, upstream: RecordingUpstream
) -> None:
    with pytest.raises(CanonicalizationError):
        await gateway.invoke("market-trends", {"ideas": {"X", "Y"}})

    assert upstream.calls == []
    assert gateway.scheduler.get_stats().submitted == 0


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


async def test_distinct_requests_are_spaced(
    gateway: RequestGateway, upstream: RecordingUpstream
) -> None:
    await asyncio.gather(
        *(gateway.invoke("market-trends", {"idea": idea}) for idea in "ABC")
    )

    assert [call[2] for call in upstream.calls] == [0.0, 1.0, 2.0]


# ---------------------------------------------------------------------------
# Queries and status
# ---------------------------------------------------------------------------


async def test_query_and_clear_cache(
    gateway: RequestGateway, upstream: RecordingUpstream
) -> None:
    await gateway.invoke("market-trends", {"idea": "X"}, tags=["idea:X"])
    await gateway.invoke("reddit-sentiment", {"idea": "X"}, tags=["idea:X"])

    assert len(await gateway.query_cache(["idea:X"])) == 2

    assert await gateway.clear_cache("market-trends") == 1
    assert len(await gateway.query_cache(["idea:X"])) == 1

    assert await gateway.clear_cache() == 1
    assert await gateway.query_cache(["idea:X"]) == []


async def test_health_status(gateway: RequestGateway) -> None:
    await gateway.invoke("market-trends", {"idea": "X"})
    await gateway.invoke("market-trends", {"idea": "X"})

    status = await gateway.get_health_status()

    assert status["cache"]["hits"] == 1
    assert status["scheduler"]["stats"]["succeeded"] == 1
    assert status["endpoints"]["market-trends"]["calls"] == 1
    assert status["ttl_policy"]["market-trends"] == 24 * 3600
    assert status["maintenance"] is False


async def test_close_closes_upstream(clock: FakeClock) -> None:
    class ClosableUpstream(RecordingUpstream):
        closed = False

        async def close(self) -> None:
            self.closed = True

    upstream = ClosableUpstream(clock)
    async with RequestGateway(upstream=upstream, clock=clock) as gateway:
        await gateway.invoke("market-trends", {"idea": "X"})

    assert upstream.closed
    assert gateway.scheduler.get_status()["closed"] is True


# ---------------------------------------------------------------------------
# Process-wide gateway
# ---------------------------------------------------------------------------


@pytest.fixture
async def reset_gateway():
    yield
    await close_gateway()


async def test_gateway_lifecycle(
    reset_gateway, upstream: RecordingUpstream, clock: FakeClock
) -> None:
    with pytest.raises(RuntimeError, match="not initialized"):
        get_gateway()

    gateway = await init_gateway(
        upstream, settings=Settings(min_spacing_seconds=0), clock=clock
    )
    assert get_gateway() is gateway
    assert (await gateway.get_health_status())["maintenance"] is True

    with pytest.raises(RuntimeError, match="already initialized"):
        await init_gateway(upstream, settings=Settings(), clock=clock)

    await close_gateway()
    with pytest.raises(RuntimeError, match="not initialized"):
        get_gateway()


async def test_gateway_with_database(
    reset_gateway, upstream: RecordingUpstream, clock: FakeClock, tmp_path
) -> None:
    settings = Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}",
        storage_path=str(tmp_path / "cache.json"),
    )
    gateway = await init_gateway(
        upstream, settings=settings, clock=clock, start_maintenance=False
    )

    assert isinstance(gateway.cache.structured, SQLStructuredTier)
    await gateway.invoke("market-trends", {"idea": "X"})
    result = await gateway.request("market-trends", {"idea": "X"})

    assert result.from_cache == "structured"
    assert len(upstream.calls) == 1
    assert (tmp_path / "cache.json").exists()
