"""Tests for services/upstream.py: HttpUpstream over httpx.MockTransport."""
from __future__ import annotations

import json

import httpx
import pytest

from callgate.services.errors import RateLimitError, UpstreamError, UpstreamTimeoutError
from callgate.services.upstream import HttpUpstream


def make_upstream(handler, api_key: str = "secret") -> HttpUpstream:
    return HttpUpstream(
        "https://functions.example.com/",
        api_key=api_key,
        timeout=5.0,
        transport=httpx.MockTransport(handler),
    )


async def test_posts_json_to_function_path() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"trend": "up"})

    upstream = make_upstream(handler)
    data = await upstream("market-trends", {"idea": "X"})
    await upstream.close()

    assert data == {"trend": "up"}
    request = seen[0]
    assert request.method == "POST"
    assert request.url == "https://functions.example.com/functions/v1/market-trends"
    assert json.loads(request.content) == {"idea": "X"}
    assert request.headers["Authorization"] == "Bearer secret"
    assert request.headers["apikey"] == "secret"


async def test_no_auth_headers_without_key() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[])

    upstream = make_upstream(handler, api_key="")
    assert await upstream("ep", {}) == []
    assert "Authorization" not in seen[0].headers
    assert "apikey" not in seen[0].headers


async def test_rate_limit_maps_retry_after() -> None:
    upstream = make_upstream(
        lambda request: httpx.Response(429, headers={"Retry-After": "12"}, text="slow down")
    )

    with pytest.raises(RateLimitError) as exc_info:
        await upstream("market-trends", {})

    assert exc_info.value.retry_after == 12.0
    assert exc_info.value.status_code == 429
    assert exc_info.value.endpoint == "market-trends"


async def test_http_error_carries_status() -> None:
    upstream = make_upstream(lambda request: httpx.Response(503, text="unavailable"))

    with pytest.raises(UpstreamError) as exc_info:
        await upstream("market-trends", {})

    assert exc_info.value.status_code == 503
    assert "unavailable" in str(exc_info.value)


async def test_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    upstream = make_upstream(handler)

    with pytest.raises(UpstreamTimeoutError) as exc_info:
        await upstream("market-trends", {})
    assert exc_info.value.timeout == 5.0


async def test_connection_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamError):
        await make_upstream(handler)("market-trends", {})


async def test_invalid_json_body() -> None:
    upstream = make_upstream(lambda request: httpx.Response(200, text="<html>"))

    with pytest.raises(UpstreamError, match="Invalid JSON"):
        await upstream("market-trends", {})


async def test_error_field_in_body() -> None:
    upstream = make_upstream(
        lambda request: httpx.Response(200, json={"error": "quota exhausted"})
    )

    with pytest.raises(UpstreamError, match="quota exhausted"):
        await upstream("market-trends", {})
