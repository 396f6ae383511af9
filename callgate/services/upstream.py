"""
HttpUpstream - reference upstream collaborator over HTTP.

Invokes serverless functions with POST {base_url}/functions/v1/{endpoint}
and a JSON body, returning the decoded JSON response.
"""

from typing import Any

import httpx
from loguru import logger

from callgate.services.errors import RateLimitError, UpstreamError, UpstreamTimeoutError


class HttpUpstream:
    """
    Async HTTP upstream.

    Usage:
        upstream = HttpUpstream("https://xyz.supabase.co", api_key="...")
        data = await upstream("market-trends", {"idea": "X"})
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            headers = {"Content-Type": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
                headers["apikey"] = self._api_key
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
                follow_redirects=True,
            )
        return self._http_client

    async def __call__(self, endpoint: str, payload: Any) -> Any:
        """Execute the actual HTTP request."""
        client = await self._get_http_client()

        try:
            response = await client.post(f"/functions/v1/{endpoint}", json=payload)
            response.raise_for_status()
            data = response.json()

        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(endpoint, self._timeout) from e

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429:
                raise RateLimitError(
                    endpoint, _retry_after(e.response.headers.get("Retry-After"))
                ) from e
            raise UpstreamError(
                f"HTTP {status}: {e.response.text[:200]}",
                endpoint=endpoint,
                status_code=status,
            ) from e

        except httpx.RequestError as e:
            raise UpstreamError(str(e), endpoint=endpoint) from e

        except ValueError as e:
            raise UpstreamError(
                f"Invalid JSON from '{endpoint}': {e}", endpoint=endpoint
            ) from e

        if isinstance(data, dict) and data.get("error"):
            raise UpstreamError(
                f"'{endpoint}' returned an error: {str(data['error'])[:200]}",
                endpoint=endpoint,
            )
        return data

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
            logger.debug("HttpUpstream closed")


def _retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
