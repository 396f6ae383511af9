"""
CallTracker - per-endpoint instrumentation of upstream usage.

Counts upstream calls, failures and latency per endpoint, together with the
calls that never reached upstream because the cache or an in-flight request
answered them.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass
class EndpointMetrics:
    """Usage counters for one endpoint."""

    endpoint: str
    calls: int = 0
    failures: int = 0
    total_duration: float = 0.0
    cache_hits: int = 0
    coalesced: int = 0
    last_called: datetime | None = None

    @property
    def average_duration(self) -> float:
        return self.total_duration / self.calls if self.calls else 0.0

    @property
    def success_rate(self) -> float:
        if self.calls == 0:
            return 1.0
        return (self.calls - self.failures) / self.calls

    @property
    def saved_calls(self) -> int:
        """Requests answered without an upstream call."""
        return self.cache_hits + self.coalesced

    def to_dict(self) -> dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "calls": self.calls,
            "failures": self.failures,
            "average_duration": round(self.average_duration, 3),
            "success_rate": f"{self.success_rate:.2%}",
            "cache_hits": self.cache_hits,
            "coalesced": self.coalesced,
            "last_called": self.last_called.isoformat() if self.last_called else None,
        }


class CallTracker:
    """Registry of EndpointMetrics keyed by endpoint name."""

    def __init__(self):
        self._metrics: dict[str, EndpointMetrics] = {}

    def _get(self, endpoint: str) -> EndpointMetrics:
        if endpoint not in self._metrics:
            self._metrics[endpoint] = EndpointMetrics(endpoint=endpoint)
        return self._metrics[endpoint]

    def record_call(
        self,
        endpoint: str,
        success: bool,
        duration: float,
        when: datetime | None = None,
    ) -> None:
        metrics = self._get(endpoint)
        metrics.calls += 1
        metrics.total_duration += duration
        metrics.last_called = when or datetime.now()
        if not success:
            metrics.failures += 1

    def record_cache_hit(self, endpoint: str) -> None:
        self._get(endpoint).cache_hits += 1

    def record_coalesced(self, endpoint: str) -> None:
        self._get(endpoint).coalesced += 1

    def get(self, endpoint: str) -> EndpointMetrics | None:
        return self._metrics.get(endpoint)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {name: m.to_dict() for name, m in sorted(self._metrics.items())}

    def reset(self) -> None:
        self._metrics.clear()
