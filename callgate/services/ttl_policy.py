"""
TTL policy - per-endpoint freshness durations.

Single source of truth for how long each upstream endpoint's results stay
valid. Organised by how fast the underlying data changes.
"""

from collections.abc import Mapping
from contextlib import contextmanager
from datetime import timedelta
from typing import Iterator


DEFAULT_TTL = timedelta(hours=6)

# ── Per-endpoint TTL ──────────────────────────────────────────
DEFAULT_TTL_TABLE: dict[str, timedelta] = {
    # Slow-changing - stable for a day
    "market-trends": timedelta(hours=24),
    "google-trends": timedelta(hours=24),
    "market-size": timedelta(hours=24),
    "competitor-analysis": timedelta(hours=24),
    "growth-projections": timedelta(hours=24),
    # Sentiment - twice a day
    "reddit-sentiment": timedelta(hours=12),
    "twitter-search": timedelta(hours=12),
    "social-sentiment": timedelta(hours=12),
    "youtube-search": timedelta(hours=12),
    # News and search move faster
    "gdelt-news": timedelta(hours=2),
    "web-search-optimized": timedelta(hours=2),
    # Never cache
    "generate-session-title": timedelta(0),
}


class TTLPolicy:
    """
    Read-only endpoint -> TTL lookup with a default fallback.

    Usage:
        policy = TTLPolicy()
        policy.resolve("reddit-sentiment")  # timedelta(hours=12)

        with policy.override({"reddit-sentiment": timedelta(seconds=1)}):
            ...
    """

    def __init__(
        self,
        table: Mapping[str, timedelta] | None = None,
        default: timedelta = DEFAULT_TTL,
    ):
        self._validate(table or {}, default)
        self._table: dict[str, timedelta] = dict(
            DEFAULT_TTL_TABLE if table is None else table
        )
        self._default = default

    @staticmethod
    def _validate(table: Mapping[str, timedelta], default: timedelta) -> None:
        for name, ttl in [*table.items(), ("<default>", default)]:
            if ttl < timedelta(0):
                raise ValueError(f"TTL for '{name}' must be non-negative, got {ttl}")

    @property
    def default(self) -> timedelta:
        return self._default

    def resolve(self, endpoint: str) -> timedelta:
        """Return the TTL for *endpoint*, or the default when not listed."""
        return self._table.get(endpoint, self._default)

    def with_overrides(
        self,
        overrides: Mapping[str, timedelta],
        default: timedelta | None = None,
    ) -> "TTLPolicy":
        """Return a new policy layered over this one."""
        return TTLPolicy(
            {**self._table, **overrides},
            default if default is not None else self._default,
        )

    @contextmanager
    def override(
        self,
        overrides: Mapping[str, timedelta],
        default: timedelta | None = None,
    ) -> Iterator["TTLPolicy"]:
        """Temporarily apply *overrides*; the original table is restored on exit."""
        self._validate(overrides, default if default is not None else self._default)
        saved_table, saved_default = self._table, self._default
        self._table = {**saved_table, **overrides}
        if default is not None:
            self._default = default
        try:
            yield self
        finally:
            self._table, self._default = saved_table, saved_default

    def as_dict(self) -> dict[str, float]:
        """TTLs in seconds, for status reporting."""
        table = {name: ttl.total_seconds() for name, ttl in self._table.items()}
        table["<default>"] = self._default.total_seconds()
        return table
