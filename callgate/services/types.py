"""
Shared cache types.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any


@dataclass(frozen=True)
class CacheEntry:
    """A cached upstream result. Entries are replaced, never edited."""

    fingerprint: str
    endpoint: str
    data: Any
    created_at: datetime
    expires_at: datetime
    tags: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be later than created_at")

    @property
    def ttl(self) -> timedelta:
        return self.expires_at - self.created_at

    def is_valid(self, now: datetime) -> bool:
        """An entry is valid iff now < expires_at."""
        return now < self.expires_at

    def age(self, now: datetime) -> timedelta:
        return now - self.created_at


@dataclass
class CacheResult:
    """Result from cache lookup."""

    data: Any
    from_cache: str  # 'structured' | 'persistent'
    created_at: datetime
    expires_at: datetime
