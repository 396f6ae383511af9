"""
Key-value storage backends for the persistent cache tier.

Storage holds string values under string keys and enforces a byte quota,
raising QuotaExceededError when a write would not fit.
"""

import json
import os
from abc import ABC, abstractmethod
from pathlib import Path

from loguru import logger

from callgate.services.errors import QuotaExceededError


class KeyValueStorage(ABC):
    """
    Abstract key-value storage.

    Subclass this to plug in a file, an embedded KV store, or a remote cache.
    """

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the stored value, or None when absent."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store *value*. Raises QuotaExceededError when out of space."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove *key* if present."""

    @abstractmethod
    def keys(self) -> list[str]:
        """Return all stored keys."""


def _size(key: str, value: str) -> int:
    return len(key.encode()) + len(value.encode())


class MemoryStorage(KeyValueStorage):
    """Quota-bounded in-process storage."""

    def __init__(self, max_bytes: int = 5 * 1024 * 1024):
        self._data: dict[str, str] = {}
        self._max_bytes = max_bytes
        self._used = 0

    @property
    def used_bytes(self) -> int:
        return self._used

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        old = self._data.get(key)
        freed = _size(key, old) if old is not None else 0
        needed = _size(key, value)
        available = self._max_bytes - (self._used - freed)
        if needed > available:
            raise QuotaExceededError(key, needed, available)

        self._data[key] = value
        self._used += needed - freed

    def delete(self, key: str) -> None:
        old = self._data.pop(key, None)
        if old is not None:
            self._used -= _size(key, old)

    def keys(self) -> list[str]:
        return list(self._data.keys())


class FileStorage(MemoryStorage):
    """
    Quota-bounded storage persisted to a single JSON file.

    Every mutation rewrites the file atomically (write to a sibling temp
    file, then os.replace).
    """

    def __init__(self, path: str | Path, max_bytes: int = 5 * 1024 * 1024):
        super().__init__(max_bytes)
        self._path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable storage file {self._path}: {e}")
            return
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed storage file {self._path}")
            return

        for key, value in data.items():
            if isinstance(key, str) and isinstance(value, str):
                self._data[key] = value
                self._used += _size(key, value)

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, self._path)

    def set(self, key: str, value: str) -> None:
        previous = self._data.get(key)
        super().set(key, value)
        try:
            self._flush()
        except OSError:
            self._restore(key, previous)
            raise

    def delete(self, key: str) -> None:
        previous = self._data.get(key)
        if previous is None:
            return
        super().delete(key)
        try:
            self._flush()
        except OSError:
            self._restore(key, previous)
            raise

    def _restore(self, key: str, previous: str | None) -> None:
        """Undo an in-memory change whose flush failed."""
        MemoryStorage.delete(self, key)
        if previous is not None:
            self._data[key] = previous
            self._used += _size(key, previous)
