# Copyright (c) 2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import time
from typing import Any, Generic, TypeVar

__all__ = ("TTLCache",)

K = TypeVar("K")
V = TypeVar("V")
logger = logging.getLogger(__name__)


class TTLCache(Generic[K, V]):
    """In-process memoization with a fixed time-to-live per entry.

    Expired entries are evicted lazily when read. There is no capacity bound
    and no background sweep.
    """

    def __init__(self, ttl: float = 300.0, name: str = "default"):
        if ttl <= 0:
            raise ValueError("ttl must be > 0")
        self.ttl = ttl
        self.name = name
        self._entries: dict[K, tuple[V, float]] = {}

    def get(self, key: K, default: Any = None) -> V | Any:
        """Return the cached value, or ``default`` if missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            logger.debug(f"Cache '{self.name}' MISS for {key!r}")
            return default

        value, expires_at = entry
        if time.monotonic() > expires_at:
            del self._entries[key]
            logger.debug(f"Cache '{self.name}' EXPIRED for {key!r}")
            return default

        logger.debug(f"Cache '{self.name}' HIT for {key!r}")
        return value

    def set(self, key: K, value: V) -> None:
        self._entries[key] = (value, time.monotonic() + self.ttl)
        logger.debug(f"Cache '{self.name}' SET for {key!r} (ttl={self.ttl}s)")

    def invalidate(self, key: K) -> None:
        if self._entries.pop(key, None) is not None:
            logger.debug(f"Cache '{self.name}' INVALIDATE for {key!r}")

    def clear(self) -> None:
        self._entries.clear()
        logger.debug(f"Cache '{self.name}' CLEAR")

    def __contains__(self, key: object) -> bool:
        _missing = object()
        return self.get(key, _missing) is not _missing  # type: ignore[arg-type]

    def __len__(self) -> int:
        return len(self._entries)

    def to_dict(self) -> dict[str, Any]:
        return {"ttl": self.ttl, "name": self.name}
