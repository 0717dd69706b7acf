# Copyright (c) 2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

"""Tests for TTLCache expiry and invalidation."""

from unittest.mock import patch

import pytest

from apiguard.services.utilities.cache import TTLCache


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def monotonic(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    fake = FakeClock()
    with patch("apiguard.services.utilities.cache.time", fake):
        yield fake


class TestTTLCache:
    def test_get_missing_returns_default(self, clock):
        cache = TTLCache(ttl=10.0)

        assert cache.get("IBM") is None
        assert cache.get("IBM", "n/a") == "n/a"

    def test_hit_within_ttl(self, clock):
        cache = TTLCache(ttl=300.0)
        cache.set("IBM", {"price": 182.5})

        clock.advance(299.0)
        assert cache.get("IBM") == {"price": 182.5}

    def test_entry_alive_at_exact_expiry(self, clock):
        """Expiry is strict: an entry read exactly at its deadline is still fresh."""
        cache = TTLCache(ttl=5.0)
        cache.set("k", "v")

        clock.advance(5.0)
        assert cache.get("k") == "v"

    def test_expired_entry_is_evicted_on_read(self, clock):
        cache = TTLCache(ttl=5.0)
        cache.set("k", "v")

        clock.advance(5.01)
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_set_refreshes_expiry(self, clock):
        cache = TTLCache(ttl=10.0)
        cache.set("k", "old")
        clock.advance(8.0)
        cache.set("k", "new")
        clock.advance(8.0)

        assert cache.get("k") == "new"

    def test_invalidate_and_clear(self, clock):
        cache = TTLCache(ttl=10.0)
        cache.set("a", 1)
        cache.set("b", 2)

        cache.invalidate("a")
        cache.invalidate("missing")
        assert "a" not in cache
        assert "b" in cache

        cache.clear()
        assert len(cache) == 0

    def test_contains_respects_expiry(self, clock):
        cache = TTLCache(ttl=1.0)
        cache.set("k", None)

        # Stored None still counts as present
        assert "k" in cache
        clock.advance(2.0)
        assert "k" not in cache

    def test_invalid_ttl(self):
        with pytest.raises(ValueError, match="ttl must be > 0"):
            TTLCache(ttl=0)

        with pytest.raises(ValueError, match="ttl must be > 0"):
            TTLCache(ttl=-1.0)

    def test_to_dict(self):
        cache = TTLCache(ttl=42.0, name="quotes")

        assert cache.to_dict() == {"ttl": 42.0, "name": "quotes"}
