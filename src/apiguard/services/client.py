# Copyright (c) 2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel

from .types.backend import NormalizedResponse
from .types.endpoint import Endpoint
from .utilities.cache import TTLCache
from .utilities.rate_limiter import RateLimiter

__all__ = ("ResilientClient",)

logger = logging.getLogger(__name__)


class ResilientClient:
    """Compose cache, rate limiter and endpoint into one call path.

    caller -> cache (hit returns immediately) -> rate limiter queue
           -> endpoint (circuit breaker -> retry -> HTTP)

    The client owns the rate limiter's lifetime: entering the client starts
    the limiter's worker and leaving it stops the worker.

    Usage:
        client = ResilientClient(endpoint, RateLimiter(config), cache=TTLCache(300))
        async with client:
            response = await client.call({"symbol": "IBM"}, cache_key="IBM")
    """

    def __init__(
        self,
        endpoint: Endpoint,
        rate_limiter: RateLimiter,
        cache: TTLCache[str, NormalizedResponse] | None = None,
    ):
        self.endpoint = endpoint
        self.rate_limiter = rate_limiter
        self.cache = cache

    async def __aenter__(self):
        await self.rate_limiter.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.rate_limiter.__aexit__(exc_type, exc_val, exc_tb)
        return False

    async def call(
        self,
        request: dict | BaseModel,
        *,
        cache_key: str | None = None,
        use_cache: bool = True,
        **kwargs: Any,
    ) -> NormalizedResponse:
        """Serve ``request`` from cache or through the rate-limited endpoint.

        Only responses with ``status == "success"`` are cached; fallback and
        error responses always go back to the upstream next time.
        """
        caching = use_cache and cache_key is not None and self.cache is not None

        if caching:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.debug(f"Serving {cache_key!r} from cache")
                return cached

        response = await self.rate_limiter.enqueue(self.endpoint.call, request, **kwargs)

        if cache_key is not None and self.cache is not None and response.status == "success":
            self.cache.set(cache_key, response)
        return response

    def invalidate(self, cache_key: str) -> None:
        if self.cache is not None:
            self.cache.invalidate(cache_key)

    def status(self) -> dict[str, Any]:
        breaker = self.endpoint.circuit_breaker
        return {
            "endpoint": self.endpoint.config.name,
            "circuit_breaker": breaker.status() if breaker else None,
            "rate_limiter": {
                **self.rate_limiter.metrics,
                "queue_size": self.rate_limiter.queue_size,
                "processing": self.rate_limiter.processing,
            },
            "cache_entries": len(self.cache) if self.cache is not None else 0,
        }
