# Copyright (c) 2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

"""Resilient async HTTP client toolkit: caching, rate limiting, circuit breaking."""

from .errors import (
    AuthenticationExpiredError,
    PermanentUpstreamError,
    RateLimitedError,
    RateLimiterClosedError,
    TransientUpstreamError,
    UpstreamError,
)
from .services import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitState,
    Endpoint,
    EndpointConfig,
    FallbackBreaker,
    NormalizedResponse,
    RateLimitConfig,
    RateLimiter,
    ResilientClient,
    RetryConfig,
    TTLCache,
    retry_with_backoff,
)

__version__ = "0.1.0"

__all__ = (
    "AuthenticationExpiredError",
    "CircuitBreaker",
    "CircuitBreakerOpenError",
    "CircuitState",
    "Endpoint",
    "EndpointConfig",
    "FallbackBreaker",
    "NormalizedResponse",
    "PermanentUpstreamError",
    "RateLimitConfig",
    "RateLimitedError",
    "RateLimiter",
    "RateLimiterClosedError",
    "ResilientClient",
    "RetryConfig",
    "TTLCache",
    "TransientUpstreamError",
    "UpstreamError",
    "retry_with_backoff",
)
