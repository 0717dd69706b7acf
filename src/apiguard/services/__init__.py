# Copyright (c) 2023-2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

"""Services layer - backends, resilience patterns, clients."""

from .client import ResilientClient
from .types import (
    Endpoint,
    EndpointConfig,
    NormalizedResponse,
    ServiceBackend,
    ServiceConfig,
)
from .utilities import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitState,
    FallbackBreaker,
    RateLimitConfig,
    RateLimiter,
    RetryConfig,
    TTLCache,
    retry_with_backoff,
)

__all__ = (
    # Types
    "Endpoint",
    "EndpointConfig",
    "NormalizedResponse",
    "ServiceBackend",
    "ServiceConfig",
    # Client
    "ResilientClient",
    # Utilities
    "CircuitBreaker",
    "CircuitBreakerOpenError",
    "CircuitState",
    "FallbackBreaker",
    "RateLimitConfig",
    "RateLimiter",
    "RetryConfig",
    "TTLCache",
    "retry_with_backoff",
)
