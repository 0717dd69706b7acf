# Copyright (c) 2023-2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

"""Utilities for service resilience, rate limiting and caching."""

from .cache import TTLCache
from .header_factory import AUTH_TYPES, HeaderFactory
from .rate_limiter import RateLimitConfig, RateLimiter
from .resilience import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitState,
    FallbackBreaker,
    RetryConfig,
    retry_with_backoff,
)

__all__ = (
    "AUTH_TYPES",
    "CircuitBreaker",
    "CircuitBreakerOpenError",
    "CircuitState",
    "FallbackBreaker",
    "HeaderFactory",
    "RateLimitConfig",
    "RateLimiter",
    "RetryConfig",
    "TTLCache",
    "retry_with_backoff",
)
