# Copyright (c) 2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

"""Failures surfaced by protected upstream calls."""

from __future__ import annotations

from typing import Any

__all__ = (
    "AuthenticationExpiredError",
    "PermanentUpstreamError",
    "RateLimitedError",
    "RateLimiterClosedError",
    "TransientUpstreamError",
    "UpstreamError",
)


class UpstreamError(Exception):
    """Base class for every failure reported by an upstream service."""

    default_message = "Upstream call failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        service: str = "unknown",
        status_code: int | None = None,
        details: Any = None,
    ):
        self.message = message or self.default_message
        self.service = service
        self.status_code = status_code
        self.details = details
        status = f" (status {status_code})" if status_code is not None else ""
        super().__init__(f"[{service}] {self.message}{status}")


class TransientUpstreamError(UpstreamError):
    """Network failure, timeout or 5xx; safe to retry."""

    default_message = "Upstream temporarily unavailable"


class RateLimitedError(UpstreamError):
    """Upstream asked the caller to slow down (HTTP 429 or a throttling notice)."""

    default_message = "Rate limit exceeded"

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after: float | None = None,
        service: str = "unknown",
        status_code: int | None = 429,
        details: Any = None,
    ):
        super().__init__(message, service=service, status_code=status_code, details=details)
        self.retry_after = retry_after


class AuthenticationExpiredError(UpstreamError):
    """Credentials were rejected (expired or revoked token)."""

    default_message = "Authentication expired"


class PermanentUpstreamError(UpstreamError):
    """Client-side error that will not succeed on retry."""

    default_message = "Upstream rejected the request"


class RateLimiterClosedError(RuntimeError):
    """Raised when work is submitted to, or abandoned by, a stopped rate limiter."""
