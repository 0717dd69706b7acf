# Copyright (c) 2023-2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from lionherd_core.errors import ConnectionError
from lionherd_core.libs.concurrency import Lock, current_time, sleep

from ...errors import TransientUpstreamError

__all__ = (
    "CircuitBreaker",
    "CircuitBreakerOpenError",
    "CircuitState",
    "FallbackBreaker",
    "RetryConfig",
    "retry_with_backoff",
)

T = TypeVar("T")
logger = logging.getLogger(__name__)


class CircuitBreakerOpenError(ConnectionError):
    """Exception raised when a circuit breaker is open.

    Inherits from ConnectionError as circuit breaker prevents connections
    to failing services, conceptually similar to connection unavailability.
    The protected operation is never invoked when this is raised.
    """

    default_message = "Circuit breaker is open"
    default_retryable = True

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        """Initialize with message and optional retry_after.

        Args:
            message: Error message (uses default_message if None)
            retry_after: Seconds until a trial call will be admitted
            details: Additional context dict
        """
        if retry_after is not None:
            details = details or {}
            details["retry_after"] = retry_after

        super().__init__(message=message, details=details, retryable=True)
        self.retry_after = retry_after


class CircuitState(Enum):
    """Circuit breaker states.

    Values:
        CLOSED: Normal operation, requests pass through
        OPEN: Service failing, rejecting requests immediately
        HALF_OPEN: Testing recovery, exactly one trial request allowed
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Fail-fast circuit breaker for a single upstream dependency.
    States: CLOSED → OPEN → HALF_OPEN → CLOSED (or back to OPEN)."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_time: float = 30.0,
        excluded_exceptions: set[type[Exception]] | None = None,
        name: str = "default",
    ):
        """Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failures that open the circuit
            recovery_time: Seconds to stay OPEN before admitting a trial call
            excluded_exceptions: Exception types that propagate without counting
            name: Label used in logs and errors
        """
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        if recovery_time < 0:
            raise ValueError("recovery_time must be >= 0")

        self.failure_threshold = failure_threshold
        self.recovery_time = recovery_time
        self.excluded_exceptions = excluded_exceptions or set()
        self.name = name

        # State variables
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.next_attempt_at: float | None = None
        self._trial_in_flight = False
        self._lock = Lock()

        # Metrics
        self._metrics = {
            "success_count": 0,
            "failure_count": 0,
            "rejected_count": 0,
            "state_changes": [],
        }

        logger.debug(
            f"Initialized CircuitBreaker '{self.name}' with failure_threshold={failure_threshold}, "
            f"recovery_time={recovery_time}"
        )

    @property
    def metrics(self) -> dict[str, Any]:
        """Get circuit breaker metrics."""
        return self._metrics.copy()

    def to_dict(self) -> dict[str, Any]:
        """Serialize circuit breaker configuration."""
        return {
            "failure_threshold": self.failure_threshold,
            "recovery_time": self.recovery_time,
            "name": self.name,
        }

    def status(self) -> dict[str, Any]:
        """Snapshot of the current state for health reporting."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "failure_threshold": self.failure_threshold,
            "next_attempt_at": (self.next_attempt_at if self.state == CircuitState.OPEN else None),
        }

    def reset(self) -> None:
        """Return to CLOSED with zeroed counters."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.next_attempt_at = None
        self._trial_in_flight = False
        logger.info(f"Circuit '{self.name}' reset to {self.state.value}")

    async def _change_state(self, new_state: CircuitState) -> None:
        """Change state with logging."""
        old_state = self.state
        if new_state != old_state:
            self.state = new_state
            self._metrics["state_changes"].append(
                {
                    "time": current_time(),
                    "from": old_state.value,
                    "to": new_state.value,
                }
            )

            logger.info(
                f"Circuit '{self.name}' state changed from {old_state.value} to {new_state.value}"
            )

            if new_state == CircuitState.CLOSED:
                self.failure_count = 0
                self.next_attempt_at = None

    async def _open(self, now: float) -> None:
        self.next_attempt_at = now + self.recovery_time
        await self._change_state(CircuitState.OPEN)

    async def _check_state(self) -> tuple[bool, float, bool]:
        """Check if request can proceed.

        Returns:
            Tuple of (can_proceed, retry_after_seconds, is_trial)
        """
        async with self._lock:
            now = current_time()

            if self.state == CircuitState.OPEN:
                if now < self.next_attempt_at:
                    recovery_remaining = self.next_attempt_at - now
                    self._metrics["rejected_count"] += 1

                    logger.warning(
                        f"Circuit '{self.name}' is OPEN, rejecting request. "
                        f"Try again in {recovery_remaining:.2f}s"
                    )

                    return False, recovery_remaining, False

                await self._change_state(CircuitState.HALF_OPEN)

            if self.state == CircuitState.HALF_OPEN:
                # A single trial call decides between CLOSED and OPEN
                if self._trial_in_flight:
                    self._metrics["rejected_count"] += 1

                    logger.warning(
                        f"Circuit '{self.name}' is HALF_OPEN with a trial in flight. "
                        "Try again later."
                    )

                    return False, self.recovery_time, False

                self._trial_in_flight = True
                return True, 0.0, True

            return True, 0.0, False

    async def _record_success(self, is_trial: bool = False) -> None:
        async with self._lock:
            self.failure_count = 0
            self.success_count += 1
            self._metrics["success_count"] += 1

            if is_trial and self.state == CircuitState.HALF_OPEN:
                await self._change_state(CircuitState.CLOSED)

    async def _record_failure(self, exc: Exception, is_trial: bool = False) -> None:
        async with self._lock:
            self.failure_count += 1
            self._metrics["failure_count"] += 1

            logger.warning(
                f"Circuit '{self.name}' failure: {exc}. "
                f"Count: {self.failure_count}/{self.failure_threshold}"
            )

            # Only the trial settles HALF_OPEN; calls admitted while CLOSED do not
            if is_trial and self.state == CircuitState.HALF_OPEN:
                await self._open(current_time())
            elif (
                self.state == CircuitState.CLOSED
                and self.failure_count >= self.failure_threshold
            ):
                await self._open(current_time())

    async def execute(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Execute with circuit breaker protection.

        Failures of ``func`` are recorded and re-raised unchanged; the breaker
        never retries on its own.
        """
        can_proceed, retry_after, is_trial = await self._check_state()
        if not can_proceed:
            raise CircuitBreakerOpenError(
                f"Circuit breaker '{self.name}' is open. Retry after {retry_after:.2f} seconds",
                retry_after=retry_after,
            )

        try:
            logger.debug(
                f"Executing {getattr(func, '__name__', func)!s} with circuit '{self.name}' "
                f"state: {self.state.value}"
            )
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                if not any(isinstance(e, exc_type) for exc_type in self.excluded_exceptions):
                    await self._record_failure(e, is_trial)
                raise

            await self._record_success(is_trial)
            return result

        finally:
            if is_trial:
                self._trial_in_flight = False


class FallbackBreaker:
    """Serve a fallback value while the wrapped breaker is rejecting calls.

    Only ``CircuitBreakerOpenError`` is redirected; every other failure
    propagates. The wrapped breaker is not modified.

    Usage:
        breaker = CircuitBreaker(failure_threshold=2, recovery_time=8.0)
        guarded = FallbackBreaker(breaker, fallback=load_cached_quote)
        await guarded.execute(fetch_quote, "IBM")
    """

    def __init__(self, breaker: CircuitBreaker, fallback: Callable[[], Awaitable[Any]]):
        self.breaker = breaker
        self.fallback = fallback

    @property
    def name(self) -> str:
        return self.breaker.name

    @property
    def state(self) -> CircuitState:
        return self.breaker.state

    def status(self) -> dict[str, Any]:
        return self.breaker.status()

    def to_dict(self) -> dict[str, Any]:
        return self.breaker.to_dict()

    async def execute_tracked(
        self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> tuple[Any, bool]:
        """Like :meth:`execute`, also reporting whether the fallback supplied the value.

        Returns:
            Tuple of (result, from_fallback)
        """
        try:
            return await self.breaker.execute(func, *args, **kwargs), False
        except CircuitBreakerOpenError as e:
            logger.info(f"Circuit '{self.name}' open, using fallback (retry after {e.retry_after})")
            return await self.fallback(), True

    async def execute(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        result, _ = await self.execute_tracked(func, *args, **kwargs)
        return result


def _default_retry_on() -> tuple[type[Exception], ...]:
    return (TransientUpstreamError, TimeoutError, OSError)


@dataclass
class RetryConfig:
    """Retry configuration with exponential backoff + jitter.

    Attributes:
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds before first retry
        max_delay: Maximum delay in seconds between retries
        exponential_base: Base for exponential backoff calculation
        jitter: Whether to add random jitter to prevent thundering herd
        retry_on: Exception types that trigger a retry. Defaults to transient
            upstream failures only. Rate limits belong to the RateLimiter and
            permanent errors never succeed on retry, so neither is included.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retry_on: tuple[type[Exception], ...] = field(default_factory=_default_retry_on)

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay with exponential backoff + optional jitter.

        Args:
            attempt: Current retry attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = min(self.initial_delay * (self.exponential_base**attempt), self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random() * 0.5)
        return delay

    def to_dict(self) -> dict[str, Any]:
        """Serialize config to dict."""
        return {
            "max_retries": self.max_retries,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "exponential_base": self.exponential_base,
            "jitter": self.jitter,
            "retry_on": self.retry_on,
        }

    def as_kwargs(self) -> dict[str, Any]:
        """Convert config to kwargs for retry_with_backoff."""
        return self.to_dict()


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retry_on: tuple[type[Exception], ...] = (TransientUpstreamError, TimeoutError, OSError),
    **kwargs,
) -> T:
    """Retry async function with exponential backoff.

    Args:
        func: Async function to retry
        *args: Positional arguments for func
        max_retries: Maximum number of retry attempts (default: 3)
        initial_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay cap in seconds (default: 60.0)
        exponential_base: Base for exponential calculation (default: 2.0)
        jitter: Add random jitter to prevent thundering herd (default: True)
        retry_on: Exception types that should trigger retries
        **kwargs: Keyword arguments for func

    Returns:
        Result from successful func execution

    Raises:
        Last exception if all retries exhausted, or any exception not in retry_on
    """
    name = getattr(func, "__name__", repr(func))

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except retry_on as e:
            if attempt >= max_retries:
                logger.error(f"All {max_retries} retry attempts exhausted for {name}: {e}")
                raise

            delay = min(initial_delay * (exponential_base**attempt), max_delay)
            if jitter:
                delay = delay * (0.5 + random.random() * 0.5)

            logger.debug(f"Retry attempt {attempt + 1}/{max_retries} for {name} after {delay:.2f}s: {e}")

            await sleep(delay)

    raise RuntimeError("Unexpected retry loop exit")
