# Copyright (c) 2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import anyio
from lionherd_core.libs.concurrency import sleep

from ...errors import RateLimitedError, RateLimiterClosedError

__all__ = ("RateLimitConfig", "RateLimiter")

T = TypeVar("T")
logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RateLimitConfig:
    """Pacing configuration for a RateLimiter.

    Dispatches are spaced ``window / max_requests`` seconds apart. After the
    upstream signals a rate limit, the next dispatch waits
    ``rate_limit_cooldown`` instead.
    """

    max_requests: int = 5  # Requests per window
    window: float = 60.0  # Seconds
    rate_limit_cooldown: float = 60.0  # Seconds to back off after a rate-limit signal
    max_rate_limit_retries: int | None = None  # None = re-queue forever
    respect_retry_after: bool = False  # Prefer the upstream's retry_after when given

    def __post_init__(self):
        if self.max_requests <= 0:
            raise ValueError("max_requests must be > 0")
        if self.window <= 0:
            raise ValueError("window must be > 0")
        if self.rate_limit_cooldown < self.interval:
            raise ValueError("rate_limit_cooldown must be >= window / max_requests")
        if self.max_rate_limit_retries is not None and self.max_rate_limit_retries < 0:
            raise ValueError("max_rate_limit_retries must be >= 0")

    @property
    def interval(self) -> float:
        """Seconds between consecutive dispatches."""
        return self.window / self.max_requests


class _PendingCall:
    __slots__ = ("args", "attempts", "cancelled", "done", "error", "func", "kwargs", "result")

    def __init__(self, func: Callable[..., Awaitable[Any]], args: tuple, kwargs: dict):
        self.func = func
        self.args = args
        self.kwargs = kwargs
        self.done = anyio.Event()
        self.result: Any = None
        self.error: BaseException | None = None
        self.attempts = 0
        self.cancelled = False

    def resolve(self, result: Any) -> None:
        self.result = result
        self.done.set()

    def reject(self, error: BaseException) -> None:
        self.error = error
        self.done.set()


class RateLimiter:
    """FIFO request queue that paces calls to an upstream API.

    A single worker task dispatches queued calls one at a time, oldest first,
    sleeping ``config.interval`` between dispatches. A call that fails with a
    rate-limit error goes back to the head of the queue and is retried after
    the cool-down. Any other outcome is delivered to the caller of
    :meth:`enqueue`.

    Enqueue order is dispatch order only for calls that never hit the
    rate-limit path; completion order relative to a retried call is not
    guaranteed.

    Usage:
        async with RateLimiter(RateLimitConfig(max_requests=5, window=60)) as limiter:
            quote = await limiter.enqueue(fetch_quote, "IBM")
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        *,
        rate_limit_exceptions: tuple[type[Exception], ...] = (RateLimitedError,),
        name: str = "default",
    ):
        self.config = config or RateLimitConfig()
        self.rate_limit_exceptions = rate_limit_exceptions
        self.name = name

        self._queue: deque[_PendingCall] = deque()
        self._in_flight: _PendingCall | None = None
        self._processing = False
        self._wakeup: anyio.Event | None = None
        self._task_group: anyio.abc.TaskGroup | None = None
        self._closed = True

        self._metrics = {
            "dispatched_count": 0,
            "success_count": 0,
            "failure_count": 0,
            "rate_limited_count": 0,
            "cancelled_count": 0,
        }

    @property
    def processing(self) -> bool:
        """True while a call is in flight or the worker is pacing after one."""
        return self._processing

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def running(self) -> bool:
        return not self._closed

    @property
    def metrics(self) -> dict[str, int]:
        return self._metrics.copy()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "max_requests": self.config.max_requests,
            "window": self.config.window,
            "rate_limit_cooldown": self.config.rate_limit_cooldown,
            "max_rate_limit_retries": self.config.max_rate_limit_retries,
            "respect_retry_after": self.config.respect_retry_after,
        }

    async def __aenter__(self) -> RateLimiter:
        if self._task_group is not None:
            raise RuntimeError(f"RateLimiter '{self.name}' is already running")

        self._wakeup = anyio.Event()
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        self._closed = False
        self._task_group.start_soon(self._dispatch_loop, name=f"rate-limiter-{self.name}")
        logger.debug(
            f"RateLimiter '{self.name}' started: {self.config.max_requests} requests "
            f"per {self.config.window}s (interval {self.config.interval:.2f}s)"
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        self._closed = True
        task_group, self._task_group = self._task_group, None
        if task_group is None:
            return False

        # Let the caller's exception propagate unwrapped
        task_group.cancel_scope.cancel()
        try:
            await task_group.__aexit__(None, None, None)
        finally:
            self._abandon_pending()
            logger.debug(f"RateLimiter '{self.name}' stopped")
        return False

    def _abandon_pending(self) -> None:
        pending = list(self._queue)
        self._queue.clear()
        if self._in_flight is not None:
            pending.append(self._in_flight)
            self._in_flight = None
        self._processing = False

        for item in pending:
            if not item.done.is_set():
                item.reject(RateLimiterClosedError(f"RateLimiter '{self.name}' was stopped"))
        if pending:
            logger.warning(f"RateLimiter '{self.name}' stopped with {len(pending)} pending call(s)")

    async def enqueue(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Queue ``func(*args, **kwargs)`` and wait for its outcome.

        Returns:
            Whatever ``func`` returns once dispatched

        Raises:
            RateLimiterClosedError: The limiter is not running or stopped first
            Exception: Any failure of ``func`` other than a retried rate limit
        """
        if self._closed:
            raise RateLimiterClosedError(f"RateLimiter '{self.name}' is not running")

        item = _PendingCall(func, args, kwargs)
        self._queue.append(item)
        self._wakeup.set()
        logger.debug(f"RateLimiter '{self.name}' queued call, queue size {len(self._queue)}")

        try:
            await item.done.wait()
        except anyio.get_cancelled_exc_class():
            # Dropped by the worker if not dispatched yet
            item.cancelled = True
            raise

        if item.error is not None:
            raise item.error
        return item.result

    async def _dispatch_loop(self) -> None:
        while True:
            if not self._queue:
                self._wakeup = anyio.Event()
                await self._wakeup.wait()
                continue

            item = self._queue.popleft()
            if item.cancelled:
                self._metrics["cancelled_count"] += 1
                logger.debug(f"RateLimiter '{self.name}' dropped a cancelled call")
                continue

            self._processing = True
            self._in_flight = item
            try:
                delay = await self._dispatch(item)
                self._in_flight = None
                await sleep(delay)
            finally:
                self._processing = False

    async def _dispatch(self, item: _PendingCall) -> float:
        """Run one queued call and return the delay before the next dispatch."""
        item.attempts += 1
        self._metrics["dispatched_count"] += 1

        try:
            result = await item.func(*item.args, **item.kwargs)
        except self.rate_limit_exceptions as e:
            self._metrics["rate_limited_count"] += 1
            cooldown = self._cooldown_for(e)
            max_retries = self.config.max_rate_limit_retries

            if max_retries is not None and item.attempts > max_retries:
                logger.error(
                    f"RateLimiter '{self.name}' giving up after {item.attempts} "
                    f"rate-limited attempt(s): {e}"
                )
                self._metrics["failure_count"] += 1
                item.reject(e)
                return cooldown

            if item.cancelled:
                self._metrics["cancelled_count"] += 1
            else:
                self._queue.appendleft(item)
                logger.warning(
                    f"RateLimiter '{self.name}' rate limited (attempt {item.attempts}), "
                    f"retrying in {cooldown:.2f}s"
                )
            return cooldown
        except Exception as e:
            self._metrics["failure_count"] += 1
            item.reject(e)
            return self.config.interval
        else:
            self._metrics["success_count"] += 1
            item.resolve(result)
            return self.config.interval

    def _cooldown_for(self, exc: Exception) -> float:
        retry_after = getattr(exc, "retry_after", None)
        if self.config.respect_retry_after and retry_after is not None:
            return max(float(retry_after), self.config.interval)
        return self.config.rate_limit_cooldown
