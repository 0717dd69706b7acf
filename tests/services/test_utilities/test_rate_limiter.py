# Copyright (c) 2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

"""Tests for the paced FIFO RateLimiter."""

import time

import anyio
import pytest

from apiguard.errors import (
    PermanentUpstreamError,
    RateLimitedError,
    RateLimiterClosedError,
    TransientUpstreamError,
)
from apiguard.services.utilities import RateLimitConfig, RateLimiter

# 100 requests per second: dispatches 10ms apart, 50ms cool-down
FAST = {"max_requests": 10, "window": 0.1, "rate_limit_cooldown": 0.05}
TOLERANCE = 0.005


async def _wait_until(predicate, timeout: float = 1.0):
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.001)


class TestRateLimitConfig:
    def test_defaults(self):
        config = RateLimitConfig()

        assert config.max_requests == 5
        assert config.window == 60.0
        assert config.interval == 12.0
        assert config.rate_limit_cooldown == 60.0
        assert config.max_rate_limit_retries is None
        assert config.respect_retry_after is False

    def test_validation_errors(self):
        with pytest.raises(ValueError, match="max_requests must be > 0"):
            RateLimitConfig(max_requests=0)

        with pytest.raises(ValueError, match="window must be > 0"):
            RateLimitConfig(window=0)

        with pytest.raises(ValueError, match="rate_limit_cooldown must be >="):
            RateLimitConfig(max_requests=1, window=10.0, rate_limit_cooldown=5.0)

        with pytest.raises(ValueError, match="max_rate_limit_retries must be >= 0"):
            RateLimitConfig(max_rate_limit_retries=-1)


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_enqueue_returns_result(self):
        async def double(x, *, factor=2):
            return x * factor

        async with RateLimiter(RateLimitConfig(**FAST)) as limiter:
            assert await limiter.enqueue(double, 21) == 42
            assert await limiter.enqueue(double, 3, factor=3) == 9

        assert limiter.metrics["success_count"] == 2

    @pytest.mark.asyncio
    async def test_dispatches_in_fifo_order(self):
        """A, B, C enqueued back to back run A, then B, then C."""
        started = []

        async def call(label):
            started.append(label)
            return label

        results = {}

        async def submit(limiter, label):
            results[label] = await limiter.enqueue(call, label)

        async with RateLimiter(RateLimitConfig(**FAST)) as limiter:
            async with anyio.create_task_group() as tg:
                for label in ("A", "B", "C"):
                    tg.start_soon(submit, limiter, label)

        assert started == ["A", "B", "C"]
        assert results == {"A": "A", "B": "B", "C": "C"}

    @pytest.mark.asyncio
    async def test_calls_never_overlap_and_are_paced(self):
        spans = []

        async def slow_call():
            start = time.monotonic()
            await anyio.sleep(0.02)
            spans.append((start, time.monotonic()))

        config = RateLimitConfig(**FAST)
        async with RateLimiter(config) as limiter:
            async with anyio.create_task_group() as tg:
                for _ in range(4):
                    tg.start_soon(limiter.enqueue, slow_call)

        assert len(spans) == 4
        for (_, prev_end), (next_start, _) in zip(spans, spans[1:], strict=False):
            assert next_start >= prev_end + config.interval - TOLERANCE

    @pytest.mark.asyncio
    async def test_rate_limited_call_retried_at_head_of_queue(self):
        """A throttled call is retried before anything queued behind it."""
        invocations = []
        stamps = {}

        async def throttled_once(label):
            invocations.append(label)
            stamps.setdefault(label, []).append(time.monotonic())
            if label == "A" and invocations.count("A") == 1:
                raise RateLimitedError("Note: 5 calls per minute", service="quotes")
            return label

        results = []

        async def submit(limiter, label):
            results.append(await limiter.enqueue(throttled_once, label))

        config = RateLimitConfig(**FAST)
        async with RateLimiter(config) as limiter:
            async with anyio.create_task_group() as tg:
                tg.start_soon(submit, limiter, "A")
                tg.start_soon(submit, limiter, "B")

        assert invocations == ["A", "A", "B"]
        assert sorted(results) == ["A", "B"]
        first, second = stamps["A"]
        assert second - first >= config.rate_limit_cooldown - TOLERANCE
        assert limiter.metrics["rate_limited_count"] == 1
        assert limiter.metrics["success_count"] == 2

    @pytest.mark.asyncio
    async def test_rate_limit_retries_unbounded_by_default(self):
        attempts = 0

        async def throttled_three_times():
            nonlocal attempts
            attempts += 1
            if attempts <= 3:
                raise RateLimitedError()
            return "finally"

        config = RateLimitConfig(max_requests=10, window=0.1, rate_limit_cooldown=0.01)
        async with RateLimiter(config) as limiter:
            assert await limiter.enqueue(throttled_three_times) == "finally"

        assert attempts == 4

    @pytest.mark.asyncio
    async def test_rate_limit_retry_cap(self):
        attempts = 0

        async def always_throttled():
            nonlocal attempts
            attempts += 1
            raise RateLimitedError(service="quotes")

        config = RateLimitConfig(
            max_requests=10, window=0.1, rate_limit_cooldown=0.01, max_rate_limit_retries=2
        )
        async with RateLimiter(config) as limiter:
            with pytest.raises(RateLimitedError):
                await limiter.enqueue(always_throttled)

        assert attempts == 3
        assert limiter.metrics["failure_count"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [TransientUpstreamError("down"), PermanentUpstreamError("bad"), KeyError("bug")],
    )
    async def test_other_failures_delivered_to_caller(self, error):
        calls = 0

        async def fails():
            nonlocal calls
            calls += 1
            raise error

        async def ok():
            return "next"

        async with RateLimiter(RateLimitConfig(**FAST)) as limiter:
            with pytest.raises(type(error)):
                await limiter.enqueue(fails)
            # The worker keeps serving after a failure
            assert await limiter.enqueue(ok) == "next"

        assert calls == 1

    @pytest.mark.asyncio
    async def test_custom_rate_limit_exceptions(self):
        class QuotaExceeded(Exception):
            pass

        attempts = 0

        async def quota_once():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise QuotaExceeded()
            return "ok"

        config = RateLimitConfig(max_requests=10, window=0.1, rate_limit_cooldown=0.01)
        async with RateLimiter(config, rate_limit_exceptions=(QuotaExceeded,)) as limiter:
            assert await limiter.enqueue(quota_once) == "ok"

        assert attempts == 2

    @pytest.mark.asyncio
    async def test_cancelled_waiter_is_never_dispatched(self):
        gate = anyio.Event()
        dispatched = []

        async def blocker():
            dispatched.append("blocker")
            await gate.wait()
            return "blocker"

        async def abandoned():
            dispatched.append("abandoned")

        async def follower():
            dispatched.append("follower")
            return "follower"

        async with RateLimiter(RateLimitConfig(**FAST)) as limiter:
            async with anyio.create_task_group() as tg:
                tg.start_soon(limiter.enqueue, blocker)
                await _wait_until(lambda: limiter.processing)

                with anyio.move_on_after(0.02):
                    await limiter.enqueue(abandoned)
                gate.set()

                assert await limiter.enqueue(follower) == "follower"

        assert dispatched == ["blocker", "follower"]
        assert limiter.metrics["cancelled_count"] == 1

    @pytest.mark.asyncio
    async def test_processing_and_queue_size(self):
        gate = anyio.Event()

        async def blocker():
            await gate.wait()

        limiter = RateLimiter(RateLimitConfig(**FAST))
        assert limiter.processing is False
        assert limiter.running is False

        async with limiter:
            assert limiter.running is True
            async with anyio.create_task_group() as tg:
                tg.start_soon(limiter.enqueue, blocker)
                await _wait_until(lambda: limiter.processing)
                tg.start_soon(limiter.enqueue, blocker)
                await _wait_until(lambda: limiter.queue_size == 1)
                gate.set()

            await _wait_until(lambda: not limiter.processing)

        assert limiter.queue_size == 0
        assert limiter.running is False

    @pytest.mark.asyncio
    async def test_enqueue_when_not_running(self):
        async def noop():
            return None

        limiter = RateLimiter(RateLimitConfig(**FAST), name="idle")

        with pytest.raises(RateLimiterClosedError, match="not running"):
            await limiter.enqueue(noop)

        async with limiter:
            pass

        with pytest.raises(RateLimiterClosedError):
            await limiter.enqueue(noop)

    @pytest.mark.asyncio
    async def test_stop_rejects_pending_calls(self):
        started = anyio.Event()
        outcomes = []

        async def hangs():
            started.set()
            await anyio.sleep_forever()

        async def submit(limiter):
            try:
                await limiter.enqueue(hangs)
            except RateLimiterClosedError as e:
                outcomes.append(e)

        limiter = RateLimiter(RateLimitConfig(**FAST), name="shutdown")
        async with anyio.create_task_group() as tg:
            async with limiter:
                tg.start_soon(submit, limiter)
                await started.wait()
                tg.start_soon(submit, limiter)
                await _wait_until(lambda: limiter.queue_size == 1)

        # In-flight and queued callers are both released
        assert len(outcomes) == 2

    @pytest.mark.asyncio
    async def test_cannot_enter_twice(self):
        limiter = RateLimiter(RateLimitConfig(**FAST))

        async with limiter:
            with pytest.raises(RuntimeError, match="already running"):
                await limiter.__aenter__()

    @pytest.mark.asyncio
    async def test_body_exception_propagates_unwrapped(self):
        limiter = RateLimiter(RateLimitConfig(**FAST))

        async def fetch():
            return "IBM"

        with pytest.raises(KeyError, match="missing"):
            async with limiter:
                assert await limiter.enqueue(fetch) == "IBM"
                raise KeyError("missing")

        assert not limiter.running
        assert limiter.queue_size == 0

    @pytest.mark.asyncio
    async def test_exit_without_enter_is_noop(self):
        limiter = RateLimiter(RateLimitConfig(**FAST))

        assert await limiter.__aexit__(None, None, None) is False
        assert not limiter.running

    def test_cooldown_for_respects_retry_after_when_enabled(self):
        fixed = RateLimiter(RateLimitConfig(max_requests=1, window=1.0, rate_limit_cooldown=60.0))
        honoring = RateLimiter(
            RateLimitConfig(
                max_requests=1, window=1.0, rate_limit_cooldown=60.0, respect_retry_after=True
            )
        )

        assert fixed._cooldown_for(RateLimitedError(retry_after=7.0)) == 60.0
        assert honoring._cooldown_for(RateLimitedError(retry_after=7.0)) == 7.0
        # Never faster than the base interval
        assert honoring._cooldown_for(RateLimitedError(retry_after=0.1)) == 1.0
        assert honoring._cooldown_for(RateLimitedError()) == 60.0

    def test_to_dict(self):
        limiter = RateLimiter(RateLimitConfig(max_requests=5, window=60.0), name="quotes")

        assert limiter.to_dict() == {
            "name": "quotes",
            "max_requests": 5,
            "window": 60.0,
            "rate_limit_cooldown": 60.0,
            "max_rate_limit_retries": None,
            "respect_retry_after": False,
        }
