"""Tests for the backoff retrier."""

import dataclasses

import pytest

from src.executor.retry import (
    DEFAULT_RETRY_POLICY,
    RetryDecision,
    RetryPolicy,
    compute_delay,
    retry_with_backoff,
)
from src.llm.backends import ErrorKind


class TestComputeDelay:
    def test_exponential_then_capped(self):
        policy = RetryPolicy(max_attempts=6, initial_delay=1.0, multiplier=2.0, max_delay=10.0)
        delays = [compute_delay(attempt, policy) for attempt in range(1, 7)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]

    def test_monotonically_non_decreasing(self):
        policy = RetryPolicy(max_attempts=10, initial_delay=0.3, multiplier=1.7, max_delay=5.0)
        delays = [compute_delay(attempt, policy) for attempt in range(1, 11)]
        assert delays == sorted(delays)
        assert max(delays) == 5.0

    def test_attempt_is_one_indexed(self):
        with pytest.raises(ValueError):
            compute_delay(0, DEFAULT_RETRY_POLICY)


class TestRetryPolicy:
    def test_defaults(self):
        assert DEFAULT_RETRY_POLICY.max_attempts == 3
        assert DEFAULT_RETRY_POLICY.initial_delay == 1.0
        assert DEFAULT_RETRY_POLICY.max_delay == 10.0

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_is_immutable(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            DEFAULT_RETRY_POLICY.max_attempts = 5


class TestRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_exhaustion_returns_last_result(self, sleeper):
        calls = []

        async def operation():
            calls.append(len(calls) + 1)
            return f"result-{len(calls)}"

        result = await retry_with_backoff(
            operation,
            lambda r: RetryDecision(retry=True, error_kind=ErrorKind.NETWORK_ERROR),
            RetryPolicy(max_attempts=4, initial_delay=1.0, multiplier=2.0, max_delay=3.0),
            sleep=sleeper,
        )

        assert calls == [1, 2, 3, 4]
        assert result == "result-4"
        assert sleeper.delays == [1.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_stops_when_told_not_to_retry(self, sleeper):
        results = iter(["fail", "ok", "never"])

        async def operation():
            return next(results)

        result = await retry_with_backoff(
            operation,
            lambda r: RetryDecision(retry=(r == "fail"), error_kind=ErrorKind.TIMEOUT_ERROR),
            sleep=sleeper,
        )

        assert result == "ok"
        assert sleeper.delays == [1.0]

    @pytest.mark.asyncio
    async def test_exception_propagates_without_retry(self, sleeper):
        calls = 0

        async def operation():
            nonlocal calls
            calls += 1
            raise RuntimeError("unexpected fault")

        with pytest.raises(RuntimeError, match="unexpected fault"):
            await retry_with_backoff(operation, lambda r: RetryDecision(retry=True), sleep=sleeper)

        assert calls == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_single_attempt_policy_never_sleeps(self, sleeper):
        async def operation():
            return None

        await retry_with_backoff(
            operation,
            lambda r: RetryDecision(retry=True),
            RetryPolicy(max_attempts=1),
            context={"provider": "gemini"},
            sleep=sleeper,
        )
        assert sleeper.delays == []
