"""Tests for the timeout + cancellation guard."""

import asyncio

import pytest

from src.executor.guard import (
    CancellationToken,
    RunCancelledError,
    StageTimeoutError,
    run_guarded,
)


class TestCancellationToken:
    def test_cancel_is_idempotent(self):
        token = CancellationToken()
        assert not token.cancelled
        assert token.cancel() is True
        assert token.cancel() is False
        assert token.cancelled

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        with pytest.raises(RunCancelledError):
            token.raise_if_cancelled("[run-1 stage 2]")

    @pytest.mark.asyncio
    async def test_wait_returns_once_cancelled(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        await asyncio.wait_for(token.wait(), timeout=1)
        assert token.cancelled


class TestRunGuarded:
    @pytest.mark.asyncio
    async def test_returns_operation_result(self):
        async def operation():
            return "done"

        assert await run_guarded(operation, timeout=1, token=CancellationToken()) == "done"

    @pytest.mark.asyncio
    async def test_timeout_raises_stage_timeout(self):
        async def operation():
            await asyncio.sleep(3600)

        with pytest.raises(StageTimeoutError) as exc_info:
            await run_guarded(operation, timeout=0.05, token=CancellationToken(), label="[stage 1]")

        assert isinstance(exc_info.value, TimeoutError)
        assert exc_info.value.timeout == 0.05

    @pytest.mark.asyncio
    async def test_already_cancelled_never_starts_operation(self):
        started = []

        async def operation():
            started.append(True)

        token = CancellationToken()
        token.cancel()

        with pytest.raises(RunCancelledError):
            await run_guarded(operation, timeout=1, token=token)
        assert started == []

    @pytest.mark.asyncio
    async def test_cancel_aborts_in_flight_operation(self):
        aborted = asyncio.Event()

        async def operation():
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                aborted.set()
                raise

        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel)

        with pytest.raises(RunCancelledError):
            await run_guarded(operation, timeout=10, token=token)

        await asyncio.wait_for(aborted.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_operation_exception_propagates(self):
        async def operation():
            raise ValueError("bad input")

        with pytest.raises(ValueError, match="bad input"):
            await run_guarded(operation, timeout=1)
