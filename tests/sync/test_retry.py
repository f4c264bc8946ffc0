"""Tests for handler results and the retry scheduler."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from bitredict_sync.chain.client import ContractMismatchError, RPCError
from bitredict_sync.decoding import InvalidEventError, PoolValidationError
from bitredict_sync.storage.persistence import EntityNotFoundError
from bitredict_sync.sync.retry import (
    HandlerOutcome,
    HandlerResult,
    RetryScheduler,
    classify_exception,
)


class TestClassifyException:
    @pytest.mark.parametrize(
        "exc",
        [
            RPCError("node down"),
            EntityNotFoundError("pool", 7),
            OperationalError("SELECT 1", {}, Exception("connection lost")),
            TimeoutError(),
            ConnectionResetError(),
        ],
    )
    def test_transient(self, exc: Exception) -> None:
        assert classify_exception(exc) is HandlerOutcome.TRANSIENT

    @pytest.mark.parametrize(
        "exc",
        [
            InvalidEventError("bad bettor"),
            PoolValidationError(1, "odds"),
            ContractMismatchError("abi"),
            ValueError("bug"),
        ],
    )
    def test_terminal(self, exc: Exception) -> None:
        assert classify_exception(exc) is HandlerOutcome.TERMINAL


class TestHandlerResult:
    @pytest.mark.parametrize(
        ("result", "recorded", "retryable"),
        [
            (HandlerResult.ok(), True, False),
            (HandlerResult.duplicate("seen"), True, False),
            (HandlerResult.skipped("pool unreadable"), False, False),
            (HandlerResult.transient("rpc"), False, True),
            (HandlerResult.terminal("decode"), False, False),
        ],
    )
    def test_flags(self, result: HandlerResult, recorded: bool, retryable: bool) -> None:
        assert result.is_recorded is recorded
        assert result.is_retryable is retryable


class TestRetryScheduler:
    def test_backoff_doubles(self) -> None:
        scheduler = RetryScheduler(base_delay=5.0)
        assert [scheduler.backoff(n) for n in (1, 2, 3)] == [5.0, 10.0, 20.0]

    @pytest.mark.asyncio
    async def test_success_runs_inline(self) -> None:
        scheduler = RetryScheduler(max_retries=3, base_delay=0)
        attempt = AsyncMock(return_value=HandlerResult.ok())

        result = await scheduler.run("handler", attempt)

        assert result.outcome is HandlerOutcome.OK
        assert scheduler.in_flight == 0
        assert scheduler.stats.attempts == 1

    @pytest.mark.asyncio
    async def test_transient_is_retried_in_background(self) -> None:
        scheduler = RetryScheduler(max_retries=3, base_delay=0)
        attempt = AsyncMock(side_effect=[HandlerResult.transient("rpc"), HandlerResult.ok()])

        first = await scheduler.run("handler", attempt)

        assert first.outcome is HandlerOutcome.TRANSIENT
        assert scheduler.in_flight == 1
        assert await scheduler.drain(1.0) == 0
        assert attempt.await_count == 2
        assert scheduler.stats.retries == 1
        assert scheduler.stats.exhausted == 0

    @pytest.mark.asyncio
    async def test_exceptions_are_classified(self) -> None:
        scheduler = RetryScheduler(max_retries=2, base_delay=0)
        attempt = AsyncMock(side_effect=OSError("reset"))

        result = await scheduler.run("handler", attempt)
        await scheduler.drain(1.0)

        assert result.outcome is HandlerOutcome.TRANSIENT
        assert "OSError" in result.reason
        assert attempt.await_count == 3
        assert scheduler.stats.exhausted == 1
        assert scheduler.stats.transient_failures == 3

    @pytest.mark.asyncio
    async def test_terminal_is_not_retried(self) -> None:
        scheduler = RetryScheduler(max_retries=3, base_delay=0)
        attempt = AsyncMock(side_effect=InvalidEventError("bad"))

        result = await scheduler.run("handler", attempt)

        assert result.outcome is HandlerOutcome.TERMINAL
        assert scheduler.in_flight == 0
        assert scheduler.stats.terminal_failures == 1

    @pytest.mark.asyncio
    async def test_attempt_timeout_is_transient(self) -> None:
        scheduler = RetryScheduler(max_retries=0, attempt_timeout=0.01)

        async def slow() -> HandlerResult:
            await asyncio.sleep(1)
            return HandlerResult.ok()

        result = await scheduler.run("handler", slow)

        assert result.outcome is HandlerOutcome.TRANSIENT

    @pytest.mark.asyncio
    async def test_no_retries_configured(self) -> None:
        scheduler = RetryScheduler(max_retries=0)

        await scheduler.run("handler", AsyncMock(return_value=HandlerResult.transient("rpc")))

        assert scheduler.in_flight == 0

    @pytest.mark.asyncio
    async def test_drain_cancels_after_grace(self) -> None:
        scheduler = RetryScheduler(max_retries=3, base_delay=60)

        await scheduler.run("handler", AsyncMock(return_value=HandlerResult.transient("rpc")))

        assert await scheduler.drain(0.01) == 1
        await asyncio.sleep(0)
        assert scheduler.in_flight == 0

    @pytest.mark.asyncio
    async def test_closed_scheduler_does_not_spawn(self) -> None:
        scheduler = RetryScheduler(max_retries=3, base_delay=0)
        attempt = AsyncMock(return_value=HandlerResult.transient("rpc"))
        await scheduler.drain(0.01)

        await scheduler.run("handler", attempt)
        assert scheduler.in_flight == 0

        scheduler.reopen()
        await scheduler.run("handler", attempt)
        assert scheduler.in_flight == 1
        await scheduler.drain(1.0)
