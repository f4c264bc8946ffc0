"""Tests for the main pipeline orchestrator."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from bitredict_sync.chain.client import RPCError
from bitredict_sync.config import Settings, clear_settings_cache
from bitredict_sync.pipeline import Pipeline, PipelineError, PipelineState
from bitredict_sync.sinks.broadcast import NullBroadcaster
from bitredict_sync.sync.base import ServiceState

POOL_CORE = "0x" + "1" * 40
ODDYSSEY = "0x" + "2" * 40


@pytest.fixture
def settings(monkeypatch, tmp_path) -> Settings:
    """Real settings from a minimal environment, without a local .env file."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("CHAIN_POOL_CORE_ADDRESS", POOL_CORE)
    monkeypatch.setenv("CHAIN_ODDYSSEY_ADDRESS", ODDYSSEY)
    monkeypatch.setenv("BROADCAST_ENABLED", "false")
    clear_settings_cache()
    yield Settings()
    clear_settings_cache()


@pytest.fixture
def mock_redis() -> MagicMock:
    redis = MagicMock()
    redis.aclose = AsyncMock()
    return redis


@pytest.fixture
def pipeline(settings, db, mock_chain, mock_redis, mock_broadcaster) -> Pipeline:
    return Pipeline(
        settings,
        db_manager=db,
        chain=mock_chain,
        redis=mock_redis,
        broadcaster=mock_broadcaster,
    )


class TestPipelineLifecycle:
    """Tests for start/stop and resource ownership."""

    def test_initial_state(self, pipeline) -> None:
        assert pipeline.state == PipelineState.STOPPED
        assert not pipeline.is_running
        assert pipeline.services == []

    @pytest.mark.asyncio
    async def test_start_and_stop(self, pipeline, mock_chain, mock_redis) -> None:
        await pipeline.start()

        assert pipeline.is_running
        assert pipeline.stats.started_at is not None
        mock_chain.initialize.assert_awaited_once()
        assert [s.name for s in pipeline.services] == [
            "reputation",
            "pool_sync",
            "bet_sync",
            "slip_sync",
        ]
        assert all(s.state == ServiceState.RUNNING for s in pipeline.services)

        await pipeline.stop()

        assert pipeline.state == PipelineState.STOPPED
        assert all(s.state == ServiceState.STOPPED for s in pipeline.services)
        mock_chain.shutdown.assert_awaited_once()
        mock_redis.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_pool_sync_forwards_to_reputation(self, pipeline) -> None:
        await pipeline.start()
        try:
            reputation, pool_sync = pipeline.services[:2]
            assert pool_sync._reputation is reputation
        finally:
            await pipeline.stop()

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, pipeline) -> None:
        await pipeline.start()
        try:
            with pytest.raises(RuntimeError, match="Cannot start"):
                await pipeline.start()
        finally:
            await pipeline.stop()

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(self, pipeline, mock_chain) -> None:
        await pipeline.stop()
        mock_chain.shutdown.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_start_cleans_up(self, pipeline, mock_chain, mock_redis) -> None:
        mock_chain.initialize.side_effect = RPCError("node unreachable")

        with pytest.raises(PipelineError, match="node unreachable"):
            await pipeline.start()

        assert pipeline.state == PipelineState.ERROR
        assert pipeline.stats.last_error == "node unreachable"
        mock_chain.shutdown.assert_awaited_once()
        mock_redis.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disabled_broadcast_uses_null_sink(self, settings, db, mock_chain, mock_redis) -> None:
        pipeline = Pipeline(settings, db_manager=db, chain=mock_chain, redis=mock_redis)

        await pipeline.start()
        try:
            assert isinstance(pipeline._broadcaster, NullBroadcaster)
        finally:
            await pipeline.stop()

    @pytest.mark.asyncio
    async def test_context_manager(self, pipeline) -> None:
        async with pipeline as running:
            assert running.is_running
        assert pipeline.state == PipelineState.STOPPED


class TestPipelineRun:
    """Tests for the long-running entry point."""

    @pytest.mark.asyncio
    async def test_run_until_stop_requested(self, pipeline) -> None:
        task = asyncio.create_task(pipeline.run())
        for _ in range(100):
            if pipeline.is_running:
                break
            await asyncio.sleep(0.01)
        assert pipeline.is_running

        pipeline.request_stop()
        await asyncio.wait_for(task, timeout=5)

        assert pipeline.state == PipelineState.STOPPED

    @pytest.mark.asyncio
    async def test_reconcile_once_ticks_every_service(self, pipeline) -> None:
        await pipeline.start()
        try:
            for service in pipeline.services:
                service.reconcile = AsyncMock()
            await pipeline.reconcile_once()
            for service in pipeline.services:
                service.reconcile.assert_awaited_once()
        finally:
            await pipeline.stop()

    @pytest.mark.asyncio
    async def test_stats_cover_every_service(self, pipeline) -> None:
        await pipeline.start()
        try:
            stats = pipeline.stats
            assert set(stats.services) == {"reputation", "pool_sync", "bet_sync", "slip_sync"}
            assert stats.events_processed == 0
            assert stats.errors == 0
        finally:
            await pipeline.stop()
