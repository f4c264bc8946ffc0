"""Tests for the shared sync service lifecycle."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest

from bitredict_sync.chain.client import ContractMismatchError
from bitredict_sync.chain.logs import LogSubscription
from bitredict_sync.sync import base as base_module
from bitredict_sync.sync.base import EventSyncService, ServiceState
from bitredict_sync.sync.reconciler import EventBinding
from bitredict_sync.sync.retry import HandlerOutcome, HandlerResult

POOL_CORE = "0x" + "1" * 40
ODDYSSEY = "0x" + "2" * 40


class RecordingService(EventSyncService):
    """Minimal service whose handler result is set by the test."""

    name = "recording"

    def __init__(self, *args, result: HandlerResult | None = None, **kwargs) -> None:
        self.result = result or HandlerResult.ok()
        self.seen: list = []
        self.events = ("PoolCreated", "BetPlaced")
        super().__init__(*args, **kwargs)

    def bindings(self) -> list[EventBinding]:
        return [
            EventBinding(POOL_CORE, self.events, "pools"),
            EventBinding(ODDYSSEY, ("SlipPlaced",), "slips"),
        ]

    def handlers(self):
        return {
            "PoolCreated": self.on_event,
            "BetPlaced": self.on_event,
            "SlipPlaced": self.on_event,
        }

    async def on_event(self, log) -> HandlerResult:
        self.seen.append(log)
        return self.result


@pytest.fixture
def service(mock_chain, store, service_kwargs) -> RecordingService:
    return RecordingService(mock_chain, store, **service_kwargs)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_subscribes_each_binding(self, service, mock_chain) -> None:
        await service.start()
        try:
            assert service.state is ServiceState.RUNNING
            names = [c.kwargs["name"] for c in mock_chain.subscribe.call_args_list]
            assert names == ["recording:pools", "recording:slips"]
            first = mock_chain.subscribe.call_args_list[0]
            assert first.args[:2] == (POOL_CORE, ("PoolCreated", "BetPlaced"))
            assert first.kwargs["from_block"] is None
        finally:
            await service.stop()

        assert service.state is ServiceState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_stops_subscriptions(self, service, mock_chain) -> None:
        subscriptions = []

        def subscribe(*_args, **_kwargs):
            sub = MagicMock(spec=LogSubscription)
            sub.stop = AsyncMock()
            subscriptions.append(sub)
            return sub

        mock_chain.subscribe.side_effect = subscribe
        await service.start()
        await service.stop()

        assert len(subscriptions) == 2
        for sub in subscriptions:
            sub.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_event_fails_start(self, service, mock_chain) -> None:
        service.events = ("PoolCreated", "Transfer")

        with pytest.raises(ContractMismatchError):
            await service.start()

        assert service.state is ServiceState.ERROR
        mock_chain.subscribe.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_handler_fails_start(self, service) -> None:
        service.events = ("PoolCreated", "PoolSettled")

        with pytest.raises(ContractMismatchError, match="no handler for PoolSettled"):
            await service.start()

    @pytest.mark.asyncio
    async def test_failed_startup_sweep_does_not_block(self, service) -> None:
        service.startup_sweep = AsyncMock(side_effect=RuntimeError("rpc gone"))

        await service.start()
        try:
            assert service.state is ServiceState.RUNNING
            assert service.stats.last_error == "rpc gone"
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_resubscribes_from_resume_block(self, service, mock_chain, monkeypatch) -> None:
        monkeypatch.setattr(base_module, "DEFAULT_RESUBSCRIBE_DELAY_SECONDS", 0)
        await service.start()
        try:
            sub = next(iter(service._subscriptions.values()))[1]
            sub.resume_block = 777
            sub.name = "recording:pools"

            await service._on_disconnect(sub, OSError("socket closed"))

            assert service.stats.resubscriptions == 1
            last = mock_chain.subscribe.call_args_list[-1]
            assert last.kwargs["from_block"] == 777
            assert last.args[:2] == (POOL_CORE, ("PoolCreated", "BetPlaced"))
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_no_resubscribe_after_stop(self, service, mock_chain, monkeypatch) -> None:
        monkeypatch.setattr(base_module, "DEFAULT_RESUBSCRIBE_DELAY_SECONDS", 0)
        await service.start()
        sub = next(iter(service._subscriptions.values()))[1]
        await service.stop()
        calls = mock_chain.subscribe.call_count

        await service._on_disconnect(sub, OSError("socket closed"))

        assert mock_chain.subscribe.call_count == calls


class TestHandleLog:
    @pytest.mark.asyncio
    async def test_ok_is_recorded(self, service, store, make_log) -> None:
        log = make_log("PoolCreated", poolId=1)

        result = await service.handle_log(log)

        assert result.outcome is HandlerOutcome.OK
        assert service.stats.events_processed == 1
        assert await store.is_recorded("recording", log.transaction_hash, log.log_index)

    @pytest.mark.asyncio
    async def test_duplicate_is_recorded(self, mock_chain, store, service_kwargs, make_log) -> None:
        service = RecordingService(
            mock_chain, store, result=HandlerResult.duplicate("seen"), **service_kwargs
        )
        log = make_log("PoolCreated", poolId=1)

        await service.handle_log(log)

        assert service.stats.duplicates == 1
        assert await store.is_recorded("recording", log.transaction_hash, log.log_index)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("result", "counter"),
        [
            (HandlerResult.skipped("pool unreadable"), "skipped"),
            (HandlerResult.transient("rpc"), "transient_failures"),
            (HandlerResult.terminal("decode"), "terminal_failures"),
        ],
    )
    async def test_failures_are_not_recorded(
        self, mock_chain, store, service_kwargs, make_log, result, counter
    ) -> None:
        service = RecordingService(mock_chain, store, result=result, **service_kwargs)
        log = make_log("BetPlaced", poolId=1)

        await service.handle_log(log)

        assert getattr(service.stats, counter) == 1
        assert not await store.is_recorded("recording", log.transaction_hash, log.log_index)

    @pytest.mark.asyncio
    async def test_unhandled_event(self, service, make_log) -> None:
        result = await service.handle_log(make_log("PrizeClaimed", slipId=1))

        assert result.outcome is HandlerOutcome.TERMINAL
        assert service.seen == []

    @pytest.mark.asyncio
    async def test_subject_in_label(self, service, make_log) -> None:
        assert service.describe_subject(make_log("BetPlaced", poolId=9)) == "poolId=9"
        assert service.describe_subject(make_log("BetPlaced")) == "-"


class TestReconcile:
    @pytest.mark.asyncio
    async def test_replay_range_skips_recorded(self, service, mock_chain, store, make_log) -> None:
        done = make_log("BetPlaced", poolId=1)
        fresh = make_log("BetPlaced", poolId=1)
        await store.mark_recorded("recording", done.transaction_hash, 0, event_name="BetPlaced")
        mock_chain.query_logs.return_value = [done, fresh]

        count = await service.replay_range(
            service.bindings()[0], 10, 20, argument_filters={"poolId": 1}
        )

        assert count == 1
        assert service.seen == [fresh]
        mock_chain.query_logs.assert_awaited_once_with(
            POOL_CORE, ("PoolCreated", "BetPlaced"), 10, 20, argument_filters={"poolId": 1}
        )

    @pytest.mark.asyncio
    async def test_replay_range_skips_removed(self, service, mock_chain, store, make_log) -> None:
        orphaned = replace(make_log("BetPlaced", poolId=1), removed=True)
        mock_chain.query_logs.return_value = [orphaned]

        count = await service.replay_range(service.bindings()[0], 10, 20)

        assert count == 0
        assert service.seen == []
        assert not await store.is_recorded("recording", orphaned.transaction_hash, 0)

    @pytest.mark.asyncio
    async def test_reconcile_runs_catch_up_then_sweep(self, service, mock_chain) -> None:
        service.fallback_sweep = AsyncMock()

        await service.reconcile()

        assert service.stats.sweeps == 1
        assert mock_chain.query_logs.await_count == 2
        service.fallback_sweep.assert_awaited_once()
        assert service.stats.last_sweep_time is not None

    @pytest.mark.asyncio
    async def test_fallback_loop_survives_errors(self, mock_chain, store, service_kwargs) -> None:
        service_kwargs["options"] = replace(service_kwargs["options"], fallback_interval_seconds=0.01)
        service = RecordingService(mock_chain, store, **service_kwargs)
        calls = []

        async def reconcile() -> None:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")

        service.reconcile = AsyncMock(side_effect=reconcile)

        await service.start()
        for _ in range(100):
            if service.reconcile.await_count >= 2:
                break
            await asyncio.sleep(0.01)
        await service.stop()

        assert service.stats.sweep_failures == 1
        assert service.reconcile.await_count >= 2


class TestSinks:
    @pytest.mark.asyncio
    async def test_sink_errors_are_swallowed(
        self, service, mock_broadcaster, mock_publisher, mock_notifier
    ) -> None:
        mock_broadcaster.broadcast.side_effect = ConnectionError("socket")
        mock_publisher.publish.side_effect = TimeoutError()
        mock_notifier.notify.side_effect = RuntimeError("db")

        await service._broadcast(["a", "b"], {"x": 1})
        await service._publish("ctx", "0xid", {"x": 1})
        await service._notify("0xabc", "pool_created", {})

        assert mock_broadcaster.broadcast.await_count == 2

    @pytest.mark.asyncio
    async def test_without_publisher_or_notifier(self, mock_chain, store) -> None:
        service = RecordingService(mock_chain, store)

        await service._publish("ctx", "0xid", {})
        await service._notify("0xabc", "pool_created", {})
        await service._broadcast(["a"], {})
