"""Tests for the bet sync service."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from bitredict_sync.chain.client import RPCError
from bitredict_sync.sinks import streams
from bitredict_sync.sync.bet_sync import BET_EVENTS, BetSyncService
from bitredict_sync.sync.pool_sync import PoolSyncService
from bitredict_sync.sync.retry import HandlerOutcome

TOKEN = 10**18
POOL_CORE = "0x" + "1" * 40
BETTOR = "0x" + "b" * 40
PROVIDER = "0x" + "d" * 40


@pytest.fixture
def service(mock_chain, store, service_kwargs, make_pool_struct) -> BetSyncService:
    mock_chain.get_pool = AsyncMock(return_value=make_pool_struct())
    return BetSyncService(mock_chain, store, **service_kwargs)


def broadcasts(mock_broadcaster) -> dict[str, dict]:
    return {c.args[0]: c.args[1] for c in mock_broadcaster.broadcast.await_args_list}


def bet_log(make_log, pool_id: int = 4, amount: int = 50 * TOKEN, **kwargs):
    return make_log(
        "BetPlaced",
        poolId=pool_id,
        bettor="0x" + BETTOR[2:].upper(),
        amount=amount,
        isForOutcome=True,
        **kwargs,
    )


class TestBetPlaced:
    def test_binding(self, service) -> None:
        [binding] = service.bindings()
        assert (binding.contract, binding.events) == (POOL_CORE, BET_EVENTS)

    @pytest.mark.asyncio
    async def test_stores_bet_and_pushes_progress(
        self, service, store, make_log, make_pool_dto, mock_broadcaster, mock_publisher
    ) -> None:
        await store.upsert_pool(make_pool_dto(4))
        log = bet_log(make_log)

        result = await service.handle_log(log)

        assert result.outcome is HandlerOutcome.OK
        [stored] = await store.list_bets(4)
        assert stored.bettor == BETTOR
        assert stored.amount == 50 * TOKEN
        sent = broadcasts(mock_broadcaster)
        assert set(sent) == {"bet:placed", "recent_bets", "pool:4:progress"}
        assert sent["bet:placed"]["amount"] == str(50 * TOKEN)
        assert sent["bet:placed"]["poolTitle"] == "Arsenal vs Chelsea"
        assert sent["pool:4:progress"]["fillPercentage"] == 75.0
        assert sent["pool:4:progress"]["betCount"] == 1
        contexts = [c.args[0] for c in mock_publisher.publish.await_args_list]
        assert contexts == [streams.BETS, streams.POOLS_PROGRESS]
        assert mock_publisher.publish.await_args_list[0].args[1] == streams.make_data_id(
            streams.BETS, log.transaction_hash, 0
        )

    @pytest.mark.asyncio
    async def test_redelivery_is_duplicate(self, service, store, make_log, make_pool_dto) -> None:
        await store.upsert_pool(make_pool_dto(4))
        log = bet_log(make_log)

        await service.handle_log(log)
        result = await service.on_bet_placed(log)

        assert result.outcome is HandlerOutcome.DUPLICATE
        assert len(await store.list_bets(4)) == 1
        assert (await store.get_pool(4)).total_bettor_stake == 50 * TOKEN

    @pytest.mark.asyncio
    async def test_bet_before_pool_uses_chain_labels(
        self, service, store, make_log, mock_broadcaster
    ) -> None:
        result = await service.handle_log(bet_log(make_log))

        assert result.outcome is HandlerOutcome.OK
        assert await store.stored_bet_total(4) == 50 * TOKEN
        sent = broadcasts(mock_broadcaster)
        assert "pool:4:progress" not in sent
        assert sent["bet:placed"]["poolTitle"] == "Arsenal vs Chelsea"
        assert sent["bet:placed"]["odds"] == 200

    @pytest.mark.asyncio
    async def test_unreadable_pool_still_stores_bet(
        self, service, mock_chain, store, make_log, mock_broadcaster
    ) -> None:
        mock_chain.get_pool.side_effect = RPCError("node down")

        result = await service.handle_log(bet_log(make_log))

        assert result.outcome is HandlerOutcome.OK
        assert len(await store.list_bets(4)) == 1
        assert broadcasts(mock_broadcaster)["bet:placed"]["poolTitle"] is None

    @pytest.mark.asyncio
    async def test_invalid_bettor_is_terminal(self, service, store, make_log) -> None:
        log = make_log("BetPlaced", poolId=4, bettor="0x1234", amount=TOKEN, isForOutcome=True)

        result = await service.handle_log(log)

        assert result.outcome is HandlerOutcome.TERMINAL
        assert await store.list_bets(4) == []

    @pytest.mark.asyncio
    async def test_zero_amount_is_terminal(self, service, make_log) -> None:
        result = await service.handle_log(bet_log(make_log, amount=0))
        assert result.outcome is HandlerOutcome.TERMINAL

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_fail_handler(
        self, service, store, make_log, make_pool_dto, mock_broadcaster, mock_publisher
    ) -> None:
        await store.upsert_pool(make_pool_dto(4))
        mock_broadcaster.broadcast.side_effect = ConnectionError("socket")
        mock_publisher.publish.side_effect = ConnectionError("redis")

        result = await service.handle_log(bet_log(make_log))

        assert result.outcome is HandlerOutcome.OK


class TestLiquidityAdded:
    @pytest.mark.asyncio
    async def test_credits_provider(
        self, service, store, make_log, make_pool_dto, mock_broadcaster
    ) -> None:
        await store.upsert_pool(make_pool_dto(4))

        result = await service.handle_log(
            make_log("LiquidityAdded", poolId=4, provider=PROVIDER, amount=25 * TOKEN // 10)
        )

        assert result.outcome is HandlerOutcome.OK
        assert await store.list_bets(4) == []
        assert await store.stored_lp_total(4) == 25 * TOKEN // 10
        sent = broadcasts(mock_broadcaster)
        assert sent["liquidity:added"]["amount"] == "2.5"
        assert sent["liquidity:added"]["currency"] == "STT"
        assert sent["recent_bets"]["type"] == "liquidity_added"
        assert "pool:4:progress" in sent

    @pytest.mark.asyncio
    async def test_applied_once_across_services(
        self, service, mock_chain, store, service_kwargs, make_log, make_pool_dto
    ) -> None:
        await store.upsert_pool(make_pool_dto(4))
        pool_sync = PoolSyncService(mock_chain, store, **service_kwargs)
        log = make_log("LiquidityAdded", poolId=4, provider=PROVIDER, amount=40 * TOKEN)

        first = await pool_sync.handle_log(log)
        second = await service.handle_log(log)

        assert first.outcome is HandlerOutcome.OK
        assert second.outcome is HandlerOutcome.DUPLICATE
        assert (await store.get_pool(4)).total_creator_side_stake == 140 * TOKEN

    @pytest.mark.asyncio
    async def test_unknown_pool_is_transient(self, service, make_log) -> None:
        result = await service.handle_log(
            make_log("LiquidityAdded", poolId=4, provider=PROVIDER, amount=TOKEN)
        )
        assert result.outcome is HandlerOutcome.TRANSIENT


class TestFallbackSweep:
    @pytest.mark.asyncio
    async def test_no_active_pools(self, service, mock_chain) -> None:
        await service.fallback_sweep()
        mock_chain.current_block.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_replays_recent_window_per_pool(
        self, service, mock_chain, store, make_log, make_pool_dto
    ) -> None:
        await store.upsert_pool(make_pool_dto(4, block_number=9_500))
        mock_chain.query_logs.return_value = [bet_log(make_log, block=9_800)]

        await service.fallback_sweep()

        mock_chain.query_logs.assert_awaited_once_with(
            POOL_CORE, BET_EVENTS, 9_000, 10_000, argument_filters={"poolId": 4}
        )
        assert len(await store.list_bets(4)) == 1

    @pytest.mark.asyncio
    async def test_deep_replay_when_bets_missing(
        self, service, mock_chain, store, make_log, make_pool_dto, make_pool_struct
    ) -> None:
        await store.upsert_pool(make_pool_dto(4, block_number=50))
        mock_chain.get_pool.return_value = make_pool_struct(total_bettor_stake=50 * TOKEN)
        mock_chain.query_logs.side_effect = [[], [bet_log(make_log, block=70)]]

        await service.fallback_sweep()

        windows = [c.args[2:4] for c in mock_chain.query_logs.await_args_list]
        assert windows == [(9_000, 10_000), (50, 10_000)]
        assert await store.stored_bet_total(4) == 50 * TOKEN

    @pytest.mark.asyncio
    async def test_replay_failure_does_not_stop_audit(
        self, service, mock_chain, store, make_pool_dto
    ) -> None:
        await store.upsert_pool(make_pool_dto(4))
        mock_chain.query_logs.side_effect = RPCError("range too large")
        service.audit = AsyncMock(return_value=[])

        await service.fallback_sweep()

        service.audit.assert_awaited_once()
