"""Tests for log views and polling subscriptions."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import encode

from bitredict_sync.chain.abi import BET_PLACED, LIQUIDITY_ADDED
from bitredict_sync.chain.logs import LogFormatError, LogSubscription, LogView, sort_logs

POOL_CORE = "0x" + "1" * 40
BETTOR = "0x" + "b" * 40
TX = "0x" + "ab" * 32


def raw_bet_log(**overrides):
    raw = {
        "address": POOL_CORE,
        "transactionHash": bytes.fromhex(TX[2:]),
        "blockNumber": 120,
        "logIndex": 3,
        "topics": [
            bytes.fromhex(BET_PLACED.topic0[2:]),
            encode(["uint256"], [7]),
            encode(["address"], [BETTOR]),
        ],
        "data": encode(["uint256", "bool"], [5 * 10**18, True]),
        "removed": False,
    }
    raw.update(overrides)
    return raw


def view(block: int, index: int, *, removed: bool = False) -> LogView:
    return LogView(
        event_name="BetPlaced",
        address=POOL_CORE,
        transaction_hash=f"0x{block:032x}{index:032x}",
        block_number=block,
        log_index=index,
        arguments={"poolId": 1},
        removed=removed,
    )


class TestLogView:
    def test_from_flat_receipt_decodes_topics(self) -> None:
        log = LogView.from_raw(raw_bet_log())

        assert log.event_name == "BetPlaced"
        assert log.transaction_hash == TX
        assert log.block_number == 120
        assert log.log_index == 3
        assert log.arg("poolId") == 7
        assert log.arg("bettor").lower() == BETTOR
        assert log.arg("amount") == 5 * 10**18
        assert log.key == (TX, 3)
        assert log.position == (120, 3)

    def test_from_nested_event_wrapper(self) -> None:
        raw = {
            "event": "LiquidityAdded",
            "args": {"poolId": 7, "provider": BETTOR, "amount": 10},
            "log": {"transactionHash": TX.upper(), "blockNumber": "0x10", "logIndex": 0},
        }

        log = LogView.from_raw(raw)

        assert log.event_name == "LiquidityAdded"
        assert log.transaction_hash == TX
        assert log.block_number == 16
        assert log.arguments["amount"] == 10

    def test_explicit_spec_is_used(self) -> None:
        raw = raw_bet_log(
            topics=[
                bytes.fromhex(LIQUIDITY_ADDED.topic0[2:]),
                encode(["uint256"], [7]),
                encode(["address"], [BETTOR]),
            ],
            data=encode(["uint256"], [99]),
        )

        log = LogView.from_raw(raw, spec=LIQUIDITY_ADDED)

        assert log.event_name == "LiquidityAdded"
        assert log.arg("amount") == 99

    def test_missing_positional_field(self) -> None:
        raw = raw_bet_log()
        del raw["logIndex"]
        with pytest.raises(LogFormatError, match="logIndex"):
            LogView.from_raw(raw)

    def test_unknown_topic(self) -> None:
        raw = raw_bet_log(topics=[b"\x01" * 32])
        with pytest.raises(LogFormatError, match="unknown topic0"):
            LogView.from_raw(raw)

    def test_undecodable_data(self) -> None:
        raw = raw_bet_log(data=b"\x00")
        with pytest.raises(LogFormatError, match="cannot decode"):
            LogView.from_raw(raw)

    def test_missing_argument(self) -> None:
        with pytest.raises(LogFormatError, match="amount"):
            view(1, 0).arg("amount")

    def test_sort_logs(self) -> None:
        logs = [view(5, 1), view(3, 9), view(5, 0)]
        assert [log.position for log in sort_logs(logs)] == [(3, 9), (5, 0), (5, 1)]


class TestLogSubscription:
    """Tests for the polling subscription loop."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.current_block = AsyncMock(return_value=100)
        client.query_logs = AsyncMock(return_value=[])
        return client

    def subscription(self, client, handler, **kwargs) -> LogSubscription:
        return LogSubscription(
            client,
            address=POOL_CORE,
            event_names=["BetPlaced"],
            handler=handler,
            poll_interval=0.01,
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_poll_range_dispatches_in_order_and_advances(self, client) -> None:
        seen = []

        async def handler(log):
            seen.append(log.position)

        client.query_logs.return_value = [view(90, 0), view(95, 2)]
        sub = self.subscription(client, handler, from_block=90)

        await sub._poll_range(90, 100)

        assert seen == [(90, 0), (95, 2)]
        assert sub.resume_block == 101
        assert sub.dispatched == 2
        client.query_logs.assert_awaited_once_with(POOL_CORE, ("BetPlaced",), 90, 100)

    @pytest.mark.asyncio
    async def test_removed_logs_skipped(self, client) -> None:
        handler = AsyncMock()
        client.query_logs.return_value = [view(90, 0, removed=True)]
        sub = self.subscription(client, handler)

        await sub._poll_range(90, 90)

        handler.assert_not_awaited()
        assert sub.dispatched == 0

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_stop_the_stream(self, client) -> None:
        handler = AsyncMock(side_effect=[RuntimeError("boom"), None])
        client.query_logs.return_value = [view(90, 0), view(91, 0)]
        sub = self.subscription(client, handler)

        await sub._poll_range(90, 91)

        assert sub.handler_errors == 1
        assert sub.dispatched == 1
        assert sub.resume_block == 92

    @pytest.mark.asyncio
    async def test_rpc_failure_reports_disconnect(self, client) -> None:
        error = OSError("connection reset")
        client.current_block.side_effect = error
        on_disconnect = AsyncMock()
        sub = self.subscription(client, AsyncMock(), from_block=50, on_disconnect=on_disconnect)

        await sub._run()

        on_disconnect.assert_awaited_once_with(sub, error)
        assert sub.error is error
        assert sub.resume_block == 50

    @pytest.mark.asyncio
    async def test_start_from_head_when_no_block_given(self, client) -> None:
        sub = self.subscription(client, AsyncMock())

        sub.start()
        assert sub.is_running
        for _ in range(100):
            if client.query_logs.await_count:
                break
            await asyncio.sleep(0.01)
        await sub.stop()

        client.query_logs.assert_any_await(POOL_CORE, ("BetPlaced",), 100, 100)
        assert not sub.is_running
