"""Tests for the chain client."""

from __future__ import annotations

import time
from unittest.mock import AsyncMock

import pytest
from eth_abi import encode
from web3 import Web3
from web3.exceptions import ContractLogicError

from bitredict_sync.chain.abi import BET_PLACED, LIQUIDITY_ADDED, PRIZE_CLAIMED, SLIP_PLACED
from bitredict_sync.chain.client import (
    ChainClient,
    ContractAddresses,
    ContractCallReverted,
    ContractMismatchError,
    RateLimiter,
    RPCError,
    build_topics,
    chunk_ranges,
)

POOL_CORE = "0x" + "1" * 40
ODDYSSEY = "0x" + "2" * 40
CREATOR = "0x" + "c" * 40
BETTOR = "0x" + "b" * 40


def label(text: str) -> bytes:
    return text.encode("utf-8").ljust(32, b"\x00")


def raw_pool_tuple() -> tuple:
    return (
        CREATOR,
        250,
        0,
        1,
        0,
        0,
        10**18,
        10**18,
        10**18 * 100 // 150,
        0,
        label("Home wins"),
        b"\x00" * 32,
        1_760_000_000,
        1_760_007_200,
        1_759_999_000,
        0,
        0,
        0,
        label("Premier League"),
        label("football"),
        label("England"),
        label("Arsenal"),
        label("Chelsea"),
        label("Arsenal vs Chelsea"),
        "",
    )


def raw_bet(block: int, index: int, pool_id: int = 7) -> dict:
    return {
        "address": POOL_CORE,
        "transactionHash": bytes([block % 256]) * 31 + bytes([index]),
        "blockNumber": block,
        "logIndex": index,
        "topics": [
            bytes.fromhex(BET_PLACED.topic0[2:]),
            encode(["uint256"], [pool_id]),
            encode(["address"], [BETTOR]),
        ],
        "data": encode(["uint256", "bool"], [10**18, True]),
    }


@pytest.fixture
def client() -> ChainClient:
    return ChainClient(
        "http://localhost:8545",
        contracts=ContractAddresses(pool_core=POOL_CORE, oddyssey=ODDYSSEY),
        max_requests_per_second=1000,
        max_retries=3,
        retry_delay_seconds=0,
        request_timeout=1,
        query_chunk_blocks=10,
    )


class TestChunkRanges:
    def test_splits_inclusive_range(self) -> None:
        assert chunk_ranges(0, 25, 10) == [(0, 9), (10, 19), (20, 25)]

    def test_single_block(self) -> None:
        assert chunk_ranges(5, 5, 900) == [(5, 5)]

    def test_empty_when_reversed(self) -> None:
        assert chunk_ranges(10, 5, 900) == []

    def test_windows_never_exceed_chunk(self) -> None:
        windows = chunk_ranges(1, 10_000, 900)
        assert all(end - start + 1 <= 900 for start, end in windows)
        assert windows[0][0] == 1
        assert windows[-1][1] == 10_000

    def test_invalid_chunk(self) -> None:
        with pytest.raises(ValueError):
            chunk_ranges(0, 10, 0)

    def test_client_clamps_chunk_to_rpc_limit(self) -> None:
        client = ChainClient(
            "http://localhost:8545",
            contracts=ContractAddresses(pool_core=POOL_CORE, oddyssey=ODDYSSEY),
            query_chunk_blocks=5000,
        )
        assert client.chunk_blocks == 900


class TestBuildTopics:
    def test_topic0_only(self) -> None:
        topics = build_topics([BET_PLACED, LIQUIDITY_ADDED])
        assert topics == [[BET_PLACED.topic0, LIQUIDITY_ADDED.topic0]]

    def test_pool_filter_at_shared_position(self) -> None:
        topics = build_topics([BET_PLACED, LIQUIDITY_ADDED], {"poolId": 7})

        assert len(topics) == 2
        assert topics[1] == Web3.to_hex(encode(["uint256"], [7]))

    def test_filter_position_must_match(self) -> None:
        with pytest.raises(ValueError, match="differs"):
            build_topics([SLIP_PLACED, PRIZE_CLAIMED], {"slipId": 1})

    def test_filter_must_be_indexed(self) -> None:
        with pytest.raises(ValueError, match="no indexed argument"):
            build_topics([BET_PLACED], {"amount": 1})


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_first_acquire_is_immediate(self) -> None:
        limiter = RateLimiter.create(10)
        start = time.monotonic()
        await limiter.acquire()
        assert time.monotonic() - start < 0.05

    @pytest.mark.asyncio
    async def test_empty_bucket_waits(self) -> None:
        limiter = RateLimiter.create(10)
        limiter.tokens = 0
        limiter.last_refill = time.monotonic()

        start = time.monotonic()
        await limiter.acquire()

        assert time.monotonic() - start >= 0.05


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_transient_error_then_success(self, client) -> None:
        call = AsyncMock(side_effect=[OSError("reset"), 42])
        assert await client._with_retry("eth_call", call) == 42
        assert call.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_with_rpc_error(self, client) -> None:
        call = AsyncMock(side_effect=TimeoutError("slow"))
        with pytest.raises(RPCError, match="after all retries"):
            await client._with_retry("eth_call", call)
        assert call.await_count == 3

    @pytest.mark.asyncio
    async def test_revert_is_not_retried(self, client) -> None:
        call = AsyncMock(side_effect=ContractLogicError("execution reverted"))
        with pytest.raises(ContractCallReverted):
            await client._with_retry("getPool", call)
        assert call.await_count == 1

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self, client) -> None:
        call = AsyncMock(side_effect=KeyError("bug"))
        with pytest.raises(KeyError):
            await client._with_retry("eth_call", call)


class TestReads:
    @pytest.mark.asyncio
    async def test_get_pool(self, client) -> None:
        client._call = AsyncMock(return_value=raw_pool_tuple())

        pool = await client.get_pool(7)

        assert pool.creator == CREATOR
        assert pool.odds == 250
        assert pool.creator_stake == 10**18
        assert pool.title == label("Arsenal vs Chelsea")
        client._call.assert_awaited_once_with(client._pool_core, "getPool", 7)

    @pytest.mark.asyncio
    async def test_get_pool_with_wrong_shape(self, client) -> None:
        client._call = AsyncMock(return_value=(CREATOR, 250))
        with pytest.raises(ContractMismatchError):
            await client.get_pool(7)

    @pytest.mark.asyncio
    async def test_get_cycle(self, client) -> None:
        match = (11, 1_760_000_000, 180, 320, 410, 190, 190, (0, 0))
        client._call = AsyncMock(
            side_effect=[(1_760_000_000, 1_760_086_400, 5 * 10**18, 12, 0, 1, False), [match] * 10]
        )

        cycle = await client.get_cycle(3)

        assert cycle.cycle_id == 3
        assert cycle.slip_count == 12
        assert len(cycle.matches) == 10
        assert cycle.matches[0].to_json()["id"] == "11"

    @pytest.mark.asyncio
    async def test_counts(self, client) -> None:
        client._call = AsyncMock(return_value=12)
        assert await client.get_pool_count() == 12
        assert await client.get_slip_count() == 12
        assert await client.get_current_cycle() == 12


class TestQueryLogs:
    @pytest.mark.asyncio
    async def test_chunks_and_sorts(self, client) -> None:
        client._execute_with_retry = AsyncMock(
            side_effect=[[raw_bet(9, 1), raw_bet(3, 0)], [], [raw_bet(21, 0)]]
        )

        logs = await client.query_logs(POOL_CORE, ["BetPlaced"], 0, 25)

        assert [log.position for log in logs] == [(3, 0), (9, 1), (21, 0)]
        assert all(log.event_name == "BetPlaced" for log in logs)
        windows = [
            (c.args[1]["fromBlock"], c.args[1]["toBlock"])
            for c in client._execute_with_retry.await_args_list
        ]
        assert windows == [(0, 9), (10, 19), (20, 25)]

    @pytest.mark.asyncio
    async def test_undecodable_log_is_skipped(self, client, caplog) -> None:
        broken = raw_bet(5, 1)
        broken["data"] = b"\x00"
        client._execute_with_retry = AsyncMock(return_value=[raw_bet(5, 0), broken, raw_bet(6, 0)])

        with caplog.at_level("ERROR", logger="bitredict_sync.chain.client"):
            logs = await client.query_logs(POOL_CORE, ["BetPlaced"], 0, 9)

        assert [log.position for log in logs] == [(5, 0), (6, 0)]
        assert "Skipping undecodable log BetPlaced" in caplog.text
        assert "index=1" in caplog.text

    @pytest.mark.asyncio
    async def test_argument_filter_reaches_topics(self, client) -> None:
        client._execute_with_retry = AsyncMock(return_value=[])

        await client.query_logs(
            POOL_CORE, ["BetPlaced", "LiquidityAdded"], 100, 105, argument_filters={"poolId": 7}
        )

        params = client._execute_with_retry.await_args.args[1]
        assert params["topics"][1] == Web3.to_hex(encode(["uint256"], [7]))
        assert params["address"] == Web3.to_checksum_address(POOL_CORE)

    @pytest.mark.asyncio
    async def test_unknown_event_name(self, client) -> None:
        with pytest.raises(ContractMismatchError):
            await client.query_logs(POOL_CORE, ["Transfer"], 0, 10)

    def test_subscribe_rejects_unknown_event(self, client) -> None:
        with pytest.raises(ContractMismatchError):
            client.subscribe(POOL_CORE, ["Transfer"], AsyncMock())

    @pytest.mark.asyncio
    async def test_health_check(self, client) -> None:
        client._with_retry = AsyncMock(side_effect=RPCError("down"))
        assert await client.health_check() is False
