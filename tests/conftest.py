"""Pytest configuration and fixtures."""

from __future__ import annotations

import itertools
from collections.abc import Callable
from dataclasses import replace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from bitredict_sync.chain.client import ChainClient, ContractAddresses
from bitredict_sync.chain.logs import LogSubscription, LogView
from bitredict_sync.chain.structs import PoolStruct
from bitredict_sync.sinks.notifier import Notifier
from bitredict_sync.sinks.streams import DataStreamPublisher
from bitredict_sync.storage.database import DatabaseManager
from bitredict_sync.storage.models import Base
from bitredict_sync.storage.persistence import EventStore
from bitredict_sync.storage.repos import PoolDTO
from bitredict_sync.sync.base import SyncOptions

TOKEN = 10**18

POOL_CORE = "0x" + "1" * 40
ODDYSSEY = "0x" + "2" * 40
COMBO_POOLS = "0x" + "3" * 40
BOOST_SYSTEM = "0x" + "4" * 40

CREATOR = "0x" + "c" * 40
BETTOR = "0x" + "b" * 40
PROVIDER = "0x" + "d" * 40

EVENT_START = 1_760_000_000


def label(text: str) -> bytes:
    """bytes32 label as stored on chain."""
    return text.encode("utf-8").ljust(32, b"\x00")


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def db(async_engine) -> DatabaseManager:
    return DatabaseManager.from_engine(async_engine)


@pytest.fixture
def store(db: DatabaseManager) -> EventStore:
    return EventStore(db)


# ============================================================================
# Domain objects
# ============================================================================


@pytest.fixture
def make_pool_struct() -> Callable[..., PoolStruct]:
    """Factory for on-chain pool structs: 100 tokens at odds 2.00 by default."""
    base = PoolStruct(
        creator=CREATOR,
        odds=200,
        flags=0,
        oracle_type=1,
        market_type=0,
        creator_stake=100 * TOKEN,
        total_creator_side_stake=100 * TOKEN,
        max_bettor_stake=100 * TOKEN,
        total_bettor_stake=0,
        predicted_outcome=label("Home wins"),
        result=b"\x00" * 32,
        event_start_time=EVENT_START,
        event_end_time=EVENT_START + 7200,
        betting_end_time=EVENT_START - 60,
        result_timestamp=0,
        arbitration_deadline=0,
        max_bet_per_user=0,
        league=label("Premier League"),
        category=label("football"),
        region=label("England"),
        home_team=label("Arsenal"),
        away_team=label("Chelsea"),
        title=label("Arsenal vs Chelsea"),
        market_id="",
    )

    def _make(**overrides: Any) -> PoolStruct:
        return replace(base, **overrides)

    return _make


@pytest.fixture
def make_pool_dto() -> Callable[..., PoolDTO]:
    def _make(pool_id: int = 1, **overrides: Any) -> PoolDTO:
        values: dict[str, Any] = {
            "pool_id": pool_id,
            "creator": CREATOR,
            "odds": 200,
            "creator_stake": 100 * TOKEN,
            "event_start_time": EVENT_START,
            "event_end_time": EVENT_START + 7200,
            "total_creator_side_stake": 100 * TOKEN,
            "max_bettor_stake": 100 * TOKEN,
            "title": "Arsenal vs Chelsea",
            "category": "football",
            "oracle_type": 1,
            "block_number": 50,
        }
        values.update(overrides)
        return PoolDTO(**values)

    return _make


@pytest.fixture
def make_log() -> Callable[..., LogView]:
    """Factory for decoded logs; every call gets a fresh transaction hash."""
    counter = itertools.count(1)

    def _make(
        event_name: str,
        *,
        address: str = POOL_CORE,
        tx: str | None = None,
        block: int = 100,
        log_index: int = 0,
        **arguments: Any,
    ) -> LogView:
        return LogView(
            event_name=event_name,
            address=address,
            transaction_hash=tx or "0x" + f"{next(counter):064x}",
            block_number=block,
            log_index=log_index,
            arguments=arguments,
        )

    return _make


# ============================================================================
# Collaborators
# ============================================================================


@pytest.fixture
def contracts() -> ContractAddresses:
    return ContractAddresses(pool_core=POOL_CORE, oddyssey=ODDYSSEY)


@pytest.fixture
def mock_chain(contracts: ContractAddresses) -> MagicMock:
    """Chain client double with an empty chain at block 10_000."""
    chain = MagicMock(spec=ChainClient)
    chain.contracts = contracts
    chain.current_block = AsyncMock(return_value=10_000)
    chain.query_logs = AsyncMock(return_value=[])
    chain.get_pool_count = AsyncMock(return_value=0)
    chain.get_slip_count = AsyncMock(return_value=0)
    chain.get_current_cycle = AsyncMock(return_value=0)
    chain.subscribe = MagicMock(side_effect=lambda *_a, **_k: MagicMock(spec=LogSubscription))
    return chain


@pytest.fixture
def mock_broadcaster() -> MagicMock:
    broadcaster = MagicMock()
    broadcaster.broadcast = AsyncMock(return_value=1)
    return broadcaster


@pytest.fixture
def mock_publisher() -> MagicMock:
    publisher = MagicMock(spec=DataStreamPublisher)
    publisher.publish = AsyncMock(return_value=True)
    return publisher


@pytest.fixture
def mock_notifier() -> MagicMock:
    notifier = MagicMock(spec=Notifier)
    notifier.notify = AsyncMock(return_value=None)
    return notifier


@pytest.fixture
def sync_options() -> SyncOptions:
    """No background retries, so every outcome is visible synchronously."""
    return SyncOptions(
        max_retries=0,
        retry_delay_seconds=0.01,
        fallback_interval_seconds=3600,
        lookback_blocks=1000,
        sink_timeout_seconds=5.0,
        shutdown_grace_seconds=1.0,
        audit_pool_limit=10,
    )


@pytest.fixture
def service_kwargs(
    mock_broadcaster: MagicMock,
    mock_publisher: MagicMock,
    mock_notifier: MagicMock,
    sync_options: SyncOptions,
) -> dict[str, Any]:
    return {
        "broadcaster": mock_broadcaster,
        "publisher": mock_publisher,
        "notifier": mock_notifier,
        "options": sync_options,
    }
