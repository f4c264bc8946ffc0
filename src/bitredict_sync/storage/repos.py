"""Repository pattern implementations for data access.

This module provides data access abstractions for pools, bets, liquidity
providers, Oddyssey cycles and slips, reputation, notifications and the
processed-event ledger. Repositories operate on a caller-owned session;
transaction boundaries live in `storage.persistence`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from bitredict_sync.storage.models import (
    BetModel,
    CryptoMarketModel,
    CycleModel,
    FootballMarketModel,
    LiquidityProviderModel,
    NotificationModel,
    PoolModel,
    ProcessedEventModel,
    ReputationActionModel,
    ReputationUserModel,
    SlipModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

POOL_STATUS_ACTIVE = "active"
POOL_STATUS_SETTLED = "settled"
POOL_STATUS_REFUNDED = "refunded"


def _insert(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


# ============================================================================
# DTOs
# ============================================================================


@dataclass
class PoolDTO:
    """Data transfer object for pools."""

    pool_id: int
    creator: str
    odds: int
    creator_stake: int
    event_start_time: int
    event_end_time: int
    total_creator_side_stake: int = 0
    total_bettor_stake: int = 0
    max_bettor_stake: int = 0
    predicted_outcome: str | None = None
    use_bitr: bool = False
    is_private: bool = False
    betting_end_time: int | None = None
    result_timestamp: int | None = None
    arbitration_deadline: int | None = None
    max_bet_per_user: int | None = None
    league: str | None = None
    category: str | None = None
    region: str | None = None
    home_team: str | None = None
    away_team: str | None = None
    title: str | None = None
    oracle_type: int = 0
    market_type: int = 0
    market_id: str | None = None
    is_settled: bool = False
    creator_side_won: bool | None = None
    result: str | None = None
    status: str = POOL_STATUS_ACTIVE
    refund_reason: str | None = None
    boost_tier: int = 0
    boost_expiry: int | None = None
    boost_fee: int | None = None
    booster: str | None = None
    block_number: int | None = None
    tx_hash: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: PoolModel) -> PoolDTO:
        return cls(
            pool_id=model.pool_id,
            creator=model.creator,
            odds=model.odds,
            creator_stake=model.creator_stake,
            event_start_time=model.event_start_time,
            event_end_time=model.event_end_time,
            total_creator_side_stake=model.total_creator_side_stake,
            total_bettor_stake=model.total_bettor_stake,
            max_bettor_stake=model.max_bettor_stake,
            predicted_outcome=model.predicted_outcome,
            use_bitr=model.use_bitr,
            is_private=model.is_private,
            betting_end_time=model.betting_end_time,
            result_timestamp=model.result_timestamp,
            arbitration_deadline=model.arbitration_deadline,
            max_bet_per_user=model.max_bet_per_user,
            league=model.league,
            category=model.category,
            region=model.region,
            home_team=model.home_team,
            away_team=model.away_team,
            title=model.title,
            oracle_type=model.oracle_type,
            market_type=model.market_type,
            market_id=model.market_id,
            is_settled=model.is_settled,
            creator_side_won=model.creator_side_won,
            result=model.result,
            status=model.status,
            refund_reason=model.refund_reason,
            boost_tier=model.boost_tier,
            boost_expiry=model.boost_expiry,
            boost_fee=model.boost_fee,
            booster=model.booster,
            block_number=model.block_number,
            tx_hash=model.tx_hash,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


# Fields a later enrichment may fill in but never erase.
POOL_DESCRIPTIVE_FIELDS: tuple[str, ...] = (
    "creator",
    "odds",
    "creator_stake",
    "predicted_outcome",
    "use_bitr",
    "is_private",
    "event_start_time",
    "event_end_time",
    "betting_end_time",
    "result_timestamp",
    "arbitration_deadline",
    "max_bet_per_user",
    "league",
    "category",
    "region",
    "home_team",
    "away_team",
    "title",
    "oracle_type",
    "market_type",
    "market_id",
    "block_number",
    "tx_hash",
)


@dataclass
class BetDTO:
    """Data transfer object for bets."""

    pool_id: int
    bettor: str
    amount: int
    is_for_outcome: bool
    transaction_hash: str
    log_index: int
    block_number: int = 0
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: BetModel) -> BetDTO:
        return cls(
            pool_id=model.pool_id,
            bettor=model.bettor,
            amount=model.amount,
            is_for_outcome=model.is_for_outcome,
            transaction_hash=model.transaction_hash,
            log_index=model.log_index,
            block_number=model.block_number,
            created_at=model.created_at,
        )


@dataclass
class LiquidityProviderDTO:
    pool_id: int
    lp_address: str
    stake: int
    last_block: int | None = None

    @classmethod
    def from_model(cls, model: LiquidityProviderModel) -> LiquidityProviderDTO:
        return cls(
            pool_id=model.pool_id,
            lp_address=model.lp_address,
            stake=model.stake,
            last_block=model.last_block,
        )


@dataclass
class CycleDTO:
    """Data transfer object for Oddyssey cycles."""

    cycle_id: int
    start_time: int | None = None
    end_time: int | None = None
    matches_count: int = 0
    matches_data: list[dict[str, Any]] | None = None
    prize_pool: int | None = None
    total_slips: int | None = None
    is_resolved: bool = False
    resolved_at: datetime | None = None
    resolution_tx_hash: str | None = None

    @classmethod
    def from_model(cls, model: CycleModel) -> CycleDTO:
        return cls(
            cycle_id=model.cycle_id,
            start_time=model.start_time,
            end_time=model.end_time,
            matches_count=model.matches_count,
            matches_data=model.matches_data,
            prize_pool=model.prize_pool,
            total_slips=model.total_slips,
            is_resolved=model.is_resolved,
            resolved_at=model.resolved_at,
            resolution_tx_hash=model.resolution_tx_hash,
        )


@dataclass
class SlipDTO:
    """Data transfer object for Oddyssey slips."""

    slip_id: int
    cycle_id: int
    player: str
    predictions: list[dict[str, Any]] = field(default_factory=list)
    is_evaluated: bool = False
    is_winner: bool | None = None
    correct_count: int = 0
    final_score: int | None = None
    leaderboard_rank: int | None = None
    prize_claimed: bool = False
    prize_amount: int | None = None
    placed_at: datetime | None = None
    tx_hash: str | None = None

    @classmethod
    def from_model(cls, model: SlipModel) -> SlipDTO:
        return cls(
            slip_id=model.slip_id,
            cycle_id=model.cycle_id,
            player=model.player,
            predictions=list(model.predictions or []),
            is_evaluated=model.is_evaluated,
            is_winner=model.is_winner,
            correct_count=model.correct_count,
            final_score=model.final_score,
            leaderboard_rank=model.leaderboard_rank,
            prize_claimed=model.prize_claimed,
            prize_amount=model.prize_amount,
            placed_at=model.placed_at,
            tx_hash=model.tx_hash,
        )


@dataclass
class ReputationUserDTO:
    user_address: str
    reputation: int
    raw_score: int
    last_active: datetime | None = None
    last_synced_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ReputationUserModel) -> ReputationUserDTO:
        return cls(
            user_address=model.user_address,
            reputation=model.reputation,
            raw_score=model.raw_score,
            last_active=model.last_active,
            last_synced_at=model.last_synced_at,
        )


@dataclass
class ReputationActionDTO:
    """Data transfer object for reputation actions."""

    user_address: str
    action_type: int
    action_name: str
    reputation_delta: int
    transaction_hash: str
    associated_value: int | None = None
    pool_id: int | None = None
    timestamp: int | None = None
    block_number: int | None = None
    source: str | None = None

    @classmethod
    def from_model(cls, model: ReputationActionModel) -> ReputationActionDTO:
        return cls(
            user_address=model.user_address,
            action_type=model.action_type,
            action_name=model.action_name,
            reputation_delta=model.reputation_delta,
            transaction_hash=model.transaction_hash,
            associated_value=model.associated_value,
            pool_id=model.pool_id,
            timestamp=model.timestamp,
            block_number=model.block_number,
            source=model.source,
        )


@dataclass
class NotificationDTO:
    user_address: str
    type: str
    title: str
    message: str
    data: dict[str, Any] | None = None
    read: bool = False
    id: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: NotificationModel) -> NotificationDTO:
        return cls(
            id=model.id,
            user_address=model.user_address,
            type=model.type,
            title=model.title,
            message=model.message,
            data=model.data,
            read=model.read,
            created_at=model.created_at,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "read": self.read,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class BetStats:
    total_bets: int
    total_volume: int
    unique_bettors: int
    pools_with_bets: int


# ============================================================================
# Repositories
# ============================================================================


class PoolRepository:
    """Repository for pool projections."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_model(self, pool_id: int, *, for_update: bool = False) -> PoolModel | None:
        stmt = select(PoolModel).where(PoolModel.pool_id == pool_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, pool_id: int) -> PoolDTO | None:
        model = await self.get_model(pool_id)
        return PoolDTO.from_model(model) if model else None

    async def insert(self, dto: PoolDTO) -> PoolModel:
        model = PoolModel(
            pool_id=dto.pool_id,
            creator=dto.creator.lower(),
            odds=dto.odds,
            creator_stake=dto.creator_stake,
            total_creator_side_stake=dto.total_creator_side_stake,
            total_bettor_stake=dto.total_bettor_stake,
            max_bettor_stake=dto.max_bettor_stake,
            max_bet_per_user=dto.max_bet_per_user,
            predicted_outcome=dto.predicted_outcome,
            use_bitr=dto.use_bitr,
            is_private=dto.is_private,
            event_start_time=dto.event_start_time,
            event_end_time=dto.event_end_time,
            betting_end_time=dto.betting_end_time,
            result_timestamp=dto.result_timestamp,
            arbitration_deadline=dto.arbitration_deadline,
            league=dto.league,
            category=dto.category,
            region=dto.region,
            home_team=dto.home_team,
            away_team=dto.away_team,
            title=dto.title,
            oracle_type=dto.oracle_type,
            market_type=dto.market_type,
            market_id=dto.market_id,
            is_settled=dto.is_settled,
            creator_side_won=dto.creator_side_won,
            result=dto.result,
            status=dto.status,
            boost_tier=dto.boost_tier,
            boost_expiry=dto.boost_expiry,
            boost_fee=dto.boost_fee,
            booster=dto.booster,
            block_number=dto.block_number,
            tx_hash=dto.tx_hash,
        )
        self.session.add(model)
        await self.session.flush()
        return model

    async def max_pool_id(self) -> int | None:
        result = await self.session.execute(select(sa.func.max(PoolModel.pool_id)))
        return result.scalar_one_or_none()

    async def list_active(self, limit: int) -> list[PoolDTO]:
        """Most recently created open pools."""
        stmt = (
            select(PoolModel)
            .where(PoolModel.status == POOL_STATUS_ACTIVE)
            .order_by(PoolModel.pool_id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [PoolDTO.from_model(m) for m in result.scalars().all()]


class BetRepository:
    """Repository for individual bets."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def exists_tx(self, transaction_hash: str, log_index: int | None = None) -> bool:
        stmt = select(BetModel.id).where(BetModel.transaction_hash == transaction_hash.lower())
        if log_index is not None:
            stmt = stmt.where(BetModel.log_index == log_index)
        result = await self.session.execute(stmt.limit(1))
        return result.first() is not None

    async def exists_same_bet(
        self, *, pool_id: int, bettor: str, amount: int, block_number: int
    ) -> bool:
        """Match on (pool, bettor, amount, block) for re-delivered bets with a different key."""
        stmt = (
            select(BetModel.id)
            .where(BetModel.pool_id == pool_id)
            .where(BetModel.bettor == bettor.lower())
            .where(BetModel.amount == amount)
            .where(BetModel.block_number == block_number)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.first() is not None

    async def insert_ignore(self, dto: BetDTO) -> bool:
        """Insert the bet; return False if (transaction_hash, log_index) already exists."""
        stmt = _insert(self.session, BetModel).values(
            pool_id=dto.pool_id,
            bettor=dto.bettor.lower(),
            amount=dto.amount,
            is_for_outcome=dto.is_for_outcome,
            transaction_hash=dto.transaction_hash.lower(),
            log_index=dto.log_index,
            block_number=dto.block_number,
            created_at=dto.created_at or datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["transaction_hash", "log_index"])
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def list_for_pool(self, pool_id: int) -> list[BetDTO]:
        stmt = select(BetModel).where(BetModel.pool_id == pool_id).order_by(BetModel.id)
        result = await self.session.execute(stmt)
        return [BetDTO.from_model(m) for m in result.scalars().all()]

    async def total_for_pool(self, pool_id: int) -> int:
        # Summed in Python: SQLite stores uint256 as text.
        result = await self.session.execute(select(BetModel.amount).where(BetModel.pool_id == pool_id))
        return sum(result.scalars().all(), 0)

    async def count_for_pool(self, pool_id: int) -> int:
        result = await self.session.execute(
            select(sa.func.count(BetModel.id)).where(BetModel.pool_id == pool_id)
        )
        return int(result.scalar_one())

    async def participants(self, pool_id: int) -> int:
        """Distinct bettors on the outcome side."""
        result = await self.session.execute(
            select(sa.func.count(sa.distinct(BetModel.bettor)))
            .where(BetModel.pool_id == pool_id)
            .where(BetModel.is_for_outcome.is_(True))
        )
        return int(result.scalar_one())

    async def distinct_bettors(self, pool_id: int) -> dict[str, int]:
        """Map each bettor of a pool to their total stake."""
        result = await self.session.execute(
            select(BetModel.bettor, BetModel.amount).where(BetModel.pool_id == pool_id)
        )
        totals: dict[str, int] = {}
        for bettor, amount in result.all():
            totals[bettor] = totals.get(bettor, 0) + amount
        return totals

    async def stats(self) -> BetStats:
        result = await self.session.execute(select(BetModel.amount))
        amounts = result.scalars().all()
        bettors = await self.session.execute(select(sa.func.count(sa.distinct(BetModel.bettor))))
        pools = await self.session.execute(select(sa.func.count(sa.distinct(BetModel.pool_id))))
        return BetStats(
            total_bets=len(amounts),
            total_volume=sum(amounts, 0),
            unique_bettors=int(bettors.scalar_one()),
            pools_with_bets=int(pools.scalar_one()),
        )


class LiquidityRepository:
    """Repository for aggregated LP entries."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, pool_id: int, lp_address: str) -> LiquidityProviderDTO | None:
        model = await self.session.get(LiquidityProviderModel, (pool_id, lp_address.lower()))
        return LiquidityProviderDTO.from_model(model) if model else None

    async def add_stake(
        self, pool_id: int, lp_address: str, amount: int, *, block_number: int | None = None
    ) -> int:
        """Accumulate `amount` on the LP row; return the new stake."""
        address = lp_address.lower()
        stmt = (
            select(LiquidityProviderModel)
            .where(LiquidityProviderModel.pool_id == pool_id)
            .where(LiquidityProviderModel.lp_address == address)
            .with_for_update()
        )
        model = (await self.session.execute(stmt)).scalar_one_or_none()
        if model is None:
            model = LiquidityProviderModel(
                pool_id=pool_id, lp_address=address, stake=amount, last_block=block_number
            )
            self.session.add(model)
        else:
            model.stake = model.stake + amount
            if block_number is not None:
                model.last_block = max(model.last_block or 0, block_number)
        await self.session.flush()
        return model.stake

    async def list_for_pool(self, pool_id: int) -> list[LiquidityProviderDTO]:
        result = await self.session.execute(
            select(LiquidityProviderModel).where(LiquidityProviderModel.pool_id == pool_id)
        )
        return [LiquidityProviderDTO.from_model(m) for m in result.scalars().all()]

    async def total_for_pool(self, pool_id: int) -> int:
        result = await self.session.execute(
            select(LiquidityProviderModel.stake).where(LiquidityProviderModel.pool_id == pool_id)
        )
        return sum(result.scalars().all(), 0)


class CycleRepository:
    """Repository for Oddyssey cycles."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_model(self, cycle_id: int, *, for_update: bool = False) -> CycleModel | None:
        stmt = select(CycleModel).where(CycleModel.cycle_id == cycle_id)
        if for_update:
            stmt = stmt.with_for_update()
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def get(self, cycle_id: int) -> CycleDTO | None:
        model = await self.get_model(cycle_id)
        return CycleDTO.from_model(model) if model else None

    async def exists(self, cycle_id: int) -> bool:
        result = await self.session.execute(
            select(CycleModel.cycle_id).where(CycleModel.cycle_id == cycle_id)
        )
        return result.first() is not None

    async def max_cycle_id(self) -> int | None:
        result = await self.session.execute(select(sa.func.max(CycleModel.cycle_id)))
        return result.scalar_one_or_none()


class SlipRepository:
    """Repository for Oddyssey slips."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_model(self, slip_id: int, *, for_update: bool = False) -> SlipModel | None:
        stmt = select(SlipModel).where(SlipModel.slip_id == slip_id)
        if for_update:
            stmt = stmt.with_for_update()
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def get(self, slip_id: int) -> SlipDTO | None:
        model = await self.get_model(slip_id)
        return SlipDTO.from_model(model) if model else None

    async def max_slip_id(self) -> int | None:
        result = await self.session.execute(select(sa.func.max(SlipModel.slip_id)))
        return result.scalar_one_or_none()


class ReputationRepository:
    """Repository for reputation users and the action log."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_user_model(
        self, user_address: str, *, for_update: bool = False
    ) -> ReputationUserModel | None:
        stmt = select(ReputationUserModel).where(
            ReputationUserModel.user_address == user_address.lower()
        )
        if for_update:
            stmt = stmt.with_for_update()
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def get_user(self, user_address: str) -> ReputationUserDTO | None:
        model = await self.get_user_model(user_address)
        return ReputationUserDTO.from_model(model) if model else None

    async def action_exists(self, transaction_hash: str, action_type: int, user_address: str) -> bool:
        stmt = (
            select(ReputationActionModel.id)
            .where(ReputationActionModel.transaction_hash == transaction_hash.lower())
            .where(ReputationActionModel.action_type == action_type)
            .where(ReputationActionModel.user_address == user_address.lower())
            .limit(1)
        )
        return (await self.session.execute(stmt)).first() is not None

    async def insert_action(self, dto: ReputationActionDTO) -> None:
        self.session.add(
            ReputationActionModel(
                user_address=dto.user_address.lower(),
                action_type=dto.action_type,
                action_name=dto.action_name,
                reputation_delta=dto.reputation_delta,
                associated_value=dto.associated_value,
                pool_id=dto.pool_id,
                timestamp=dto.timestamp,
                block_number=dto.block_number,
                transaction_hash=dto.transaction_hash.lower(),
                source=dto.source,
            )
        )
        await self.session.flush()

    async def list_actions(self, user_address: str) -> list[ReputationActionDTO]:
        stmt = (
            select(ReputationActionModel)
            .where(ReputationActionModel.user_address == user_address.lower())
            .order_by(ReputationActionModel.id)
        )
        result = await self.session.execute(stmt)
        return [ReputationActionDTO.from_model(m) for m in result.scalars().all()]


class ProcessedEventRepository:
    """Ledger of (consumer, tx, log_index) keys that have been fully applied."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def is_recorded(self, consumer: str, transaction_hash: str, log_index: int) -> bool:
        model = await self.session.get(
            ProcessedEventModel, (consumer, transaction_hash.lower(), log_index)
        )
        return model is not None

    async def claim(
        self,
        consumer: str,
        transaction_hash: str,
        log_index: int,
        *,
        event_name: str,
        block_number: int | None = None,
    ) -> bool:
        """Record the key; return False if it was already present."""
        stmt = _insert(self.session, ProcessedEventModel).values(
            consumer=consumer,
            transaction_hash=transaction_hash.lower(),
            log_index=log_index,
            event_name=event_name,
            block_number=block_number,
            processed_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(
            index_elements=["consumer", "transaction_hash", "log_index"]
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)


class NotificationRepository:
    """Repository for user notifications."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: NotificationDTO) -> NotificationDTO:
        model = NotificationModel(
            user_address=dto.user_address.lower(),
            type=dto.type,
            title=dto.title,
            message=dto.message,
            data=dto.data,
            read=dto.read,
        )
        self.session.add(model)
        await self.session.flush()
        return NotificationDTO.from_model(model)

    async def unread_count(self, user_address: str) -> int:
        result = await self.session.execute(
            select(sa.func.count(NotificationModel.id))
            .where(NotificationModel.user_address == user_address.lower())
            .where(NotificationModel.read.is_(False))
        )
        return int(result.scalar_one())

    async def list_for_user(self, user_address: str) -> list[NotificationDTO]:
        result = await self.session.execute(
            select(NotificationModel)
            .where(NotificationModel.user_address == user_address.lower())
            .order_by(NotificationModel.id)
        )
        return [NotificationDTO.from_model(m) for m in result.scalars().all()]


class GuidedMarketRepository:
    """Links guided-oracle pools to the tables the oracle bots resolve from."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert_football(
        self,
        *,
        pool_id: int,
        market_id: str,
        outcome_type: str,
        predicted_outcome: str,
        end_time: int | None,
    ) -> None:
        now = datetime.now(UTC)
        values = {
            "pool_id": pool_id,
            "fixture_id": market_id[:50],
            "market_id": market_id[:100],
            "market_type": "GUIDED",
            "outcome_type": outcome_type,
            "predicted_outcome": predicted_outcome[:50],
            "end_time": end_time,
        }
        stmt = _insert(self.session, FootballMarketModel).values(
            **values, resolved=False, created_at=now, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["pool_id"],
            set_={
                "fixture_id": stmt.excluded.fixture_id,
                "market_id": stmt.excluded.market_id,
                "outcome_type": stmt.excluded.outcome_type,
                "predicted_outcome": stmt.excluded.predicted_outcome,
                "end_time": stmt.excluded.end_time,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)

    async def upsert_crypto(
        self,
        *,
        pool_id: int,
        market_id: str,
        coinpaprika_id: str,
        target_price: Decimal,
        direction: str,
        end_time: int | None,
    ) -> None:
        now = datetime.now(UTC)
        stmt = _insert(self.session, CryptoMarketModel).values(
            pool_id=pool_id,
            market_id=market_id[:100],
            coinpaprika_id=coinpaprika_id,
            target_price=target_price,
            direction=direction,
            end_time=end_time,
            resolved=False,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["pool_id"],
            set_={
                "market_id": stmt.excluded.market_id,
                "coinpaprika_id": stmt.excluded.coinpaprika_id,
                "target_price": stmt.excluded.target_price,
                "direction": stmt.excluded.direction,
                "end_time": stmt.excluded.end_time,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)

    async def get_football(self, pool_id: int) -> FootballMarketModel | None:
        return await self.session.get(FootballMarketModel, pool_id)

    async def get_crypto(self, pool_id: int) -> CryptoMarketModel | None:
        return await self.session.get(CryptoMarketModel, pool_id)
