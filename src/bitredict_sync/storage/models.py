"""SQLAlchemy models for persistent storage.

This module defines the relational projection of on-chain state: pools,
bets, liquidity providers, Oddyssey cycles and slips, reputation, plus the
processed-event ledger used for idempotent replays.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from bitredict_sync.storage.types import Uint256

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
_AutoId = BigInteger().with_variant(Integer, "sqlite")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class PoolModel(Base):
    """Projection of one prediction pool."""

    __tablename__ = "pools"

    pool_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    creator: Mapped[str] = mapped_column(String(42), nullable=False)
    predicted_outcome: Mapped[str | None] = mapped_column(Text, nullable=True)
    odds: Mapped[int] = mapped_column(Integer, nullable=False)

    creator_stake: Mapped[int] = mapped_column(Uint256, nullable=False, default=0)
    total_creator_side_stake: Mapped[int] = mapped_column(Uint256, nullable=False, default=0)
    total_bettor_stake: Mapped[int] = mapped_column(Uint256, nullable=False, default=0)
    max_bettor_stake: Mapped[int] = mapped_column(Uint256, nullable=False, default=0)
    max_bet_per_user: Mapped[int | None] = mapped_column(Uint256, nullable=True)

    use_bitr: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_private: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Unix seconds; NULL means unset.
    event_start_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    event_end_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    betting_end_time: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    result_timestamp: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    arbitration_deadline: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    league: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(Text, nullable=True)
    region: Mapped[str | None] = mapped_column(Text, nullable=True)
    home_team: Mapped[str | None] = mapped_column(Text, nullable=True)
    away_team: Mapped[str | None] = mapped_column(Text, nullable=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)

    oracle_type: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    market_type: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    market_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_settled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    creator_side_won: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    result: Mapped[str | None] = mapped_column(String(66), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    boost_tier: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    boost_expiry: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    boost_fee: Mapped[int | None] = mapped_column(Uint256, nullable=True)
    booster: Mapped[str | None] = mapped_column(String(42), nullable=True)

    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_pools_creator", "creator"),
        Index("idx_pools_status", "status"),
        Index("idx_pools_category", "category"),
    )


class BetModel(Base):
    """One on-chain BetPlaced event."""

    __tablename__ = "bets"

    id: Mapped[int] = mapped_column(_AutoId, primary_key=True, autoincrement=True)
    pool_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    bettor: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[int] = mapped_column(Uint256, nullable=False)
    is_for_outcome: Mapped[bool] = mapped_column(Boolean, nullable=False)

    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("transaction_hash", "log_index", name="uq_bets_tx_log"),
        Index("idx_bets_pool", "pool_id"),
        Index("idx_bets_bettor", "bettor"),
        Index("idx_bets_dedupe", "pool_id", "bettor", "amount", "block_number"),
    )


class LiquidityProviderModel(Base):
    """Accumulated creator-side liquidity per (pool, provider)."""

    __tablename__ = "pool_liquidity_providers"

    pool_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    lp_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    stake: Mapped[int] = mapped_column(Uint256, nullable=False, default=0)
    last_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class CycleModel(Base):
    """One Oddyssey cycle."""

    __tablename__ = "oddyssey_cycles"

    cycle_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    start_time: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    end_time: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    matches_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    matches_data: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    prize_pool: Mapped[int | None] = mapped_column(Uint256, nullable=True)
    total_slips: Mapped[int | None] = mapped_column(Integer, nullable=True)

    is_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class SlipModel(Base):
    """One Oddyssey slip."""

    __tablename__ = "oddyssey_slips"

    slip_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    cycle_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    player: Mapped[str] = mapped_column(String(42), nullable=False)
    predictions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)

    is_evaluated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_winner: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    correct_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    final_score: Mapped[int | None] = mapped_column(Uint256, nullable=True)
    leaderboard_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)

    prize_claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    prize_amount: Mapped[int | None] = mapped_column(Uint256, nullable=True)

    placed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    evaluated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_slips_cycle", "cycle_id"),
        Index("idx_slips_player", "player"),
    )


class ReputationUserModel(Base):
    """Derived reputation score for one address.

    `raw_score` is the unclamped running sum; `reputation` is always the
    clamped view of it.
    """

    __tablename__ = "reputation_users"

    user_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    reputation: Mapped[int] = mapped_column(Integer, nullable=False, default=40)
    raw_score: Mapped[int] = mapped_column(Integer, nullable=False, default=40)
    last_active: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class ReputationActionModel(Base):
    """Append-only reputation action log."""

    __tablename__ = "reputation_actions"

    id: Mapped[int] = mapped_column(_AutoId, primary_key=True, autoincrement=True)
    user_address: Mapped[str] = mapped_column(String(42), nullable=False)
    action_type: Mapped[int] = mapped_column(Integer, nullable=False)
    action_name: Mapped[str] = mapped_column(String(64), nullable=False)
    reputation_delta: Mapped[int] = mapped_column(Integer, nullable=False)
    associated_value: Mapped[int | None] = mapped_column(Uint256, nullable=True)
    pool_id: Mapped[int | None] = mapped_column(Uint256, nullable=True)
    timestamp: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    source: Mapped[str | None] = mapped_column(String(16), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "transaction_hash",
            "action_type",
            "user_address",
            name="uq_reputation_actions_tx_action_user",
        ),
        Index("idx_reputation_actions_user", "user_address"),
    )


class ProcessedEventModel(Base):
    """Ledger of logs a consumer has fully applied."""

    __tablename__ = "processed_events"

    consumer: Mapped[str] = mapped_column(String(32), primary_key=True)
    transaction_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    log_index: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    event_name: Mapped[str] = mapped_column(String(64), nullable=False)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_processed_events_block", "block_number"),)


class NotificationModel(Base):
    """User-facing notification row."""

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(_AutoId, primary_key=True, autoincrement=True)
    user_address: Mapped[str] = mapped_column(String(42), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_notifications_user_read", "user_address", "read"),)


class FootballMarketModel(Base):
    """Guided football pool awaiting oracle resolution."""

    __tablename__ = "football_prediction_markets"

    pool_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    fixture_id: Mapped[str] = mapped_column(String(50), nullable=False)
    market_id: Mapped[str] = mapped_column(String(100), nullable=False)
    market_type: Mapped[str] = mapped_column(String(16), nullable=False, default="GUIDED")
    outcome_type: Mapped[str] = mapped_column(String(8), nullable=False)
    predicted_outcome: Mapped[str] = mapped_column(String(50), nullable=False)
    end_time: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class CryptoMarketModel(Base):
    """Guided crypto price pool awaiting oracle resolution."""

    __tablename__ = "crypto_prediction_markets"

    pool_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    market_id: Mapped[str] = mapped_column(String(100), nullable=False)
    coinpaprika_id: Mapped[str] = mapped_column(String(64), nullable=False)
    target_price: Mapped[Decimal] = mapped_column(Numeric(30, 8), nullable=False)
    direction: Mapped[str] = mapped_column(String(8), nullable=False)
    end_time: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
