"""Initial schema for pools, bets, Oddyssey, reputation and notifications.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# uint256 wei amounts
WEI = sa.Numeric(78, 0)


def upgrade() -> None:
    # Pools table
    op.create_table(
        "pools",
        sa.Column("pool_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("creator", sa.String(42), nullable=False),
        sa.Column("predicted_outcome", sa.Text(), nullable=True),
        sa.Column("odds", sa.Integer(), nullable=False),
        sa.Column("creator_stake", WEI, nullable=False),
        sa.Column("total_creator_side_stake", WEI, nullable=False),
        sa.Column("total_bettor_stake", WEI, nullable=False),
        sa.Column("max_bettor_stake", WEI, nullable=False),
        sa.Column("max_bet_per_user", WEI, nullable=True),
        sa.Column("use_bitr", sa.Boolean(), nullable=False),
        sa.Column("is_private", sa.Boolean(), nullable=False),
        sa.Column("event_start_time", sa.BigInteger(), nullable=False),
        sa.Column("event_end_time", sa.BigInteger(), nullable=False),
        sa.Column("betting_end_time", sa.BigInteger(), nullable=True),
        sa.Column("result_timestamp", sa.BigInteger(), nullable=True),
        sa.Column("arbitration_deadline", sa.BigInteger(), nullable=True),
        sa.Column("league", sa.Text(), nullable=True),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("region", sa.Text(), nullable=True),
        sa.Column("home_team", sa.Text(), nullable=True),
        sa.Column("away_team", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("oracle_type", sa.Integer(), nullable=False),
        sa.Column("market_type", sa.Integer(), nullable=False),
        sa.Column("market_id", sa.Text(), nullable=True),
        sa.Column("is_settled", sa.Boolean(), nullable=False),
        sa.Column("creator_side_won", sa.Boolean(), nullable=True),
        sa.Column("result", sa.String(66), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("boost_tier", sa.Integer(), nullable=False),
        sa.Column("boost_expiry", sa.BigInteger(), nullable=True),
        sa.Column("boost_fee", WEI, nullable=True),
        sa.Column("booster", sa.String(42), nullable=True),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("tx_hash", sa.String(66), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("pool_id"),
    )
    op.create_index("idx_pools_creator", "pools", ["creator"])
    op.create_index("idx_pools_status", "pools", ["status"])
    op.create_index("idx_pools_category", "pools", ["category"])

    # Bets table
    op.create_table(
        "bets",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("pool_id", sa.BigInteger(), nullable=False),
        sa.Column("bettor", sa.String(42), nullable=False),
        sa.Column("amount", WEI, nullable=False),
        sa.Column("is_for_outcome", sa.Boolean(), nullable=False),
        sa.Column("transaction_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("transaction_hash", "log_index", name="uq_bets_tx_log"),
    )
    op.create_index("idx_bets_pool", "bets", ["pool_id"])
    op.create_index("idx_bets_bettor", "bets", ["bettor"])
    op.create_index("idx_bets_dedupe", "bets", ["pool_id", "bettor", "amount", "block_number"])

    # Liquidity providers table
    op.create_table(
        "pool_liquidity_providers",
        sa.Column("pool_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("lp_address", sa.String(42), nullable=False),
        sa.Column("stake", WEI, nullable=False),
        sa.Column("last_block", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("pool_id", "lp_address"),
    )

    # Oddyssey cycles table
    op.create_table(
        "oddyssey_cycles",
        sa.Column("cycle_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("start_time", sa.BigInteger(), nullable=True),
        sa.Column("end_time", sa.BigInteger(), nullable=True),
        sa.Column("matches_count", sa.Integer(), nullable=False),
        sa.Column("matches_data", sa.JSON(), nullable=True),
        sa.Column("prize_pool", WEI, nullable=True),
        sa.Column("total_slips", sa.Integer(), nullable=True),
        sa.Column("is_resolved", sa.Boolean(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_tx_hash", sa.String(66), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("cycle_id"),
    )

    # Oddyssey slips table
    op.create_table(
        "oddyssey_slips",
        sa.Column("slip_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("cycle_id", sa.BigInteger(), nullable=False),
        sa.Column("player", sa.String(42), nullable=False),
        sa.Column("predictions", sa.JSON(), nullable=False),
        sa.Column("is_evaluated", sa.Boolean(), nullable=False),
        sa.Column("is_winner", sa.Boolean(), nullable=True),
        sa.Column("correct_count", sa.Integer(), nullable=False),
        sa.Column("final_score", WEI, nullable=True),
        sa.Column("leaderboard_rank", sa.Integer(), nullable=True),
        sa.Column("prize_claimed", sa.Boolean(), nullable=False),
        sa.Column("prize_amount", WEI, nullable=True),
        sa.Column("placed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("evaluated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tx_hash", sa.String(66), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("slip_id"),
    )
    op.create_index("idx_slips_cycle", "oddyssey_slips", ["cycle_id"])
    op.create_index("idx_slips_player", "oddyssey_slips", ["player"])

    # Reputation tables
    op.create_table(
        "reputation_users",
        sa.Column("user_address", sa.String(42), nullable=False),
        sa.Column("reputation", sa.Integer(), nullable=False),
        sa.Column("raw_score", sa.Integer(), nullable=False),
        sa.Column("last_active", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_address"),
    )
    op.create_table(
        "reputation_actions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("user_address", sa.String(42), nullable=False),
        sa.Column("action_type", sa.Integer(), nullable=False),
        sa.Column("action_name", sa.String(64), nullable=False),
        sa.Column("reputation_delta", sa.Integer(), nullable=False),
        sa.Column("associated_value", WEI, nullable=True),
        sa.Column("pool_id", WEI, nullable=True),
        sa.Column("timestamp", sa.BigInteger(), nullable=True),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("transaction_hash", sa.String(66), nullable=False),
        sa.Column("source", sa.String(16), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "transaction_hash",
            "action_type",
            "user_address",
            name="uq_reputation_actions_tx_action_user",
        ),
    )
    op.create_index("idx_reputation_actions_user", "reputation_actions", ["user_address"])

    # Processed-event ledger
    op.create_table(
        "processed_events",
        sa.Column("consumer", sa.String(32), nullable=False),
        sa.Column("transaction_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("event_name", sa.String(64), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("consumer", "transaction_hash", "log_index"),
    )
    op.create_index("idx_processed_events_block", "processed_events", ["block_number"])

    # Notifications table
    op.create_table(
        "notifications",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("user_address", sa.String(42), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=True),
        sa.Column("read", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_notifications_user_read", "notifications", ["user_address", "read"])

    # Guided market tables
    op.create_table(
        "football_prediction_markets",
        sa.Column("pool_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("fixture_id", sa.String(50), nullable=False),
        sa.Column("market_id", sa.String(100), nullable=False),
        sa.Column("market_type", sa.String(16), nullable=False),
        sa.Column("outcome_type", sa.String(8), nullable=False),
        sa.Column("predicted_outcome", sa.String(50), nullable=False),
        sa.Column("end_time", sa.BigInteger(), nullable=True),
        sa.Column("resolved", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("pool_id"),
    )
    op.create_table(
        "crypto_prediction_markets",
        sa.Column("pool_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("market_id", sa.String(100), nullable=False),
        sa.Column("coinpaprika_id", sa.String(64), nullable=False),
        sa.Column("target_price", sa.Numeric(30, 8), nullable=False),
        sa.Column("direction", sa.String(8), nullable=False),
        sa.Column("end_time", sa.BigInteger(), nullable=True),
        sa.Column("resolved", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("pool_id"),
    )


def downgrade() -> None:
    op.drop_table("crypto_prediction_markets")
    op.drop_table("football_prediction_markets")
    op.drop_index("idx_notifications_user_read", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("idx_processed_events_block", table_name="processed_events")
    op.drop_table("processed_events")
    op.drop_index("idx_reputation_actions_user", table_name="reputation_actions")
    op.drop_table("reputation_actions")
    op.drop_table("reputation_users")
    op.drop_index("idx_slips_player", table_name="oddyssey_slips")
    op.drop_index("idx_slips_cycle", table_name="oddyssey_slips")
    op.drop_table("oddyssey_slips")
    op.drop_table("oddyssey_cycles")
    op.drop_table("pool_liquidity_providers")
    op.drop_index("idx_bets_dedupe", table_name="bets")
    op.drop_index("idx_bets_bettor", table_name="bets")
    op.drop_index("idx_bets_pool", table_name="bets")
    op.drop_table("bets")
    op.drop_index("idx_pools_category", table_name="pools")
    op.drop_index("idx_pools_status", table_name="pools")
    op.drop_index("idx_pools_creator", table_name="pools")
    op.drop_table("pools")
