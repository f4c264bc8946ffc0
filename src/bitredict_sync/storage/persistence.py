"""Event persistence layer.

`EventStore` is the only component that mutates the projection. Each public
operation runs in one transaction; pool, slip, cycle and reputation rows are
locked with SELECT ... FOR UPDATE before any derived aggregate is recomputed,
which serializes writers on the same key.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from bitredict_sync.pool_math import PoolProgress, compute_progress, recompute_max_bettor_stake
from bitredict_sync.storage.models import CycleModel, PoolModel, ReputationUserModel, SlipModel
from bitredict_sync.storage.repos import (
    POOL_DESCRIPTIVE_FIELDS,
    POOL_STATUS_ACTIVE,
    POOL_STATUS_REFUNDED,
    POOL_STATUS_SETTLED,
    BetDTO,
    BetRepository,
    BetStats,
    CycleDTO,
    CycleRepository,
    GuidedMarketRepository,
    LiquidityRepository,
    NotificationDTO,
    NotificationRepository,
    PoolDTO,
    PoolRepository,
    ProcessedEventRepository,
    ReputationActionDTO,
    ReputationRepository,
    ReputationUserDTO,
    SlipDTO,
    SlipRepository,
)

if TYPE_CHECKING:
    from bitredict_sync.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

ZERO_HASH = "0x" + "00" * 32

REPUTATION_DEFAULT = 40
REPUTATION_MIN = 0
REPUTATION_MAX = 500

# Ledger consumer that owns LiquidityAdded application across services.
LP_LEDGER = "lp_ledger"


class PersistenceError(Exception):
    """Base exception for persistence failures."""


class EntityNotFoundError(PersistenceError):
    """A mutation targeted a row that has not been projected yet."""

    def __init__(self, entity: str, key: object) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} {key} not found")


def clamp_reputation(raw: int) -> int:
    return max(REPUTATION_MIN, min(REPUTATION_MAX, raw))


@dataclass(frozen=True)
class PoolUpsertResult:
    created: bool
    pool: PoolDTO


@dataclass(frozen=True)
class LiquidityResult:
    applied: bool
    lp_stake: int
    pool: PoolDTO


@dataclass(frozen=True)
class ReputationChange:
    user_address: str
    old_reputation: int
    new_reputation: int
    duplicate: bool


def _recompute_pool(model: PoolModel) -> None:
    model.max_bettor_stake = recompute_max_bettor_stake(
        model.creator_stake,
        model.total_creator_side_stake,
        model.total_bettor_stake,
        model.odds,
    )


def _check_bettor_cap(model: PoolModel) -> None:
    if model.status == POOL_STATUS_ACTIVE and model.total_bettor_stake > model.max_bettor_stake:
        logger.warning(
            "Pool %s bettor stake %s exceeds cap %s (missing liquidity events?)",
            model.pool_id,
            model.total_bettor_stake,
            model.max_bettor_stake,
        )


class EventStore:
    """Idempotent, invariant-preserving writes for every projected entity."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Pools
    # ------------------------------------------------------------------

    async def upsert_pool(self, pool: PoolDTO) -> PoolUpsertResult:
        """Insert or enrich a pool.

        On insert the aggregates are rebuilt from stored LP rows and bets.
        On update only non-null descriptive fields are written; aggregates
        are left to the dedicated operations.
        """
        async with self._db.get_async_session() as session:
            pools = PoolRepository(session)
            model = await pools.get_model(pool.pool_id, for_update=True)

            if model is None:
                lp_total = await LiquidityRepository(session).total_for_pool(pool.pool_id)
                bet_total = await BetRepository(session).total_for_pool(pool.pool_id)
                seeded = replace(
                    pool,
                    total_creator_side_stake=pool.creator_stake + lp_total,
                    total_bettor_stake=max(pool.total_bettor_stake, bet_total),
                )
                seeded.max_bettor_stake = recompute_max_bettor_stake(
                    seeded.creator_stake,
                    seeded.total_creator_side_stake,
                    seeded.total_bettor_stake,
                    seeded.odds,
                )
                if pool.total_creator_side_stake != seeded.total_creator_side_stake:
                    logger.info(
                        "Pool %s creator-side stake %s on chain vs %s from stored liquidity",
                        pool.pool_id,
                        pool.total_creator_side_stake,
                        seeded.total_creator_side_stake,
                    )
                model = await pools.insert(seeded)
                _check_bettor_cap(model)
                return PoolUpsertResult(created=True, pool=PoolDTO.from_model(model))

            for name in POOL_DESCRIPTIVE_FIELDS:
                value = getattr(pool, name)
                if value is not None:
                    setattr(model, name, value.lower() if name == "creator" else value)

            if pool.is_settled and not model.is_settled:
                model.is_settled = True
                model.status = pool.status
                model.result = pool.result
                model.creator_side_won = pool.creator_side_won
                now = datetime.now(UTC)
                if pool.status == POOL_STATUS_REFUNDED:
                    model.refunded_at = now
                else:
                    model.settled_at = now

            lp_total = await LiquidityRepository(session).total_for_pool(pool.pool_id)
            model.total_creator_side_stake = model.creator_stake + lp_total
            _recompute_pool(model)
            await session.flush()
            return PoolUpsertResult(created=False, pool=PoolDTO.from_model(model))

    async def refresh_bettor_stake(self, pool_id: int, chain_total: int) -> PoolDTO:
        """Raise `total_bettor_stake` to the on-chain total; never lowers it."""
        async with self._db.get_async_session() as session:
            model = await PoolRepository(session).get_model(pool_id, for_update=True)
            if model is None:
                raise EntityNotFoundError("pool", pool_id)
            if chain_total > model.total_bettor_stake:
                model.total_bettor_stake = chain_total
            _recompute_pool(model)
            _check_bettor_cap(model)
            await session.flush()
            return PoolDTO.from_model(model)

    async def add_liquidity(
        self,
        pool_id: int,
        lp: str,
        amount: int,
        *,
        transaction_hash: str,
        log_index: int,
        block_number: int | None = None,
    ) -> LiquidityResult:
        """Apply one LiquidityAdded log exactly once.

        The (tx, log_index) key is claimed in the ledger inside the same
        transaction, so concurrent deliveries from several services apply
        the delta a single time.
        """
        if amount <= 0:
            raise ValueError("liquidity amount must be positive")
        async with self._db.get_async_session() as session:
            model = await PoolRepository(session).get_model(pool_id, for_update=True)
            if model is None:
                raise EntityNotFoundError("pool", pool_id)

            lps = LiquidityRepository(session)
            claimed = await ProcessedEventRepository(session).claim(
                LP_LEDGER,
                transaction_hash,
                log_index,
                event_name="LiquidityAdded",
                block_number=block_number,
            )
            if not claimed:
                current = await lps.get(pool_id, lp)
                return LiquidityResult(
                    applied=False,
                    lp_stake=current.stake if current else 0,
                    pool=PoolDTO.from_model(model),
                )

            stake = await lps.add_stake(pool_id, lp, amount, block_number=block_number)
            model.total_creator_side_stake = model.total_creator_side_stake + amount
            _recompute_pool(model)
            await session.flush()
            return LiquidityResult(applied=True, lp_stake=stake, pool=PoolDTO.from_model(model))

    async def apply_settlement(
        self, pool_id: int, result: str, creator_side_won: bool, timestamp: int | None
    ) -> bool:
        """Settle an open pool; a zero result marks it refunded.

        Returns False when the pool was already settled or refunded.
        """
        async with self._db.get_async_session() as session:
            model = await PoolRepository(session).get_model(pool_id, for_update=True)
            if model is None:
                raise EntityNotFoundError("pool", pool_id)
            if model.is_settled:
                logger.info("Pool %s already %s; settlement ignored", pool_id, model.status)
                return False

            is_refund = result == ZERO_HASH
            now = datetime.now(UTC)
            model.is_settled = True
            model.result = result
            model.creator_side_won = creator_side_won
            model.result_timestamp = timestamp or model.result_timestamp
            if is_refund:
                model.status = POOL_STATUS_REFUNDED
                model.refunded_at = now
            else:
                model.status = POOL_STATUS_SETTLED
                model.settled_at = now
            await session.flush()
            return True

    async def apply_refund(self, pool_id: int, reason: str | None) -> bool:
        """Refund an open pool. Returns False when it was already closed."""
        async with self._db.get_async_session() as session:
            model = await PoolRepository(session).get_model(pool_id, for_update=True)
            if model is None:
                raise EntityNotFoundError("pool", pool_id)
            if model.is_settled:
                logger.info("Pool %s already %s; refund ignored", pool_id, model.status)
                return False
            model.is_settled = True
            model.status = POOL_STATUS_REFUNDED
            model.result = ZERO_HASH
            model.refund_reason = reason
            model.refunded_at = datetime.now(UTC)
            await session.flush()
            return True

    async def apply_boost(
        self, pool_id: int, *, tier: int, expiry: int | None, fee: int | None, booster: str | None
    ) -> PoolDTO:
        async with self._db.get_async_session() as session:
            model = await PoolRepository(session).get_model(pool_id, for_update=True)
            if model is None:
                raise EntityNotFoundError("pool", pool_id)
            model.boost_tier = tier
            model.boost_expiry = expiry or None
            model.boost_fee = fee
            model.booster = booster.lower() if booster else None
            await session.flush()
            return PoolDTO.from_model(model)

    async def get_pool(self, pool_id: int) -> PoolDTO | None:
        async with self._db.get_async_session() as session:
            return await PoolRepository(session).get(pool_id)

    async def get_pool_progress(self, pool_id: int) -> PoolProgress | None:
        async with self._db.get_async_session() as session:
            pool = await PoolRepository(session).get(pool_id)
            if pool is None:
                return None
            bets = BetRepository(session)
            return compute_progress(
                pool_id=pool_id,
                creator_stake=pool.creator_stake,
                total_creator_side_stake=pool.total_creator_side_stake,
                total_bettor_stake=pool.total_bettor_stake,
                odds=pool.odds,
                participants=await bets.participants(pool_id),
                bet_count=await bets.count_for_pool(pool_id),
            )

    async def max_pool_id(self) -> int | None:
        async with self._db.get_async_session() as session:
            return await PoolRepository(session).max_pool_id()

    async def list_active_pools(self, limit: int) -> list[PoolDTO]:
        async with self._db.get_async_session() as session:
            return await PoolRepository(session).list_active(limit)

    # ------------------------------------------------------------------
    # Bets and liquidity reads
    # ------------------------------------------------------------------

    async def insert_bet(self, bet: BetDTO) -> bool:
        """Store a bet and fold it into the pool aggregates.

        Returns False for a duplicate: either the (tx, log_index) key is
        known, or a bet with the same (pool, bettor, amount, block) exists
        and the block is known.
        """
        async with self._db.get_async_session() as session:
            pool = await PoolRepository(session).get_model(bet.pool_id, for_update=True)
            bets = BetRepository(session)

            if bet.block_number > 0 and await bets.exists_same_bet(
                pool_id=bet.pool_id,
                bettor=bet.bettor,
                amount=bet.amount,
                block_number=bet.block_number,
            ):
                return False
            if not await bets.insert_ignore(bet):
                return False

            if pool is not None:
                stored_total = await bets.total_for_pool(bet.pool_id)
                if stored_total > pool.total_bettor_stake:
                    pool.total_bettor_stake = stored_total
                _recompute_pool(pool)
                _check_bettor_cap(pool)
            await session.flush()
            return True

    async def bet_exists(self, transaction_hash: str, log_index: int | None = None) -> bool:
        async with self._db.get_async_session() as session:
            return await BetRepository(session).exists_tx(transaction_hash, log_index)

    async def list_bets(self, pool_id: int) -> list[BetDTO]:
        async with self._db.get_async_session() as session:
            return await BetRepository(session).list_for_pool(pool_id)

    async def stored_bet_total(self, pool_id: int) -> int:
        async with self._db.get_async_session() as session:
            return await BetRepository(session).total_for_pool(pool_id)

    async def stored_lp_total(self, pool_id: int) -> int:
        async with self._db.get_async_session() as session:
            return await LiquidityRepository(session).total_for_pool(pool_id)

    async def distinct_bettors(self, pool_id: int) -> dict[str, int]:
        async with self._db.get_async_session() as session:
            return await BetRepository(session).distinct_bettors(pool_id)

    async def get_bet_stats(self) -> BetStats:
        async with self._db.get_async_session() as session:
            return await BetRepository(session).stats()

    # ------------------------------------------------------------------
    # Cycles and slips
    # ------------------------------------------------------------------

    async def upsert_cycle(self, cycle: CycleDTO) -> bool:
        """Insert or enrich a cycle. Returns True when the row was created."""
        async with self._db.get_async_session() as session:
            model = await CycleRepository(session).get_model(cycle.cycle_id, for_update=True)
            if model is None:
                session.add(
                    CycleModel(
                        cycle_id=cycle.cycle_id,
                        start_time=cycle.start_time,
                        end_time=cycle.end_time,
                        matches_count=cycle.matches_count,
                        matches_data=cycle.matches_data,
                        prize_pool=cycle.prize_pool,
                        total_slips=cycle.total_slips,
                        is_resolved=cycle.is_resolved,
                        resolved_at=cycle.resolved_at,
                        resolution_tx_hash=cycle.resolution_tx_hash,
                    )
                )
                await session.flush()
                return True

            for name in ("start_time", "end_time", "matches_data", "prize_pool", "total_slips"):
                value = getattr(cycle, name)
                if value is not None:
                    setattr(model, name, value)
            if cycle.matches_count:
                model.matches_count = cycle.matches_count
            if cycle.is_resolved and not model.is_resolved:
                model.is_resolved = True
                model.resolved_at = cycle.resolved_at or datetime.now(UTC)
            await session.flush()
            return False

    async def apply_cycle_resolution(
        self,
        cycle_id: int,
        *,
        prize_pool: int | None,
        total_slips: int | None,
        transaction_hash: str | None,
        resolved_at: datetime | None = None,
    ) -> bool:
        """Mark a cycle resolved. Returns False when it already was."""
        async with self._db.get_async_session() as session:
            model = await CycleRepository(session).get_model(cycle_id, for_update=True)
            if model is None:
                raise EntityNotFoundError("cycle", cycle_id)
            if model.is_resolved:
                return False
            model.is_resolved = True
            model.resolved_at = resolved_at or datetime.now(UTC)
            model.resolution_tx_hash = transaction_hash.lower() if transaction_hash else None
            if prize_pool is not None:
                model.prize_pool = prize_pool
            if total_slips is not None:
                model.total_slips = total_slips
            await session.flush()
            return True

    async def get_cycle(self, cycle_id: int) -> CycleDTO | None:
        async with self._db.get_async_session() as session:
            return await CycleRepository(session).get(cycle_id)

    async def max_cycle_id(self) -> int | None:
        async with self._db.get_async_session() as session:
            return await CycleRepository(session).max_cycle_id()

    async def upsert_slip(self, slip: SlipDTO) -> bool:
        """Insert or enrich a slip. Returns True when the row was created.

        Evaluation and claim state are never reset by a later upsert.
        """
        async with self._db.get_async_session() as session:
            model = await SlipRepository(session).get_model(slip.slip_id, for_update=True)
            if model is None:
                session.add(
                    SlipModel(
                        slip_id=slip.slip_id,
                        cycle_id=slip.cycle_id,
                        player=slip.player.lower(),
                        predictions=slip.predictions,
                        is_evaluated=slip.is_evaluated,
                        is_winner=slip.is_winner,
                        correct_count=slip.correct_count,
                        final_score=slip.final_score,
                        leaderboard_rank=slip.leaderboard_rank,
                        prize_claimed=slip.prize_claimed,
                        prize_amount=slip.prize_amount,
                        placed_at=slip.placed_at,
                        tx_hash=slip.tx_hash.lower() if slip.tx_hash else None,
                    )
                )
                await session.flush()
                return True

            if slip.predictions:
                model.predictions = slip.predictions
            if slip.placed_at is not None:
                model.placed_at = slip.placed_at
            if slip.tx_hash and not model.tx_hash:
                model.tx_hash = slip.tx_hash.lower()
            if slip.is_evaluated and not model.is_evaluated:
                model.is_evaluated = True
                model.correct_count = slip.correct_count
                model.final_score = slip.final_score
            await session.flush()
            return False

    async def apply_slip_evaluation(
        self,
        slip_id: int,
        correct_count: int,
        *,
        is_winner: bool | None = None,
        final_score: int | None = None,
        leaderboard_rank: int | None = None,
    ) -> SlipDTO:
        async with self._db.get_async_session() as session:
            model = await SlipRepository(session).get_model(slip_id, for_update=True)
            if model is None:
                raise EntityNotFoundError("slip", slip_id)
            if not model.is_evaluated:
                model.evaluated_at = datetime.now(UTC)
            model.is_evaluated = True
            model.correct_count = correct_count
            if is_winner is not None:
                model.is_winner = is_winner
            if final_score is not None:
                model.final_score = final_score
            if leaderboard_rank is not None:
                model.leaderboard_rank = leaderboard_rank
            await session.flush()
            return SlipDTO.from_model(model)

    async def apply_prize_claim(self, slip_id: int, amount: int | None = None) -> SlipDTO:
        """Seal a slip as claimed; a claim implies the slip was evaluated."""
        async with self._db.get_async_session() as session:
            model = await SlipRepository(session).get_model(slip_id, for_update=True)
            if model is None:
                raise EntityNotFoundError("slip", slip_id)
            if not model.prize_claimed:
                model.claimed_at = datetime.now(UTC)
            model.prize_claimed = True
            if not model.is_evaluated:
                model.is_evaluated = True
                model.evaluated_at = model.claimed_at
            if amount is not None:
                model.prize_amount = amount
            await session.flush()
            return SlipDTO.from_model(model)

    async def get_slip(self, slip_id: int) -> SlipDTO | None:
        async with self._db.get_async_session() as session:
            return await SlipRepository(session).get(slip_id)

    async def max_slip_id(self) -> int | None:
        async with self._db.get_async_session() as session:
            return await SlipRepository(session).max_slip_id()

    # ------------------------------------------------------------------
    # Reputation
    # ------------------------------------------------------------------

    async def record_reputation_action(
        self,
        user: str,
        action: int,
        delta: int,
        value: int | None,
        pool_id: int | None,
        ts: int | None,
        block: int | None,
        tx: str,
        *,
        action_name: str,
        source: str | None = None,
    ) -> ReputationChange:
        """Append the action and move the user's score in one transaction."""
        address = user.lower()
        async with self._db.get_async_session() as session:
            repo = ReputationRepository(session)
            user_model = await repo.get_user_model(address, for_update=True)

            if await repo.action_exists(tx, action, address):
                current = user_model.reputation if user_model else REPUTATION_DEFAULT
                return ReputationChange(address, current, current, duplicate=True)

            now = datetime.now(UTC)
            if user_model is None:
                user_model = ReputationUserModel(
                    user_address=address,
                    reputation=REPUTATION_DEFAULT,
                    raw_score=REPUTATION_DEFAULT,
                )
                session.add(user_model)

            old = user_model.reputation
            user_model.raw_score = user_model.raw_score + delta
            user_model.reputation = clamp_reputation(user_model.raw_score)
            user_model.last_active = now
            user_model.last_synced_at = now

            await repo.insert_action(
                ReputationActionDTO(
                    user_address=address,
                    action_type=action,
                    action_name=action_name,
                    reputation_delta=delta,
                    transaction_hash=tx,
                    associated_value=value,
                    pool_id=pool_id,
                    timestamp=ts,
                    block_number=block,
                    source=source,
                )
            )
            return ReputationChange(address, old, user_model.reputation, duplicate=False)

    async def get_reputation(self, user: str) -> ReputationUserDTO | None:
        async with self._db.get_async_session() as session:
            return await ReputationRepository(session).get_user(user)

    async def list_reputation_actions(self, user: str) -> list[ReputationActionDTO]:
        async with self._db.get_async_session() as session:
            return await ReputationRepository(session).list_actions(user)

    # ------------------------------------------------------------------
    # Ledger, notifications, guided markets
    # ------------------------------------------------------------------

    async def is_recorded(self, consumer: str, transaction_hash: str, log_index: int) -> bool:
        async with self._db.get_async_session() as session:
            return await ProcessedEventRepository(session).is_recorded(
                consumer, transaction_hash, log_index
            )

    async def mark_recorded(
        self,
        consumer: str,
        transaction_hash: str,
        log_index: int,
        *,
        event_name: str,
        block_number: int | None = None,
    ) -> bool:
        async with self._db.get_async_session() as session:
            return await ProcessedEventRepository(session).claim(
                consumer,
                transaction_hash,
                log_index,
                event_name=event_name,
                block_number=block_number,
            )

    async def create_notification(self, notification: NotificationDTO) -> tuple[NotificationDTO, int]:
        """Persist a notification; return it with the user's unread count."""
        async with self._db.get_async_session() as session:
            repo = NotificationRepository(session)
            stored = await repo.insert(notification)
            unread = await repo.unread_count(notification.user_address)
            return stored, unread

    async def list_notifications(self, user: str) -> list[NotificationDTO]:
        async with self._db.get_async_session() as session:
            return await NotificationRepository(session).list_for_user(user)

    async def link_football_market(
        self,
        *,
        pool_id: int,
        market_id: str,
        outcome_type: str,
        predicted_outcome: str,
        end_time: int | None,
    ) -> None:
        async with self._db.get_async_session() as session:
            await GuidedMarketRepository(session).upsert_football(
                pool_id=pool_id,
                market_id=market_id,
                outcome_type=outcome_type,
                predicted_outcome=predicted_outcome,
                end_time=end_time,
            )

    async def link_crypto_market(
        self,
        *,
        pool_id: int,
        market_id: str,
        coinpaprika_id: str,
        target_price: Decimal,
        direction: str,
        end_time: int | None,
    ) -> None:
        async with self._db.get_async_session() as session:
            await GuidedMarketRepository(session).upsert_crypto(
                pool_id=pool_id,
                market_id=market_id,
                coinpaprika_id=coinpaprika_id,
                target_price=target_price,
                direction=direction,
                end_time=end_time,
            )
