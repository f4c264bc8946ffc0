"""Pool sync service.

Keeps the `pools` projection consistent with the pool-core contract. Every
event except settlement re-reads the pool struct from chain; settlement
trusts the event, since the struct may not reflect it yet.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from bitredict_sync.chain.client import ChainClientError
from bitredict_sync.decoding import (
    InvalidEventError,
    decode_pool,
    is_zero_hash,
    normalize_address,
    to_hex32,
)
from bitredict_sync.pool_math import wei_to_tokens
from bitredict_sync.sinks import notifier, streams
from bitredict_sync.storage.repos import POOL_STATUS_REFUNDED
from bitredict_sync.sync.base import EventHandler, EventSyncService
from bitredict_sync.sync.guided_markets import GuidedMarketLinker
from bitredict_sync.sync.reconciler import EventBinding
from bitredict_sync.sync.reputation import REPUTATION_EVENT, SOURCE_POOL_CORE
from bitredict_sync.sync.retry import HandlerResult

if TYPE_CHECKING:
    from bitredict_sync.chain.logs import LogView
    from bitredict_sync.storage.persistence import PoolUpsertResult
    from bitredict_sync.storage.repos import PoolDTO
    from bitredict_sync.sync.reputation import ReputationIndexer

logger = logging.getLogger(__name__)

POOL_CORE_EVENTS = (
    "PoolCreated",
    "BetPlaced",
    "LiquidityAdded",
    "PoolSettled",
    "PoolRefunded",
    REPUTATION_EVENT,
)
BOOST_EVENT = "PoolBoosted"


def currency_for(pool: PoolDTO) -> str:
    return "BITR" if pool.use_bitr else "STT"


def pool_payload(pool: PoolDTO, *, timestamp: int | None = None) -> dict[str, Any]:
    """Payload for `pool:created` / `pool:settled`."""
    return {
        "poolId": str(pool.pool_id),
        "title": pool.title or "",
        "category": pool.category or "",
        "creator": pool.creator,
        "isSettled": pool.is_settled,
        "isRefunded": pool.status == POOL_STATUS_REFUNDED,
        "creatorSideWon": pool.creator_side_won,
        "timestamp": timestamp or int(datetime.now(UTC).timestamp()),
    }


class PoolSyncService(EventSyncService):
    """Projects pool lifecycle events."""

    name = "pool_sync"

    def __init__(self, *args: Any, reputation: ReputationIndexer | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._reputation = reputation
        self._linker = GuidedMarketLinker(self._store)

    def bindings(self) -> list[EventBinding]:
        contracts = self._chain.contracts
        if contracts.boost_system:
            return [
                EventBinding(contracts.pool_core, POOL_CORE_EVENTS, label="pool_core"),
                EventBinding(contracts.boost_system, (BOOST_EVENT,), label="boost"),
            ]
        return [EventBinding(contracts.pool_core, (*POOL_CORE_EVENTS, BOOST_EVENT), label="pool_core")]

    def handlers(self) -> dict[str, EventHandler]:
        return {
            "PoolCreated": self.on_pool_created,
            "BetPlaced": self.on_bet_placed,
            "LiquidityAdded": self.on_liquidity_added,
            "PoolSettled": self.on_pool_settled,
            "PoolRefunded": self.on_pool_refunded,
            BOOST_EVENT: self.on_pool_boosted,
            REPUTATION_EVENT: self.on_reputation_action,
        }

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def startup_sweep(self) -> None:
        await self.sync_missing_pools()

    async def fallback_sweep(self) -> None:
        await self.sync_missing_pools()

    async def sync_missing_pools(self) -> int:
        """Project every pool id between our max and the on-chain count.

        Pools that fail to read or validate are logged and left for the next
        sweep.
        """
        pool_count = await self._chain.get_pool_count()
        stored_max = await self._store.max_pool_id()
        start = 0 if stored_max is None else stored_max + 1
        if start >= pool_count:
            return 0

        logger.info("Pool sweep: syncing pools %d..%d", start, pool_count - 1)
        synced = 0
        for pool_id in range(start, pool_count):
            try:
                await self._sync_pool(pool_id)
                synced += 1
            except Exception as e:
                logger.error("Pool sweep failed for pool %s: %s", pool_id, e)
        logger.info("Pool sweep done: %d/%d pools synced", synced, pool_count - start)
        return synced

    async def _sync_pool(
        self, pool_id: int, *, block_number: int | None = None, tx_hash: str | None = None
    ) -> PoolUpsertResult:
        struct = await self._chain.get_pool(pool_id)
        dto = decode_pool(pool_id, struct, block_number=block_number, tx_hash=tx_hash)
        result = await self._store.upsert_pool(dto)
        if result.created:
            await self._linker.link(result.pool)
        return result

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def on_pool_created(self, log: LogView) -> HandlerResult:
        pool_id = int(log.arg("poolId"))
        result = await self._sync_pool(
            pool_id, block_number=log.block_number, tx_hash=log.transaction_hash
        )
        pool = result.pool
        logger.info("Pool %s created by %s (%s)", pool_id, pool.creator, pool.title or pool.category)

        payload = pool_payload(pool)
        await self._broadcast(["pool:created"], payload)
        await self._publish(
            streams.POOLS_CREATED,
            streams.make_data_id(streams.POOLS_CREATED, pool_id),
            {
                **payload,
                "odds": pool.odds,
                "creatorStake": str(pool.creator_stake),
                "predictedOutcome": pool.predicted_outcome,
                "league": pool.league,
                "eventStartTime": pool.event_start_time,
                "eventEndTime": pool.event_end_time,
                "useBitr": pool.use_bitr,
                "blockNumber": log.block_number,
            },
        )
        if not result.created:
            return HandlerResult.duplicate(f"pool {pool_id} already projected")
        await self._notify(
            pool.creator,
            notifier.POOL_CREATED,
            {"poolId": str(pool_id), "title": pool.title or f"#{pool_id}", "category": pool.category},
        )
        return HandlerResult.ok()

    async def on_bet_placed(self, log: LogView) -> HandlerResult:
        """Aggregate path only; per-bet rows belong to the bet sync service."""
        pool_id = int(log.arg("poolId"))
        try:
            struct = await self._chain.get_pool(pool_id)
        except ChainClientError as e:
            return HandlerResult.skipped(f"pool {pool_id} unavailable for bet aggregate: {e}")
        pool = await self._store.refresh_bettor_stake(pool_id, struct.total_bettor_stake)
        logger.debug(
            "Pool %s bettor stake %s (cap %s)", pool_id, pool.total_bettor_stake, pool.max_bettor_stake
        )
        return HandlerResult.ok()

    async def on_liquidity_added(self, log: LogView) -> HandlerResult:
        pool_id = int(log.arg("poolId"))
        amount = int(log.arg("amount"))
        if amount <= 0:
            raise InvalidEventError(f"LiquidityAdded for pool {pool_id} has amount {amount}")
        provider = normalize_address(log.arg("provider"), field_name="provider")

        result = await self._store.add_liquidity(
            pool_id,
            provider,
            amount,
            transaction_hash=log.transaction_hash,
            log_index=log.log_index,
            block_number=log.block_number,
        )
        try:
            struct = await self._chain.get_pool(pool_id)
        except ChainClientError as e:
            logger.debug("Pool %s re-read after liquidity failed: %s", pool_id, e)
        else:
            if struct.total_creator_side_stake != result.pool.total_creator_side_stake:
                logger.warning(
                    "Pool %s creator-side stake drift: chain=%s stored=%s",
                    pool_id,
                    struct.total_creator_side_stake,
                    result.pool.total_creator_side_stake,
                )
        if not result.applied:
            return HandlerResult.duplicate(f"liquidity {log.transaction_hash}:{log.log_index}")
        return HandlerResult.ok()

    async def on_pool_settled(self, log: LogView) -> HandlerResult:
        """Settle from the event alone; never re-read the pool."""
        pool_id = int(log.arg("poolId"))
        result = to_hex32(log.arg("result"))
        creator_side_won = bool(log.arg("creatorSideWon"))
        timestamp = int(log.arguments.get("timestamp") or 0) or None
        is_refund = is_zero_hash(result)

        applied = await self._store.apply_settlement(pool_id, result, creator_side_won, timestamp)
        pool = await self._store.get_pool(pool_id)
        if pool is None:
            return HandlerResult.transient(f"pool {pool_id} vanished after settlement")

        logger.info(
            "Pool %s %s (creator side won: %s)",
            pool_id,
            "refunded" if is_refund else "settled",
            creator_side_won,
        )
        payload = {**pool_payload(pool, timestamp=timestamp), "result": result}
        await self._broadcast(["pool:settled"], payload)
        await self._publish(
            streams.POOLS_SETTLED, streams.make_data_id(streams.POOLS_SETTLED, pool_id), payload
        )

        if not applied:
            return HandlerResult.duplicate(f"pool {pool_id} already closed")
        if not is_refund:
            await self._notify_settlement(pool, creator_side_won)
        return HandlerResult.ok()

    async def _notify_settlement(self, pool: PoolDTO, creator_side_won: bool) -> None:
        title = pool.title or f"#{pool.pool_id}"
        currency = currency_for(pool)
        await self._notify(
            pool.creator,
            notifier.POOL_SETTLED,
            {"poolId": str(pool.pool_id), "title": title, "won": creator_side_won},
        )
        bettors = await self._store.distinct_bettors(pool.pool_id)
        for bettor, stake in bettors.items():
            if creator_side_won:
                await self._notify(bettor, notifier.BET_LOST, {"poolId": str(pool.pool_id), "title": title})
            else:
                await self._notify(
                    bettor,
                    notifier.BET_WON,
                    {
                        "poolId": str(pool.pool_id),
                        "title": title,
                        "amount": wei_to_tokens(stake),
                        "amountWei": str(stake),
                        "currency": currency,
                    },
                )

    async def on_pool_refunded(self, log: LogView) -> HandlerResult:
        pool_id = int(log.arg("poolId"))
        reason = str(log.arguments.get("reason") or "") or None

        applied = await self._store.apply_refund(pool_id, reason)
        pool = await self._store.get_pool(pool_id)
        if pool is None:
            return HandlerResult.transient(f"pool {pool_id} vanished after refund")

        logger.info("Pool %s refunded: %s", pool_id, reason)
        payload = {**pool_payload(pool), "reason": reason}
        await self._broadcast(["pool:settled"], payload)
        await self._publish(
            streams.POOLS_SETTLED, streams.make_data_id(streams.POOLS_SETTLED, pool_id), payload
        )
        return HandlerResult.ok() if applied else HandlerResult.duplicate(f"pool {pool_id} already closed")

    async def on_pool_boosted(self, log: LogView) -> HandlerResult:
        pool_id = int(log.arg("poolId"))
        booster = log.arguments.get("booster")
        pool = await self._store.apply_boost(
            pool_id,
            tier=int(log.arg("tier")),
            expiry=int(log.arguments.get("expiry") or 0),
            fee=int(log.arguments.get("fee") or 0),
            booster=normalize_address(booster, field_name="booster") if booster else None,
        )
        logger.info("Pool %s boosted to tier %s", pool_id, pool.boost_tier)
        return HandlerResult.ok()

    async def on_reputation_action(self, log: LogView) -> HandlerResult:
        if self._reputation is None:
            return HandlerResult.skipped("no reputation indexer attached")
        return await self._reputation.process(log, SOURCE_POOL_CORE)
