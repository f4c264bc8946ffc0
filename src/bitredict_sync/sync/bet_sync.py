"""Bet sync service.

The pool contract keeps only aggregates, so this service materializes one
row per `BetPlaced` log and keeps LP balances from `LiquidityAdded`. After
each write it reads the pool's fill state back from the database and
pushes it to `pool:{id}:progress`.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from bitredict_sync.chain.client import ChainClientError
from bitredict_sync.decoding import InvalidEventError, decode_bytes32, normalize_address
from bitredict_sync.pool_math import wei_to_tokens
from bitredict_sync.sinks import streams
from bitredict_sync.storage.repos import BetDTO
from bitredict_sync.sync.base import EventHandler, EventSyncService
from bitredict_sync.sync.pool_sync import currency_for
from bitredict_sync.sync.reconciler import Discrepancy, EventBinding
from bitredict_sync.sync.retry import HandlerResult

if TYPE_CHECKING:
    from bitredict_sync.chain.logs import LogView
    from bitredict_sync.chain.structs import PoolStruct
    from bitredict_sync.storage.repos import PoolDTO

logger = logging.getLogger(__name__)

BET_EVENTS = ("BetPlaced", "LiquidityAdded")


def _now() -> int:
    return int(datetime.now(UTC).timestamp())


class BetSyncService(EventSyncService):
    """Materializes bets and LP additions and broadcasts pool progress."""

    name = "bet_sync"

    def bindings(self) -> list[EventBinding]:
        return [EventBinding(self._chain.contracts.pool_core, BET_EVENTS, label="bets")]

    def handlers(self) -> dict[str, EventHandler]:
        return {
            "BetPlaced": self.on_bet_placed,
            "LiquidityAdded": self.on_liquidity_added,
        }

    def describe_subject(self, log: LogView) -> str:
        return f"poolId={log.arguments.get('poolId')}"

    # ------------------------------------------------------------------
    # BetPlaced
    # ------------------------------------------------------------------

    async def on_bet_placed(self, log: LogView) -> HandlerResult:
        pool_id = int(log.arg("poolId"))
        bettor = normalize_address(log.arg("bettor"), field_name="bettor")
        amount = int(log.arg("amount"))
        is_for_outcome = bool(log.arg("isForOutcome"))
        if amount <= 0:
            raise InvalidEventError(f"BetPlaced for pool {pool_id} has amount {amount}")

        duplicate = await self._store.bet_exists(log.transaction_hash, log.log_index)
        if not duplicate:
            struct = await self._read_pool(pool_id)
            inserted = await self._store.insert_bet(
                BetDTO(
                    pool_id=pool_id,
                    bettor=bettor,
                    amount=amount,
                    is_for_outcome=is_for_outcome,
                    transaction_hash=log.transaction_hash,
                    log_index=log.log_index,
                    block_number=log.block_number,
                )
            )
            duplicate = not inserted
        else:
            struct = None

        if duplicate:
            logger.debug("Bet %s:%s already stored", log.transaction_hash, log.log_index)
        else:
            logger.info("Bet stored: pool=%s bettor=%s amount=%s", pool_id, bettor, amount)

        pool = await self._store.get_pool(pool_id)
        payload = {
            "poolId": str(pool_id),
            "bettor": bettor,
            "amount": str(amount),
            "isForOutcome": is_for_outcome,
            "timestamp": _now(),
            "transactionHash": log.transaction_hash,
            "blockNumber": log.block_number,
            **self._pool_labels(pool, struct),
        }
        await self._broadcast(["bet:placed", "recent_bets"], payload)
        await self._publish(
            streams.BETS,
            streams.make_data_id(streams.BETS, log.transaction_hash, log.log_index),
            payload,
        )
        await self._emit_progress(pool_id)

        if duplicate:
            return HandlerResult.duplicate(f"bet {log.transaction_hash}:{log.log_index}")
        return HandlerResult.ok()

    async def _read_pool(self, pool_id: int) -> PoolStruct | None:
        """Best-effort enrichment; the event alone is enough to store the bet."""
        try:
            return await self._chain.get_pool(pool_id)
        except ChainClientError as e:
            logger.warning("Pool %s enrichment unavailable: %s", pool_id, e)
            return None

    @staticmethod
    def _pool_labels(pool: PoolDTO | None, struct: PoolStruct | None) -> dict[str, Any]:
        if pool is not None:
            return {"poolTitle": pool.title or "", "category": pool.category or "", "odds": pool.odds}
        if struct is not None:
            return {
                "poolTitle": decode_bytes32(struct.title),
                "category": decode_bytes32(struct.category),
                "odds": struct.odds,
            }
        return {"poolTitle": None, "category": None, "odds": None}

    async def _emit_progress(self, pool_id: int) -> None:
        progress = await self._store.get_pool_progress(pool_id)
        if progress is None:
            logger.debug("No stored pool %s; progress not broadcast", pool_id)
            return
        payload = progress.to_payload()
        await self._broadcast([f"pool:{pool_id}:progress"], payload)
        await self._publish(
            streams.POOLS_PROGRESS,
            streams.make_data_id(streams.POOLS_PROGRESS, pool_id, progress.total_bettor_stake),
            payload,
        )

    # ------------------------------------------------------------------
    # LiquidityAdded
    # ------------------------------------------------------------------

    async def on_liquidity_added(self, log: LogView) -> HandlerResult:
        """Credit an LP; never creates a bet row."""
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
        pool = result.pool
        if result.applied:
            logger.info(
                "Liquidity added: pool=%s provider=%s amount=%s (lp stake %s)",
                pool_id,
                provider,
                amount,
                result.lp_stake,
            )

        timestamp = _now()
        payload = {
            "poolId": str(pool_id),
            "provider": provider,
            "amount": wei_to_tokens(amount),
            "amountWei": str(amount),
            "currency": currency_for(pool),
            "timestamp": timestamp,
            "poolTitle": pool.title or "",
            "category": pool.category or "",
            "transactionHash": log.transaction_hash,
        }
        await self._broadcast(["liquidity:added"], payload)
        await self._broadcast(["recent_bets"], {**payload, "type": "liquidity_added"})
        await self._publish(
            streams.LIQUIDITY,
            streams.make_data_id(streams.LIQUIDITY, log.transaction_hash, log.log_index),
            payload,
        )
        await self._emit_progress(pool_id)

        if not result.applied:
            return HandlerResult.duplicate(f"liquidity {log.transaction_hash}:{log.log_index}")
        return HandlerResult.ok()

    # ------------------------------------------------------------------
    # Fallback
    # ------------------------------------------------------------------

    async def fallback_sweep(self) -> None:
        pools = await self._store.list_active_pools(self._options.audit_pool_limit)
        if not pools:
            return
        head = await self._chain.current_block()
        from_block = max(0, head - self._options.lookback_blocks)
        binding = self.bindings()[0]

        for pool in pools:
            try:
                await self._replay_pool(binding, pool, from_block, head)
            except ChainClientError as e:
                logger.warning("Bet replay for pool %s failed: %s", pool.pool_id, e)

        await self.audit(pools)

    async def _replay_pool(self, binding: EventBinding, pool: PoolDTO, from_block: int, head: int) -> None:
        filters = {"poolId": pool.pool_id}
        replayed = await self.replay_range(binding, from_block, head, argument_filters=filters)
        if replayed:
            logger.info("Pool %s: replayed %d missed bet/liquidity logs", pool.pool_id, replayed)

        if await self._store.stored_bet_total(pool.pool_id) > 0:
            return
        struct = await self._chain.get_pool(pool.pool_id)
        if struct.total_bettor_stake == 0:
            return
        start = pool.block_number or 0
        if start >= from_block:
            return
        logger.warning(
            "Pool %s has %s wei bettor stake on chain but no stored bets; replaying from block %d",
            pool.pool_id,
            struct.total_bettor_stake,
            start,
        )
        await self.replay_range(binding, start, head, argument_filters=filters)

    async def audit(self, pools: list[PoolDTO]) -> list[Discrepancy]:
        """Report stake drift; rows are only ever created by replay."""
        return await self._reconciler.audit_pools(pools)
