"""Reputation indexer.

Consumes `ReputationActionOccurred` from the combo-pools and Oddyssey
contracts directly; pool-core actions are forwarded by the pool sync
service. Each action moves the user's score by a fixed delta, clamped to
[0, 500].
"""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import TYPE_CHECKING, Any

from bitredict_sync.decoding import InvalidEventError, normalize_address, to_bytes
from bitredict_sync.sinks import streams
from bitredict_sync.sync.base import EventHandler, EventSyncService
from bitredict_sync.sync.reconciler import EventBinding
from bitredict_sync.sync.retry import HandlerResult

if TYPE_CHECKING:
    from bitredict_sync.chain.logs import LogView
    from bitredict_sync.storage.persistence import ReputationChange

logger = logging.getLogger(__name__)

REPUTATION_EVENT = "ReputationActionOccurred"

SOURCE_POOL_CORE = "poolcore"
SOURCE_COMBO = "combo"
SOURCE_ODDYSSEY = "oddyssey"


class ReputationAction(IntEnum):
    """On-chain `ReputationAction` enum, in contract order."""

    POOL_CREATED = 0
    BET_PLACED = 1
    BET_WON = 2
    BET_WON_HIGH_VALUE = 3
    BET_WON_MASSIVE = 4
    POOL_FILLED_ABOVE_60 = 5
    POOL_SPAMMED = 6
    OUTCOME_PROPOSED_CORRECTLY = 7
    OUTCOME_PROPOSED_INCORRECTLY = 8
    CHALLENGE_SUCCESSFUL = 9
    CHALLENGE_FAILED = 10
    LIQUIDITY_PROVIDED = 11
    LIQUIDITY_REMOVED = 12
    SOCIAL_ENGAGEMENT = 13
    COMMUNITY_CONTRIBUTION = 14
    SPAM_DETECTED = 15
    ABUSE_DETECTED = 16
    VERIFICATION_GRANTED = 17
    VERIFICATION_REVOKED = 18
    ODDYSSEY_PARTICIPATION = 19
    ODDYSSEY_QUALIFYING = 20
    ODDYSSEY_EXCELLENT = 21
    ODDYSSEY_OUTSTANDING = 22
    ODDYSSEY_PERFECT = 23
    ODDYSSEY_WINNER = 24
    ODDYSSEY_CHAMPION = 25


DELTAS: dict[ReputationAction, int] = {
    ReputationAction.POOL_CREATED: 4,
    ReputationAction.BET_PLACED: 2,
    ReputationAction.BET_WON: 3,
    ReputationAction.BET_WON_HIGH_VALUE: 8,
    ReputationAction.BET_WON_MASSIVE: 15,
    ReputationAction.POOL_FILLED_ABOVE_60: 8,
    ReputationAction.POOL_SPAMMED: -15,
    ReputationAction.OUTCOME_PROPOSED_CORRECTLY: 12,
    ReputationAction.OUTCOME_PROPOSED_INCORRECTLY: -20,
    ReputationAction.CHALLENGE_SUCCESSFUL: 10,
    ReputationAction.CHALLENGE_FAILED: -12,
    ReputationAction.LIQUIDITY_PROVIDED: 2,
    ReputationAction.LIQUIDITY_REMOVED: -1,
    ReputationAction.SOCIAL_ENGAGEMENT: 1,
    ReputationAction.COMMUNITY_CONTRIBUTION: 3,
    ReputationAction.SPAM_DETECTED: -50,
    ReputationAction.ABUSE_DETECTED: -100,
    ReputationAction.VERIFICATION_GRANTED: 20,
    ReputationAction.VERIFICATION_REVOKED: -20,
    ReputationAction.ODDYSSEY_PARTICIPATION: 1,
    ReputationAction.ODDYSSEY_QUALIFYING: 3,
    ReputationAction.ODDYSSEY_EXCELLENT: 4,
    ReputationAction.ODDYSSEY_OUTSTANDING: 6,
    ReputationAction.ODDYSSEY_PERFECT: 8,
    ReputationAction.ODDYSSEY_WINNER: 10,
    ReputationAction.ODDYSSEY_CHAMPION: 15,
}


def parse_action(value: Any) -> ReputationAction:
    try:
        return ReputationAction(int(value))
    except (TypeError, ValueError) as e:
        raise InvalidEventError(f"unknown reputation action {value!r}") from e


def pool_id_from_topic(value: Any) -> int | None:
    """The indexed `poolId` is a bytes32 holding a pool or cycle id; pool 0 is valid."""
    if value is None:
        return None
    return int.from_bytes(to_bytes(value), "big")


class ReputationIndexer(EventSyncService):
    """Applies reputation actions and broadcasts score changes."""

    name = "reputation"

    def bindings(self) -> list[EventBinding]:
        contracts = self._chain.contracts
        bindings = []
        if contracts.combo_pools:
            bindings.append(EventBinding(contracts.combo_pools, (REPUTATION_EVENT,), label="combo"))
        bindings.append(EventBinding(contracts.oddyssey, (REPUTATION_EVENT,), label="oddyssey"))
        return bindings

    def handlers(self) -> dict[str, EventHandler]:
        return {REPUTATION_EVENT: self._handle_log}

    def source_for(self, address: str) -> str:
        contracts = self._chain.contracts
        address = address.lower()
        if contracts.combo_pools and address == contracts.combo_pools.lower():
            return SOURCE_COMBO
        if address == contracts.oddyssey.lower():
            return SOURCE_ODDYSSEY
        return SOURCE_POOL_CORE

    async def _handle_log(self, log: LogView) -> HandlerResult:
        return await self.process(log, self.source_for(log.address))

    async def process(self, log: LogView, source: str) -> HandlerResult:
        """Record one action; also the entry point for forwarded pool-core logs."""
        user = normalize_address(log.arg("user"), field_name="user")
        action = parse_action(log.arg("action"))
        delta = DELTAS[action]
        value = int(log.arguments.get("value") or 0)
        pool_id = pool_id_from_topic(log.arguments.get("poolId"))
        timestamp = int(log.arguments.get("timestamp") or 0) or None

        change = await self._store.record_reputation_action(
            user,
            int(action),
            delta,
            value,
            pool_id,
            timestamp,
            log.block_number,
            log.transaction_hash,
            action_name=action.name,
            source=source,
        )
        if change.duplicate:
            logger.debug("Reputation action %s for %s already recorded", action.name, user)
            return HandlerResult.duplicate(f"{action.name} {log.transaction_hash}")

        logger.info(
            "Reputation %s %s%+d: %d -> %d",
            user,
            action.name,
            delta,
            change.old_reputation,
            change.new_reputation,
        )
        await self._emit(log, action, value, pool_id, timestamp, change)
        return HandlerResult.ok()

    async def _emit(
        self,
        log: LogView,
        action: ReputationAction,
        value: int,
        pool_id: int | None,
        timestamp: int | None,
        change: ReputationChange,
    ) -> None:
        payload = {
            "user": change.user_address,
            "action": action.name,
            "value": str(value),
            "poolId": str(pool_id) if pool_id is not None else None,
            "timestamp": timestamp,
            "oldReputation": change.old_reputation,
            "newReputation": change.new_reputation,
        }
        await self._broadcast(["reputation:changed"], payload)
        await self._publish(
            streams.REPUTATION,
            streams.make_data_id(streams.REPUTATION, log.transaction_hash, int(action), change.user_address),
            {**payload, "delta": DELTAS[action], "blockNumber": log.block_number},
        )
