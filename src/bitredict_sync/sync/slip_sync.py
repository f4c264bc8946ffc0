"""Oddyssey slip and cycle sync service."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from bitredict_sync.decoding import InvalidEventError, normalize_address
from bitredict_sync.sinks import notifier, streams
from bitredict_sync.storage.repos import CycleDTO, SlipDTO
from bitredict_sync.sync.base import EventHandler, EventSyncService
from bitredict_sync.sync.reconciler import EventBinding
from bitredict_sync.sync.retry import HandlerResult

if TYPE_CHECKING:
    from bitredict_sync.chain.logs import LogView

logger = logging.getLogger(__name__)

SLIP_EVENTS = ("CycleStarted", "CycleResolved", "SlipPlaced", "SlipEvaluated", "PrizeClaimed")

CYCLE_STATE_RESOLVED = 3


def slip_channels(kind: str, cycle_id: int, player: str, slip_id: int) -> list[str]:
    """Every channel a slip update fans out to."""
    return [
        kind,
        "slips:all",
        f"slips:cycle:{cycle_id}",
        f"slips:user:{player.lower()}",
        f"slips:{slip_id}:updated",
    ]


def _from_unix(ts: int | None) -> datetime | None:
    return datetime.fromtimestamp(ts, UTC) if ts else None


class SlipSyncService(EventSyncService):
    """Projects Oddyssey cycles, slips, evaluations and prize claims."""

    name = "slip_sync"

    def bindings(self) -> list[EventBinding]:
        return [EventBinding(self._chain.contracts.oddyssey, SLIP_EVENTS, label="oddyssey")]

    def handlers(self) -> dict[str, EventHandler]:
        return {
            "CycleStarted": self.on_cycle_started,
            "CycleResolved": self.on_cycle_resolved,
            "SlipPlaced": self.on_slip_placed,
            "SlipEvaluated": self.on_slip_evaluated,
            "PrizeClaimed": self.on_prize_claimed,
        }

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def startup_sweep(self) -> None:
        await self.sync_missing()

    async def fallback_sweep(self) -> None:
        await self.sync_missing()

    async def sync_missing(self) -> tuple[int, int]:
        """Backfill cycles first, then slips above the stored maximum."""
        cycles = 0
        current = await self._chain.get_current_cycle()
        start = (await self._store.max_cycle_id() or 0) + 1
        for cycle_id in range(start, current + 1):
            try:
                await self._sync_cycle(cycle_id)
                cycles += 1
            except Exception as e:
                logger.error("Cycle sweep failed for cycle %s: %s", cycle_id, e)

        slips = 0
        slip_count = await self._chain.get_slip_count()
        stored_max = await self._store.max_slip_id()
        start = 0 if stored_max is None else stored_max + 1
        for slip_id in range(start, slip_count):
            try:
                if await self._sync_slip(slip_id):
                    slips += 1
            except Exception as e:
                logger.error("Slip sweep failed for slip %s: %s", slip_id, e)

        if cycles or slips:
            logger.info("Slip sweep: %d cycles and %d slips backfilled", cycles, slips)
        return cycles, slips

    async def _sync_cycle(self, cycle_id: int) -> CycleDTO:
        struct = await self._chain.get_cycle(cycle_id)
        dto = CycleDTO(
            cycle_id=cycle_id,
            start_time=struct.start_time or None,
            end_time=struct.end_time or None,
            matches_count=len(struct.matches),
            matches_data=[m.to_json() for m in struct.matches],
            prize_pool=struct.prize_pool,
            total_slips=struct.slip_count,
            is_resolved=struct.state == CYCLE_STATE_RESOLVED,
        )
        await self._store.upsert_cycle(dto)
        return dto

    async def _sync_slip(self, slip_id: int, *, tx_hash: str | None = None) -> SlipDTO | None:
        """Read a slip from chain and store it; None if its cycle is unknown."""
        struct = await self._chain.get_slip(slip_id)
        cycle = await self._store.get_cycle(struct.cycle_id)
        if cycle is None:
            logger.warning("Slip %s: cycle %s not synced yet, skipping", slip_id, struct.cycle_id)
            return None
        if cycle.matches_count and len(struct.predictions) != cycle.matches_count:
            raise InvalidEventError(
                f"slip {slip_id} has {len(struct.predictions)} predictions, "
                f"cycle {cycle.cycle_id} has {cycle.matches_count} matches"
            )
        dto = SlipDTO(
            slip_id=slip_id,
            cycle_id=struct.cycle_id,
            player=struct.player.lower(),
            predictions=[p.to_json() for p in struct.predictions],
            is_evaluated=struct.is_evaluated,
            correct_count=struct.correct_count,
            final_score=struct.final_score if struct.is_evaluated else None,
            placed_at=_from_unix(struct.placed_at) or datetime.now(UTC),
            tx_hash=tx_hash,
        )
        await self._store.upsert_slip(dto)
        return dto

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def on_cycle_started(self, log: LogView) -> HandlerResult:
        cycle_id = int(log.arg("cycleId"))
        existed = await self._store.get_cycle(cycle_id) is not None
        cycle = await self._sync_cycle(cycle_id)
        logger.info("Cycle %s started (%d matches)", cycle_id, cycle.matches_count)

        payload = {
            "cycleId": str(cycle_id),
            "startTime": cycle.start_time,
            "endTime": cycle.end_time or log.arguments.get("endTime"),
            "matchesCount": cycle.matches_count,
            "timestamp": int(datetime.now(UTC).timestamp()),
        }
        await self._broadcast(["cycle:started"], payload)
        await self._publish(
            streams.CYCLES, streams.make_data_id(streams.CYCLES, cycle_id, "started"), payload
        )
        return HandlerResult.duplicate(f"cycle {cycle_id}") if existed else HandlerResult.ok()

    async def on_cycle_resolved(self, log: LogView) -> HandlerResult:
        cycle_id = int(log.arg("cycleId"))
        prize_pool = int(log.arguments.get("prizePool") or 0)
        total_slips = int(log.arguments.get("totalSlips") or 0)
        timestamp = int(log.arguments.get("timestamp") or 0) or None

        if await self._store.get_cycle(cycle_id) is None:
            await self._sync_cycle(cycle_id)
        applied = await self._store.apply_cycle_resolution(
            cycle_id,
            prize_pool=prize_pool,
            total_slips=total_slips,
            transaction_hash=log.transaction_hash,
            resolved_at=_from_unix(timestamp),
        )
        logger.info("Cycle %s resolved: prize pool %s, %d slips", cycle_id, prize_pool, total_slips)

        payload = {
            "cycleId": str(cycle_id),
            "prizePool": str(prize_pool),
            "totalSlips": total_slips,
            "timestamp": timestamp,
            "transactionHash": log.transaction_hash,
        }
        await self._broadcast(["cycle:resolved"], payload)
        await self._publish(
            streams.CYCLES, streams.make_data_id(streams.CYCLES, cycle_id, "resolved"), payload
        )
        return HandlerResult.ok() if applied else HandlerResult.duplicate(f"cycle {cycle_id} resolved")

    # ------------------------------------------------------------------
    # Slips
    # ------------------------------------------------------------------

    async def on_slip_placed(self, log: LogView) -> HandlerResult:
        cycle_id = int(log.arg("cycleId"))
        player = normalize_address(log.arg("player"), field_name="player")
        slip_id = int(log.arg("slipId"))

        if await self._store.get_cycle(cycle_id) is None:
            return HandlerResult.skipped(f"slip {slip_id}: cycle {cycle_id} not synced yet")
        existed = await self._store.get_slip(slip_id) is not None
        slip = await self._sync_slip(slip_id, tx_hash=log.transaction_hash)
        if slip is None:
            return HandlerResult.skipped(f"slip {slip_id}: cycle not synced yet")

        logger.info("Slip %s placed by %s in cycle %s", slip_id, player, cycle_id)
        payload = {
            "type": "slip:placed",
            "slipId": str(slip_id),
            "cycleId": str(cycle_id),
            "player": player,
            "predictions": slip.predictions,
            "placedAt": int(slip.placed_at.timestamp()) if slip.placed_at else None,
            "transactionHash": log.transaction_hash,
        }
        await self._broadcast(slip_channels("slip:placed", cycle_id, player, slip_id), payload)
        await self._publish(
            streams.SLIPS, streams.make_data_id(streams.SLIPS, slip_id, "placed"), payload
        )
        if existed:
            return HandlerResult.duplicate(f"slip {slip_id}")
        await self._notify(
            player, notifier.SLIP_PLACED, {"slipId": str(slip_id), "cycleId": str(cycle_id)}
        )
        return HandlerResult.ok()

    async def on_slip_evaluated(self, log: LogView) -> HandlerResult:
        slip_id = int(log.arg("slipId"))
        is_winner = bool(log.arg("isWinner"))
        correct = int(log.arg("correctPredictions"))
        total = int(log.arguments.get("totalPredictions") or 0)

        previous = await self._store.get_slip(slip_id)
        slip = await self._store.apply_slip_evaluation(slip_id, correct, is_winner=is_winner)
        logger.info("Slip %s evaluated: %d/%d correct (winner: %s)", slip_id, correct, total, is_winner)

        payload = self._slip_payload("slip:evaluated", slip)
        payload.update(
            {
                "isWinner": is_winner,
                "correctPredictions": correct,
                "totalPredictions": total,
                # Wall-clock time, never a block number.
                "timestamp": int(datetime.now(UTC).timestamp()),
            }
        )
        await self._broadcast(
            slip_channels("slip:evaluated", slip.cycle_id, slip.player, slip_id), payload
        )
        await self._publish(
            streams.SLIPS, streams.make_data_id(streams.SLIPS, slip_id, "evaluated"), payload
        )

        if previous is not None and previous.is_evaluated:
            return HandlerResult.duplicate(f"slip {slip_id} evaluated")
        body = {
            "slipId": str(slip_id),
            "cycleId": str(slip.cycle_id),
            "correctPredictions": correct,
            "totalPredictions": total,
        }
        await self._notify(slip.player, notifier.SLIP_EVALUATED, body)
        if is_winner:
            await self._notify(slip.player, notifier.PRIZE_AVAILABLE, body)
        return HandlerResult.ok()

    async def on_prize_claimed(self, log: LogView) -> HandlerResult:
        player = normalize_address(log.arg("player"), field_name="player")
        slip_id = int(log.arg("slipId"))
        amount = int(log.arguments.get("prizeAmount") or 0)

        previous = await self._store.get_slip(slip_id)
        slip = await self._store.apply_prize_claim(slip_id, amount)
        logger.info("Prize claimed for slip %s by %s: %s wei", slip_id, player, amount)

        payload = self._slip_payload("prize:claimed", slip)
        payload.update(
            {
                "player": player,
                "prizeAmount": str(amount),
                "timestamp": int(datetime.now(UTC).timestamp()),
                "transactionHash": log.transaction_hash,
            }
        )
        await self._broadcast(slip_channels("prize:claimed", slip.cycle_id, player, slip_id), payload)
        await self._publish(
            streams.PRIZES, streams.make_data_id(streams.PRIZES, slip_id, log.transaction_hash), payload
        )
        if previous is not None and previous.prize_claimed:
            return HandlerResult.duplicate(f"slip {slip_id} prize")
        return HandlerResult.ok()

    @staticmethod
    def _slip_payload(kind: str, slip: SlipDTO) -> dict[str, Any]:
        return {
            "type": kind,
            "slipId": str(slip.slip_id),
            "cycleId": str(slip.cycle_id),
            "player": slip.player,
            "isEvaluated": slip.is_evaluated,
            "correctCount": slip.correct_count,
            "prizeClaimed": slip.prize_claimed,
        }
