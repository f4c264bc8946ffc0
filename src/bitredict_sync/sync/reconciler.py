"""Periodic reconciliation: head catch-up and aggregate audit.

The reconciler never writes on its own. Catch-up feeds missed logs back
through the owning service's handlers; the audit only reports drift between
on-chain aggregates and the rows we hold.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from bitredict_sync.chain.client import ChainClientError
from bitredict_sync.chain.logs import LogView
from bitredict_sync.sync.retry import HandlerOutcome, HandlerResult

if TYPE_CHECKING:
    from bitredict_sync.chain.client import ChainClient
    from bitredict_sync.storage.persistence import EventStore
    from bitredict_sync.storage.repos import PoolDTO

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_BLOCKS = 1000


@dataclass(frozen=True)
class EventBinding:
    """A set of events a service consumes from one contract."""

    contract: str
    events: tuple[str, ...]
    label: str = ""


@dataclass
class CatchUpReport:
    from_block: int = 0
    to_block: int = 0
    scanned: int = 0
    already_recorded: int = 0
    replayed: int = 0
    failed: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class Discrepancy:
    """On-chain vs stored aggregate mismatch for one pool."""

    pool_id: int
    aggregate: str
    on_chain: int
    stored: int

    @property
    def delta(self) -> int:
        return self.on_chain - self.stored


LogProcessor = Callable[[LogView], Awaitable[HandlerResult]]


class Reconciler:
    """Replays a recent block window and audits pool aggregates."""

    def __init__(
        self,
        chain: ChainClient,
        store: EventStore,
        *,
        consumer: str,
        process: LogProcessor,
        lookback_blocks: int = DEFAULT_LOOKBACK_BLOCKS,
    ) -> None:
        self._chain = chain
        self._store = store
        self._consumer = consumer
        self._process = process
        self._lookback = lookback_blocks

    async def catch_up(self, bindings: Sequence[EventBinding]) -> CatchUpReport:
        """Re-run handlers for logs in `[head - lookback, head]` not yet recorded."""
        head = await self._chain.current_block()
        report = CatchUpReport(from_block=max(0, head - self._lookback), to_block=head)

        for binding in bindings:
            logs = await self._chain.query_logs(
                binding.contract, binding.events, report.from_block, report.to_block
            )
            for log in logs:
                if log.removed:
                    continue
                report.scanned += 1
                if await self._store.is_recorded(self._consumer, log.transaction_hash, log.log_index):
                    report.already_recorded += 1
                    continue
                result = await self._process(log)
                report.replayed += 1
                report.outcomes[result.outcome.value] = report.outcomes.get(result.outcome.value, 0) + 1
                if result.outcome in (HandlerOutcome.TRANSIENT, HandlerOutcome.TERMINAL):
                    report.failed += 1

        logger.info(
            "%s catch-up [%d, %d]: scanned=%d replayed=%d recorded=%d failed=%d",
            self._consumer,
            report.from_block,
            report.to_block,
            report.scanned,
            report.replayed,
            report.already_recorded,
            report.failed,
        )
        return report

    async def audit_pools(self, pools: Sequence[PoolDTO]) -> list[Discrepancy]:
        """Compare on-chain stakes with stored bets and LP rows.

        Discrepancies are logged with the wei delta and returned; no rows are
        created here.
        """
        found: list[Discrepancy] = []
        for pool in pools:
            try:
                struct = await self._chain.get_pool(pool.pool_id)
            except ChainClientError as e:
                logger.warning("Audit skipped pool %s: %s", pool.pool_id, e)
                continue

            stored_bets = await self._store.stored_bet_total(pool.pool_id)
            stored_lp = await self._store.stored_lp_total(pool.pool_id)
            checks = (
                ("total_bettor_stake", struct.total_bettor_stake, stored_bets),
                ("total_creator_side_stake", struct.total_creator_side_stake, pool.creator_stake + stored_lp),
            )
            for name, on_chain, stored in checks:
                if on_chain == stored:
                    continue
                item = Discrepancy(pool_id=pool.pool_id, aggregate=name, on_chain=on_chain, stored=stored)
                found.append(item)
                logger.warning(
                    "Pool %s %s mismatch: chain=%s stored=%s delta=%s wei",
                    pool.pool_id,
                    name,
                    on_chain,
                    stored,
                    item.delta,
                )
        return found
