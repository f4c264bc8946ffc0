"""Shared lifecycle for the event sync services.

Each service declares the contract events it consumes and a handler per
event name. The base class owns everything else: subscriptions and their
re-establishment after a provider disconnect, the retry scheduler, the
periodic reconciler loop, best-effort sinks and graceful shutdown.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from bitredict_sync.chain.abi import get_event
from bitredict_sync.chain.client import ContractMismatchError
from bitredict_sync.chain.logs import LogSubscription, LogView
from bitredict_sync.sinks.broadcast import NullBroadcaster
from bitredict_sync.sync.reconciler import EventBinding, Reconciler
from bitredict_sync.sync.retry import HandlerOutcome, HandlerResult, RetryScheduler

if TYPE_CHECKING:
    from bitredict_sync.chain.client import ChainClient
    from bitredict_sync.sinks.broadcast import BroadcastSink
    from bitredict_sync.sinks.notifier import Notifier
    from bitredict_sync.sinks.streams import DataStreamPublisher
    from bitredict_sync.storage.persistence import EventStore

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 5.0
DEFAULT_FALLBACK_INTERVAL_SECONDS = 300  # 5 minutes
DEFAULT_LOOKBACK_BLOCKS = 1000
DEFAULT_SINK_TIMEOUT_SECONDS = 30.0
DEFAULT_SHUTDOWN_GRACE_SECONDS = 10.0
DEFAULT_RESUBSCRIBE_DELAY_SECONDS = 5.0


class ServiceState(str, Enum):
    """State of a sync service."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    """Counters for one sync service."""

    events_received: int = 0
    events_processed: int = 0
    duplicates: int = 0
    skipped: int = 0
    transient_failures: int = 0
    terminal_failures: int = 0
    resubscriptions: int = 0
    sweeps: int = 0
    sweep_failures: int = 0
    last_event_time: datetime | None = None
    last_sweep_time: datetime | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class SyncOptions:
    """Tunables shared by every service (see `SyncSettings`)."""

    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS
    fallback_interval_seconds: float = DEFAULT_FALLBACK_INTERVAL_SECONDS
    lookback_blocks: int = DEFAULT_LOOKBACK_BLOCKS
    sink_timeout_seconds: float = DEFAULT_SINK_TIMEOUT_SECONDS
    shutdown_grace_seconds: float = DEFAULT_SHUTDOWN_GRACE_SECONDS
    audit_pool_limit: int = 10

    @classmethod
    def from_settings(cls, settings: Any) -> SyncOptions:
        return cls(
            max_retries=settings.max_retries,
            retry_delay_seconds=settings.retry_delay_ms / 1000,
            fallback_interval_seconds=settings.fallback_interval_ms / 1000,
            lookback_blocks=settings.lookback_blocks,
            sink_timeout_seconds=settings.sink_timeout_s,
            shutdown_grace_seconds=settings.shutdown_grace_s,
            audit_pool_limit=settings.audit_pool_limit,
        )


EventHandler = Callable[[LogView], Awaitable[HandlerResult]]


class EventSyncService:
    """Base class for a service that projects contract events.

    Subclasses implement `bindings()` and `handlers()`, and may override
    `startup_sweep()` and `fallback_sweep()`.
    """

    name = "sync"

    def __init__(
        self,
        chain: ChainClient,
        store: EventStore,
        *,
        broadcaster: BroadcastSink | None = None,
        publisher: DataStreamPublisher | None = None,
        notifier: Notifier | None = None,
        options: SyncOptions | None = None,
    ) -> None:
        self._chain = chain
        self._store = store
        self._broadcaster: BroadcastSink = broadcaster or NullBroadcaster()
        self._publisher = publisher
        self._notifier = notifier
        self._options = options or SyncOptions()

        self._state = ServiceState.STOPPED
        self._stats = ServiceStats()
        self._stop_event = asyncio.Event()
        self._fallback_task: asyncio.Task[None] | None = None
        self._subscriptions: dict[int, tuple[EventBinding, LogSubscription]] = {}
        self._handlers: dict[str, EventHandler] = self.handlers()
        self._scheduler = RetryScheduler(
            max_retries=self._options.max_retries,
            base_delay=self._options.retry_delay_seconds,
            attempt_timeout=self._options.sink_timeout_seconds,
            name=self.name,
        )
        self._reconciler = Reconciler(
            chain,
            store,
            consumer=self.name,
            process=self.handle_log,
            lookback_blocks=self._options.lookback_blocks,
        )

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    def bindings(self) -> list[EventBinding]:
        raise NotImplementedError

    def handlers(self) -> dict[str, EventHandler]:
        raise NotImplementedError

    def describe_subject(self, log: LogView) -> str:
        """Pool id or user a log is about, for error lines."""
        for key in ("poolId", "slipId", "cycleId", "user", "player"):
            if key in log.arguments:
                return f"{key}={log.arguments[key]}"
        return "-"

    async def startup_sweep(self) -> None:
        """Backfill history missed while the process was down."""

    async def fallback_sweep(self) -> None:
        """Service-specific gap closing run on every reconciler tick."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def stats(self) -> ServiceStats:
        return self._stats

    @property
    def scheduler(self) -> RetryScheduler:
        return self._scheduler

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    def _validate_bindings(self) -> None:
        """Fail before any event is processed if our ABI cannot serve a binding."""
        self._handlers = self.handlers()
        for binding in self.bindings():
            for event_name in binding.events:
                try:
                    get_event(event_name)
                except KeyError as e:
                    raise ContractMismatchError(f"{self.name}: {e}") from e
                if event_name not in self._handlers:
                    raise ContractMismatchError(f"{self.name}: no handler for {event_name}")

    async def start(self) -> None:
        """Sweep history, subscribe, and start the reconciler loop."""
        if self._state != ServiceState.STOPPED:
            logger.warning("Cannot start %s: already in state %s", self.name, self._state)
            return

        self._state = ServiceState.STARTING
        self._stop_event.clear()
        self._scheduler.reopen()
        try:
            self._validate_bindings()
        except ContractMismatchError:
            self._state = ServiceState.ERROR
            raise

        try:
            await self.startup_sweep()
        except Exception as e:
            # The reconciler closes whatever the sweep could not.
            self._stats.last_error = str(e)
            logger.warning("%s startup sweep failed: %s", self.name, e)

        for binding in self.bindings():
            self._subscribe(binding)

        self._fallback_task = asyncio.create_task(self._fallback_loop(), name=f"{self.name}:fallback")
        self._state = ServiceState.RUNNING
        logger.info("%s started (%d subscriptions)", self.name, len(self._subscriptions))

    async def stop(self) -> None:
        """Stop accepting events and flush in-flight retries within the grace period."""
        if self._state == ServiceState.STOPPED:
            return

        self._state = ServiceState.STOPPING
        self._stop_event.set()

        subscriptions = [sub for _, sub in self._subscriptions.values()]
        self._subscriptions.clear()
        for sub in subscriptions:
            await sub.stop()

        if self._fallback_task:
            self._fallback_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._fallback_task
            self._fallback_task = None

        await self._scheduler.drain(self._options.shutdown_grace_seconds)
        self._state = ServiceState.STOPPED
        logger.info("%s stopped", self.name)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _subscribe(self, binding: EventBinding, *, from_block: int | None = None) -> LogSubscription:
        subscription = self._chain.subscribe(
            binding.contract,
            binding.events,
            self._on_log,
            from_block=from_block,
            on_disconnect=self._on_disconnect,
            name=f"{self.name}:{binding.label or ','.join(binding.events)}",
        )
        self._subscriptions[id(subscription)] = (binding, subscription)
        return subscription

    async def _on_log(self, log: LogView) -> None:
        await self.handle_log(log)

    async def _on_disconnect(self, subscription: LogSubscription, error: Exception) -> None:
        entry = self._subscriptions.pop(id(subscription), None)
        if entry is None or self._stop_event.is_set():
            return
        binding, _ = entry
        self._stats.resubscriptions += 1
        self._stats.last_error = str(error)

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=DEFAULT_RESUBSCRIBE_DELAY_SECONDS)
        if self._stop_event.is_set():
            return
        logger.info(
            "%s re-subscribing %s from block %s", self.name, subscription.name, subscription.resume_block
        )
        self._subscribe(binding, from_block=subscription.resume_block)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle_log(self, log: LogView) -> HandlerResult:
        """Process one log through its handler with retry semantics."""
        self._stats.events_received += 1
        self._stats.last_event_time = datetime.now(UTC)

        handler = self._handlers.get(log.event_name)
        if handler is None:
            self._stats.terminal_failures += 1
            logger.error("%s has no handler for %s", self.name, log.describe())
            return HandlerResult.terminal(f"no handler for {log.event_name}")

        label = f"{self.name} {log.event_name} tx={log.transaction_hash} {self.describe_subject(log)}"

        async def attempt() -> HandlerResult:
            result = await handler(log)
            if result.is_recorded:
                await self._store.mark_recorded(
                    self.name,
                    log.transaction_hash,
                    log.log_index,
                    event_name=log.event_name,
                    block_number=log.block_number,
                )
            return result

        result = await self._scheduler.run(label, attempt)
        self._count(result)
        return result

    def _count(self, result: HandlerResult) -> None:
        if result.outcome is HandlerOutcome.OK:
            self._stats.events_processed += 1
        elif result.outcome is HandlerOutcome.DUPLICATE:
            self._stats.duplicates += 1
        elif result.outcome is HandlerOutcome.SKIPPED:
            self._stats.skipped += 1
            logger.warning("%s skipped event: %s", self.name, result.reason)
        elif result.outcome is HandlerOutcome.TRANSIENT:
            self._stats.transient_failures += 1
        else:
            self._stats.terminal_failures += 1
            self._stats.last_error = result.reason

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _fallback_loop(self) -> None:
        """Background loop that runs the reconciler on a fixed cadence."""
        while not self._stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self._options.fallback_interval_seconds,
                    )
                    break
                except TimeoutError:
                    pass

                await self.reconcile()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._stats.sweep_failures += 1
                self._stats.last_error = str(e)
                logger.error("%s reconcile failed: %s", self.name, e)
                # Continue running - will retry on next interval

    async def reconcile(self) -> None:
        """One reconciler tick: head catch-up, then the service's own sweep."""
        self._stats.sweeps += 1
        await self._reconciler.catch_up(self.bindings())
        await self.fallback_sweep()
        self._stats.last_sweep_time = datetime.now(UTC)

    async def replay_range(
        self,
        binding: EventBinding,
        from_block: int,
        to_block: int,
        *,
        argument_filters: dict[str, Any] | None = None,
    ) -> int:
        """Feed every unrecorded log of a block range through the handlers."""
        logs = await self._chain.query_logs(
            binding.contract,
            binding.events,
            from_block,
            to_block,
            argument_filters=argument_filters,
        )
        replayed = 0
        for log in logs:
            if log.removed:
                continue
            if await self._store.is_recorded(self.name, log.transaction_hash, log.log_index):
                continue
            await self.handle_log(log)
            replayed += 1
        return replayed

    # ------------------------------------------------------------------
    # Best-effort sinks
    # ------------------------------------------------------------------

    async def _broadcast(self, channels: Sequence[str], payload: dict[str, Any]) -> None:
        for channel in channels:
            try:
                await asyncio.wait_for(
                    self._broadcaster.broadcast(channel, payload),
                    timeout=self._options.sink_timeout_seconds,
                )
            except Exception as e:
                logger.warning("%s broadcast on %s failed: %s", self.name, channel, e)

    async def _publish(self, context: str, data_id: str, payload: dict[str, Any]) -> None:
        if self._publisher is None:
            return
        try:
            await asyncio.wait_for(
                self._publisher.publish(context, data_id, payload),
                timeout=self._options.sink_timeout_seconds,
            )
        except Exception as e:
            logger.warning("%s publish to %s failed: %s", self.name, context, e)

    async def _notify(self, user: str, kind: str, payload: dict[str, Any]) -> None:
        if self._notifier is None:
            return
        try:
            await asyncio.wait_for(
                self._notifier.notify(user, kind, payload),
                timeout=self._options.sink_timeout_seconds,
            )
        except Exception as e:
            logger.warning("%s notification %s for %s failed: %s", self.name, kind, user, e)
