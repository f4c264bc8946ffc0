"""Main pipeline orchestrator for the Bitredict sync backend.

This module provides the Pipeline class that owns the process-wide
collaborators (database, chain client, Redis, broadcaster) and runs the
four sync services on top of them.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis

from bitredict_sync.chain.client import ChainClient
from bitredict_sync.config import Settings, get_settings
from bitredict_sync.sinks.broadcast import ChannelBroadcaster, NullBroadcaster
from bitredict_sync.sinks.notifier import Notifier
from bitredict_sync.sinks.streams import DataStreamPublisher
from bitredict_sync.storage.database import DatabaseManager
from bitredict_sync.storage.persistence import EventStore
from bitredict_sync.sync.base import EventSyncService, ServiceStats, SyncOptions
from bitredict_sync.sync.bet_sync import BetSyncService
from bitredict_sync.sync.pool_sync import PoolSyncService
from bitredict_sync.sync.reputation import ReputationIndexer
from bitredict_sync.sync.slip_sync import SlipSyncService

if TYPE_CHECKING:
    from bitredict_sync.sinks.broadcast import BroadcastSink

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """The pipeline could not be brought up."""


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    services: dict[str, ServiceStats] = field(default_factory=dict)
    last_error: str | None = None

    @property
    def events_processed(self) -> int:
        return sum(s.events_processed for s in self.services.values())

    @property
    def errors(self) -> int:
        return sum(s.terminal_failures for s in self.services.values())


class Pipeline:
    """Wires the collaborators together and runs the sync services.

    Pipeline flow:
        Contract logs → Sync services → Event store → Broadcast / data stream / notifier

    Example:
        ```python
        from bitredict_sync.config import get_settings
        from bitredict_sync.pipeline import Pipeline

        settings = get_settings()
        pipeline = Pipeline(settings)

        await pipeline.start()
        # Pipeline runs until stop() is called
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db_manager: DatabaseManager | None = None,
        chain: ChainClient | None = None,
        redis: Redis | None = None,
        broadcaster: BroadcastSink | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            db_manager: Pre-built database manager (tests).
            chain: Pre-built chain client (tests).
            redis: Pre-built Redis client (tests).
            broadcaster: Pre-built broadcast sink (tests).
        """
        self._settings = settings or get_settings()

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        # Components (initialized in start())
        self._db_manager = db_manager
        self._chain = chain
        self._redis = redis
        self._broadcaster = broadcaster
        self._owns_broadcaster = broadcaster is None
        self._store: EventStore | None = None
        self._publisher: DataStreamPublisher | None = None
        self._notifier: Notifier | None = None
        self._services: list[EventSyncService] = []

        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        self._stats.services = {s.name: s.stats for s in self._services}
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    @property
    def services(self) -> list[EventSyncService]:
        return list(self._services)

    @property
    def store(self) -> EventStore | None:
        return self._store

    async def start(self) -> None:
        """Start the pipeline.

        Raises:
            RuntimeError: If pipeline is already running.
            PipelineError: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline...")

        try:
            await self._initialize_components()
            await self._start_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._stop_services()
            await self._cleanup()
            raise PipelineError(str(e)) from e

    async def stop(self) -> None:
        """Stop the pipeline gracefully.

        Services stop taking events and flush in-flight retries before the
        shared resources are released.
        """
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_services()
        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    def request_stop(self) -> None:
        """Ask `run()` to return; safe to call from a signal handler."""
        if self._stop_event:
            self._stop_event.set()

    async def _initialize_components(self) -> None:
        """Initialize all pipeline components."""
        settings = self._settings

        logger.debug("Initializing database manager...")
        if self._db_manager is None:
            self._db_manager = DatabaseManager.from_settings(settings.database)
        self._db_manager.initialize()
        self._store = EventStore(self._db_manager)

        logger.debug("Initializing chain client...")
        if self._chain is None:
            self._chain = ChainClient.from_settings(settings.chain, settings.sync)
        await self._chain.initialize()

        logger.debug("Initializing Redis connection...")
        if self._redis is None:
            self._redis = Redis.from_url(settings.redis.url)
        private_key = (
            settings.chain.private_key.get_secret_value() if settings.chain.private_key else None
        )
        self._publisher = DataStreamPublisher(
            self._redis,
            enabled=settings.streams.enabled,
            key_prefix=settings.streams.key_prefix,
            maxlen=settings.streams.maxlen,
            timeout=settings.sync.sink_timeout_s,
            private_key=private_key,
        )

        logger.debug("Initializing broadcaster...")
        if self._broadcaster is None:
            if settings.broadcast.enabled:
                broadcaster = ChannelBroadcaster(
                    settings.broadcast.host,
                    settings.broadcast.port,
                    path=settings.broadcast.path,
                )
                await broadcaster.initialize()
                self._broadcaster = broadcaster
            else:
                self._broadcaster = NullBroadcaster()
        self._notifier = Notifier(self._store, self._broadcaster)

        self._services = self._build_services(SyncOptions.from_settings(settings.sync))

    def _build_services(self, options: SyncOptions) -> list[EventSyncService]:
        assert self._chain is not None and self._store is not None
        shared: dict[str, Any] = {
            "broadcaster": self._broadcaster,
            "publisher": self._publisher,
            "notifier": self._notifier,
            "options": options,
        }
        reputation = ReputationIndexer(self._chain, self._store, **shared)
        return [
            reputation,
            PoolSyncService(self._chain, self._store, reputation=reputation, **shared),
            BetSyncService(self._chain, self._store, **shared),
            SlipSyncService(self._chain, self._store, **shared),
        ]

    async def _start_services(self) -> None:
        """Start services in dependency order (pools before bets and slips)."""
        for service in self._services:
            logger.debug("Starting %s...", service.name)
            await service.start()

    async def _stop_services(self) -> None:
        for service in reversed(self._services):
            try:
                await service.stop()
            except Exception as e:
                logger.warning("Error stopping %s: %s", service.name, e)

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._owns_broadcaster and isinstance(self._broadcaster, ChannelBroadcaster):
            await self._broadcaster.shutdown()

        if self._chain:
            await self._chain.shutdown()

        if self._db_manager:
            await self._db_manager.shutdown()

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    async def reconcile_once(self) -> None:
        """Run one reconciler tick on every service."""
        for service in self._services:
            await service.reconcile()

    async def run(self) -> None:
        """Start the pipeline and run until `request_stop()` or cancellation.

        Example:
            ```python
            pipeline = Pipeline()
            try:
                await pipeline.run()
            except KeyboardInterrupt:
                pass
            ```
        """
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Pipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
