"""Pipeline controller for the position indexer.

This module provides the Pipeline class that wires together the chain
client, the aggregate store, the broadcaster and the two range drivers
(historical crawler and live watcher), and owns their lifecycle.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from position_indexer.broadcast import Broadcaster, NullBroadcaster, RedisBroadcaster
from position_indexer.chain.client import ChainClient
from position_indexer.config import Settings, get_settings
from position_indexer.indexer.coordinator import HISTORICAL_CURSOR, LIVE_CURSOR, RangeCoordinator
from position_indexer.indexer.crawler import CrawlerState, HistoricalCrawler
from position_indexer.indexer.models import IndexerStats
from position_indexer.indexer.mutator import StateMutator
from position_indexer.indexer.processor import BlockRangeProcessor
from position_indexer.indexer.watcher import LiveBlockWatcher
from position_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


PipelineStats = IndexerStats


class Pipeline:
    """Main controller of the position indexer.

    Pipeline flow:
        Chain head / historical windows → Range coordinator → Classifier →
        State mutator → Aggregate store (+ broadcast)

    Collaborators passed in are used as-is and left open on stop; the ones
    the pipeline builds from settings are closed by it.

    Example:
        ```python
        from position_indexer.config import get_settings
        from position_indexer.pipeline import Pipeline

        pipeline = Pipeline(get_settings())

        await pipeline.start()
        # Indexing runs until stop() is called
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db_manager: DatabaseManager | None = None,
        chain_client: ChainClient | None = None,
        broadcaster: Broadcaster | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            db_manager: Store to write to. Built from settings if not provided.
            chain_client: Chain client to read from. Built from settings if not provided.
            broadcaster: Notification target. Built from settings if not provided.
        """
        self._settings = settings or get_settings()

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        self._db_manager = db_manager
        self._chain_client = chain_client
        self._broadcaster = broadcaster
        self._owns_db = db_manager is None
        self._owns_chain = chain_client is None
        self._owns_broadcaster = broadcaster is None
        self._redis: Redis | None = None

        # Components (initialized in start())
        self._coordinator: RangeCoordinator | None = None
        self._crawler: HistoricalCrawler | None = None
        self._watcher: LiveBlockWatcher | None = None

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    @property
    def coordinator(self) -> RangeCoordinator | None:
        return self._coordinator

    @property
    def crawler_state(self) -> CrawlerState | None:
        return self._crawler.state if self._crawler else None

    async def start(self) -> None:
        """Start the pipeline.

        Calling start() on a running pipeline does nothing.

        Raises:
            RuntimeError: If the pipeline is starting or stopping.
            Exception: If any component fails to initialize.
        """
        if self._state == PipelineState.RUNNING:
            logger.debug("Pipeline already running")
            return
        if self._state not in (PipelineState.STOPPED, PipelineState.ERROR):
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")
        if self._tasks:
            # A driver failed while running; release what it left behind first.
            await self.stop()

        self._state = PipelineState.STARTING
        stop_event = asyncio.Event()
        self._stop_event = stop_event
        logger.info("Starting pipeline...")

        try:
            chain_client, coordinator = await self._initialize_components(stop_event)
            await self._start_drivers(chain_client, coordinator, stop_event)
            self._stats.started_at = datetime.now(UTC)
            if self._state is PipelineState.STARTING:
                self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.record_error(e)
            logger.error("Failed to start pipeline: %s", e)
            stop_event.set()
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
                self._tasks = []
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline gracefully.

        Sets the stop flag and waits for the drivers to finish their current
        event or chunk; in-flight store writes are not cancelled.
        """
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    async def _initialize_components(self, stop_event: asyncio.Event) -> tuple[ChainClient, RangeCoordinator]:
        """Initialize all pipeline components."""
        settings = self._settings

        db_manager = self._db_manager or DatabaseManager(settings.database.url)
        self._db_manager = db_manager

        needs_redis = self._chain_client is None or (self._broadcaster is None and settings.broadcast.enabled)
        if needs_redis and self._redis is None:
            self._redis = Redis.from_url(settings.redis.url)

        chain_client = self._chain_client or ChainClient(
            settings.chain.rpc_url,
            position_manager_address=settings.chain.position_manager_address,
            fallback_rpc_url=settings.chain.fallback_rpc_url,
            redis=self._redis,
            max_requests_per_second=settings.chain.max_requests_per_second,
        )
        self._chain_client = chain_client

        broadcaster = self._broadcaster
        if broadcaster is None:
            if settings.broadcast.enabled and self._redis is not None:
                broadcaster = RedisBroadcaster(self._redis, channel=settings.broadcast.channel)
            else:
                broadcaster = NullBroadcaster()
            self._broadcaster = broadcaster

        mutator = StateMutator(db_manager, chain_client, broadcaster)
        processor = BlockRangeProcessor(chain_client, mutator, stop_event=stop_event)
        coordinator = RangeCoordinator(
            db_manager,
            processor,
            stop_event=stop_event,
            stats=self._stats,
            max_attempts=settings.indexer.max_range_attempts,
            base_delay_seconds=settings.indexer.retry_base_delay_seconds,
        )
        self._coordinator = coordinator
        logger.info("Components initialized: %s", settings.redacted_summary())
        return chain_client, coordinator

    async def _start_drivers(
        self, chain_client: ChainClient, coordinator: RangeCoordinator, stop_event: asyncio.Event
    ) -> None:
        """Seed cursors from the current head and launch the enabled drivers."""
        indexer = self._settings.indexer

        head = await chain_client.get_current_height()
        logger.info("Chain head at block %d", head)

        if indexer.enable_realtime:
            live = await coordinator.load_cursor(LIVE_CURSOR)
            if live is None:
                await coordinator.seed_cursor(LIVE_CURSOR, max(head - indexer.confirmations, 0))
            self._watcher = LiveBlockWatcher(
                chain_client,
                coordinator,
                stop_event=stop_event,
                confirmations=indexer.confirmations,
                poll_interval=indexer.poll_interval_seconds,
                chunk_size=indexer.chunk_size_blocks,
            )
            self._spawn("live-watcher", self._watcher.run())

        if indexer.enable_historical_sync:
            historical = await coordinator.load_cursor(HISTORICAL_CURSOR)
            start_block = indexer.deployment_block
            if historical is not None:
                start_block = max(start_block, historical + 1)
            crawler = HistoricalCrawler(
                coordinator,
                chunk_size=indexer.chunk_size_blocks,
                stop_event=stop_event,
            )
            self._crawler = crawler
            self._spawn("historical-crawler", self._run_crawler(crawler, start_block, head))

    async def _run_crawler(self, crawler: HistoricalCrawler, start_block: int, end_block: int) -> None:
        state = await crawler.run(start_block, end_block)
        if state is CrawlerState.FAILED:
            self._stats.last_error = crawler.last_error

    def _spawn(self, name: str, coro: Awaitable[None]) -> None:
        task = asyncio.create_task(self._guard(name, coro), name=name)
        self._tasks.append(task)

    async def _guard(self, name: str, coro: Awaitable[None]) -> None:
        """Run a driver; an unexpected exit puts the pipeline in ERROR."""
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._stats.record_error(e)
            logger.exception("%s exited with an error: %s", name, e)
            if self._state in (PipelineState.STARTING, PipelineState.RUNNING):
                self._state = PipelineState.ERROR

    async def _cleanup(self) -> None:
        """Clean up the resources this pipeline created."""
        if self._broadcaster is not None:
            await self._broadcaster.aclose()
            if self._owns_broadcaster:
                self._broadcaster = None

        if self._chain_client is not None and self._owns_chain:
            await self._chain_client.aclose()
            self._chain_client = None

        if self._db_manager is not None and self._owns_db:
            await self._db_manager.dispose()
            self._db_manager = None

        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the pipeline and run until interrupted.

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
