"""Live processing of new blocks as the chain head advances."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from position_indexer.chain.client import ChainClientError
from position_indexer.indexer.coordinator import LIVE_CURSOR, PipelineError, RangeProcessingError
from position_indexer.indexer.crawler import DEFAULT_CHUNK_SIZE, iter_chunks

if TYPE_CHECKING:
    from position_indexer.chain.client import ChainClient
    from position_indexer.indexer.coordinator import RangeCoordinator

logger = logging.getLogger(__name__)


class LiveBlockWatcher:
    """Processes (cursor, head - confirmations] on every new head.

    The live cursor must be seeded (see `RangeCoordinator.seed_cursor`) before
    `run` is called. A catch-up span wider than `chunk_size` is walked in
    windows, the cursor moving after each one. A failed window leaves the
    cursor at the end of the last good window, so the next head re-covers
    the rest.
    """

    def __init__(
        self,
        chain_client: ChainClient,
        coordinator: RangeCoordinator,
        *,
        stop_event: asyncio.Event | None = None,
        confirmations: int = 0,
        poll_interval: float = 2.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self._chain = chain_client
        self._coordinator = coordinator
        self._stop_event = stop_event or asyncio.Event()
        self._confirmations = confirmations
        self._poll_interval = poll_interval
        self._chunk_size = chunk_size

    async def run(self) -> None:
        """Consume new heads until the stop flag is set."""
        logger.info("Live watcher started at block %s", self._coordinator.cursor(LIVE_CURSOR))
        async for height in self._chain.new_block_heights(self._stop_event, poll_interval=self._poll_interval):
            try:
                await self.on_new_head(height)
            except (PipelineError, ChainClientError) as e:
                logger.error("Live head %d failed, will retry on next block: %s", height, e)
            if self._stop_event.is_set():
                break
        logger.info("Live watcher stopped at block %s", self._coordinator.cursor(LIVE_CURSOR))

    async def on_new_head(self, height: int) -> bool:
        """Handle one head notification.

        Returns:
            True if the cursor is at the confirmed target afterwards.
        """
        cursor = self._coordinator.cursor(LIVE_CURSOR)
        if cursor is None:
            raise RuntimeError("Live cursor is not seeded")

        target = height - self._confirmations
        if target <= cursor:
            return True

        for from_height, to_height in iter_chunks(cursor + 1, target, self._chunk_size):
            if self._stop_event.is_set():
                return False
            try:
                completed = await self._coordinator.run_range(LIVE_CURSOR, from_height, to_height)
            except RangeProcessingError as e:
                logger.error(
                    "Live range [%d, %d] failed, will retry on next block: %s", from_height, to_height, e
                )
                return False
            if not completed:
                return False
        return True
