"""Chunked historical backfill from the deployment height to a fixed head."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from enum import Enum
from typing import TYPE_CHECKING

from position_indexer.indexer.coordinator import HISTORICAL_CURSOR, RangeProcessingError

if TYPE_CHECKING:
    from position_indexer.indexer.coordinator import RangeCoordinator

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 2000


class CrawlerState(str, Enum):
    """Historical crawler lifecycle states."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"
    STOPPED = "stopped"
    FAILED = "failed"


def iter_chunks(start: int, end: int, size: int) -> Iterator[tuple[int, int]]:
    """Yield inclusive windows covering [start, end] exactly once, in order."""
    if size < 1:
        raise ValueError("size must be >= 1")
    for chunk_start in range(start, end + 1, size):
        yield chunk_start, min(chunk_start + size - 1, end)


class HistoricalCrawler:
    """Walks [start, end] in fixed-size windows through the range coordinator.

    A window that still fails after the coordinator's retries ends the crawl
    in FAILED; later windows are never processed past a gap.
    """

    def __init__(
        self,
        coordinator: RangeCoordinator,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self._coordinator = coordinator
        self._chunk_size = chunk_size
        self._stop_event = stop_event or asyncio.Event()
        self._state = CrawlerState.IDLE
        self._last_error: str | None = None

    @property
    def state(self) -> CrawlerState:
        return self._state

    @property
    def last_error(self) -> str | None:
        return self._last_error

    async def run(self, start_block: int, end_block: int) -> CrawlerState:
        """Crawl [start_block, end_block] and return the final state."""
        self._state = CrawlerState.RUNNING
        total = end_block - start_block + 1
        if total <= 0:
            logger.info("Historical sync: nothing to do (start %d > head %d)", start_block, end_block)
            self._state = CrawlerState.COMPLETE
            return self._state

        logger.info("Historical sync: blocks %d to %d (%d blocks)", start_block, end_block, total)
        last_milestone = 0

        for chunk_start, chunk_end in iter_chunks(start_block, end_block, self._chunk_size):
            if self._stop_event.is_set():
                logger.info("Historical sync stopped before block %d", chunk_start)
                self._state = CrawlerState.STOPPED
                return self._state

            try:
                completed = await self._coordinator.run_range(HISTORICAL_CURSOR, chunk_start, chunk_end)
            except RangeProcessingError as e:
                self._last_error = str(e)
                logger.error(
                    "Historical sync failed at blocks %d-%d, resume will restart here: %s",
                    chunk_start,
                    chunk_end,
                    e,
                )
                self._state = CrawlerState.FAILED
                return self._state

            if not completed:
                logger.info("Historical sync stopped inside blocks %d-%d", chunk_start, chunk_end)
                self._state = CrawlerState.STOPPED
                return self._state

            milestone = (chunk_end - start_block + 1) * 100 // total // 10 * 10
            if milestone > last_milestone:
                last_milestone = milestone
                logger.info("Historical sync %d%% (block %d of %d)", milestone, chunk_end, end_block)

        logger.info("Historical sync complete at block %d", end_block)
        self._state = CrawlerState.COMPLETE
        return self._state
