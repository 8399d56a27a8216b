"""Serialized range execution with retry and durable cursors.

The historical crawler and the live watcher both submit block ranges here.
One lock covers range processing and cursor updates, so the two drivers never
interleave store writes and a cursor only moves after its range completed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from position_indexer.chain.client import ChainClientError
from position_indexer.indexer.models import IndexerStats
from position_indexer.storage.repos import CursorRepository

if TYPE_CHECKING:
    from position_indexer.indexer.processor import BlockRangeProcessor
    from position_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

LIVE_CURSOR = "live"
HISTORICAL_CURSOR = "historical"

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY_SECONDS = 1.0

_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (ChainClientError, SQLAlchemyError, OSError)


class PipelineError(Exception):
    """Base exception for indexing pipeline errors."""


class RangeProcessingError(PipelineError):
    """Raised when a block range still fails after every retry."""

    def __init__(self, from_height: int, to_height: int, attempts: int, cause: BaseException) -> None:
        self.from_height = from_height
        self.to_height = to_height
        self.attempts = attempts
        super().__init__(f"Range [{from_height}, {to_height}] failed after {attempts} attempts: {cause}")


class RangeCoordinator:
    """Runs block ranges one at a time and tracks named cursors."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        processor: BlockRangeProcessor,
        *,
        stop_event: asyncio.Event | None = None,
        stats: IndexerStats | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._db = db_manager
        self._processor = processor
        self._stop_event = stop_event or asyncio.Event()
        self._stats = stats or IndexerStats()
        self._max_attempts = max_attempts
        self._base_delay = base_delay_seconds
        self._lock = asyncio.Lock()
        self._cursors: dict[str, int] = {}

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    @property
    def stats(self) -> IndexerStats:
        return self._stats

    def cursor(self, name: str) -> int | None:
        """Last fully processed height of a cursor, as known in memory."""
        return self._cursors.get(name)

    async def load_cursor(self, name: str) -> int | None:
        """Read a persisted cursor into memory."""
        async with self._db.get_async_session() as session:
            height = await CursorRepository(session).get(name)
        if height is not None:
            self._cursors[name] = height
        return height

    async def seed_cursor(self, name: str, height: int) -> None:
        """Set a cursor without processing anything."""
        async with self._lock:
            await self._persist_cursor(name, height)

    async def _persist_cursor(self, name: str, height: int) -> None:
        async with self._db.get_async_session() as session:
            await CursorRepository(session).set(name, height)
        self._cursors[name] = height

    async def run_range(self, name: str, from_height: int, to_height: int) -> bool:
        """Process [from_height, to_height] and move cursor `name` to `to_height`.

        Returns:
            True if the range completed, False if a stop request interrupted it.

        Raises:
            RangeProcessingError: If the range failed `max_attempts` times.
        """
        if to_height < from_height:
            return True

        async with self._lock:
            delay = self._base_delay
            for attempt in range(1, self._max_attempts + 1):
                try:
                    outcome = await self._processor.process(from_height, to_height)
                except _RETRYABLE_ERRORS as e:
                    self._stats.record_error(e)
                    if attempt == self._max_attempts:
                        raise RangeProcessingError(from_height, to_height, attempt, e) from e
                    logger.warning(
                        "Range [%d, %d] failed (attempt %d/%d), retrying in %.1fs: %s",
                        from_height,
                        to_height,
                        attempt,
                        self._max_attempts,
                        delay,
                        e,
                    )
                    if await self._sleep_or_stop(delay):
                        return False
                    delay *= 2
                    continue

                self._stats.record(outcome)
                if not outcome.completed:
                    return False
                await self._persist_cursor(name, to_height)
                return True

        # Unreachable: the loop either returns or raises.
        return False

    async def _sleep_or_stop(self, delay: float) -> bool:
        """Back off for `delay` seconds; True if a stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except TimeoutError:
            return False
        return True
