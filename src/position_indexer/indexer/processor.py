"""Fetches, classifies and applies the Transfer logs of one block range."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from position_indexer.indexer.classifier import classify_transfer
from position_indexer.indexer.models import RangeOutcome

if TYPE_CHECKING:
    from position_indexer.chain.client import ChainClient
    from position_indexer.indexer.mutator import StateMutator

logger = logging.getLogger(__name__)


class BlockRangeProcessor:
    """Processes an inclusive block range in (block, log index) order.

    The stop flag is checked before every event; a range interrupted by it is
    reported with `completed=False` so its cursor is not advanced.
    """

    def __init__(
        self,
        chain_client: ChainClient,
        mutator: StateMutator,
        *,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self._chain = chain_client
        self._mutator = mutator
        self._stop_event = stop_event or asyncio.Event()

    async def process(self, from_height: int, to_height: int) -> RangeOutcome:
        """Process [from_height, to_height].

        Raises:
            ChainClientError: If logs or a block timestamp cannot be fetched.
            sqlalchemy.exc.SQLAlchemyError: If a store write fails.
        """
        outcome = RangeOutcome(from_height=from_height, to_height=to_height)
        logs = await self._chain.get_transfer_logs(from_height, to_height)
        outcome.logs_seen = len(logs)

        timestamps: dict[int, int] = {}
        for log in logs:
            if self._stop_event.is_set():
                logger.info(
                    "Stop requested, leaving range [%d, %d] at block %d",
                    from_height,
                    to_height,
                    log.block_number,
                )
                return outcome

            if log.block_number not in timestamps:
                timestamps[log.block_number] = await self._chain.get_block_timestamp(log.block_number)

            event = classify_transfer(log, block_timestamp=timestamps[log.block_number])
            if event is None:
                outcome.discarded += 1
                continue

            if await self._mutator.apply(event):
                outcome.applied += 1
            else:
                outcome.duplicates += 1

        outcome.completed = True
        if logs:
            logger.debug(
                "Range [%d, %d]: %d logs, %d applied, %d duplicate, %d discarded",
                from_height,
                to_height,
                outcome.logs_seen,
                outcome.applied,
                outcome.duplicates,
                outcome.discarded,
            )
        return outcome
