"""Tests for block range processing."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from fakes import ALICE, BOB, FakeChainClient, RecordingBroadcaster, make_log, mint

from position_indexer.chain.client import RPCError
from position_indexer.chain.models import NULL_ADDRESS
from position_indexer.indexer.mutator import StateMutator
from position_indexer.indexer.processor import BlockRangeProcessor
from position_indexer.storage.database import DatabaseManager


class TestBlockRangeProcessor:
    @pytest.mark.asyncio
    async def test_counts_applied_duplicate_and_discarded(
        self, db_manager: DatabaseManager, chain: FakeChainClient, broadcaster: RecordingBroadcaster
    ) -> None:
        chain.logs = [
            mint(ALICE, 1, block=10),
            make_log(ALICE, BOB, "", block=11),
            make_log(NULL_ADDRESS, NULL_ADDRESS, 3, block=12),
            make_log(ALICE, BOB, 1, block=13),
        ]
        processor = BlockRangeProcessor(chain, StateMutator(db_manager, chain, broadcaster))

        first = await processor.process(10, 20)
        second = await processor.process(10, 20)

        assert first.completed is True
        assert (first.logs_seen, first.applied, first.duplicates, first.discarded) == (4, 2, 0, 2)
        assert (second.applied, second.duplicates, second.discarded) == (0, 2, 2)

    @pytest.mark.asyncio
    async def test_applies_events_in_block_and_log_order(self, chain: FakeChainClient) -> None:
        chain.logs = [
            mint(ALICE, 3, block=20, log_index=0),
            mint(ALICE, 2, block=10, log_index=5),
            mint(ALICE, 1, block=10, log_index=1),
        ]
        mutator = AsyncMock()
        mutator.apply.return_value = True
        processor = BlockRangeProcessor(chain, mutator)

        await processor.process(0, 30)

        applied = [call.args[0].token_id for call in mutator.apply.await_args_list]
        assert applied == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_fetches_each_block_timestamp_once(self, chain: FakeChainClient) -> None:
        chain.logs = [mint(ALICE, i, block=10, log_index=i) for i in range(3)]
        chain.get_block_timestamp = AsyncMock(return_value=1234)  # type: ignore[method-assign]
        mutator = AsyncMock()
        mutator.apply.return_value = True

        await BlockRangeProcessor(chain, mutator).process(10, 10)

        chain.get_block_timestamp.assert_awaited_once_with(10)
        assert all(call.args[0].block_timestamp == 1234 for call in mutator.apply.await_args_list)

    @pytest.mark.asyncio
    async def test_stop_flag_interrupts_between_events(self, chain: FakeChainClient) -> None:
        chain.logs = [mint(ALICE, i, block=10 + i) for i in range(5)]
        stop_event = asyncio.Event()
        mutator = AsyncMock()

        async def apply_then_stop(event: object) -> bool:
            if mutator.apply.await_count == 2:
                stop_event.set()
            return True

        mutator.apply.side_effect = apply_then_stop
        outcome = await BlockRangeProcessor(chain, mutator, stop_event=stop_event).process(0, 100)

        assert outcome.completed is False
        assert outcome.applied == 2
        assert mutator.apply.await_count == 2

    @pytest.mark.asyncio
    async def test_chain_errors_propagate(self, chain: FakeChainClient) -> None:
        chain.fail_ranges[0] = 1
        processor = BlockRangeProcessor(chain, AsyncMock())

        with pytest.raises(RPCError):
            await processor.process(0, 10)
