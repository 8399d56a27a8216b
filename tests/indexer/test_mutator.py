"""Tests for applying classified events to the aggregate store."""

from __future__ import annotations

import logging

import pytest
from fakes import ALICE, BASE_TIMESTAMP, BOB, POOL_ID, FakeChainClient, RecordingBroadcaster, burn, make_log, mint

from position_indexer.chain.models import PositionDetails, TransferLog
from position_indexer.indexer.classifier import classify_transfer
from position_indexer.indexer.models import ClassifiedEvent
from position_indexer.indexer.mutator import StateMutator
from position_indexer.storage.database import DatabaseManager
from position_indexer.storage.repos import (
    PositionDTO,
    PositionRepository,
    ProcessedTransferRepository,
    TransactionRepository,
    UserActionRepository,
    WalletDTO,
    WalletRepository,
)


def _event(log: TransferLog) -> ClassifiedEvent:
    event = classify_transfer(log, block_timestamp=BASE_TIMESTAMP + log.block_number * 2)
    assert event is not None
    return event


async def _wallet(db: DatabaseManager, address: str) -> WalletDTO | None:
    async with db.get_async_session() as session:
        return await WalletRepository(session).get(address)


async def _position(db: DatabaseManager, token_id: str) -> PositionDTO | None:
    async with db.get_async_session() as session:
        return await PositionRepository(session).get(token_id)


@pytest.fixture
def mutator(db_manager: DatabaseManager, chain: FakeChainClient, broadcaster: RecordingBroadcaster) -> StateMutator:
    chain.details["42"] = PositionDetails(pool_id=POOL_ID, tick_lower=-120, tick_upper=120, is_subscribed=False)
    chain.liquidity["42"] = 5_000
    return StateMutator(db_manager, chain, broadcaster)


class TestMint:
    @pytest.mark.asyncio
    async def test_mint_creates_wallet_and_position(
        self, mutator: StateMutator, db_manager: DatabaseManager, broadcaster: RecordingBroadcaster
    ) -> None:
        assert await mutator.apply(_event(mint(ALICE, 42, block=100))) is True

        wallet = await _wallet(db_manager, ALICE)
        assert wallet is not None
        assert wallet.total_positions == 1
        assert wallet.active_positions == 1
        assert wallet.first_action_timestamp == BASE_TIMESTAMP + 200
        assert wallet.last_action_timestamp == BASE_TIMESTAMP + 200

        position = await _position(db_manager, "42")
        assert position is not None
        assert position.owner_address == ALICE
        assert position.is_active is True
        assert position.pool_id == POOL_ID
        assert position.liquidity == 5_000
        assert (position.tick_lower, position.tick_upper) == (-120, 120)

        assert broadcaster.notifications == [(ALICE, "mint", POOL_ID, BASE_TIMESTAMP + 200)]

    @pytest.mark.asyncio
    async def test_mint_records_raw_event_and_timeline(self, mutator: StateMutator, db_manager: DatabaseManager) -> None:
        log = mint(ALICE, 42, block=100)
        await mutator.apply(_event(log))

        async with db_manager.get_async_session() as session:
            raw = await TransactionRepository(session).get(log.tx_hash)
            actions = await UserActionRepository(session).list_for_address(ALICE)
            recorded = await ProcessedTransferRepository(session).exists(log.tx_hash, log.log_index)

        assert raw is not None
        assert raw.action_type == "mint"
        assert raw.token_id == "42"
        assert raw.pool_id == POOL_ID
        assert [(a.action_type, a.pool_id, a.block_number) for a in actions] == [("mint", POOL_ID, 100)]
        assert recorded is True

    @pytest.mark.asyncio
    async def test_replayed_mint_is_not_double_counted(
        self, mutator: StateMutator, db_manager: DatabaseManager, broadcaster: RecordingBroadcaster
    ) -> None:
        event = _event(mint(ALICE, 42, block=100))

        assert await mutator.apply(event) is True
        assert await mutator.apply(event) is False

        wallet = await _wallet(db_manager, ALICE)
        assert wallet is not None
        assert (wallet.total_positions, wallet.active_positions) == (1, 1)
        async with db_manager.get_async_session() as session:
            assert len(await UserActionRepository(session).list_for_address(ALICE)) == 1
        assert len(broadcaster.notifications) == 1

    @pytest.mark.asyncio
    async def test_mint_degrades_when_position_reads_fail(
        self,
        db_manager: DatabaseManager,
        chain: FakeChainClient,
        broadcaster: RecordingBroadcaster,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        mutator = StateMutator(db_manager, chain, broadcaster)

        with caplog.at_level(logging.WARNING):
            assert await mutator.apply(_event(mint(ALICE, 99, block=100))) is True

        position = await _position(db_manager, "99")
        assert position is not None
        assert position.owner_address == ALICE
        assert position.pool_id is None
        assert position.liquidity is None
        assert "Pool info unavailable" in caplog.text
        assert "Liquidity unavailable" in caplog.text
        assert broadcaster.notifications == [(ALICE, "mint", None, BASE_TIMESTAMP + 200)]

    @pytest.mark.asyncio
    async def test_partial_enrichment_keeps_what_was_read(
        self, db_manager: DatabaseManager, chain: FakeChainClient, broadcaster: RecordingBroadcaster
    ) -> None:
        chain.details["5"] = PositionDetails(pool_id=POOL_ID, tick_lower=-10, tick_upper=10, is_subscribed=True)
        mutator = StateMutator(db_manager, chain, broadcaster)

        await mutator.apply(_event(mint(ALICE, 5, block=100)))

        position = await _position(db_manager, "5")
        assert position is not None
        assert position.pool_id == POOL_ID
        assert position.is_subscribed is True
        assert position.liquidity is None


class TestBurn:
    @pytest.mark.asyncio
    async def test_burn_after_mint_closes_position(
        self, mutator: StateMutator, db_manager: DatabaseManager, broadcaster: RecordingBroadcaster
    ) -> None:
        await mutator.apply(_event(mint(ALICE, 42, block=100)))
        await mutator.apply(_event(burn(ALICE, 42, block=105)))

        position = await _position(db_manager, "42")
        assert position is not None
        assert position.is_active is False
        assert position.pool_id == POOL_ID

        wallet = await _wallet(db_manager, ALICE)
        assert wallet is not None
        assert wallet.active_positions == 0
        assert wallet.total_positions == 1
        assert wallet.last_action_timestamp == BASE_TIMESTAMP + 210

        assert broadcaster.notifications[-1] == (ALICE, "burn", POOL_ID, BASE_TIMESTAMP + 210)

    @pytest.mark.asyncio
    async def test_burn_without_mint_floors_at_zero(self, mutator: StateMutator, db_manager: DatabaseManager) -> None:
        await mutator.apply(_event(burn(BOB, 77, block=50)))

        wallet = await _wallet(db_manager, BOB)
        assert wallet is not None
        assert wallet.active_positions == 0
        assert wallet.total_positions == 0

        position = await _position(db_manager, "77")
        assert position is not None
        assert position.owner_address == BOB
        assert position.is_active is False
        assert position.pool_id is None

    @pytest.mark.asyncio
    async def test_repeated_burns_never_go_negative(self, mutator: StateMutator, db_manager: DatabaseManager) -> None:
        for block in (50, 51, 52):
            await mutator.apply(_event(burn(BOB, 77, block=block)))

        wallet = await _wallet(db_manager, BOB)
        assert wallet is not None
        assert wallet.active_positions == 0


class TestTransfer:
    @pytest.mark.asyncio
    async def test_transfer_moves_position_to_receiver(
        self, mutator: StateMutator, db_manager: DatabaseManager, broadcaster: RecordingBroadcaster
    ) -> None:
        await mutator.apply(_event(mint(ALICE, 7, block=100)))
        await mutator.apply(_event(make_log(ALICE, BOB, 7, block=110)))

        position = await _position(db_manager, "7")
        assert position is not None
        assert position.owner_address == BOB
        assert position.is_active is True

        receiver = await _wallet(db_manager, BOB)
        assert receiver is not None
        assert receiver.last_action_timestamp == BASE_TIMESTAMP + 220
        assert (receiver.total_positions, receiver.active_positions) == (1, 1)

        sender = await _wallet(db_manager, ALICE)
        assert sender is not None
        assert (sender.total_positions, sender.active_positions) == (1, 0)
        assert sender.last_action_timestamp == BASE_TIMESTAMP + 220

        assert broadcaster.notifications[-1] == (BOB, "transfer", None, BASE_TIMESTAMP + 220)

    @pytest.mark.asyncio
    async def test_out_of_order_events_keep_timestamp_bounds(
        self, mutator: StateMutator, db_manager: DatabaseManager
    ) -> None:
        await mutator.apply(_event(make_log(ALICE, BOB, 7, block=200)))
        await mutator.apply(_event(make_log(BOB, ALICE, 8, block=150)))
        await mutator.apply(_event(make_log(ALICE, BOB, 9, block=300)))

        wallet = await _wallet(db_manager, BOB)
        assert wallet is not None
        assert wallet.first_action_timestamp == BASE_TIMESTAMP + 300
        assert wallet.last_action_timestamp == BASE_TIMESTAMP + 600


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_two_logs_in_one_transaction_both_apply(
        self, mutator: StateMutator, db_manager: DatabaseManager
    ) -> None:
        shared_tx = "0x" + "cd" * 32
        await mutator.apply(_event(mint(ALICE, 42, block=100, log_index=0, tx_hash=shared_tx)))
        await mutator.apply(_event(mint(ALICE, 43, block=100, log_index=1, tx_hash=shared_tx)))

        wallet = await _wallet(db_manager, ALICE)
        assert wallet is not None
        assert (wallet.total_positions, wallet.active_positions) == (2, 2)

    @pytest.mark.asyncio
    async def test_replaying_a_sequence_leaves_state_unchanged(
        self, mutator: StateMutator, db_manager: DatabaseManager
    ) -> None:
        events = [
            _event(mint(ALICE, 42, block=100)),
            _event(make_log(ALICE, BOB, 42, block=101)),
            _event(burn(BOB, 42, block=102)),
        ]
        for event in events:
            await mutator.apply(event)
        before = (await _wallet(db_manager, ALICE), await _wallet(db_manager, BOB), await _position(db_manager, "42"))

        results = [await mutator.apply(event) for event in events]
        after = (await _wallet(db_manager, ALICE), await _wallet(db_manager, BOB), await _position(db_manager, "42"))

        assert results == [False, False, False]
        assert after == before

    @pytest.mark.asyncio
    async def test_event_recorded_between_check_and_write_is_skipped(
        self,
        mutator: StateMutator,
        db_manager: DatabaseManager,
        broadcaster: RecordingBroadcaster,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        log = mint(ALICE, 42, block=100)
        async with db_manager.get_async_session() as session:
            await ProcessedTransferRepository(session).insert(
                log.tx_hash, log.log_index, block_number=100, action_type="mint"
            )

        # Pre-check misses, so the ledger insert itself collides.
        async def never_exists(self: ProcessedTransferRepository, tx_hash: str, log_index: int) -> bool:
            return False

        monkeypatch.setattr(ProcessedTransferRepository, "exists", never_exists)

        assert await mutator.apply(_event(log)) is False

        assert await _wallet(db_manager, ALICE) is None
        assert broadcaster.notifications == []
