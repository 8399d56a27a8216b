"""Tests for storage repositories."""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from position_indexer.storage.database import DatabaseManager
from position_indexer.storage.models import Base
from position_indexer.storage.repos import (
    CursorRepository,
    PositionRepository,
    ProcessedTransferRepository,
    TransactionDTO,
    TransactionRepository,
    UserActionDTO,
    UserActionRepository,
    WalletRepository,
)

WALLET = "0x1234567890abcdef1234567890abcdef12345678"
TX_HASH = "0x" + "a" * 64

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


# ============================================================================
# WalletRepository
# ============================================================================


class TestWalletRepository:
    @pytest.mark.asyncio
    async def test_upsert_creates_wallet(self, async_session: AsyncSession) -> None:
        repo = WalletRepository(async_session)

        await repo.upsert(WALLET.upper().replace("0X", "0x"), total_positions=2, first_action_timestamp=100)
        wallet = await repo.get(WALLET)

        assert wallet is not None
        assert wallet.address == WALLET
        assert wallet.total_positions == 2
        assert wallet.active_positions == 0
        assert wallet.first_action_timestamp == 100
        assert wallet.last_action_timestamp is None

    @pytest.mark.asyncio
    async def test_upsert_keeps_counters_not_supplied(self, async_session: AsyncSession) -> None:
        repo = WalletRepository(async_session)

        await repo.upsert(WALLET, total_positions=3, active_positions=2)
        await repo.upsert(WALLET, total_swaps=9)
        wallet = await repo.get(WALLET)

        assert wallet is not None
        assert wallet.total_positions == 3
        assert wallet.active_positions == 2
        assert wallet.total_swaps == 9

    @pytest.mark.asyncio
    async def test_upsert_timestamps_only_widen(self, async_session: AsyncSession) -> None:
        repo = WalletRepository(async_session)

        await repo.upsert(WALLET, first_action_timestamp=200, last_action_timestamp=300)
        await repo.upsert(WALLET, first_action_timestamp=250, last_action_timestamp=250)
        await repo.upsert(WALLET, first_action_timestamp=None, last_action_timestamp=None)
        wallet = await repo.get(WALLET)
        assert wallet is not None
        assert (wallet.first_action_timestamp, wallet.last_action_timestamp) == (200, 300)

        await repo.upsert(WALLET, first_action_timestamp=150, last_action_timestamp=400)
        async_session.expire_all()
        wallet = await repo.get(WALLET)
        assert wallet is not None
        assert (wallet.first_action_timestamp, wallet.last_action_timestamp) == (150, 400)

    @pytest.mark.asyncio
    async def test_upsert_rejects_unknown_counter(self, async_session: AsyncSession) -> None:
        with pytest.raises(ValueError, match="Unknown wallet counters"):
            await WalletRepository(async_session).upsert(WALLET, dna_score=1)

    @pytest.mark.asyncio
    async def test_apply_position_delta_floors_active_at_zero(self, async_session: AsyncSession) -> None:
        repo = WalletRepository(async_session)

        await repo.apply_position_delta(WALLET, active_delta=-1, timestamp=500)
        await repo.apply_position_delta(WALLET, active_delta=-1, timestamp=600)
        wallet = await repo.get(WALLET)

        assert wallet is not None
        assert wallet.active_positions == 0
        assert wallet.total_positions == 0
        assert wallet.first_action_timestamp == 500
        assert wallet.last_action_timestamp == 600

    @pytest.mark.asyncio
    async def test_apply_position_delta_accumulates(self, async_session: AsyncSession) -> None:
        repo = WalletRepository(async_session)

        await repo.apply_position_delta(WALLET, total_delta=1, active_delta=1, timestamp=300)
        await repo.apply_position_delta(WALLET, total_delta=1, active_delta=1, timestamp=100)
        await repo.apply_position_delta(WALLET, active_delta=-1, timestamp=200)
        async_session.expire_all()
        wallet = await repo.get(WALLET)

        assert wallet is not None
        assert wallet.total_positions == 2
        assert wallet.active_positions == 1
        assert wallet.first_action_timestamp == 100
        assert wallet.last_action_timestamp == 300


# ============================================================================
# PositionRepository
# ============================================================================


class TestPositionRepository:
    @pytest.mark.asyncio
    async def test_upsert_inserts_with_defaults(self, async_session: AsyncSession) -> None:
        repo = PositionRepository(async_session)

        await repo.upsert("42", owner_address=WALLET)
        position = await repo.get("42")

        assert position is not None
        assert position.owner_address == WALLET
        assert position.is_active is True
        assert position.is_subscribed is False
        assert position.pool_id is None

    @pytest.mark.asyncio
    async def test_upsert_overwrites_owner_and_coalesces_rest(self, async_session: AsyncSession) -> None:
        repo = PositionRepository(async_session)
        other = "0x" + "b" * 40

        await repo.upsert(
            "42",
            owner_address=WALLET,
            pool_id="0xpool",
            liquidity=1000,
            tick_lower=-60,
            tick_upper=60,
            is_subscribed=True,
        )
        await repo.upsert("42", owner_address=other, is_active=False)
        async_session.expire_all()
        position = await repo.get("42")

        assert position is not None
        assert position.owner_address == other
        assert position.pool_id == "0xpool"
        assert position.liquidity == 1000
        assert (position.tick_lower, position.tick_upper) == (-60, 60)
        assert position.is_subscribed is True
        assert position.is_active is False

    @pytest.mark.asyncio
    async def test_list_by_owner(self, async_session: AsyncSession) -> None:
        repo = PositionRepository(async_session)
        await repo.upsert("1", owner_address=WALLET)
        await repo.upsert("2", owner_address=WALLET, is_active=False)
        await repo.upsert("3", owner_address="0x" + "c" * 40)

        assert [p.token_id for p in await repo.list_by_owner(WALLET)] == ["1", "2"]
        assert [p.token_id for p in await repo.list_by_owner(WALLET, active_only=True)] == ["1"]


# ============================================================================
# TransactionRepository / UserActionRepository
# ============================================================================


class TestTransactionRepository:
    @pytest.mark.asyncio
    async def test_duplicate_insert_is_noop(self, async_session: AsyncSession) -> None:
        repo = TransactionRepository(async_session)
        dto = TransactionDTO(
            tx_hash=TX_HASH,
            block_number=10,
            block_timestamp=1000,
            action_type="mint",
            to_address=WALLET,
            token_id="42",
        )

        assert await repo.insert(dto) is True
        assert await repo.insert(TransactionDTO(**{**dto.__dict__, "action_type": "burn"})) is False

        stored = await repo.get(TX_HASH)
        assert stored is not None
        assert stored.action_type == "mint"
        assert stored.token_id == "42"


class TestUserActionRepository:
    @pytest.mark.asyncio
    async def test_insert_suppresses_duplicates(self, async_session: AsyncSession) -> None:
        repo = UserActionRepository(async_session)
        dto = UserActionDTO(address=WALLET, action_type="mint", tx_hash=TX_HASH, block_number=10, timestamp=1000)

        assert await repo.insert(dto) is True
        assert await repo.insert(dto) is False
        assert await repo.insert(UserActionDTO(**{**dto.__dict__, "action_type": "burn"})) is True

        actions = await repo.list_for_address(WALLET)
        assert sorted(a.action_type for a in actions) == ["burn", "mint"]


# ============================================================================
# ProcessedTransferRepository / CursorRepository
# ============================================================================


class TestProcessedTransferRepository:
    @pytest.mark.asyncio
    async def test_insert_then_exists(self, async_session: AsyncSession) -> None:
        repo = ProcessedTransferRepository(async_session)

        assert await repo.exists(TX_HASH, 0) is False
        await repo.insert(TX_HASH, 0, block_number=10, action_type="mint")

        assert await repo.exists(TX_HASH, 0) is True
        assert await repo.exists(TX_HASH, 1) is False

    @pytest.mark.asyncio
    async def test_duplicate_insert_raises(self, db_manager: DatabaseManager) -> None:
        async with db_manager.get_async_session() as session:
            await ProcessedTransferRepository(session).insert(TX_HASH, 0, block_number=10, action_type="mint")

        with pytest.raises(IntegrityError):
            async with db_manager.get_async_session() as session:
                await ProcessedTransferRepository(session).insert(TX_HASH, 0, block_number=10, action_type="mint")

        async with db_manager.get_async_session() as session:
            assert await ProcessedTransferRepository(session).exists(TX_HASH, 0) is True


class TestCursorRepository:
    @pytest.mark.asyncio
    async def test_set_and_get(self, async_session: AsyncSession) -> None:
        repo = CursorRepository(async_session)

        assert await repo.get("live") is None
        await repo.set("live", 100)
        await repo.set("live", 150)
        await repo.set("historical", 20)

        assert await repo.get("live") == 150
        assert await repo.get("historical") == 20
