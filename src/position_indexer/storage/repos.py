"""Repository pattern implementations for the aggregate store.

Every repository works inside a caller-owned `AsyncSession`; committing is
the caller's job, so one event's writes can share a single transaction.
Upserts are expressed as `INSERT ... ON CONFLICT` for both PostgreSQL and
SQLite.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import case, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from position_indexer.storage.models import (
    IndexerCursorModel,
    PositionModel,
    ProcessedTransferLogModel,
    TransactionModel,
    UserActionModel,
    WalletModel,
)

logger = logging.getLogger(__name__)

# Wallet counters the indexer may set outright; absent values keep the stored one.
_WALLET_COUNTERS = (
    "total_swaps",
    "total_volume_usd",
    "total_fees_earned",
    "total_positions",
    "active_positions",
    "unique_pools",
)


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT."""
    bind = session.bind
    dialect = bind.dialect.name if bind is not None else "postgresql"
    if dialect == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


def _earliest(existing: Any, incoming: Any) -> Any:
    return case(
        (incoming.is_(None), existing),
        (existing.is_(None), incoming),
        (incoming < existing, incoming),
        else_=existing,
    )


def _latest(existing: Any, incoming: Any) -> Any:
    return case(
        (incoming.is_(None), existing),
        (existing.is_(None), incoming),
        (incoming > existing, incoming),
        else_=existing,
    )


@dataclass
class WalletDTO:
    """Data transfer object for wallet aggregates."""

    address: str
    total_swaps: int = 0
    total_volume_usd: Decimal = Decimal("0")
    total_fees_earned: Decimal = Decimal("0")
    total_positions: int = 0
    active_positions: int = 0
    unique_pools: int = 0
    first_action_timestamp: int | None = None
    last_action_timestamp: int | None = None
    dna_score: Decimal | None = None
    tier: str | None = None

    @classmethod
    def from_model(cls, model: WalletModel) -> WalletDTO:
        return cls(
            address=model.address,
            total_swaps=model.total_swaps,
            total_volume_usd=Decimal(str(model.total_volume_usd)),
            total_fees_earned=Decimal(str(model.total_fees_earned)),
            total_positions=model.total_positions,
            active_positions=model.active_positions,
            unique_pools=model.unique_pools,
            first_action_timestamp=model.first_action_timestamp,
            last_action_timestamp=model.last_action_timestamp,
            dna_score=model.dna_score,
            tier=model.tier,
        )


class WalletRepository:
    """Repository for per-wallet aggregates."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, address: str) -> WalletDTO | None:
        result = await self.session.execute(select(WalletModel).where(WalletModel.address == address.lower()))
        model = result.scalar_one_or_none()
        return WalletDTO.from_model(model) if model else None

    async def upsert(
        self,
        address: str,
        *,
        first_action_timestamp: int | None = None,
        last_action_timestamp: int | None = None,
        **counters: int | Decimal | None,
    ) -> None:
        """Create or update a wallet.

        Counters given as None (or omitted) keep their stored value. The first
        activity timestamp only ever moves earlier and the last one only later.

        Raises:
            ValueError: If an unknown counter name is passed.
        """
        unknown = set(counters) - set(_WALLET_COUNTERS)
        if unknown:
            raise ValueError(f"Unknown wallet counters: {sorted(unknown)}")

        supplied = {name: value for name, value in counters.items() if value is not None}
        now = datetime.now(UTC)
        values: dict[str, Any] = {
            "address": address.lower(),
            "first_action_timestamp": first_action_timestamp,
            "last_action_timestamp": last_action_timestamp,
            "created_at": now,
            "updated_at": now,
            **supplied,
        }

        stmt = _insert_for(self.session, WalletModel).values(**values)
        set_: dict[str, Any] = {name: getattr(stmt.excluded, name) for name in supplied}
        set_["first_action_timestamp"] = _earliest(
            WalletModel.first_action_timestamp, stmt.excluded.first_action_timestamp
        )
        set_["last_action_timestamp"] = _latest(
            WalletModel.last_action_timestamp, stmt.excluded.last_action_timestamp
        )
        set_["updated_at"] = now
        stmt = stmt.on_conflict_do_update(index_elements=["address"], set_=set_)
        await self.session.execute(stmt)

    async def apply_position_delta(
        self,
        address: str,
        *,
        total_delta: int = 0,
        active_delta: int = 0,
        timestamp: int | None = None,
    ) -> None:
        """Shift the position counters of a wallet relative to their stored values.

        `active_positions` is floored at zero. The activity window is extended
        to cover `timestamp`.
        """
        now = datetime.now(UTC)
        values: dict[str, Any] = {
            "address": address.lower(),
            "total_positions": max(total_delta, 0),
            "active_positions": max(active_delta, 0),
            "first_action_timestamp": timestamp,
            "last_action_timestamp": timestamp,
            "created_at": now,
            "updated_at": now,
        }
        stmt = _insert_for(self.session, WalletModel).values(**values)

        shifted_total = WalletModel.total_positions + total_delta
        shifted_active = WalletModel.active_positions + active_delta
        stmt = stmt.on_conflict_do_update(
            index_elements=["address"],
            set_={
                "total_positions": case((shifted_total < 0, 0), else_=shifted_total),
                "active_positions": case((shifted_active < 0, 0), else_=shifted_active),
                "first_action_timestamp": _earliest(
                    WalletModel.first_action_timestamp, stmt.excluded.first_action_timestamp
                ),
                "last_action_timestamp": _latest(
                    WalletModel.last_action_timestamp, stmt.excluded.last_action_timestamp
                ),
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)


@dataclass
class PositionDTO:
    """Data transfer object for positions."""

    token_id: str
    owner_address: str
    pool_id: str | None = None
    liquidity: int | None = None
    tick_lower: int | None = None
    tick_upper: int | None = None
    is_active: bool = True
    is_subscribed: bool = False

    @classmethod
    def from_model(cls, model: PositionModel) -> PositionDTO:
        return cls(
            token_id=model.token_id,
            owner_address=model.owner_address,
            pool_id=model.pool_id,
            liquidity=int(model.liquidity) if model.liquidity is not None else None,
            tick_lower=model.tick_lower,
            tick_upper=model.tick_upper,
            is_active=model.is_active,
            is_subscribed=model.is_subscribed,
        )


class PositionRepository:
    """Repository for position records."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, token_id: str) -> PositionDTO | None:
        result = await self.session.execute(select(PositionModel).where(PositionModel.token_id == token_id))
        model = result.scalar_one_or_none()
        return PositionDTO.from_model(model) if model else None

    async def list_by_owner(self, owner_address: str, *, active_only: bool = False) -> list[PositionDTO]:
        query = select(PositionModel).where(PositionModel.owner_address == owner_address.lower())
        if active_only:
            query = query.where(PositionModel.is_active.is_(True))
        result = await self.session.execute(query.order_by(PositionModel.token_id))
        return [PositionDTO.from_model(m) for m in result.scalars().all()]

    async def upsert(
        self,
        token_id: str,
        *,
        owner_address: str,
        pool_id: str | None = None,
        liquidity: int | None = None,
        tick_lower: int | None = None,
        tick_upper: int | None = None,
        is_active: bool | None = None,
        is_subscribed: bool | None = None,
    ) -> None:
        """Create or update a position.

        The owner is always overwritten; every other field only replaces the
        stored value when given.
        """
        optional: dict[str, Any] = {
            "pool_id": pool_id,
            "liquidity": Decimal(liquidity) if liquidity is not None else None,
            "tick_lower": tick_lower,
            "tick_upper": tick_upper,
            "is_active": is_active,
            "is_subscribed": is_subscribed,
        }
        supplied = {name: value for name, value in optional.items() if value is not None}
        now = datetime.now(UTC)
        values: dict[str, Any] = {
            "token_id": token_id,
            "owner_address": owner_address.lower(),
            "is_active": True,
            "is_subscribed": False,
            "created_at": now,
            "updated_at": now,
            **supplied,
        }

        stmt = _insert_for(self.session, PositionModel).values(**values)
        set_: dict[str, Any] = {"owner_address": stmt.excluded.owner_address, "updated_at": now}
        set_.update({name: getattr(stmt.excluded, name) for name in supplied})
        stmt = stmt.on_conflict_do_update(index_elements=["token_id"], set_=set_)
        await self.session.execute(stmt)


@dataclass
class TransactionDTO:
    """Data transfer object for raw event records."""

    tx_hash: str
    block_number: int
    block_timestamp: int
    action_type: str
    from_address: str | None = None
    to_address: str | None = None
    pool_id: str | None = None
    token_id: str | None = None
    amount0: int | None = None
    amount1: int | None = None
    amount_usd: Decimal | None = None

    @classmethod
    def from_model(cls, model: TransactionModel) -> TransactionDTO:
        return cls(
            tx_hash=model.tx_hash,
            block_number=model.block_number,
            block_timestamp=model.block_timestamp,
            action_type=model.action_type,
            from_address=model.from_address,
            to_address=model.to_address,
            pool_id=model.pool_id,
            token_id=model.token_id,
            amount0=int(model.amount0) if model.amount0 is not None else None,
            amount1=int(model.amount1) if model.amount1 is not None else None,
            amount_usd=model.amount_usd,
        )


class TransactionRepository:
    """Repository for raw event records (one row per transaction hash)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, tx_hash: str) -> TransactionDTO | None:
        result = await self.session.execute(
            select(TransactionModel).where(TransactionModel.tx_hash == tx_hash.lower())
        )
        model = result.scalar_one_or_none()
        return TransactionDTO.from_model(model) if model else None

    async def insert(self, dto: TransactionDTO) -> bool:
        """Insert a raw event; a row with the same hash makes this a no-op.

        Returns:
            True if a row was written.
        """
        stmt = _insert_for(self.session, TransactionModel).values(
            tx_hash=dto.tx_hash.lower(),
            block_number=dto.block_number,
            block_timestamp=dto.block_timestamp,
            action_type=dto.action_type,
            from_address=dto.from_address,
            to_address=dto.to_address,
            pool_id=dto.pool_id,
            token_id=dto.token_id,
            amount0=Decimal(dto.amount0) if dto.amount0 is not None else None,
            amount1=Decimal(dto.amount1) if dto.amount1 is not None else None,
            amount_usd=dto.amount_usd,
            created_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["tx_hash"])
        result = await self.session.execute(stmt)
        return bool(result.rowcount)


@dataclass
class UserActionDTO:
    """Data transfer object for timeline entries."""

    address: str
    action_type: str
    tx_hash: str
    block_number: int
    timestamp: int
    pool_id: str | None = None

    @classmethod
    def from_model(cls, model: UserActionModel) -> UserActionDTO:
        return cls(
            address=model.address,
            action_type=model.action_type,
            tx_hash=model.tx_hash,
            block_number=model.block_number,
            timestamp=model.timestamp,
            pool_id=model.pool_id,
        )


class UserActionRepository:
    """Repository for the per-wallet activity timeline."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def exists(self, address: str, tx_hash: str, action_type: str) -> bool:
        result = await self.session.execute(
            select(UserActionModel.id)
            .where(UserActionModel.address == address.lower())
            .where(UserActionModel.tx_hash == tx_hash.lower())
            .where(UserActionModel.action_type == action_type)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def insert(self, dto: UserActionDTO) -> bool:
        """Append a timeline entry unless the same (address, tx, action) is already there."""
        if await self.exists(dto.address, dto.tx_hash, dto.action_type):
            return False
        self.session.add(
            UserActionModel(
                address=dto.address.lower(),
                action_type=dto.action_type,
                pool_id=dto.pool_id,
                tx_hash=dto.tx_hash.lower(),
                block_number=dto.block_number,
                timestamp=dto.timestamp,
            )
        )
        await self.session.flush()
        return True

    async def list_for_address(self, address: str, *, limit: int = 100) -> list[UserActionDTO]:
        result = await self.session.execute(
            select(UserActionModel)
            .where(UserActionModel.address == address.lower())
            .order_by(UserActionModel.timestamp.desc(), UserActionModel.id.desc())
            .limit(limit)
        )
        return [UserActionDTO.from_model(m) for m in result.scalars().all()]


class ProcessedTransferRepository:
    """Ledger of applied Transfer logs."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def exists(self, tx_hash: str, log_index: int) -> bool:
        result = await self.session.execute(
            select(ProcessedTransferLogModel.tx_hash)
            .where(ProcessedTransferLogModel.tx_hash == tx_hash.lower())
            .where(ProcessedTransferLogModel.log_index == log_index)
        )
        return result.scalar_one_or_none() is not None

    async def insert(self, tx_hash: str, log_index: int, *, block_number: int, action_type: str) -> None:
        """Record a log as applied.

        Raises:
            sqlalchemy.exc.IntegrityError: If the log was already recorded.
        """
        self.session.add(
            ProcessedTransferLogModel(
                tx_hash=tx_hash.lower(),
                log_index=log_index,
                block_number=block_number,
                action_type=action_type,
            )
        )
        await self.session.flush()


class CursorRepository:
    """Repository for named pipeline cursors."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, name: str) -> int | None:
        result = await self.session.execute(
            select(IndexerCursorModel.last_processed_block).where(IndexerCursorModel.name == name)
        )
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def set(self, name: str, height: int) -> None:
        now = datetime.now(UTC)
        stmt = _insert_for(self.session, IndexerCursorModel).values(
            name=name, last_processed_block=height, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["name"],
            set_={"last_processed_block": stmt.excluded.last_processed_block, "updated_at": now},
        )
        await self.session.execute(stmt)
        logger.debug("Cursor %s -> %d", name, height)
