"""SQLAlchemy models for the aggregate store.

This module defines the schema for per-wallet aggregates, per-position
records, the raw transfer log, the per-wallet activity timeline, the
processed-transfer ledger and the pipeline cursors.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class WalletModel(Base):
    """Per-wallet aggregate.

    `dna_score` and `tier` are owned by the external scorer and never written
    by the indexer.
    """

    __tablename__ = "wallets"

    address: Mapped[str] = mapped_column(String(42), primary_key=True)
    dna_score: Mapped[Decimal | None] = mapped_column(Numeric(10, 4), nullable=True)
    tier: Mapped[str | None] = mapped_column(String(32), nullable=True)

    total_swaps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_volume_usd: Mapped[Decimal] = mapped_column(Numeric(38, 8), nullable=False, default=0)
    total_fees_earned: Mapped[Decimal] = mapped_column(Numeric(38, 8), nullable=False, default=0)
    total_positions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_positions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_pools: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    first_action_timestamp: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_action_timestamp: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (CheckConstraint("active_positions >= 0", name="ck_wallets_active_positions_non_negative"),)

    def __repr__(self) -> str:
        return (
            f"<WalletModel(address={self.address!r}, total_positions={self.total_positions}, "
            f"active_positions={self.active_positions})>"
        )


class PositionModel(Base):
    """One position NFT, keyed by its decimal token id."""

    __tablename__ = "positions"

    token_id: Mapped[str] = mapped_column(String(78), primary_key=True)
    owner_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    pool_id: Mapped[str | None] = mapped_column(String(66), nullable=True, index=True)
    liquidity: Mapped[Decimal | None] = mapped_column(Numeric(78, 0), nullable=True)
    tick_lower: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tick_upper: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_subscribed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<PositionModel(token_id={self.token_id!r}, owner={self.owner_address!r}, "
            f"active={self.is_active})>"
        )


class TransactionModel(Base):
    """Raw event record, one per transaction hash."""

    __tablename__ = "transactions"

    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    block_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action_type: Mapped[str] = mapped_column(String(16), nullable=False)
    from_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    to_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    pool_id: Mapped[str | None] = mapped_column(String(66), nullable=True)
    token_id: Mapped[str | None] = mapped_column(String(78), nullable=True)
    amount0: Mapped[Decimal | None] = mapped_column(Numeric(78, 0), nullable=True)
    amount1: Mapped[Decimal | None] = mapped_column(Numeric(78, 0), nullable=True)
    amount_usd: Mapped[Decimal | None] = mapped_column(Numeric(38, 8), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class UserActionModel(Base):
    """Append-only per-wallet timeline entry."""

    __tablename__ = "user_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    action_type: Mapped[str] = mapped_column(String(16), nullable=False)
    pool_id: Mapped[str | None] = mapped_column(String(66), nullable=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        Index("idx_user_actions_address_timestamp", "address", "timestamp"),
        Index("idx_user_actions_address_tx_action", "address", "tx_hash", "action_type"),
    )


class ProcessedTransferLogModel(Base):
    """Ledger of applied Transfer logs, keyed by (tx_hash, log_index)."""

    __tablename__ = "processed_transfer_logs"

    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    log_index: Mapped[int] = mapped_column(Integer, primary_key=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    action_type: Mapped[str] = mapped_column(String(16), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class IndexerCursorModel(Base):
    """Last fully processed height of a named driver ("live", "historical")."""

    __tablename__ = "indexer_cursors"

    name: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_processed_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
