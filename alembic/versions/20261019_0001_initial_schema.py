"""Initial schema for wallet aggregates, positions, raw events and cursors.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "wallets",
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("dna_score", sa.Numeric(10, 4), nullable=True),
        sa.Column("tier", sa.String(32), nullable=True),
        sa.Column("total_swaps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_volume_usd", sa.Numeric(38, 8), nullable=False, server_default="0"),
        sa.Column("total_fees_earned", sa.Numeric(38, 8), nullable=False, server_default="0"),
        sa.Column("total_positions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active_positions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unique_pools", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("first_action_timestamp", sa.BigInteger(), nullable=True),
        sa.Column("last_action_timestamp", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("address"),
        sa.CheckConstraint("active_positions >= 0", name="ck_wallets_active_positions_non_negative"),
    )

    op.create_table(
        "positions",
        sa.Column("token_id", sa.String(78), nullable=False),
        sa.Column("owner_address", sa.String(42), nullable=False),
        sa.Column("pool_id", sa.String(66), nullable=True),
        sa.Column("liquidity", sa.Numeric(78, 0), nullable=True),
        sa.Column("tick_lower", sa.Integer(), nullable=True),
        sa.Column("tick_upper", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_subscribed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("token_id"),
    )
    op.create_index("ix_positions_owner_address", "positions", ["owner_address"])
    op.create_index("ix_positions_pool_id", "positions", ["pool_id"])

    op.create_table(
        "transactions",
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("block_timestamp", sa.BigInteger(), nullable=False),
        sa.Column("action_type", sa.String(16), nullable=False),
        sa.Column("from_address", sa.String(42), nullable=True),
        sa.Column("to_address", sa.String(42), nullable=True),
        sa.Column("pool_id", sa.String(66), nullable=True),
        sa.Column("token_id", sa.String(78), nullable=True),
        sa.Column("amount0", sa.Numeric(78, 0), nullable=True),
        sa.Column("amount1", sa.Numeric(78, 0), nullable=True),
        sa.Column("amount_usd", sa.Numeric(38, 8), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("tx_hash"),
    )
    op.create_index("ix_transactions_block_number", "transactions", ["block_number"])

    op.create_table(
        "user_actions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("action_type", sa.String(16), nullable=False),
        sa.Column("pool_id", sa.String(66), nullable=True),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_user_actions_address_timestamp", "user_actions", ["address", "timestamp"])
    op.create_index(
        "idx_user_actions_address_tx_action", "user_actions", ["address", "tx_hash", "action_type"]
    )

    op.create_table(
        "processed_transfer_logs",
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("action_type", sa.String(16), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("tx_hash", "log_index"),
    )
    op.create_index(
        "ix_processed_transfer_logs_block_number", "processed_transfer_logs", ["block_number"]
    )

    op.create_table(
        "indexer_cursors",
        sa.Column("name", sa.String(32), nullable=False),
        sa.Column("last_processed_block", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade() -> None:
    op.drop_table("indexer_cursors")
    op.drop_index("ix_processed_transfer_logs_block_number", table_name="processed_transfer_logs")
    op.drop_table("processed_transfer_logs")
    op.drop_index("idx_user_actions_address_tx_action", table_name="user_actions")
    op.drop_index("idx_user_actions_address_timestamp", table_name="user_actions")
    op.drop_table("user_actions")
    op.drop_index("ix_transactions_block_number", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_positions_pool_id", table_name="positions")
    op.drop_index("ix_positions_owner_address", table_name="positions")
    op.drop_table("positions")
    op.drop_table("wallets")
