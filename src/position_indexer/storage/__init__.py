"""Storage layer - Database schemas and repositories."""

from position_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from position_indexer.storage.models import (
    Base,
    IndexerCursorModel,
    PositionModel,
    ProcessedTransferLogModel,
    TransactionModel,
    UserActionModel,
    WalletModel,
)
from position_indexer.storage.repos import (
    CursorRepository,
    PositionDTO,
    PositionRepository,
    ProcessedTransferRepository,
    TransactionDTO,
    TransactionRepository,
    UserActionDTO,
    UserActionRepository,
    WalletDTO,
    WalletRepository,
)

__all__ = [
    "Base",
    "CursorRepository",
    "DatabaseManager",
    "IndexerCursorModel",
    "PositionDTO",
    "PositionModel",
    "PositionRepository",
    "ProcessedTransferLogModel",
    "ProcessedTransferRepository",
    "TransactionDTO",
    "TransactionModel",
    "TransactionRepository",
    "UserActionDTO",
    "UserActionModel",
    "UserActionRepository",
    "WalletDTO",
    "WalletModel",
    "WalletRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
