"""Chain access layer - JSON-RPC reads of the position-NFT contract."""

from position_indexer.chain.client import (
    BlockNotFoundError,
    ChainClient,
    ChainClientError,
    ContractCallError,
    RPCError,
)
from position_indexer.chain.models import (
    NULL_ADDRESS,
    PoolKey,
    PositionDetails,
    PositionInfo,
    TransferLog,
)

__all__ = [
    "NULL_ADDRESS",
    "BlockNotFoundError",
    "ChainClient",
    "ChainClientError",
    "ContractCallError",
    "PoolKey",
    "PositionDetails",
    "PositionInfo",
    "RPCError",
    "TransferLog",
]
