"""Classification of position-NFT Transfer logs into mint, burn or transfer."""

from __future__ import annotations

import logging

from position_indexer.chain.models import NULL_ADDRESS, TransferLog, normalize_address
from position_indexer.indexer.models import ActionKind, ClassifiedEvent

logger = logging.getLogger(__name__)


def classify_transfer(log: TransferLog, *, block_timestamp: int) -> ClassifiedEvent | None:
    """Classify a decoded Transfer log.

    Mint when the sender is the null address, burn when the receiver is,
    transfer otherwise. Logs without a usable token id, and null-to-null
    transfers, are discarded with a warning and return None.
    """
    token_id = (log.token_id or "").strip()
    if not (token_id.isascii() and token_id.isdigit()):
        logger.warning(
            "Discarding Transfer log %s:%d at block %d: invalid token id %r",
            log.tx_hash,
            log.log_index,
            log.block_number,
            log.token_id,
        )
        return None
    # Canonical decimal form ("007" and "7" are the same token)
    token_id = str(int(token_id))

    from_address = normalize_address(log.from_address or NULL_ADDRESS)
    to_address = normalize_address(log.to_address or NULL_ADDRESS)

    if from_address == NULL_ADDRESS and to_address == NULL_ADDRESS:
        logger.warning(
            "Discarding Transfer log %s:%d at block %d: null sender and receiver",
            log.tx_hash,
            log.log_index,
            log.block_number,
        )
        return None

    if from_address == NULL_ADDRESS:
        kind = ActionKind.MINT
    elif to_address == NULL_ADDRESS:
        kind = ActionKind.BURN
    else:
        kind = ActionKind.TRANSFER

    return ClassifiedEvent(
        kind=kind,
        token_id=token_id,
        from_address=from_address,
        to_address=to_address,
        block_number=log.block_number,
        log_index=log.log_index,
        tx_hash=log.tx_hash.lower(),
        block_timestamp=block_timestamp,
    )
