"""Applies classified Transfer events to the aggregate store.

Each event is applied in a single transaction that also records the event in
the processed-transfer ledger. An event whose ledger row already exists is
skipped, so replaying a block range never changes aggregate state.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from position_indexer.chain.client import ChainClientError
from position_indexer.chain.models import PositionDetails
from position_indexer.indexer.models import ActionKind, ClassifiedEvent
from position_indexer.storage.repos import (
    PositionRepository,
    ProcessedTransferRepository,
    TransactionDTO,
    TransactionRepository,
    UserActionDTO,
    UserActionRepository,
    WalletRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from position_indexer.broadcast import Broadcaster
    from position_indexer.chain.client import ChainClient
    from position_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class StateMutator:
    """Turns one classified event into the ordered store writes it implies.

    Mint: the receiver gains a total and an active position, the position is
    created active with whatever on-chain details could be read.
    Burn: the position goes inactive and the burner loses an active position.
    Transfer: the position changes owner, the receiver gains a total and an
    active position, the sender loses an active position.

    Active-position counters never go below zero.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        chain_client: ChainClient,
        broadcaster: Broadcaster,
    ) -> None:
        self._db = db_manager
        self._chain = chain_client
        self._broadcaster = broadcaster

    async def apply(self, event: ClassifiedEvent) -> bool:
        """Apply an event once.

        Returns:
            True if the event's writes were committed, False if the event had
            already been recorded (including losing a race to a concurrent
            writer of the same event).
        """
        async with self._db.get_async_session() as session:
            if await ProcessedTransferRepository(session).exists(event.tx_hash, event.log_index):
                logger.debug("Skipping already processed %s:%d", event.tx_hash, event.log_index)
                return False

        details = await self._fetch_details(event) if event.kind is ActionKind.MINT else PositionDetails()

        try:
            async with self._db.get_async_session() as session:
                await ProcessedTransferRepository(session).insert(
                    event.tx_hash,
                    event.log_index,
                    block_number=event.block_number,
                    action_type=event.kind.value,
                )
                if event.kind is ActionKind.MINT:
                    pool_id = await self._apply_mint(session, event, details)
                elif event.kind is ActionKind.BURN:
                    pool_id = await self._apply_burn(session, event)
                else:
                    pool_id = await self._apply_transfer(session, event)
                await self._record_activity(session, event, pool_id)
        except IntegrityError:
            logger.info("Event %s:%d recorded concurrently, skipping", event.tx_hash, event.log_index)
            return False

        logger.debug(
            "Applied %s of token %s for %s (block %d)",
            event.kind.value,
            event.token_id,
            event.wallet_address,
            event.block_number,
        )
        self._broadcaster.notify(event.wallet_address, event.kind.value, pool_id, event.block_timestamp)
        return True

    async def _fetch_details(self, event: ClassifiedEvent) -> PositionDetails:
        """Read on-chain position details; each unreadable part is left unknown."""
        try:
            details = await self._chain.get_position_details(event.token_id)
        except ChainClientError as e:
            logger.warning("Pool info unavailable for token %s: %s", event.token_id, e)
            details = PositionDetails()

        try:
            liquidity = await self._chain.get_position_liquidity(event.token_id)
        except ChainClientError as e:
            logger.warning("Liquidity unavailable for token %s: %s", event.token_id, e)
            liquidity = None

        return dataclasses.replace(details, liquidity=liquidity)

    async def _apply_mint(self, session: AsyncSession, event: ClassifiedEvent, details: PositionDetails) -> str | None:
        await WalletRepository(session).apply_position_delta(
            event.to_address,
            total_delta=1,
            active_delta=1,
            timestamp=event.block_timestamp,
        )
        await PositionRepository(session).upsert(
            event.token_id,
            owner_address=event.to_address,
            pool_id=details.pool_id,
            liquidity=details.liquidity,
            tick_lower=details.tick_lower,
            tick_upper=details.tick_upper,
            is_active=True,
            is_subscribed=details.is_subscribed,
        )
        return details.pool_id

    async def _apply_burn(self, session: AsyncSession, event: ClassifiedEvent) -> str | None:
        positions = PositionRepository(session)
        await positions.upsert(event.token_id, owner_address=event.from_address, is_active=False)
        await WalletRepository(session).apply_position_delta(
            event.from_address,
            active_delta=-1,
            timestamp=event.block_timestamp,
        )
        position = await positions.get(event.token_id)
        return position.pool_id if position else None

    async def _apply_transfer(self, session: AsyncSession, event: ClassifiedEvent) -> str | None:
        positions = PositionRepository(session)
        await positions.upsert(event.token_id, owner_address=event.to_address, is_active=True)
        wallets = WalletRepository(session)
        await wallets.apply_position_delta(
            event.to_address,
            total_delta=1,
            active_delta=1,
            timestamp=event.block_timestamp,
        )
        await wallets.apply_position_delta(
            event.from_address,
            active_delta=-1,
            timestamp=event.block_timestamp,
        )
        position = await positions.get(event.token_id)
        return position.pool_id if position else None

    async def _record_activity(self, session: AsyncSession, event: ClassifiedEvent, pool_id: str | None) -> None:
        await TransactionRepository(session).insert(
            TransactionDTO(
                tx_hash=event.tx_hash,
                block_number=event.block_number,
                block_timestamp=event.block_timestamp,
                action_type=event.kind.value,
                from_address=event.from_address,
                to_address=event.to_address,
                pool_id=pool_id,
                token_id=event.token_id,
            )
        )
        await UserActionRepository(session).insert(
            UserActionDTO(
                address=event.wallet_address,
                action_type=event.kind.value,
                tx_hash=event.tx_hash,
                block_number=event.block_number,
                timestamp=event.block_timestamp,
                pool_id=pool_id,
            )
        )
