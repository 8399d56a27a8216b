"""Data models shared by the indexing drivers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ActionKind(str, Enum):
    """Classification of a position-NFT Transfer log."""

    MINT = "mint"
    BURN = "burn"
    TRANSFER = "transfer"


@dataclass(frozen=True)
class ClassifiedEvent:
    """A Transfer log with its kind and block timestamp resolved.

    Addresses are lowercase; `token_id` is a non-empty decimal string.
    """

    kind: ActionKind
    token_id: str
    from_address: str
    to_address: str
    block_number: int
    log_index: int
    tx_hash: str
    block_timestamp: int

    @property
    def wallet_address(self) -> str:
        """The wallet the event is attributed to (the burner for a burn, otherwise the receiver)."""
        if self.kind is ActionKind.BURN:
            return self.from_address
        return self.to_address


@dataclass
class RangeOutcome:
    """Result of processing one inclusive block range."""

    from_height: int
    to_height: int
    logs_seen: int = 0
    applied: int = 0
    duplicates: int = 0
    discarded: int = 0
    completed: bool = False


@dataclass
class IndexerStats:
    """Running counters for the indexing drivers."""

    started_at: datetime | None = None
    ranges_processed: int = 0
    events_applied: int = 0
    events_duplicate: int = 0
    events_discarded: int = 0
    errors: int = 0
    last_processed_height: int | None = None
    last_error: str | None = None

    def record(self, outcome: RangeOutcome) -> None:
        self.events_applied += outcome.applied
        self.events_duplicate += outcome.duplicates
        self.events_discarded += outcome.discarded
        if outcome.completed:
            self.ranges_processed += 1
            if self.last_processed_height is None or outcome.to_height > self.last_processed_height:
                self.last_processed_height = outcome.to_height

    def record_error(self, error: BaseException | str) -> None:
        self.errors += 1
        self.last_error = str(error)
