"""Data models for raw chain data returned by the chain client."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

NULL_ADDRESS = "0x0000000000000000000000000000000000000000"


def normalize_address(address: str) -> str:
    """Canonical (lowercase, 0x-prefixed) form of an address."""
    text = address.strip().lower()
    if not text.startswith("0x"):
        text = "0x" + text
    return text


def to_hex(value: Any) -> str:
    """Render bytes-like RPC values (HexBytes, bytes) or strings as 0x-prefixed hex."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text.lower() if text.startswith("0x") else "0x" + text.lower()


def topic_to_address(topic: Any) -> str:
    """Extract the address from a 32-byte left-padded log topic."""
    hexed = to_hex(topic)[2:]
    return ("0x" + hexed[-40:].rjust(40, "0")).lower()


def topic_to_int(topic: Any) -> int:
    hexed = to_hex(topic)[2:]
    return int(hexed or "0", 16)


@dataclass(frozen=True)
class TransferLog:
    """A decoded `Transfer(address,address,uint256)` log.

    `token_id` is the decimal string of the indexed token id, or "" when the
    log did not carry one.
    """

    from_address: str
    to_address: str
    token_id: str
    block_number: int
    log_index: int
    tx_hash: str

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    @classmethod
    def from_raw_log(cls, log: dict[str, Any]) -> TransferLog:
        """Decode an `eth_getLogs` entry.

        ERC-721 transfers index all three arguments, so sender, receiver and
        token id are all read from topics.
        """
        topics = list(log.get("topics") or [])
        from_address = topic_to_address(topics[1]) if len(topics) > 1 else ""
        to_address = topic_to_address(topics[2]) if len(topics) > 2 else ""
        token_id = str(topic_to_int(topics[3])) if len(topics) > 3 else ""
        return cls(
            from_address=from_address,
            to_address=to_address,
            token_id=token_id,
            block_number=int(log["blockNumber"]),
            log_index=int(log.get("logIndex") or log.get("log_index") or 0),
            tx_hash=to_hex(log["transactionHash"]),
        )


@dataclass(frozen=True)
class PoolKey:
    """Pool identity as returned by `getPoolAndPositionInfo`."""

    currency0: str
    currency1: str
    fee: int
    tick_spacing: int
    hooks: str


@dataclass(frozen=True)
class PositionInfo:
    """Fields unpacked from the packed `PositionInfo` uint256.

    Layout (most to least significant): 200 bits truncated pool id,
    24 bits tickUpper, 24 bits tickLower, 8 bits hasSubscriber.
    """

    tick_lower: int
    tick_upper: int
    has_subscriber: bool

    @classmethod
    def from_packed(cls, info: int) -> PositionInfo:
        return cls(
            tick_lower=_int24((info >> 8) & 0xFFFFFF),
            tick_upper=_int24((info >> 32) & 0xFFFFFF),
            has_subscriber=(info & 0xFF) != 0,
        )


def _int24(raw: int) -> int:
    return raw - (1 << 24) if raw & (1 << 23) else raw


@dataclass(frozen=True)
class PositionDetails:
    """Best-effort enrichment for a position; any field may be unknown."""

    pool_id: str | None = None
    liquidity: int | None = None
    tick_lower: int | None = None
    tick_upper: int | None = None
    is_subscribed: bool | None = None
