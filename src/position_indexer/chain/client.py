"""Chain client with retry, failover, rate limiting and caching.

This module provides the JSON-RPC client the indexer reads the chain through:
- Current head height and block timestamps
- `Transfer` logs of the position-NFT contract, decoded and ordered
- A polling stream of new head heights
- Position contract reads (liquidity, pool key and packed position info)

Every call goes through the same retry loop with exponential backoff and
failover to a secondary RPC, behind a token-bucket rate limiter.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import aiohttp
from eth_abi import encode as abi_encode
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import BlockNotFound, ContractLogicError, Web3Exception
from web3.providers import AsyncHTTPProvider

from position_indexer.chain.models import PoolKey, PositionDetails, PositionInfo, TransferLog, to_hex

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CACHE_TTL_SECONDS = 3600
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_POLL_INTERVAL_SECONDS = 2.0

# ERC-721 Transfer(address indexed from, address indexed to, uint256 indexed tokenId)
TRANSFER_EVENT_TOPIC = to_hex(AsyncWeb3.keccak(text="Transfer(address,address,uint256)"))

POSITION_MANAGER_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "getPositionLiquidity",
        "stateMutability": "view",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [{"name": "liquidity", "type": "uint128"}],
    },
    {
        "type": "function",
        "name": "getPoolAndPositionInfo",
        "stateMutability": "view",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [
            {
                "name": "poolKey",
                "type": "tuple",
                "components": [
                    {"name": "currency0", "type": "address"},
                    {"name": "currency1", "type": "address"},
                    {"name": "fee", "type": "uint24"},
                    {"name": "tickSpacing", "type": "int24"},
                    {"name": "hooks", "type": "address"},
                ],
            },
            {"name": "info", "type": "uint256"},
        ],
    },
]

_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    Web3Exception,
    aiohttp.ClientError,
    TimeoutError,
)


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails after all retries and failover."""


class BlockNotFoundError(ChainClientError):
    """Raised when the node does not know the requested block."""


class ContractCallError(ChainClientError):
    """Raised when a contract read reverts."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


def compute_pool_id(key: PoolKey) -> str:
    """Pool id as the contract derives it: keccak256(abi.encode(PoolKey))."""
    encoded = abi_encode(
        ["address", "address", "uint24", "int24", "address"],
        [
            AsyncWeb3.to_checksum_address(key.currency0),
            AsyncWeb3.to_checksum_address(key.currency1),
            key.fee,
            key.tick_spacing,
            AsyncWeb3.to_checksum_address(key.hooks),
        ],
    )
    return to_hex(AsyncWeb3.keccak(encoded))


class ChainClient:
    """Read-only client for the position-NFT contract and its chain.

    Example:
        ```python
        client = ChainClient(
            "https://mainnet.base.org",
            position_manager_address="0x7c5f5a4bbd8fd63184577525326123b519429bdc",
            fallback_rpc_url="https://base.publicnode.com",
        )
        head = await client.get_current_height()
        logs = await client.get_transfer_logs(head - 100, head)
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        position_manager_address: str,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary JSON-RPC endpoint URL.
            position_manager_address: Contract whose Transfer logs are indexed.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching block timestamps.
            cache_ttl_seconds: Cache TTL in seconds.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._contract_address = AsyncWeb3.to_checksum_address(position_manager_address)
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

        self._w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._w3_fallback: AsyncWeb3 | None = None
        if fallback_rpc_url:
            self._w3_fallback = AsyncWeb3(AsyncHTTPProvider(fallback_rpc_url))

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._cache_prefix = "chain:"

    @property
    def contract_address(self) -> str:
        return self._contract_address

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int | None = None) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl or self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _execute_with_retry(
        self,
        description: str,
        call: Callable[[AsyncWeb3], Awaitable[T]],
    ) -> T:
        """Execute an RPC call with retry and failover logic.

        Args:
            description: Call name used in log lines and errors.
            call: Builds the awaitable against a given web3 instance.

        Returns:
            Result from the RPC call.

        Raises:
            BlockNotFound: Propagated untouched (not retryable).
            ContractLogicError: Propagated untouched (not retryable).
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: BaseException | None = None

        endpoints: list[tuple[str, AsyncWeb3]] = []
        if self._w3_fallback is None or self._should_try_primary():
            endpoints.append(("Primary", self._w3))
        if self._w3_fallback is not None:
            endpoints.append(("Fallback", self._w3_fallback))

        for label, w3 in endpoints:
            delay = self._retry_delay
            for attempt in range(self._max_retries):
                try:
                    result = await call(w3)
                except (BlockNotFound, ContractLogicError):
                    raise
                except _RETRYABLE_ERRORS as e:
                    last_error = e
                    logger.warning(
                        "%s RPC %s failed (attempt %d/%d): %s",
                        label,
                        description,
                        attempt + 1,
                        self._max_retries,
                        e,
                    )
                    if attempt < self._max_retries - 1:
                        await asyncio.sleep(delay)
                        delay *= 2
                    continue
                if w3 is self._w3:
                    self._primary_healthy = True
                else:
                    logger.info("Fallback RPC succeeded for %s", description)
                return result

            if w3 is self._w3:
                self._primary_healthy = False
                self._last_primary_check = time.monotonic()

        raise RPCError(f"RPC call {description} failed after all retries: {last_error}")

    async def get_current_height(self) -> int:
        """Get the current head block number."""

        async def block_number(w3: AsyncWeb3) -> int:
            return int(await w3.eth.block_number)

        return await self._execute_with_retry("block_number", block_number)

    async def get_block_timestamp(self, height: int) -> int:
        """Get a block's timestamp (unix seconds).

        Raises:
            BlockNotFoundError: If the node does not know the block yet.
        """
        if height < 0:
            raise ValueError("height must be >= 0")

        cache_key = f"{self._cache_prefix}block_ts:{height}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return int(cached)

        try:
            block = await self._execute_with_retry("get_block", lambda w3: w3.eth.get_block(height))
        except BlockNotFound as e:
            raise BlockNotFoundError(f"Block {height} not found") from e

        timestamp = int(block["timestamp"])
        # Blocks are immutable once final, use the long TTL
        await self._set_cached(cache_key, str(timestamp))
        return timestamp

    async def get_transfer_logs(self, from_height: int, to_height: int) -> list[TransferLog]:
        """Fetch and decode Transfer logs in the inclusive range [from_height, to_height].

        Returns:
            Logs ordered by (block number, log index).
        """
        if from_height < 0 or to_height < from_height:
            raise ValueError(f"Invalid block range [{from_height}, {to_height}]")

        filter_params = {
            "address": self._contract_address,
            "topics": [TRANSFER_EVENT_TOPIC],
            "fromBlock": from_height,
            "toBlock": to_height,
        }
        raw_logs = await self._execute_with_retry(
            "get_logs",
            lambda w3: w3.eth.get_logs(filter_params),
        )
        logs = [TransferLog.from_raw_log(dict(log)) for log in raw_logs if not dict(log).get("removed")]
        logs.sort(key=lambda log: log.sort_key)
        return logs

    async def new_block_heights(
        self,
        stop_event: asyncio.Event,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> AsyncIterator[int]:
        """Yield each new head height until `stop_event` is set.

        A fresh subscription starts from the first head it reads; heights at
        or below it are never yielded. A failed poll is logged and retried on
        the next interval. Several blocks landing between polls
        produce one notification carrying the newest height.
        """
        last: int | None = None
        while not stop_event.is_set():
            try:
                head = await self.get_current_height()
            except RPCError as e:
                logger.warning("Head poll failed: %s", e)
            else:
                if last is None:
                    last = head
                elif head > last:
                    last = head
                    yield head

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
                break
            except TimeoutError:
                pass

    def _position_manager(self, w3: AsyncWeb3) -> Any:
        return w3.eth.contract(address=self._contract_address, abi=POSITION_MANAGER_ABI)

    async def get_position_liquidity(self, token_id: str | int) -> int:
        """Read the current liquidity of a position."""
        try:
            liquidity = await self._execute_with_retry(
                "getPositionLiquidity",
                lambda w3: self._position_manager(w3).functions.getPositionLiquidity(int(token_id)).call(),
            )
        except ContractLogicError as e:
            raise ContractCallError(f"getPositionLiquidity({token_id}) reverted: {e}") from e
        return int(liquidity)

    async def get_pool_and_position_info(self, token_id: str | int) -> tuple[PoolKey, PositionInfo]:
        """Read the pool key and unpacked position info of a position."""
        try:
            raw_key, info = await self._execute_with_retry(
                "getPoolAndPositionInfo",
                lambda w3: self._position_manager(w3).functions.getPoolAndPositionInfo(int(token_id)).call(),
            )
        except ContractLogicError as e:
            raise ContractCallError(f"getPoolAndPositionInfo({token_id}) reverted: {e}") from e

        key = PoolKey(
            currency0=str(raw_key[0]).lower(),
            currency1=str(raw_key[1]).lower(),
            fee=int(raw_key[2]),
            tick_spacing=int(raw_key[3]),
            hooks=str(raw_key[4]).lower(),
        )
        return key, PositionInfo.from_packed(int(info))

    async def get_position_details(self, token_id: str | int) -> PositionDetails:
        """Pool id, tick bounds and subscriber flag of a position (liquidity left unset)."""
        key, info = await self.get_pool_and_position_info(token_id)
        return PositionDetails(
            pool_id=compute_pool_id(key),
            tick_lower=info.tick_lower,
            tick_upper=info.tick_upper,
            is_subscribed=info.has_subscriber,
        )

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
