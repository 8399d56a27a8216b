"""Live user-action notifications.

The indexer announces every applied event to a notification channel so
connected dashboards can refresh a wallet. Delivery is fire-and-forget:
`notify` returns immediately and a publish failure never affects indexing.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

from redis.asyncio import Redis

logger = logging.getLogger(__name__)


def build_user_action_message(
    wallet_address: str, action: str, pool_id: str | None, timestamp: int
) -> dict[str, Any]:
    return {
        "type": "user_action",
        "data": {
            "address": wallet_address,
            "actionType": action,
            "poolId": pool_id,
            "timestamp": timestamp,
        },
    }


class Broadcaster(Protocol):
    """Receives a notification for every applied event."""

    def notify(self, wallet_address: str, action: str, pool_id: str | None, timestamp: int) -> None: ...

    async def aclose(self) -> None: ...


class NullBroadcaster:
    """Broadcaster that only logs (broadcasting disabled)."""

    def notify(self, wallet_address: str, action: str, pool_id: str | None, timestamp: int) -> None:
        logger.debug("Broadcast disabled, dropping %s for %s", action, wallet_address)

    async def aclose(self) -> None:
        return None


class RedisBroadcaster:
    """Publishes user actions as JSON on a Redis pub/sub channel.

    Example:
        ```python
        redis = Redis.from_url("redis://localhost:6379")
        broadcaster = RedisBroadcaster(redis, channel="dna:user_actions")
        broadcaster.notify("0xabc...", "mint", "0x12...", 1712345678)
        await broadcaster.aclose()
        ```
    """

    def __init__(self, redis: Redis, *, channel: str) -> None:
        self._redis = redis
        self._channel = channel
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def channel(self) -> str:
        return self._channel

    @property
    def pending(self) -> int:
        return len(self._pending)

    def notify(self, wallet_address: str, action: str, pool_id: str | None, timestamp: int) -> None:
        """Schedule a publish and return without waiting for it."""
        message = build_user_action_message(wallet_address, action, pool_id, timestamp)
        task = asyncio.get_running_loop().create_task(self._publish(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, message: dict[str, Any]) -> None:
        try:
            await self._redis.publish(self._channel, json.dumps(message))
        except Exception as e:
            logger.warning(
                "Failed to broadcast %s for %s: %s",
                message["data"]["actionType"],
                message["data"]["address"],
                e,
            )

    async def aclose(self) -> None:
        """Wait for in-flight publishes to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
