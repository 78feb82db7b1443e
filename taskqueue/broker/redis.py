"""
Task Queue Redis Broker

Production broker over ``redis.asyncio``. Every ``redis.RedisError`` is
translated into :class:`~taskqueue.errors.BrokerError`.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, List, Optional

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from taskqueue.broker.base import Broker, Subscription
from taskqueue.errors import BrokerError

logger = structlog.get_logger(__name__)


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as e:
        raise BrokerError(f"Redis {operation} failed: {e}", operation=operation) from e


class RedisSubscription(Subscription):
    """Subscription backed by a Redis PubSub object."""

    def __init__(self, pubsub, channel: str):
        self._pubsub = pubsub
        self.channel = channel
        self._closed = False

    async def get_message(self, timeout: Optional[float] = None) -> Optional[str]:
        while not self._closed:
            with _translate_errors("subscribe"):
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=timeout,
                )
            if message is not None and message.get("type") == "message":
                return message["data"]
            if timeout is not None:
                return None
        return None

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with _translate_errors("unsubscribe"):
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()


class RedisBroker(Broker):
    """
    Redis-based broker for production.

    Lists map onto LPUSH/RPOP, locks onto SET NX PX, the retry schedule
    onto a sorted set and events onto PUBLISH.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self._client = client

    def _get_client(self) -> redis.Redis:
        """Get or create Redis client."""
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                decode_responses=True,
            )
            logger.info("Redis broker connected", url=self.redis_url)
        return self._client

    # === Lists ===

    async def lpush(self, key: str, value: str) -> int:
        with _translate_errors("lpush"):
            return await self._get_client().lpush(key, value)

    async def rpop(self, key: str) -> Optional[str]:
        with _translate_errors("rpop"):
            return await self._get_client().rpop(key)

    async def lrem(self, key: str, count: int, value: str) -> int:
        with _translate_errors("lrem"):
            return await self._get_client().lrem(key, count, value)

    async def llen(self, key: str) -> int:
        with _translate_errors("llen"):
            return await self._get_client().llen(key)

    # === Keys ===

    async def set_nx(self, key: str, value: str, ttl: float) -> bool:
        px = max(int(ttl * 1000), 1)
        with _translate_errors("set_nx"):
            result = await self._get_client().set(key, value, nx=True, px=px)
        return bool(result)

    async def delete(self, key: str) -> int:
        with _translate_errors("delete"):
            return await self._get_client().delete(key)

    # === Sorted sets ===

    async def zadd(self, key: str, member: str, score: float) -> int:
        with _translate_errors("zadd"):
            return await self._get_client().zadd(key, {member: score})

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[str]:
        with _translate_errors("zrangebyscore"):
            return list(await self._get_client().zrangebyscore(key, min_score, max_score))

    async def zrem(self, key: str, member: str) -> int:
        with _translate_errors("zrem"):
            return await self._get_client().zrem(key, member)

    async def zcard(self, key: str) -> int:
        with _translate_errors("zcard"):
            return await self._get_client().zcard(key)

    # === Pub/Sub ===

    async def publish(self, channel: str, message: str) -> int:
        with _translate_errors("publish"):
            return await self._get_client().publish(channel, message)

    async def subscribe(self, channel: str) -> RedisSubscription:
        pubsub = self._get_client().pubsub()
        with _translate_errors("subscribe"):
            await pubsub.subscribe(channel)
        return RedisSubscription(pubsub, channel)

    async def close(self) -> None:
        if self._client is None:
            return
        with _translate_errors("close"):
            await self._client.aclose()
        self._client = None
        logger.info("Redis broker closed")
