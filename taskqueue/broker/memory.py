"""
Task Queue In-Memory Broker

Single-process broker for development and testing. Mirrors the Redis
semantics the engine relies on (FIFO lists, expiring set-if-absent keys,
sorted sets and fan-out pub/sub).
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

import structlog

from taskqueue.broker.base import Broker, Subscription

logger = structlog.get_logger(__name__)


class InMemorySubscription(Subscription):
    """Subscription fed by an asyncio.Queue."""

    def __init__(self, broker: "InMemoryBroker", channel: str):
        self._broker = broker
        self.channel = channel
        self._messages: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def _deliver(self, message: Optional[str]) -> None:
        self._messages.put_nowait(message)

    async def get_message(self, timeout: Optional[float] = None) -> Optional[str]:
        if self._closed and self._messages.empty():
            return None
        try:
            if timeout is None:
                return await self._messages.get()
            return await asyncio.wait_for(self._messages.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._broker._unsubscribe(self)
        # Wake any pending reader
        self._deliver(None)


class InMemoryBroker(Broker):
    """In-memory broker for development/testing."""

    def __init__(self):
        # Lists: head is index 0
        self._lists: Dict[str, Deque[str]] = {}

        # Plain keys: value and monotonic expiry (None = no expiry)
        self._keys: Dict[str, Tuple[str, Optional[float]]] = {}

        # Sorted sets: member -> score
        self._zsets: Dict[str, Dict[str, float]] = {}

        # Subscribers per channel
        self._subscribers: Dict[str, List[InMemorySubscription]] = {}

        self._closed = False

    # === Lists ===

    async def lpush(self, key: str, value: str) -> int:
        items = self._lists.setdefault(key, deque())
        items.appendleft(value)
        return len(items)

    async def rpop(self, key: str) -> Optional[str]:
        items = self._lists.get(key)
        if not items:
            return None
        value = items.pop()
        if not items:
            del self._lists[key]
        return value

    async def lrem(self, key: str, count: int, value: str) -> int:
        items = self._lists.get(key)
        if not items:
            return 0

        ordered = list(items)
        if count < 0:
            ordered.reverse()

        limit = abs(count)
        kept: List[str] = []
        removed = 0
        for item in ordered:
            if item == value and (limit == 0 or removed < limit):
                removed += 1
                continue
            kept.append(item)

        if count < 0:
            kept.reverse()

        if kept:
            self._lists[key] = deque(kept)
        else:
            del self._lists[key]
        return removed

    async def llen(self, key: str) -> int:
        return len(self._lists.get(key, ()))

    # === Keys ===

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._keys.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._keys[key]
            return None
        return value

    async def set_nx(self, key: str, value: str, ttl: float) -> bool:
        if self._live_value(key) is not None:
            return False
        expires_at = time.monotonic() + ttl if ttl and ttl > 0 else None
        self._keys[key] = (value, expires_at)
        return True

    async def get(self, key: str) -> Optional[str]:
        """Current value of a key (honours expiry)."""
        return self._live_value(key)

    async def delete(self, key: str) -> int:
        removed = 0
        if self._keys.pop(key, None) is not None:
            removed += 1
        if self._lists.pop(key, None) is not None:
            removed += 1
        if self._zsets.pop(key, None) is not None:
            removed += 1
        return removed

    # === Sorted sets ===

    async def zadd(self, key: str, member: str, score: float) -> int:
        members = self._zsets.setdefault(key, {})
        added = 0 if member in members else 1
        members[member] = float(score)
        return added

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[str]:
        members = self._zsets.get(key, {})
        due = [
            (score, member) for member, score in members.items()
            if min_score <= score <= max_score
        ]
        return [member for _, member in sorted(due)]

    async def zrem(self, key: str, member: str) -> int:
        members = self._zsets.get(key)
        if not members or member not in members:
            return 0
        del members[member]
        if not members:
            del self._zsets[key]
        return 1

    async def zcard(self, key: str) -> int:
        return len(self._zsets.get(key, {}))

    async def zscore(self, key: str, member: str) -> Optional[float]:
        """Score of a member, or None when absent."""
        return self._zsets.get(key, {}).get(member)

    # === Pub/Sub ===

    async def publish(self, channel: str, message: str) -> int:
        subscribers = list(self._subscribers.get(channel, ()))
        for subscription in subscribers:
            subscription._deliver(message)
        return len(subscribers)

    async def subscribe(self, channel: str) -> InMemorySubscription:
        subscription = InMemorySubscription(self, channel)
        self._subscribers.setdefault(channel, []).append(subscription)
        return subscription

    def _unsubscribe(self, subscription: InMemorySubscription) -> None:
        subscribers = self._subscribers.get(subscription.channel, [])
        if subscription in subscribers:
            subscribers.remove(subscription)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for subscribers in list(self._subscribers.values()):
            for subscription in list(subscribers):
                await subscription.close()
        logger.info("In-memory broker closed")

    @property
    def closed(self) -> bool:
        return self._closed
