"""
Task Queue Broker Interface

The volatile broker holds the priority lists, the retry schedule, the
dead-letter list, per-task locks and the event channel.

List contract: ``lpush`` inserts at the head and ``rpop`` removes from the
tail, so every list is a FIFO.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional


class Subscription(ABC):
    """An open channel subscription, consumed with ``async for``."""

    def __aiter__(self) -> AsyncIterator[str]:
        return self

    async def __anext__(self) -> str:
        message = await self.get_message()
        if message is None:
            raise StopAsyncIteration
        return message

    @abstractmethod
    async def get_message(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        Wait for the next message.

        Returns None when the subscription is closed or the timeout elapses.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Stop receiving messages."""
        pass


class Broker(ABC):
    """Abstract base class for volatile brokers."""

    # === Lists ===

    @abstractmethod
    async def lpush(self, key: str, value: str) -> int:
        """Insert value at the head of a list. Returns the new length."""
        pass

    @abstractmethod
    async def rpop(self, key: str) -> Optional[str]:
        """Remove and return the tail of a list, or None when empty."""
        pass

    @abstractmethod
    async def lrem(self, key: str, count: int, value: str) -> int:
        """Remove occurrences of value (count=0 removes all). Returns removed count."""
        pass

    @abstractmethod
    async def llen(self, key: str) -> int:
        """Length of a list (0 when missing)."""
        pass

    # === Keys ===

    @abstractmethod
    async def set_nx(self, key: str, value: str, ttl: float) -> bool:
        """Set key only if absent, expiring after ttl seconds. True if set."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> int:
        """Delete a key. Returns the number of keys removed."""
        pass

    # === Sorted sets ===

    @abstractmethod
    async def zadd(self, key: str, member: str, score: float) -> int:
        """Add or update a member's score."""
        pass

    @abstractmethod
    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[str]:
        """Members with min_score <= score <= max_score, lowest score first."""
        pass

    @abstractmethod
    async def zrem(self, key: str, member: str) -> int:
        """Remove a member. Returns 1 if it was present, else 0."""
        pass

    @abstractmethod
    async def zcard(self, key: str) -> int:
        """Number of members in a sorted set."""
        pass

    # === Pub/Sub ===

    @abstractmethod
    async def publish(self, channel: str, message: str) -> int:
        """Publish a message. Returns the number of receivers."""
        pass

    @abstractmethod
    async def subscribe(self, channel: str) -> Subscription:
        """Subscribe to channel; messages published after this returns are delivered."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""
        pass
