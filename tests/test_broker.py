"""
Tests for taskqueue brokers.

The list contract (push at head, pop at tail) is checked for every
broker; the Redis broker is exercised against a mocked client.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from taskqueue.broker import InMemoryBroker, RedisBroker, create_broker
from taskqueue.errors import BrokerError


class TestInMemoryBroker:
    """Tests for InMemoryBroker."""

    @pytest.mark.asyncio
    async def test_list_is_fifo(self):
        """Test lpush at head and rpop at tail give FIFO order."""
        broker = InMemoryBroker()

        for item in ("a", "b", "c"):
            await broker.lpush("q", item)

        assert await broker.llen("q") == 3
        assert await broker.rpop("q") == "a"
        assert await broker.rpop("q") == "b"
        assert await broker.rpop("q") == "c"
        assert await broker.rpop("q") is None
        assert await broker.llen("q") == 0

    @pytest.mark.asyncio
    async def test_lrem(self):
        """Test removing list entries."""
        broker = InMemoryBroker()
        for item in ("x", "y", "x", "z", "x"):
            await broker.lpush("q", item)

        assert await broker.lrem("q", 1, "x") == 1
        assert await broker.llen("q") == 4
        assert await broker.lrem("q", 0, "x") == 2
        assert await broker.lrem("q", 0, "missing") == 0
        assert await broker.lrem("nothing", 0, "x") == 0

        assert await broker.rpop("q") == "y"
        assert await broker.rpop("q") == "z"

    @pytest.mark.asyncio
    async def test_set_nx(self):
        """Test set-if-absent semantics."""
        broker = InMemoryBroker()

        assert await broker.set_nx("lock", "w1", ttl=10)
        assert not await broker.set_nx("lock", "w2", ttl=10)
        assert await broker.get("lock") == "w1"

        assert await broker.delete("lock") == 1
        assert await broker.set_nx("lock", "w2", ttl=10)
        assert await broker.get("lock") == "w2"

    @pytest.mark.asyncio
    async def test_set_nx_expires(self):
        """Test that a lock can be retaken after its TTL."""
        broker = InMemoryBroker()

        assert await broker.set_nx("lock", "w1", ttl=0.05)
        await asyncio.sleep(0.1)

        assert await broker.get("lock") is None
        assert await broker.set_nx("lock", "w2", ttl=10)

    @pytest.mark.asyncio
    async def test_sorted_set(self):
        """Test sorted set operations."""
        broker = InMemoryBroker()

        assert await broker.zadd("z", "late", 300) == 1
        assert await broker.zadd("z", "early", 100) == 1
        assert await broker.zadd("z", "mid", 200) == 1
        assert await broker.zadd("z", "mid", 150) == 0

        assert await broker.zcard("z") == 3
        assert await broker.zrangebyscore("z", 0, 200) == ["early", "mid"]
        assert await broker.zscore("z", "mid") == 150

        assert await broker.zrem("z", "early") == 1
        assert await broker.zrem("z", "early") == 0
        assert await broker.zrangebyscore("z", 0, 1000) == ["mid", "late"]

    @pytest.mark.asyncio
    async def test_pubsub(self):
        """Test that subscribers receive messages published after subscribing."""
        broker = InMemoryBroker()

        await broker.publish("events", "before")
        sub_a = await broker.subscribe("events")
        sub_b = await broker.subscribe("events")

        receivers = await broker.publish("events", "hello")

        assert receivers == 2
        assert await sub_a.get_message(timeout=1) == "hello"
        assert await sub_b.get_message(timeout=1) == "hello"
        assert await sub_a.get_message(timeout=0.01) is None

        await sub_a.close()
        assert await broker.publish("events", "again") == 1

    @pytest.mark.asyncio
    async def test_subscription_iteration_ends_on_close(self):
        """Test that async iteration stops when the broker closes."""
        broker = InMemoryBroker()
        sub = await broker.subscribe("events")

        await broker.publish("events", "one")
        await broker.publish("events", "two")
        await broker.close()

        received = [message async for message in sub]

        assert received == ["one", "two"]
        assert broker.closed

    def test_factory(self):
        """Test create_broker."""
        assert isinstance(create_broker("memory"), InMemoryBroker)
        assert isinstance(create_broker("redis", redis_url="redis://x:1/0"), RedisBroker)

        with pytest.raises(ValueError):
            create_broker("kafka")


def _mock_client() -> MagicMock:
    client = MagicMock()
    for name in (
        "lpush", "rpop", "lrem", "llen", "set", "delete",
        "zadd", "zrangebyscore", "zrem", "zcard", "publish", "aclose",
    ):
        setattr(client, name, AsyncMock())
    return client


class TestRedisBroker:
    """Tests for RedisBroker against a mocked redis.asyncio client."""

    @pytest.mark.asyncio
    async def test_list_commands(self):
        """Test list operations map onto LPUSH/RPOP/LREM/LLEN."""
        client = _mock_client()
        client.lpush.return_value = 1
        client.rpop.return_value = "task-1"
        client.lrem.return_value = 2
        client.llen.return_value = 5
        broker = RedisBroker(client=client)

        assert await broker.lpush("q", "task-1") == 1
        assert await broker.rpop("q") == "task-1"
        assert await broker.lrem("q", 0, "task-1") == 2
        assert await broker.llen("q") == 5

        client.lpush.assert_awaited_once_with("q", "task-1")
        client.rpop.assert_awaited_once_with("q")
        client.lrem.assert_awaited_once_with("q", 0, "task-1")

    @pytest.mark.asyncio
    async def test_set_nx(self):
        """Test locks map onto SET NX PX."""
        client = _mock_client()
        client.set.side_effect = [True, None]
        broker = RedisBroker(client=client)

        assert await broker.set_nx("lock", "w1", ttl=1800) is True
        assert await broker.set_nx("lock", "w2", ttl=1800) is False

        client.set.assert_any_await("lock", "w1", nx=True, px=1_800_000)

    @pytest.mark.asyncio
    async def test_sorted_set_commands(self):
        """Test retry schedule operations."""
        client = _mock_client()
        client.zadd.return_value = 1
        client.zrangebyscore.return_value = ["a", "b"]
        client.zrem.return_value = 1
        client.zcard.return_value = 2
        broker = RedisBroker(client=client)

        assert await broker.zadd("z", "a", 123.5) == 1
        assert await broker.zrangebyscore("z", 0, 200) == ["a", "b"]
        assert await broker.zrem("z", "a") == 1
        assert await broker.zcard("z") == 2

        client.zadd.assert_awaited_once_with("z", {"a": 123.5})

    @pytest.mark.asyncio
    async def test_errors_are_wrapped(self):
        """Test that RedisError surfaces as BrokerError."""
        client = _mock_client()
        client.lpush.side_effect = RedisConnectionError("connection refused")
        broker = RedisBroker(client=client)

        with pytest.raises(BrokerError) as exc_info:
            await broker.lpush("q", "task-1")

        assert exc_info.value.operation == "lpush"
        assert "connection refused" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_subscribe(self):
        """Test subscription reads only data messages."""
        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()
        pubsub.get_message = AsyncMock(side_effect=[
            {"type": "message", "data": "payload"},
            None,
        ])
        client = _mock_client()
        client.pubsub.return_value = pubsub
        broker = RedisBroker(client=client)

        sub = await broker.subscribe("events")

        assert await sub.get_message(timeout=1) == "payload"
        assert await sub.get_message(timeout=0.01) is None

        await sub.close()
        pubsub.subscribe.assert_awaited_once_with("events")
        pubsub.unsubscribe.assert_awaited_once_with("events")

    @pytest.mark.asyncio
    async def test_close(self):
        """Test closing releases the client once."""
        client = _mock_client()
        broker = RedisBroker(client=client)

        await broker.close()
        await broker.close()

        client.aclose.assert_awaited_once()
