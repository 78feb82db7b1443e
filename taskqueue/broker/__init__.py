"""
Task Queue Brokers

Volatile broker implementations:
- InMemory: For development/testing
- Redis: For production
"""

from __future__ import annotations

from taskqueue.broker.base import Broker, Subscription
from taskqueue.broker.memory import InMemoryBroker, InMemorySubscription
from taskqueue.broker.redis import RedisBroker, RedisSubscription


def create_broker(broker_type: str = "memory", **kwargs) -> Broker:
    """Factory function to create a broker."""
    brokers = {
        "memory": InMemoryBroker,
        "redis": RedisBroker,
    }

    if broker_type not in brokers:
        raise ValueError(f"Unknown broker type: {broker_type}")

    return brokers[broker_type](**kwargs)


__all__ = [
    "Broker",
    "Subscription",
    "InMemoryBroker",
    "InMemorySubscription",
    "RedisBroker",
    "RedisSubscription",
    "create_broker",
]
