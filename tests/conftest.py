"""
Shared fixtures for taskqueue tests.

Engine tests run against the in-memory broker and store with intervals
shrunk to milliseconds.
"""

import asyncio
import time

import pytest

from taskqueue.config import TaskQueueConfig


def make_config(**overrides) -> TaskQueueConfig:
    """Config tuned for fast tests."""
    values = dict(
        worker_count=2,
        task_timeout=5.0,
        max_retries=3,
        initial_retry_delay=0.01,
        max_retry_delay=0.05,
        backoff_factor=2.0,
        heartbeat_interval=0.05,
        orphan_timeout=60.0,
        retry_poll_interval=0.02,
        dlq_check_interval=0.05,
        poll_backoff_initial=0.01,
        poll_backoff_max=0.05,
        shutdown_timeout=5.0,
        key_prefix="test",
    )
    values.update(overrides)
    return TaskQueueConfig(**values)


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll an async predicate until it returns truthy or the timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if await predicate():
            return True
        await asyncio.sleep(interval)
    return False


@pytest.fixture
def fast_config():
    """Fast test configuration."""
    return make_config()
