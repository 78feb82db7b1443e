"""
Task Queue Topology

Named broker structures used by the engine: three priority-tiered FIFO
lists, the retry schedule, the dead-letter list, per-task locks and the
event channel. Every key comes from the config.
"""

from __future__ import annotations

import time
from typing import Dict, List, Optional

import structlog

from taskqueue.broker.base import Broker
from taskqueue.config import TaskQueueConfig
from taskqueue.errors import BrokerError
from taskqueue.models import TaskEvent

logger = structlog.get_logger(__name__)


class QueueTopology:
    """Priority queues, retry schedule, DLQ, locks and events over one broker."""

    def __init__(self, config: TaskQueueConfig, broker: Broker):
        self.config = config
        self.broker = broker
        self.keys = config.queue_keys()

    # === Priority queues ===

    def queue_for_priority(self, priority: int) -> str:
        """Map a priority onto its physical queue using the two thresholds."""
        if priority >= self.config.priority_high_threshold:
            return self.keys.high_priority
        if priority >= self.config.priority_normal_threshold:
            return self.keys.normal_priority
        return self.keys.low_priority

    def tier_name(self, queue_key: str) -> str:
        names = {
            self.keys.high_priority: "high",
            self.keys.normal_priority: "normal",
            self.keys.low_priority: "low",
        }
        return names.get(queue_key, queue_key)

    async def push(self, task_id: str, priority: int) -> str:
        """Push a task id onto the queue for its priority. Returns the queue key."""
        queue_key = self.queue_for_priority(priority)
        await self.broker.lpush(queue_key, task_id)
        return queue_key

    async def push_to(self, queue_key: str, task_id: str) -> None:
        await self.broker.lpush(queue_key, task_id)

    async def pop(self, queue_key: str) -> Optional[str]:
        return await self.broker.rpop(queue_key)

    async def remove_everywhere(self, task_id: str) -> int:
        """Remove every occurrence of a task id from all priority queues."""
        removed = 0
        for queue_key in self.keys.priority_queues():
            removed += await self.broker.lrem(queue_key, 0, task_id)
        return removed

    async def queue_lengths(self) -> Dict[str, int]:
        return {
            self.tier_name(queue_key): await self.broker.llen(queue_key)
            for queue_key in self.keys.priority_queues()
        }

    # === Retry schedule ===

    async def schedule_retry(self, task_id: str, retry_at: float) -> None:
        """Schedule a task id to be requeued at unix time ``retry_at``."""
        await self.broker.zadd(self.config.retry_schedule_key(), task_id, retry_at)

    async def due_retries(self, now: Optional[float] = None) -> List[str]:
        now = time.time() if now is None else now
        return await self.broker.zrangebyscore(self.config.retry_schedule_key(), 0, now)

    async def claim_retry(self, task_id: str) -> bool:
        """Remove a due entry. False if another scheduler already took it."""
        return await self.unschedule_retry(task_id) > 0

    async def unschedule_retry(self, task_id: str) -> int:
        return await self.broker.zrem(self.config.retry_schedule_key(), task_id)

    async def retry_scheduled_count(self) -> int:
        return await self.broker.zcard(self.config.retry_schedule_key())

    # === Dead-letter list ===

    async def dead_letter(self, task_id: str) -> None:
        await self.broker.lpush(self.keys.dlq, task_id)

    async def dlq_length(self) -> int:
        return await self.broker.llen(self.keys.dlq)

    # === Locks ===

    async def acquire_lock(self, task_id: str, worker_id: str) -> bool:
        """Take the per-task lock for the length of one task timeout."""
        return await self.broker.set_nx(
            self.config.task_lock_key(task_id),
            worker_id,
            self.config.task_timeout,
        )

    async def release_lock(self, task_id: str) -> None:
        await self.broker.delete(self.config.task_lock_key(task_id))

    # === Events ===

    async def publish_event(self, event: TaskEvent) -> None:
        """Publish an event. Broker failures are logged, never raised."""
        try:
            await self.broker.publish(self.keys.events, event.to_json())
        except BrokerError as e:
            logger.warning(
                "Failed to publish task event",
                event_type=event.event_type.value,
                task_id=event.task_id,
                error=str(e),
            )
