"""
Task Queue Background Schedulers

- RetryScheduler: moves due entries from the retry schedule back onto
  their priority queues
- DLQMonitor: warns when the dead-letter list grows past the threshold
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional

import structlog

from taskqueue.config import TaskQueueConfig
from taskqueue.errors import BrokerError, TaskNotFoundError, TaskQueueError
from taskqueue.models import TaskStatus
from taskqueue.store.base import TaskStore
from taskqueue.topology import QueueTopology

logger = structlog.get_logger(__name__)


class _PeriodicLoop:
    """Runs ``tick`` every ``interval`` seconds until the shutdown event is set."""

    name = "periodic"

    def __init__(self, interval: float, shutdown_event: asyncio.Event):
        self.interval = interval
        self._shutdown_event = shutdown_event

    async def tick(self) -> None:
        raise NotImplementedError

    async def run(self) -> None:
        logger.info("Background loop started", loop=self.name, interval=self.interval)

        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                break

            if self._shutdown_event.is_set():
                break

            try:
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Background loop error", loop=self.name, error=str(e))

        logger.info("Background loop stopped", loop=self.name)


class RetryScheduler(_PeriodicLoop):
    """Requeues tasks whose retry time has come."""

    name = "retry_scheduler"

    def __init__(
        self,
        config: TaskQueueConfig,
        topology: QueueTopology,
        store: TaskStore,
        shutdown_event: asyncio.Event,
    ):
        super().__init__(config.retry_poll_interval, shutdown_event)
        self.topology = topology
        self.store = store

    async def tick(self) -> None:
        await self.process_due_retries()

    async def process_due_retries(self, now: Optional[float] = None) -> int:
        """
        Requeue every retry entry due at ``now`` (default: current time).

        Returns:
            Number of task ids pushed back onto a priority queue
        """
        now = time.time() if now is None else now
        due = await self.topology.due_retries(now)
        requeued = 0

        for task_id in due:
            try:
                if not await self.topology.claim_retry(task_id):
                    # Another scheduler took it
                    continue

                record = await self.store.get_by_task_id(task_id)
                if record.status != TaskStatus.QUEUED:
                    logger.warning(
                        "Dropping retry for task no longer queued",
                        task_id=task_id,
                        status=record.status.value,
                    )
                    continue

                try:
                    queue_key = await self.topology.push(task_id, record.priority)
                except BrokerError as e:
                    logger.error("Failed to requeue retry, rescheduling", task_id=task_id, error=str(e))
                    await self.topology.schedule_retry(task_id, now)
                    continue
                requeued += 1

                logger.info(
                    "Retry requeued",
                    task_id=task_id,
                    queue=self.topology.tier_name(queue_key),
                    attempts=record.attempts,
                )

            except TaskNotFoundError:
                logger.error("Dropping retry for missing task", task_id=task_id)
            except TaskQueueError as e:
                logger.error("Failed to requeue retry", task_id=task_id, error=str(e))

        return requeued


class DLQMonitor(_PeriodicLoop):
    """Logs a warning while the dead-letter list is at or above the alert threshold."""

    name = "dlq_monitor"

    def __init__(
        self,
        config: TaskQueueConfig,
        topology: QueueTopology,
        shutdown_event: asyncio.Event,
    ):
        super().__init__(config.dlq_check_interval, shutdown_event)
        self.threshold = config.dlq_alert_threshold
        self.topology = topology

    async def tick(self) -> None:
        await self.check()

    async def check(self) -> int:
        """Read the DLQ length, warn if over threshold, and return it."""
        try:
            length = await self.topology.dlq_length()
        except BrokerError as e:
            logger.warning("Failed to read DLQ length", error=str(e))
            return 0

        if length >= self.threshold:
            logger.warning(
                "Dead letter queue above threshold",
                dlq_size=length,
                threshold=self.threshold,
            )
        return length
