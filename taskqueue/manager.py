"""
Task Queue Manager

Facade over the engine: task submission, queries, cancel, manual retry,
statistics, orphan recovery, and the lifecycle of the worker pool and
background schedulers.
"""

from __future__ import annotations

import asyncio
import socket
import uuid
from dataclasses import replace
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog

from taskqueue.broker.base import Broker
from taskqueue.config import TaskQueueConfig
from taskqueue.errors import (
    BrokerError,
    ConfigurationError,
    InvalidStateError,
    TaskQueueError,
)
from taskqueue.models import (
    EventType,
    QueueStats,
    TaskEvent,
    TaskFilter,
    TaskInfo,
    TaskPriority,
    TaskRecord,
    TaskStatus,
    WorkerStats,
    new_task_id,
    utcnow,
)
from taskqueue.scheduler import DLQMonitor, RetryScheduler
from taskqueue.store.base import DEFAULT_HISTORY_LIMIT, TaskStore, stamp_status
from taskqueue.topology import QueueTopology
from taskqueue.worker import Handler, Worker

logger = structlog.get_logger(__name__)

STATS_WINDOW = timedelta(hours=24)


class TaskManager:
    """
    Priority-aware, retrying, crash-recoverable task manager.

    Features:
    - Three priority tiers drained high to low
    - Per-task distributed lock with heartbeat-based orphan recovery
    - Exponential backoff retries and a dead-letter queue
    - Graceful shutdown with a bounded wait

    Usage:
        async with TaskManager(config, broker, store, handler) as manager:
            task_id = await manager.submit_task('{"video": "a.mp4"}')
    """

    def __init__(
        self,
        config: TaskQueueConfig,
        broker: Broker,
        store: TaskStore,
        handler: Optional[Handler] = None,
        instance_id: Optional[str] = None,
    ):
        config.validate_config()

        self.config = config
        self.broker = broker
        self.store = store
        self.handler = handler
        self.topology = QueueTopology(config, broker)
        self.instance_id = instance_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"

        # Control
        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._started = False

        self.workers: List[Worker] = []
        self.retry_scheduler = RetryScheduler(config, self.topology, store, self._shutdown_event)
        self.dlq_monitor = DLQMonitor(config, self.topology, self._shutdown_event)

    async def __aenter__(self) -> "TaskManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    @property
    def is_running(self) -> bool:
        return self._started and not self._shutdown_event.is_set()

    # === Lifecycle ===

    async def start(self) -> None:
        """Start the worker pool and the background schedulers."""
        if self._started:
            raise RuntimeError("Task manager already started")
        if self.handler is None:
            raise ConfigurationError("A job handler is required to start workers")
        self._started = True
        self._shutdown_event.clear()

        logger.info(
            "Starting task manager",
            instance_id=self.instance_id,
            worker_count=self.config.worker_count,
            task_timeout=self.config.task_timeout,
        )

        # Start workers
        self.workers = [
            Worker(
                worker_id=f"{self.instance_id}-worker-{i + 1}",
                config=self.config,
                topology=self.topology,
                store=self.store,
                handler=self.handler,
                shutdown_event=self._shutdown_event,
            )
            for i in range(self.config.worker_count)
        ]
        for worker in self.workers:
            self._tasks.append(asyncio.create_task(worker.run(), name=worker.worker_id))

        # Start background schedulers
        self._tasks.append(asyncio.create_task(
            self.retry_scheduler.run(), name=f"{self.instance_id}-retry-scheduler",
        ))
        self._tasks.append(asyncio.create_task(
            self.dlq_monitor.run(), name=f"{self.instance_id}-dlq-monitor",
        ))

        logger.info("Task manager started", instance_id=self.instance_id)

    async def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Stop every loop and wait for them.

        Returns:
            True if all loops finished in time (the broker is then closed),
            False if the timeout elapsed (the broker is left open because
            loops may still be using it)
        """
        if not self._started:
            return True

        timeout = self.config.shutdown_timeout if timeout is None else timeout
        logger.info("Starting graceful shutdown", timeout=timeout)
        self._shutdown_event.set()

        pending = set()
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=timeout)

        if pending:
            logger.warning(
                "Shutdown timeout reached, some workers may not have finished",
                unfinished=len(pending),
            )
            return False

        self._tasks = []
        try:
            await self.broker.close()
        except BrokerError as e:
            logger.error("Error closing broker", error=str(e))

        logger.info("Shutdown complete", instance_id=self.instance_id)
        return True

    # === Submission ===

    async def submit_task(self, payload: Optional[str], account_id: Optional[str] = None) -> str:
        """Submit a task with normal priority."""
        return await self.submit_task_with_priority(payload, TaskPriority.NORMAL, account_id)

    async def submit_task_with_priority(
        self,
        payload: Optional[str],
        priority: int,
        account_id: Optional[str] = None,
    ) -> str:
        """
        Persist a task and push it onto the queue its priority maps to.

        Raises:
            BrokerError: If the push failed; the record is then marked failed
        """
        priority = int(priority)
        record = TaskRecord(
            task_id=new_task_id(),
            status=TaskStatus.PENDING,
            priority=priority,
            account_id=account_id,
            max_retries=self.config.max_retries,
            request_data=payload,
        )
        await self.store.create(record)

        # Mark queued before the push so a worker never sees a pending row
        await self.store.update_status(record.task_id, TaskStatus.QUEUED)
        try:
            queue_key = await self.topology.push(record.task_id, priority)
        except BrokerError as e:
            logger.error("Failed to queue task", task_id=record.task_id, error=str(e))
            await self.store.update_status(record.task_id, TaskStatus.FAILED, "Failed to queue task")
            raise

        await self.publish_event(EventType.TASK_QUEUED, record.task_id, account_id, TaskStatus.QUEUED, {
            "priority": priority,
            "queue": self.topology.tier_name(queue_key),
        })

        logger.info(
            "Task submitted",
            task_id=record.task_id,
            account_id=account_id,
            priority=priority,
            queue=self.topology.tier_name(queue_key),
        )
        return record.task_id

    # === Queries ===

    async def get_task(self, task_id: str) -> TaskInfo:
        return TaskInfo.from_record(await self.store.get_by_task_id(task_id))

    async def get_tasks_by_account(
        self,
        account_id: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
        offset: int = 0,
    ) -> List[TaskInfo]:
        records = await self.store.get_by_account_id(account_id, limit, offset)
        return [TaskInfo.from_record(r) for r in records]

    async def get_task_history(self, task_filter: Optional[TaskFilter] = None) -> List[TaskInfo]:
        records = await self.store.find_tasks(task_filter or TaskFilter())
        return [TaskInfo.from_record(r) for r in records]

    # === Control ===

    async def cancel_task(self, task_id: str) -> None:
        """
        Cancel a pending or queued task.

        A worker that already popped the id may still run it.

        Raises:
            TaskNotFoundError: Unknown task id
            InvalidStateError: Task is not pending or queued
        """
        record = await self.store.get_by_task_id(task_id)
        if record.status not in (TaskStatus.PENDING, TaskStatus.QUEUED):
            raise InvalidStateError(
                task_id,
                record.status.value,
                f"Cannot cancel task in status {record.status.value}",
            )

        removed = await self.topology.remove_everywhere(task_id)
        removed += await self.topology.unschedule_retry(task_id)
        if removed == 0:
            logger.warning("Task not found in any queue while canceling", task_id=task_id)

        await self.store.update_status(task_id, TaskStatus.CANCELED, "Canceled by user")
        await self.publish_event(EventType.TASK_CANCELED, task_id, record.account_id, TaskStatus.CANCELED)

        logger.info("Task canceled", task_id=task_id)

    async def retry_task(self, task_id: str) -> None:
        """
        Re-open a failed task with a fresh attempt budget.

        Raises:
            TaskNotFoundError: Unknown task id
            InvalidStateError: Task is not failed
        """
        record = await self.store.get_by_task_id(task_id)
        if record.status != TaskStatus.FAILED:
            raise InvalidStateError(
                task_id,
                record.status.value,
                f"Can only retry failed tasks, current status: {record.status.value}",
            )

        record.attempts = 0
        record.error_message = ""
        record.failed_at = None
        stamp_status(record, TaskStatus.QUEUED)
        await self.store.update(record)

        try:
            queue_key = await self.topology.push(task_id, record.priority)
        except BrokerError as e:
            logger.error("Failed to queue manual retry", task_id=task_id, error=str(e))
            await self.store.update_status(task_id, TaskStatus.FAILED, "Failed to queue task")
            raise

        await self.publish_event(EventType.TASK_RETRY, task_id, record.account_id, TaskStatus.QUEUED, {
            "manual": True,
        })

        logger.info("Task manually retried", task_id=task_id, queue=self.topology.tier_name(queue_key))

    # === Statistics ===

    async def get_stats(self) -> QueueStats:
        lengths = await self.topology.queue_lengths()
        since = utcnow() - STATS_WINDOW

        completed = await self.store.count_completed_since(since)
        active = sum(1 for w in self.workers if w.stats.is_active)

        return QueueStats(
            total_pending=await self.store.count_by_status(TaskStatus.PENDING),
            total_queued=sum(lengths.values()),
            total_processing=await self.store.count_by_status(TaskStatus.PROCESSING),
            total_completed=completed,
            total_failed=await self.store.count_failed_since(since),
            total_dlq=await self.topology.dlq_length(),
            total_retry_scheduled=await self.topology.retry_scheduled_count(),
            active_workers=active,
            idle_workers=len(self.workers) - active,
            avg_processing_time_ms=await self.store.get_average_processing_time(since),
            avg_queue_time_ms=await self.store.get_average_queue_time(since),
            tasks_per_hour=completed / 24.0,
            queue_lengths=lengths,
        )

    def get_worker_stats(self) -> List[WorkerStats]:
        return [replace(w.stats) for w in self.workers]

    # === Recovery ===

    async def recover_orphaned_tasks(self) -> int:
        """
        Requeue or fail processing tasks whose heartbeat went stale.

        Returns:
            Number of orphaned tasks handled
        """
        orphans = await self.store.find_orphaned_tasks(
            timedelta(seconds=self.config.orphan_timeout)
        )
        if not orphans:
            return 0

        logger.warning("Found orphaned tasks", count=len(orphans))
        recovered = 0

        for record in orphans:
            try:
                if record.attempts >= record.max_retries:
                    stamp_status(record, TaskStatus.FAILED, "Task orphaned after max retries")
                    await self.store.update(record)
                    await self.topology.dead_letter(record.task_id)
                    await self.publish_event(
                        EventType.TASK_FAILED, record.task_id, record.account_id, TaskStatus.FAILED,
                        {"error": record.error_message, "orphaned": True},
                    )
                    logger.error("Orphaned task failed after max retries", task_id=record.task_id)
                else:
                    record.attempts += 1
                    stamp_status(record, TaskStatus.QUEUED)
                    await self.store.update(record)
                    await self.topology.push(record.task_id, record.priority)
                    logger.info(
                        "Orphaned task requeued",
                        task_id=record.task_id,
                        attempts=record.attempts,
                    )
                recovered += 1
            except TaskQueueError as e:
                logger.error("Failed to recover orphaned task", task_id=record.task_id, error=str(e))

        return recovered

    # === Helpers ===

    def retry_delay(self, attempt: int) -> float:
        return self.config.retry_delay(attempt)

    async def publish_event(
        self,
        event_type: EventType,
        task_id: str,
        account_id: Optional[str],
        status: TaskStatus,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.topology.publish_event(TaskEvent(
            event_type=event_type,
            task_id=task_id,
            status=status,
            account_id=account_id,
            data=data or {},
        ))
