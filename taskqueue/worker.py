"""
Task Queue Workers

Polling workers that fetch task ids from the priority queues, take the
per-task lock, run the job handler with a heartbeat and a timeout, and
settle the outcome (complete, schedule a retry, or dead-letter).
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from taskqueue.config import TaskQueueConfig
from taskqueue.errors import (
    BrokerError,
    HandlerError,
    TaskNotFoundError,
    TaskQueueError,
    TaskTimeoutError,
)
from taskqueue.models import (
    EventType,
    TaskEvent,
    TaskRecord,
    TaskStatus,
    WorkerStats,
    utcnow,
)
from taskqueue.store.base import TaskStore, stamp_status
from taskqueue.topology import QueueTopology

logger = structlog.get_logger(__name__)


@dataclass
class ExecutionContext:
    """What a job handler knows about the attempt it is running."""
    task_id: str
    account_id: Optional[str]
    attempt: int
    worker_id: str
    deadline: datetime
    _shutdown_event: asyncio.Event = field(repr=False, compare=False)

    @property
    def shutdown_requested(self) -> bool:
        """True once the manager has been asked to shut down."""
        return self._shutdown_event.is_set()

    @property
    def remaining_seconds(self) -> float:
        return max((self.deadline - utcnow()).total_seconds(), 0.0)


Handler = Callable[[Optional[str], ExecutionContext], Awaitable[Optional[str]]]


@dataclass
class TaskExecution:
    """State of one task execution, passed between the worker stages."""
    record: TaskRecord
    queue_key: str
    lock_key: str
    started_monotonic: float = 0.0
    claimed_at: Optional[datetime] = None
    heartbeat_task: Optional[asyncio.Task] = None
    result: Optional[str] = None
    error: Optional[HandlerError] = None

    @property
    def task_id(self) -> str:
        return self.record.task_id

    @property
    def processing_ms(self) -> int:
        return int((time.monotonic() - self.started_monotonic) * 1000)

    @property
    def queue_ms(self) -> int:
        if self.claimed_at is None or self.record.queued_at is None:
            return 0
        return max(int((self.claimed_at - self.record.queued_at).total_seconds() * 1000), 0)


class Worker:
    """
    One polling loop of the worker pool.

    Workers share the broker and the store; the per-task lock is the only
    mutual exclusion between them.
    """

    def __init__(
        self,
        worker_id: str,
        config: TaskQueueConfig,
        topology: QueueTopology,
        store: TaskStore,
        handler: Handler,
        shutdown_event: asyncio.Event,
    ):
        self.worker_id = worker_id
        self.config = config
        self.topology = topology
        self.store = store
        self.handler = handler
        self._shutdown_event = shutdown_event

        self.stats = WorkerStats(worker_id=worker_id)

    # === Main loop ===

    async def run(self) -> None:
        """Poll the queues until shutdown is requested."""
        logger.info("Worker started", worker_id=self.worker_id)
        backoff = self.config.poll_backoff_initial

        while not self._shutdown_event.is_set():
            try:
                execution = await self.fetch_task()
                if execution is None:
                    await self._idle(backoff)
                    backoff = min(backoff * 2, self.config.poll_backoff_max)
                    continue

                backoff = self.config.poll_backoff_initial
                await self.process_task(execution)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(
                    "Worker loop error",
                    worker_id=self.worker_id,
                    error=str(e),
                )
                await self._idle(1.0)

        logger.info("Worker stopped", worker_id=self.worker_id)

    async def _idle(self, delay: float) -> None:
        """Sleep for delay seconds or until shutdown, whichever comes first."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    # === Fetch ===

    async def fetch_task(self) -> Optional[TaskExecution]:
        """
        Pop the next runnable task id, highest tier first, and lock it.

        An id whose lock is held elsewhere goes back onto the queue it came
        from and the next tier is tried.
        """
        for queue_key in self.topology.keys.priority_queues():
            try:
                task_id = await self.topology.pop(queue_key)
            except BrokerError as e:
                logger.warning(
                    "Failed to pop from queue",
                    worker_id=self.worker_id,
                    queue=queue_key,
                    error=str(e),
                )
                continue

            if not task_id:
                continue

            try:
                record = await self.store.get_by_task_id(task_id)
            except TaskNotFoundError:
                logger.warning(
                    "Dropping task id with no task record",
                    worker_id=self.worker_id,
                    task_id=task_id,
                )
                continue
            except TaskQueueError as e:
                logger.warning(
                    "Failed to load task, re-queueing",
                    worker_id=self.worker_id,
                    task_id=task_id,
                    error=str(e),
                )
                await self._push_back(queue_key, task_id)
                continue

            try:
                locked = await self.topology.acquire_lock(task_id, self.worker_id)
            except BrokerError as e:
                logger.warning(
                    "Failed to acquire lock for task",
                    worker_id=self.worker_id,
                    task_id=task_id,
                    error=str(e),
                )
                locked = False

            if not locked:
                logger.warning(
                    "Task lock held elsewhere, re-queueing",
                    worker_id=self.worker_id,
                    task_id=task_id,
                )
                await self._push_back(queue_key, task_id)
                continue

            return TaskExecution(
                record=record,
                queue_key=queue_key,
                lock_key=self.config.task_lock_key(task_id),
            )

        return None

    async def _push_back(self, queue_key: str, task_id: str) -> None:
        """Return a popped id to the queue it came from."""
        try:
            await self.topology.push_to(queue_key, task_id)
        except BrokerError as e:
            logger.error(
                "Failed to re-queue task",
                task_id=task_id,
                queue=queue_key,
                error=str(e),
            )

    # === Process ===

    async def process_task(self, execution: TaskExecution) -> None:
        """Claim, execute and settle a locked task."""
        self.stats.is_active = True
        self.stats.current_task_id = execution.task_id

        try:
            try:
                await self._claim(execution)
                await self._execute(execution)
            finally:
                await self._stop_heartbeat(execution)
                await self._release_lock(execution)

            await self._record_metrics(execution)
            if execution.error is None:
                await self._settle_success(execution)
            else:
                await self._settle_failure(execution)
        finally:
            self.stats.is_active = False
            self.stats.current_task_id = None

    async def _claim(self, execution: TaskExecution) -> None:
        task_id = execution.task_id
        execution.started_monotonic = time.monotonic()
        execution.claimed_at = utcnow()

        try:
            await self.store.update_status(task_id, TaskStatus.PROCESSING)
        except TaskQueueError as e:
            logger.warning("Failed to update task status to processing", task_id=task_id, error=str(e))

        try:
            await self.store.update_worker_info(task_id, self.worker_id)
        except TaskQueueError as e:
            logger.warning("Failed to update worker info", task_id=task_id, error=str(e))

        execution.record.status = TaskStatus.PROCESSING
        execution.record.started_at = execution.claimed_at
        execution.record.worker_id = self.worker_id

        await self._publish(execution.record, EventType.TASK_STARTED, {
            "worker_id": self.worker_id,
            "attempt": execution.record.attempts + 1,
        })

        execution.heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(task_id),
            name=f"{self.worker_id}-heartbeat-{task_id}",
        )

        logger.info(
            "Processing task",
            worker_id=self.worker_id,
            task_id=task_id,
            attempt=execution.record.attempts + 1,
        )

    async def _execute(self, execution: TaskExecution) -> None:
        record = execution.record
        timeout = self.config.task_timeout
        context = ExecutionContext(
            task_id=record.task_id,
            account_id=record.account_id,
            attempt=record.attempts + 1,
            worker_id=self.worker_id,
            deadline=utcnow() + timedelta(seconds=timeout),
            _shutdown_event=self._shutdown_event,
        )

        try:
            execution.result = await asyncio.wait_for(
                self.handler(record.request_data, context),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            execution.error = TaskTimeoutError(record.task_id, timeout)
        except asyncio.CancelledError as e:
            # Only a cancellation of this worker task stops the worker
            if asyncio.current_task().cancelling():
                raise
            execution.error = HandlerError(record.task_id, e)
        except Exception as e:
            execution.error = HandlerError(record.task_id, e)

    async def _heartbeat_loop(self, task_id: str) -> None:
        """Refresh last_heartbeat_at while the handler runs."""
        while True:
            try:
                await asyncio.sleep(self.config.heartbeat_interval)
                await self.store.update_heartbeat(task_id)
                self.stats.last_heartbeat = utcnow()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Failed to send heartbeat", task_id=task_id, error=str(e))

    async def _stop_heartbeat(self, execution: TaskExecution) -> None:
        if execution.heartbeat_task is None:
            return
        execution.heartbeat_task.cancel()
        try:
            await execution.heartbeat_task
        except asyncio.CancelledError:
            pass
        execution.heartbeat_task = None

    async def _release_lock(self, execution: TaskExecution) -> None:
        try:
            await self.topology.release_lock(execution.task_id)
        except BrokerError as e:
            logger.warning("Failed to release task lock", task_id=execution.task_id, error=str(e))

    async def _record_metrics(self, execution: TaskExecution) -> None:
        try:
            await self.store.update_metrics(
                execution.task_id,
                execution.processing_ms,
                execution.queue_ms,
            )
        except TaskQueueError as e:
            logger.warning("Failed to update task metrics", task_id=execution.task_id, error=str(e))

    # === Settle ===

    async def _settle_success(self, execution: TaskExecution) -> None:
        task_id = execution.task_id
        try:
            record = await self.store.get_by_task_id(task_id)
        except TaskQueueError as e:
            logger.error("Failed to get task for success handling", task_id=task_id, error=str(e))
            return

        record.result_data = execution.result
        stamp_status(record, TaskStatus.COMPLETED)
        try:
            await self.store.update(record)
        except TaskQueueError as e:
            logger.error("Failed to update task as completed", task_id=task_id, error=str(e))
            return

        self.stats.tasks_processed += 1
        await self._publish(record, EventType.TASK_COMPLETED, {
            "processing_time_ms": record.processing_time_ms,
        })

        logger.info(
            "Task completed",
            worker_id=self.worker_id,
            task_id=task_id,
            processing_time_ms=record.processing_time_ms,
        )

    async def _settle_failure(self, execution: TaskExecution) -> None:
        task_id = execution.task_id
        error_message = str(execution.error)
        self.stats.tasks_failed += 1

        try:
            record = await self.store.get_by_task_id(task_id)
        except TaskQueueError as e:
            logger.error("Failed to get task for failure handling", task_id=task_id, error=str(e))
            return

        if record.attempts < record.max_retries:
            await self._schedule_retry(record, error_message)
        else:
            await self._dead_letter(record, error_message)

    async def _schedule_retry(self, record: TaskRecord, error_message: str) -> None:
        task_id = record.task_id
        record.attempts += 1
        delay = self.config.retry_delay(record.attempts)
        retry_at = time.time() + delay

        record.error_message = error_message
        stamp_status(record, TaskStatus.QUEUED)
        try:
            await self.store.update(record)
        except TaskQueueError as e:
            logger.error("Failed to update task for retry", task_id=task_id, error=str(e))
            return

        try:
            await self.topology.schedule_retry(task_id, retry_at)
        except BrokerError as e:
            logger.error("Failed to schedule retry", task_id=task_id, error=str(e))
            return

        await self._publish(record, EventType.TASK_RETRY, {
            "attempt": record.attempts,
            "retry_at": datetime.fromtimestamp(retry_at, tz=timezone.utc).isoformat(),
            "error": error_message,
        })

        logger.warning(
            "Task failed, retry scheduled",
            task_id=task_id,
            attempt=record.attempts,
            max_retries=record.max_retries,
            delay_seconds=delay,
            error=error_message,
        )

    async def _dead_letter(self, record: TaskRecord, error_message: str) -> None:
        task_id = record.task_id
        record.attempts += 1
        stamp_status(record, TaskStatus.FAILED, error_message)
        try:
            await self.store.update(record)
        except TaskQueueError as e:
            logger.error("Failed to update task as failed", task_id=task_id, error=str(e))

        try:
            await self.topology.dead_letter(task_id)
        except BrokerError as e:
            logger.error("Failed to add task to DLQ", task_id=task_id, error=str(e))

        await self._publish(record, EventType.TASK_DLQ, {
            "error": error_message,
            "attempts": record.attempts,
        })

        logger.error(
            "Task failed permanently, moved to DLQ",
            task_id=task_id,
            attempts=record.attempts,
            error=error_message,
        )

    async def _publish(
        self,
        record: TaskRecord,
        event_type: EventType,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.topology.publish_event(TaskEvent(
            event_type=event_type,
            task_id=record.task_id,
            status=record.status,
            account_id=record.account_id,
            data=data or {},
        ))
