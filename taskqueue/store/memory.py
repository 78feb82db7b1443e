"""
Task Queue In-Memory Store

Dictionary-backed task store for development and testing. Records are
copied on the way in and out so callers never alias stored state.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timedelta
from typing import Callable, Dict, List

import structlog

from taskqueue.errors import StoreError, TaskNotFoundError
from taskqueue.models import TaskFilter, TaskRecord, TaskStatus, utcnow
from taskqueue.store.base import DEFAULT_HISTORY_LIMIT, TaskStore, stamp_status

logger = structlog.get_logger(__name__)


class InMemoryTaskStore(TaskStore):
    """In-memory task store for development/testing."""

    def __init__(self):
        self._tasks: Dict[str, TaskRecord] = {}
        self._lock = asyncio.Lock()

    def _get(self, task_id: str) -> TaskRecord:
        record = self._tasks.get(task_id)
        if record is None:
            raise TaskNotFoundError(task_id)
        return record

    def _select(
        self,
        predicate: Callable[[TaskRecord], bool],
        limit: int = 0,
        offset: int = 0,
    ) -> List[TaskRecord]:
        matches = sorted(
            (r for r in self._tasks.values() if predicate(r)),
            key=lambda r: r.created_at,
            reverse=True,
        )
        if offset:
            matches = matches[offset:]
        if limit > 0:
            matches = matches[:limit]
        return [copy.deepcopy(r) for r in matches]

    # === Writes ===

    async def create(self, record: TaskRecord) -> None:
        async with self._lock:
            if record.task_id in self._tasks:
                raise StoreError(f"Task already exists: {record.task_id}")
            self._tasks[record.task_id] = copy.deepcopy(record)

        logger.debug("Task record created", task_id=record.task_id)

    async def update(self, record: TaskRecord) -> None:
        async with self._lock:
            self._get(record.task_id)
            record.updated_at = utcnow()
            self._tasks[record.task_id] = copy.deepcopy(record)

    async def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        error_message: str = "",
    ) -> None:
        async with self._lock:
            stamp_status(self._get(task_id), status, error_message)

    async def update_worker_info(self, task_id: str, worker_id: str) -> None:
        async with self._lock:
            record = self._get(task_id)
            now = utcnow()
            record.worker_id = worker_id
            record.last_heartbeat_at = now
            record.updated_at = now

    async def update_heartbeat(self, task_id: str) -> None:
        async with self._lock:
            record = self._get(task_id)
            now = utcnow()
            record.last_heartbeat_at = now
            record.updated_at = now

    async def update_metrics(self, task_id: str, processing_ms: int, queue_ms: int) -> None:
        async with self._lock:
            record = self._get(task_id)
            record.processing_time_ms = processing_ms
            record.queue_time_ms = queue_ms
            record.updated_at = utcnow()

    # === Reads ===

    async def get_by_task_id(self, task_id: str) -> TaskRecord:
        async with self._lock:
            return copy.deepcopy(self._get(task_id))

    async def get_by_account_id(self, account_id: str, limit: int, offset: int = 0) -> List[TaskRecord]:
        async with self._lock:
            return self._select(lambda r: r.account_id == account_id, limit, offset)

    async def get_by_status(self, status: TaskStatus, limit: int, offset: int = 0) -> List[TaskRecord]:
        async with self._lock:
            return self._select(lambda r: r.status == status, limit, offset)

    async def get_recent_tasks(self, limit: int) -> List[TaskRecord]:
        async with self._lock:
            return self._select(lambda r: True, limit)

    async def find_tasks(self, task_filter: TaskFilter) -> List[TaskRecord]:
        def matches(record: TaskRecord) -> bool:
            if task_filter.account_id is not None and record.account_id != task_filter.account_id:
                return False
            if task_filter.status is not None and record.status != task_filter.status:
                return False
            if task_filter.since is not None and record.created_at < task_filter.since:
                return False
            return True

        limit = task_filter.limit if task_filter.limit > 0 else DEFAULT_HISTORY_LIMIT
        async with self._lock:
            return self._select(matches, limit, max(task_filter.offset, 0))

    # === Aggregates ===

    async def count_by_status(self, status: TaskStatus) -> int:
        async with self._lock:
            return sum(1 for r in self._tasks.values() if r.status == status)

    async def count_completed_since(self, since: datetime) -> int:
        async with self._lock:
            return sum(
                1 for r in self._tasks.values()
                if r.status == TaskStatus.COMPLETED
                and r.completed_at is not None and r.completed_at >= since
            )

    async def count_failed_since(self, since: datetime) -> int:
        async with self._lock:
            return sum(
                1 for r in self._tasks.values()
                if r.status == TaskStatus.FAILED
                and r.failed_at is not None and r.failed_at >= since
            )

    async def get_average_processing_time(self, since: datetime) -> float:
        async with self._lock:
            values = [
                r.processing_time_ms for r in self._tasks.values()
                if r.status == TaskStatus.COMPLETED
                and r.completed_at is not None and r.completed_at >= since
                and r.processing_time_ms > 0
            ]
        return sum(values) / len(values) if values else 0.0

    async def get_average_queue_time(self, since: datetime) -> float:
        async with self._lock:
            values = [
                r.queue_time_ms for r in self._tasks.values()
                if r.completed_at is not None and r.completed_at >= since
                and r.queue_time_ms > 0
            ]
        return sum(values) / len(values) if values else 0.0

    # === Liveness ===

    async def find_orphaned_tasks(self, older_than: timedelta) -> List[TaskRecord]:
        cutoff = utcnow() - older_than
        async with self._lock:
            return self._select(
                lambda r: r.status == TaskStatus.PROCESSING
                and (r.last_heartbeat_at is None or r.last_heartbeat_at < cutoff)
            )
