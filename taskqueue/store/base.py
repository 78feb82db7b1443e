"""
Task Queue Store Interface

The durable store owns task records. Every method is async; a missing
task id raises :class:`~taskqueue.errors.TaskNotFoundError`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import List, Optional

from taskqueue.models import TaskFilter, TaskRecord, TaskStatus, utcnow

DEFAULT_HISTORY_LIMIT = 50


def stamp_status(
    record: TaskRecord,
    status: TaskStatus,
    error_message: str = "",
    now: Optional[datetime] = None,
) -> TaskRecord:
    """
    Apply a status change to a record in place.

    Sets the timestamp that belongs to the new status (queued_at,
    started_at, completed_at or failed_at) and records the error message
    for failed and canceled tasks when one is given.
    """
    now = now or utcnow()
    record.status = status

    if status == TaskStatus.QUEUED:
        record.queued_at = now
    elif status == TaskStatus.PROCESSING:
        record.started_at = now
    elif status == TaskStatus.COMPLETED:
        record.completed_at = now
    elif status == TaskStatus.FAILED:
        record.failed_at = now

    if error_message and status in (TaskStatus.FAILED, TaskStatus.CANCELED):
        record.error_message = error_message

    record.updated_at = now
    return record


class TaskStore(ABC):
    """Abstract base class for durable task stores."""

    async def initialize(self) -> None:
        """Prepare the store (create schema, open connections)."""
        pass

    async def close(self) -> None:
        """Release store resources."""
        pass

    # === Writes ===

    @abstractmethod
    async def create(self, record: TaskRecord) -> None:
        """Insert a new task record."""
        pass

    @abstractmethod
    async def update(self, record: TaskRecord) -> None:
        """Overwrite every field of an existing record."""
        pass

    @abstractmethod
    async def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        error_message: str = "",
    ) -> None:
        """Set status and stamp the matching timestamp."""
        pass

    @abstractmethod
    async def update_worker_info(self, task_id: str, worker_id: str) -> None:
        """Record the owning worker and refresh the heartbeat."""
        pass

    @abstractmethod
    async def update_heartbeat(self, task_id: str) -> None:
        """Refresh last_heartbeat_at."""
        pass

    @abstractmethod
    async def update_metrics(self, task_id: str, processing_ms: int, queue_ms: int) -> None:
        """Record processing and queue time in milliseconds."""
        pass

    # === Reads ===

    @abstractmethod
    async def get_by_task_id(self, task_id: str) -> TaskRecord:
        """Load one record."""
        pass

    @abstractmethod
    async def get_by_account_id(self, account_id: str, limit: int, offset: int = 0) -> List[TaskRecord]:
        """Records owned by an account, newest first."""
        pass

    @abstractmethod
    async def get_by_status(self, status: TaskStatus, limit: int, offset: int = 0) -> List[TaskRecord]:
        """Records in a status, newest first."""
        pass

    @abstractmethod
    async def get_recent_tasks(self, limit: int) -> List[TaskRecord]:
        """Most recently created records."""
        pass

    @abstractmethod
    async def find_tasks(self, task_filter: TaskFilter) -> List[TaskRecord]:
        """Records matching every set filter field, newest first."""
        pass

    # === Aggregates ===

    @abstractmethod
    async def count_by_status(self, status: TaskStatus) -> int:
        pass

    @abstractmethod
    async def count_completed_since(self, since: datetime) -> int:
        pass

    @abstractmethod
    async def count_failed_since(self, since: datetime) -> int:
        pass

    @abstractmethod
    async def get_average_processing_time(self, since: datetime) -> float:
        """Mean processing_time_ms of tasks completed since ``since`` (0 if none)."""
        pass

    @abstractmethod
    async def get_average_queue_time(self, since: datetime) -> float:
        """Mean queue_time_ms of tasks completed since ``since`` (0 if none)."""
        pass

    # === Liveness ===

    @abstractmethod
    async def find_orphaned_tasks(self, older_than: timedelta) -> List[TaskRecord]:
        """Processing tasks whose heartbeat is older than the cutoff or missing."""
        pass
