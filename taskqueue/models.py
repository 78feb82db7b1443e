"""
Task Queue Models

Task records, read-side projections, events and statistics.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_task_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class TaskStatus(str, Enum):
    """Task lifecycle status."""
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELED)


class TaskPriority(int, Enum):
    """Well-known priority values (any int is accepted on submit)."""
    LOW = 0
    NORMAL = 5
    HIGH = 10


class EventType(str, Enum):
    """Events published on the task event channel."""
    TASK_QUEUED = "task_queued"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_RETRY = "task_retry"
    TASK_CANCELED = "task_canceled"
    TASK_DLQ = "task_dlq"


@dataclass
class TaskRecord:
    """
    The persisted unit of work.

    Payloads are opaque strings; the engine stores and returns them verbatim.
    """
    task_id: str
    status: TaskStatus = TaskStatus.PENDING
    priority: int = TaskPriority.NORMAL.value
    account_id: Optional[str] = None

    # Attempt tracking
    attempts: int = 0
    max_retries: int = 3

    # Payloads
    request_data: Optional[str] = None
    result_data: Optional[str] = None
    error_message: str = ""

    # Worker info
    worker_id: str = ""
    last_heartbeat_at: Optional[datetime] = None

    # Timing
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    # Metrics
    processing_time_ms: int = 0
    queue_time_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize record to dictionary."""
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "priority": int(self.priority),
            "account_id": self.account_id,
            "attempts": self.attempts,
            "max_retries": self.max_retries,
            "request_data": self.request_data,
            "result_data": self.result_data,
            "error_message": self.error_message,
            "worker_id": self.worker_id,
            "last_heartbeat_at": _iso(self.last_heartbeat_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "queued_at": _iso(self.queued_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "failed_at": _iso(self.failed_at),
            "processing_time_ms": self.processing_time_ms,
            "queue_time_ms": self.queue_time_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskRecord":
        """Deserialize record from dictionary."""
        return cls(
            task_id=data["task_id"],
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            priority=int(data.get("priority", TaskPriority.NORMAL.value)),
            account_id=data.get("account_id"),
            attempts=int(data.get("attempts") or 0),
            max_retries=int(data.get("max_retries") or 0),
            request_data=data.get("request_data"),
            result_data=data.get("result_data"),
            error_message=data.get("error_message") or "",
            worker_id=data.get("worker_id") or "",
            last_heartbeat_at=_parse(data.get("last_heartbeat_at")),
            created_at=_parse(data.get("created_at")) or utcnow(),
            updated_at=_parse(data.get("updated_at")) or utcnow(),
            queued_at=_parse(data.get("queued_at")),
            started_at=_parse(data.get("started_at")),
            completed_at=_parse(data.get("completed_at")),
            failed_at=_parse(data.get("failed_at")),
            processing_time_ms=int(data.get("processing_time_ms") or 0),
            queue_time_ms=int(data.get("queue_time_ms") or 0),
        )


@dataclass
class TaskInfo:
    """Read-side view of a task returned by manager queries."""
    task_id: str
    status: TaskStatus
    priority: int
    account_id: Optional[str]
    attempts: int
    max_retries: int
    created_at: datetime
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    processing_time: Optional[timedelta] = None
    queue_time: Optional[timedelta] = None
    error_message: str = ""
    worker_id: str = ""
    request_data: Optional[str] = None
    result_data: Optional[str] = None

    @classmethod
    def from_record(cls, record: TaskRecord) -> "TaskInfo":
        return cls(
            task_id=record.task_id,
            status=record.status,
            priority=record.priority,
            account_id=record.account_id,
            attempts=record.attempts,
            max_retries=record.max_retries,
            created_at=record.created_at,
            queued_at=record.queued_at,
            started_at=record.started_at,
            completed_at=record.completed_at,
            failed_at=record.failed_at,
            processing_time=(
                timedelta(milliseconds=record.processing_time_ms)
                if record.processing_time_ms > 0 else None
            ),
            queue_time=(
                timedelta(milliseconds=record.queue_time_ms)
                if record.queue_time_ms > 0 else None
            ),
            error_message=record.error_message,
            worker_id=record.worker_id,
            request_data=record.request_data,
            result_data=record.result_data,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "priority": self.priority,
            "account_id": self.account_id,
            "attempts": self.attempts,
            "max_retries": self.max_retries,
            "created_at": _iso(self.created_at),
            "queued_at": _iso(self.queued_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "failed_at": _iso(self.failed_at),
            "processing_time_ms": (
                int(self.processing_time.total_seconds() * 1000)
                if self.processing_time else None
            ),
            "queue_time_ms": (
                int(self.queue_time.total_seconds() * 1000)
                if self.queue_time else None
            ),
            "error_message": self.error_message,
            "worker_id": self.worker_id,
            "request_data": self.request_data,
            "result_data": self.result_data,
        }


@dataclass
class TaskFilter:
    """Filter criteria for task history queries."""
    account_id: Optional[str] = None
    status: Optional[TaskStatus] = None
    since: Optional[datetime] = None
    limit: int = 50
    offset: int = 0


@dataclass
class TaskEvent:
    """An event published about a task."""
    event_type: EventType
    task_id: str
    status: TaskStatus
    account_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps({
            "event_type": self.event_type.value,
            "task_id": self.task_id,
            "account_id": self.account_id,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }, default=str)

    @classmethod
    def from_json(cls, raw: str) -> "TaskEvent":
        data = json.loads(raw)
        return cls(
            event_type=EventType(data["event_type"]),
            task_id=data["task_id"],
            status=TaskStatus(data["status"]),
            account_id=data.get("account_id"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            data=data.get("data") or {},
        )


@dataclass
class QueueStats:
    """Aggregate statistics about the queue."""
    total_pending: int = 0
    total_queued: int = 0
    total_processing: int = 0
    total_completed: int = 0
    total_failed: int = 0
    total_dlq: int = 0
    total_retry_scheduled: int = 0
    active_workers: int = 0
    idle_workers: int = 0
    avg_processing_time_ms: float = 0.0
    avg_queue_time_ms: float = 0.0
    tasks_per_hour: float = 0.0
    queue_lengths: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_pending": self.total_pending,
            "total_queued": self.total_queued,
            "total_processing": self.total_processing,
            "total_completed": self.total_completed,
            "total_failed": self.total_failed,
            "total_dlq": self.total_dlq,
            "total_retry_scheduled": self.total_retry_scheduled,
            "active_workers": self.active_workers,
            "idle_workers": self.idle_workers,
            "avg_processing_time_ms": self.avg_processing_time_ms,
            "avg_queue_time_ms": self.avg_queue_time_ms,
            "tasks_per_hour": self.tasks_per_hour,
            "queue_lengths": dict(self.queue_lengths),
        }


@dataclass
class WorkerStats:
    """Statistics for a single worker loop."""
    worker_id: str
    is_active: bool = False
    current_task_id: Optional[str] = None
    tasks_processed: int = 0
    tasks_failed: int = 0
    last_heartbeat: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "is_active": self.is_active,
            "current_task_id": self.current_task_id,
            "tasks_processed": self.tasks_processed,
            "tasks_failed": self.tasks_failed,
            "last_heartbeat": _iso(self.last_heartbeat),
        }
