"""
taskqueue

Priority-aware, retrying, crash-recoverable job processing:
- Three priority tiers over a volatile broker (Redis or in-memory)
- Durable task records (SQLite or in-memory)
- Per-task distributed locks with heartbeats and orphan recovery
- Exponential backoff retries and a dead-letter queue
"""

from taskqueue.broker import Broker, InMemoryBroker, RedisBroker, Subscription, create_broker
from taskqueue.config import QueueKeys, TaskQueueConfig
from taskqueue.errors import (
    BrokerError,
    ConfigurationError,
    HandlerError,
    InvalidStateError,
    StoreError,
    TaskNotFoundError,
    TaskQueueError,
    TaskTimeoutError,
)
from taskqueue.manager import TaskManager
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
)
from taskqueue.scheduler import DLQMonitor, RetryScheduler
from taskqueue.store import InMemoryTaskStore, SQLiteTaskStore, TaskStore
from taskqueue.topology import QueueTopology
from taskqueue.worker import ExecutionContext, Handler, TaskExecution, Worker

__version__ = "0.1.0"

__all__ = [
    # Manager
    "TaskManager",
    # Config
    "TaskQueueConfig",
    "QueueKeys",
    # Models
    "TaskRecord",
    "TaskInfo",
    "TaskFilter",
    "TaskEvent",
    "TaskStatus",
    "TaskPriority",
    "EventType",
    "QueueStats",
    "WorkerStats",
    # Engine
    "QueueTopology",
    "Worker",
    "ExecutionContext",
    "TaskExecution",
    "Handler",
    "RetryScheduler",
    "DLQMonitor",
    # Brokers
    "Broker",
    "Subscription",
    "InMemoryBroker",
    "RedisBroker",
    "create_broker",
    # Stores
    "TaskStore",
    "InMemoryTaskStore",
    "SQLiteTaskStore",
    # Errors
    "TaskQueueError",
    "ConfigurationError",
    "BrokerError",
    "StoreError",
    "TaskNotFoundError",
    "InvalidStateError",
    "HandlerError",
    "TaskTimeoutError",
]
