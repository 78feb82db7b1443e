"""
Task Queue Errors

Exception hierarchy shared by the manager, workers, brokers and stores.
"""

from __future__ import annotations

from typing import Optional


class TaskQueueError(Exception):
    """Base class for every error raised by the task queue."""


class ConfigurationError(TaskQueueError):
    """Configuration is invalid. Fatal at startup, never retried."""


class BrokerError(TaskQueueError):
    """The volatile broker failed (connection lost, timeout, ...)."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class StoreError(TaskQueueError):
    """The durable task store failed."""


class TaskNotFoundError(TaskQueueError):
    """No task record exists for the given id."""

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidStateError(TaskQueueError):
    """The requested operation is not allowed in the task's current status."""

    def __init__(self, task_id: str, status: str, message: str):
        super().__init__(message)
        self.task_id = task_id
        self.status = status


class HandlerError(TaskQueueError):
    """A job handler raised while executing a task."""

    def __init__(self, task_id: str, cause: BaseException):
        super().__init__(str(cause) or cause.__class__.__name__)
        self.task_id = task_id
        self.cause = cause


class TaskTimeoutError(HandlerError):
    """A job handler did not finish within the task timeout."""

    def __init__(self, task_id: str, timeout_seconds: float):
        TaskQueueError.__init__(
            self, f"Task timed out after {timeout_seconds:g}s"
        )
        self.task_id = task_id
        self.cause = None
        self.timeout_seconds = timeout_seconds
