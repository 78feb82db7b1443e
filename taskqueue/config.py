"""
Task Queue Configuration

Static tunables for the queue engine using Pydantic for validation
and environment variable support. All broker keys are derived here
from the key prefix; nothing else in the package builds a key.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict

from pydantic import BaseModel, Field

from taskqueue.errors import ConfigurationError

ENV_PREFIX = "TASKQUEUE_"

# Characters that would corrupt the derived key namespace
_INVALID_PREFIX_CHARS = frozenset(": \t\n\r\v\f")


@dataclass(frozen=True)
class QueueKeys:
    """Broker keys for the priority lists, dead-letter list and event channel."""
    high_priority: str
    normal_priority: str
    low_priority: str
    dlq: str
    events: str

    def priority_queues(self) -> tuple:
        """Priority lists in drain order (high first)."""
        return (self.high_priority, self.normal_priority, self.low_priority)


class TaskQueueConfig(BaseModel):
    """
    Configuration for the task queue engine.

    Durations are expressed in seconds.
    """
    # Workers
    worker_count: int = Field(default=7, ge=1, description="Concurrent worker loops")
    task_timeout: float = Field(default=1800.0, gt=0, description="Max time for one execution")

    # Retries
    max_retries: int = Field(default=3, ge=0)
    initial_retry_delay: float = Field(default=30.0, ge=0)
    max_retry_delay: float = Field(default=1800.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)

    # Liveness
    heartbeat_interval: float = Field(default=30.0, gt=0)
    orphan_timeout: float = Field(default=1800.0, gt=0)

    # Priority tiers: priority >= high goes to high, >= normal to normal, else low
    priority_high_threshold: int = 10
    priority_normal_threshold: int = 5

    # Dead-letter alerting
    dlq_alert_threshold: int = Field(default=10, ge=1)

    # Key namespace
    key_prefix: str = "taskqueue"

    # Background loops
    retry_poll_interval: float = Field(default=10.0, gt=0)
    dlq_check_interval: float = Field(default=300.0, gt=0)
    poll_backoff_initial: float = Field(default=0.1, gt=0)
    poll_backoff_max: float = Field(default=5.0, gt=0)
    shutdown_timeout: float = Field(default=30.0, gt=0)

    # Connections
    redis_url: str = "redis://localhost:6379/0"
    database_path: str = "data/taskqueue.db"

    def validate_config(self) -> None:
        """
        Check cross-field constraints and the key prefix.

        Raises:
            ConfigurationError: If the configuration cannot be used
        """
        if not self.key_prefix:
            raise ConfigurationError("key_prefix cannot be empty")
        if any(ch in _INVALID_PREFIX_CHARS for ch in self.key_prefix):
            raise ConfigurationError(
                "key_prefix contains invalid characters (colons, spaces, or whitespace)"
            )
        if self.priority_normal_threshold > self.priority_high_threshold:
            raise ConfigurationError(
                "priority_normal_threshold must not exceed priority_high_threshold"
            )
        if self.initial_retry_delay > self.max_retry_delay:
            raise ConfigurationError(
                "initial_retry_delay must not exceed max_retry_delay"
            )
        if self.poll_backoff_initial > self.poll_backoff_max:
            raise ConfigurationError(
                "poll_backoff_initial must not exceed poll_backoff_max"
            )

    # === Derived keys ===

    def queue_keys(self) -> QueueKeys:
        prefix = self.key_prefix
        return QueueKeys(
            high_priority=f"{prefix}:queue:priority:high",
            normal_priority=f"{prefix}:queue:priority:normal",
            low_priority=f"{prefix}:queue:priority:low",
            dlq=f"{prefix}:dlq",
            events=f"{prefix}:events",
        )

    def processing_key(self, worker_id: str) -> str:
        """Key reserved for a worker's own bookkeeping."""
        return f"{self.key_prefix}:processing:{worker_id}"

    def task_lock_key(self, task_id: str) -> str:
        return f"{self.key_prefix}:task:{task_id}:lock"

    def retry_schedule_key(self) -> str:
        return f"{self.key_prefix}:retry:scheduled"

    # === Retry policy ===

    def retry_delay(self, attempt: int) -> float:
        """
        Delay in seconds before retry number ``attempt`` (1-based).

        min(initial_retry_delay * backoff_factor ** (attempt - 1), max_retry_delay)
        """
        exponent = max(attempt, 1) - 1
        delay = self.initial_retry_delay * (self.backoff_factor ** exponent)
        return min(delay, self.max_retry_delay)

    # === Loading ===

    @classmethod
    def from_env(cls, **overrides: Any) -> "TaskQueueConfig":
        """
        Create configuration from TASKQUEUE_* environment variables.

        Keyword overrides win over the environment.
        """
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            if (raw := os.environ.get(f"{ENV_PREFIX}{name.upper()}")) is not None:
                values[name] = raw
        values.update(overrides)
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()
