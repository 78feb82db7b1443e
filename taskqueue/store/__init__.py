"""
Task Queue Stores

Durable task store implementations:
- InMemory: For development/testing
- SQLite: Single-node durable storage
"""

from __future__ import annotations

from taskqueue.store.base import TaskStore, stamp_status
from taskqueue.store.memory import InMemoryTaskStore
from taskqueue.store.sqlite import SQLiteTaskStore

__all__ = [
    "TaskStore",
    "InMemoryTaskStore",
    "SQLiteTaskStore",
    "stamp_status",
]
