"""
Task Queue SQLite Store

Durable single-node task store over aiosqlite:
- WAL mode so readers never block the writer
- One connection, writes serialized by an asyncio lock
- Timestamps stored as fixed-width UTC ISO-8601 text so they sort lexically
"""

from __future__ import annotations

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, List, Optional

import aiosqlite
import structlog

from taskqueue.errors import StoreError, TaskNotFoundError
from taskqueue.models import TaskFilter, TaskRecord, TaskStatus, utcnow
from taskqueue.store.base import DEFAULT_HISTORY_LIMIT, TaskStore

logger = structlog.get_logger(__name__)


COLUMNS = (
    "task_id",
    "status",
    "priority",
    "account_id",
    "attempts",
    "max_retries",
    "request_data",
    "result_data",
    "error_message",
    "worker_id",
    "last_heartbeat_at",
    "created_at",
    "updated_at",
    "queued_at",
    "started_at",
    "completed_at",
    "failed_at",
    "processing_time_ms",
    "queue_time_ms",
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    priority INTEGER NOT NULL,
    account_id TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 0,
    request_data TEXT,
    result_data TEXT,
    error_message TEXT NOT NULL DEFAULT '',
    worker_id TEXT NOT NULL DEFAULT '',
    last_heartbeat_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    queued_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    failed_at TEXT,
    processing_time_ms INTEGER NOT NULL DEFAULT 0,
    queue_time_ms INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_account_id ON tasks(account_id);
CREATE INDEX IF NOT EXISTS idx_tasks_created_at ON tasks(created_at);
"""

# Column stamped when a task enters a status
_STATUS_TIMESTAMPS = {
    TaskStatus.QUEUED: "queued_at",
    TaskStatus.PROCESSING: "started_at",
    TaskStatus.COMPLETED: "completed_at",
    TaskStatus.FAILED: "failed_at",
}


def _db_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _db_time(value)
    if isinstance(value, Enum):
        return value.value
    return value


class SQLiteTaskStore(TaskStore):
    """SQLite task store implementation."""

    def __init__(self, path: str = "data/taskqueue.db", busy_timeout_ms: int = 5000):
        self.path = path
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    @staticmethod
    def _dict_factory(cursor: sqlite3.Cursor, row: tuple) -> Dict[str, Any]:
        """Convert row to dictionary."""
        return {
            col[0]: row[idx]
            for idx, col in enumerate(cursor.description)
        }

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        if self._conn is not None:
            return

        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = await aiosqlite.connect(
                self.path,
                timeout=self.busy_timeout_ms / 1000,
            )
            conn.row_factory = self._dict_factory

            pragmas = [
                "PRAGMA journal_mode = WAL",
                "PRAGMA synchronous = NORMAL",
                f"PRAGMA busy_timeout = {self.busy_timeout_ms}",
            ]
            for pragma in pragmas:
                await conn.execute(pragma)

            await conn.executescript(SCHEMA)
            await conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to open task store at {self.path}: {e}") from e

        self._conn = conn
        logger.info("SQLite task store initialized", path=self.path)

    async def close(self) -> None:
        if self._conn is None:
            return
        await self._conn.close()
        self._conn = None
        logger.info("SQLite task store closed", path=self.path)

    def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreError("SQLite task store is not initialized")
        return self._conn

    @asynccontextmanager
    async def _writing(self) -> AsyncGenerator[aiosqlite.Connection, None]:
        """Serialize a write and commit it, rolling back on failure."""
        conn = self._connection()
        async with self._write_lock:
            try:
                yield conn
                await conn.commit()
            except sqlite3.Error as e:
                await conn.rollback()
                raise StoreError(f"Task store write failed: {e}") from e
            except BaseException:
                await conn.rollback()
                raise

    async def _fetch_records(self, query: str, params: tuple = ()) -> List[TaskRecord]:
        try:
            cursor = await self._connection().execute(query, params)
            rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Task store read failed: {e}") from e
        return [TaskRecord.from_dict(row) for row in rows]

    async def _fetch_value(self, query: str, params: tuple = ()) -> Any:
        try:
            cursor = await self._connection().execute(query, params)
            row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Task store read failed: {e}") from e
        if not row:
            return None
        return next(iter(row.values()))

    async def _update_fields(self, task_id: str, fields: Dict[str, Any]) -> None:
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = tuple(_db_value(v) for v in fields.values()) + (task_id,)
        async with self._writing() as conn:
            cursor = await conn.execute(
                f"UPDATE tasks SET {assignments} WHERE task_id = ?",
                params,
            )
            if cursor.rowcount == 0:
                raise TaskNotFoundError(task_id)

    # === Writes ===

    async def create(self, record: TaskRecord) -> None:
        placeholders = ", ".join("?" for _ in COLUMNS)
        params = tuple(_db_value(getattr(record, name)) for name in COLUMNS)
        try:
            async with self._writing() as conn:
                await conn.execute(
                    f"INSERT INTO tasks ({', '.join(COLUMNS)}) VALUES ({placeholders})",
                    params,
                )
        except StoreError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise StoreError(f"Task already exists: {record.task_id}") from e.__cause__
            raise

        logger.debug("Task record created", task_id=record.task_id)

    async def update(self, record: TaskRecord) -> None:
        record.updated_at = utcnow()
        fields = {name: getattr(record, name) for name in COLUMNS if name != "task_id"}
        await self._update_fields(record.task_id, fields)

    async def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        error_message: str = "",
    ) -> None:
        now = utcnow()
        fields: Dict[str, Any] = {"status": status, "updated_at": now}

        if (column := _STATUS_TIMESTAMPS.get(status)) is not None:
            fields[column] = now
        if error_message and status in (TaskStatus.FAILED, TaskStatus.CANCELED):
            fields["error_message"] = error_message

        await self._update_fields(task_id, fields)

    async def update_worker_info(self, task_id: str, worker_id: str) -> None:
        now = utcnow()
        await self._update_fields(task_id, {
            "worker_id": worker_id,
            "last_heartbeat_at": now,
            "updated_at": now,
        })

    async def update_heartbeat(self, task_id: str) -> None:
        now = utcnow()
        await self._update_fields(task_id, {
            "last_heartbeat_at": now,
            "updated_at": now,
        })

    async def update_metrics(self, task_id: str, processing_ms: int, queue_ms: int) -> None:
        await self._update_fields(task_id, {
            "processing_time_ms": processing_ms,
            "queue_time_ms": queue_ms,
            "updated_at": utcnow(),
        })

    # === Reads ===

    async def get_by_task_id(self, task_id: str) -> TaskRecord:
        records = await self._fetch_records(
            "SELECT * FROM tasks WHERE task_id = ?", (task_id,)
        )
        if not records:
            raise TaskNotFoundError(task_id)
        return records[0]

    async def get_by_account_id(self, account_id: str, limit: int, offset: int = 0) -> List[TaskRecord]:
        return await self._fetch_records(
            "SELECT * FROM tasks WHERE account_id = ? "
            "ORDER BY created_at DESC LIMIT ? OFFSET ?",
            (account_id, limit if limit > 0 else -1, offset),
        )

    async def get_by_status(self, status: TaskStatus, limit: int, offset: int = 0) -> List[TaskRecord]:
        return await self._fetch_records(
            "SELECT * FROM tasks WHERE status = ? "
            "ORDER BY created_at DESC LIMIT ? OFFSET ?",
            (status.value, limit if limit > 0 else -1, offset),
        )

    async def get_recent_tasks(self, limit: int) -> List[TaskRecord]:
        return await self._fetch_records(
            "SELECT * FROM tasks ORDER BY created_at DESC LIMIT ?",
            (limit if limit > 0 else -1,),
        )

    async def find_tasks(self, task_filter: TaskFilter) -> List[TaskRecord]:
        clauses: List[str] = []
        params: List[Any] = []

        if task_filter.account_id is not None:
            clauses.append("account_id = ?")
            params.append(task_filter.account_id)
        if task_filter.status is not None:
            clauses.append("status = ?")
            params.append(task_filter.status.value)
        if task_filter.since is not None:
            clauses.append("created_at >= ?")
            params.append(_db_time(task_filter.since))

        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        limit = task_filter.limit if task_filter.limit > 0 else DEFAULT_HISTORY_LIMIT
        params.extend([limit, max(task_filter.offset, 0)])

        return await self._fetch_records(
            f"SELECT * FROM tasks {where}ORDER BY created_at DESC LIMIT ? OFFSET ?",
            tuple(params),
        )

    # === Aggregates ===

    async def count_by_status(self, status: TaskStatus) -> int:
        value = await self._fetch_value(
            "SELECT COUNT(*) FROM tasks WHERE status = ?", (status.value,)
        )
        return int(value or 0)

    async def count_completed_since(self, since: datetime) -> int:
        value = await self._fetch_value(
            "SELECT COUNT(*) FROM tasks WHERE status = ? AND completed_at >= ?",
            (TaskStatus.COMPLETED.value, _db_time(since)),
        )
        return int(value or 0)

    async def count_failed_since(self, since: datetime) -> int:
        value = await self._fetch_value(
            "SELECT COUNT(*) FROM tasks WHERE status = ? AND failed_at >= ?",
            (TaskStatus.FAILED.value, _db_time(since)),
        )
        return int(value or 0)

    async def get_average_processing_time(self, since: datetime) -> float:
        value = await self._fetch_value(
            "SELECT AVG(processing_time_ms) FROM tasks "
            "WHERE status = ? AND completed_at >= ? AND processing_time_ms > 0",
            (TaskStatus.COMPLETED.value, _db_time(since)),
        )
        return float(value or 0.0)

    async def get_average_queue_time(self, since: datetime) -> float:
        value = await self._fetch_value(
            "SELECT AVG(queue_time_ms) FROM tasks "
            "WHERE completed_at >= ? AND queue_time_ms > 0",
            (_db_time(since),),
        )
        return float(value or 0.0)

    # === Liveness ===

    async def find_orphaned_tasks(self, older_than: timedelta) -> List[TaskRecord]:
        cutoff = _db_time(utcnow() - older_than)
        return await self._fetch_records(
            "SELECT * FROM tasks WHERE status = ? "
            "AND (last_heartbeat_at < ? OR last_heartbeat_at IS NULL) "
            "ORDER BY created_at DESC",
            (TaskStatus.PROCESSING.value, cutoff),
        )
