"""
Tests for taskqueue task stores.

Every test runs against both the in-memory store and a SQLite store on a
temporary database file.
"""

import asyncio
from datetime import timedelta

import pytest

from taskqueue.errors import StoreError, TaskNotFoundError
from taskqueue.models import TaskFilter, TaskRecord, TaskStatus, new_task_id, utcnow
from taskqueue.store import InMemoryTaskStore, SQLiteTaskStore, stamp_status


@pytest.fixture(params=["memory", "sqlite"])
def make_store(request, tmp_path):
    """Factory returning an uninitialized store of each kind."""
    def factory():
        if request.param == "memory":
            return InMemoryTaskStore()
        return SQLiteTaskStore(str(tmp_path / "db" / "tasks.db"))
    return factory


def _record(**kwargs) -> TaskRecord:
    kwargs.setdefault("task_id", new_task_id())
    return TaskRecord(**kwargs)


class TestTaskStore:
    """Contract tests shared by every store."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, make_store):
        """Test creating and loading a record."""
        store = make_store()
        await store.initialize()

        record = _record(priority=7, account_id="acct", request_data='{"x": 1}', max_retries=2)
        await store.create(record)

        loaded = await store.get_by_task_id(record.task_id)
        assert loaded.task_id == record.task_id
        assert loaded.status == TaskStatus.PENDING
        assert loaded.priority == 7
        assert loaded.account_id == "acct"
        assert loaded.request_data == '{"x": 1}'
        assert loaded.max_retries == 2
        assert loaded.created_at == record.created_at

        await store.close()

    @pytest.mark.asyncio
    async def test_missing_task(self, make_store):
        """Test that unknown ids raise TaskNotFoundError."""
        store = make_store()
        await store.initialize()

        with pytest.raises(TaskNotFoundError):
            await store.get_by_task_id("nope")

        with pytest.raises(TaskNotFoundError):
            await store.update_status("nope", TaskStatus.QUEUED)

        await store.close()

    @pytest.mark.asyncio
    async def test_duplicate_create(self, make_store):
        """Test that task ids are unique."""
        store = make_store()
        await store.initialize()

        record = _record()
        await store.create(record)

        with pytest.raises(StoreError):
            await store.create(record)

        await store.close()

    @pytest.mark.asyncio
    async def test_update_status_stamps_timestamps(self, make_store):
        """Test that each status stamps its own timestamp."""
        store = make_store()
        await store.initialize()

        record = _record()
        await store.create(record)

        await store.update_status(record.task_id, TaskStatus.QUEUED)
        await store.update_status(record.task_id, TaskStatus.PROCESSING)
        loaded = await store.get_by_task_id(record.task_id)
        assert loaded.status == TaskStatus.PROCESSING
        assert loaded.queued_at is not None
        assert loaded.started_at is not None
        assert loaded.completed_at is None

        await store.update_status(record.task_id, TaskStatus.FAILED, "boom")
        loaded = await store.get_by_task_id(record.task_id)
        assert loaded.status == TaskStatus.FAILED
        assert loaded.failed_at is not None
        assert loaded.error_message == "boom"

        await store.close()

    @pytest.mark.asyncio
    async def test_worker_info_heartbeat_metrics(self, make_store):
        """Test worker bookkeeping updates."""
        store = make_store()
        await store.initialize()

        record = _record()
        await store.create(record)

        await store.update_worker_info(record.task_id, "host-worker-1")
        loaded = await store.get_by_task_id(record.task_id)
        assert loaded.worker_id == "host-worker-1"
        first_beat = loaded.last_heartbeat_at
        assert first_beat is not None

        await store.update_heartbeat(record.task_id)
        loaded = await store.get_by_task_id(record.task_id)
        assert loaded.last_heartbeat_at >= first_beat

        await store.update_metrics(record.task_id, 1200, 300)
        loaded = await store.get_by_task_id(record.task_id)
        assert loaded.processing_time_ms == 1200
        assert loaded.queue_time_ms == 300

        await store.close()

    @pytest.mark.asyncio
    async def test_full_update(self, make_store):
        """Test overwriting a record."""
        store = make_store()
        await store.initialize()

        record = _record()
        await store.create(record)

        record.attempts = 2
        record.result_data = "ok"
        stamp_status(record, TaskStatus.COMPLETED)
        await store.update(record)

        loaded = await store.get_by_task_id(record.task_id)
        assert loaded.attempts == 2
        assert loaded.result_data == "ok"
        assert loaded.status == TaskStatus.COMPLETED
        assert loaded.completed_at is not None

        await store.close()

    @pytest.mark.asyncio
    async def test_queries(self, make_store):
        """Test account, status, recent and filtered queries."""
        store = make_store()
        await store.initialize()

        base = utcnow() - timedelta(hours=1)
        ids = []
        for i in range(5):
            record = _record(
                account_id="a" if i % 2 == 0 else "b",
                status=TaskStatus.QUEUED if i < 3 else TaskStatus.COMPLETED,
                created_at=base + timedelta(minutes=i),
            )
            ids.append(record.task_id)
            await store.create(record)

        by_account = await store.get_by_account_id("a", limit=10)
        assert [r.task_id for r in by_account] == [ids[4], ids[2], ids[0]]

        page = await store.get_by_account_id("a", limit=1, offset=1)
        assert [r.task_id for r in page] == [ids[2]]

        queued = await store.get_by_status(TaskStatus.QUEUED, limit=10)
        assert {r.task_id for r in queued} == set(ids[:3])

        recent = await store.get_recent_tasks(2)
        assert [r.task_id for r in recent] == [ids[4], ids[3]]

        filtered = await store.find_tasks(TaskFilter(account_id="a", status=TaskStatus.QUEUED))
        assert [r.task_id for r in filtered] == [ids[2], ids[0]]

        since = await store.find_tasks(TaskFilter(since=base + timedelta(minutes=3)))
        assert [r.task_id for r in since] == [ids[4], ids[3]]

        assert await store.count_by_status(TaskStatus.QUEUED) == 3
        assert await store.count_by_status(TaskStatus.FAILED) == 0

        await store.close()

    @pytest.mark.asyncio
    async def test_aggregates(self, make_store):
        """Test completion/failure counts and averages."""
        store = make_store()
        await store.initialize()
        now = utcnow()

        for processing, queue in [(100, 10), (300, 30), (0, 0)]:
            record = _record(
                status=TaskStatus.COMPLETED,
                completed_at=now,
                processing_time_ms=processing,
                queue_time_ms=queue,
            )
            await store.create(record)

        await store.create(_record(status=TaskStatus.FAILED, failed_at=now))
        await store.create(_record(
            status=TaskStatus.COMPLETED,
            completed_at=now - timedelta(days=2),
            processing_time_ms=9999,
        ))

        since = now - timedelta(hours=24)
        assert await store.count_completed_since(since) == 3
        assert await store.count_failed_since(since) == 1
        assert await store.get_average_processing_time(since) == pytest.approx(200.0)
        assert await store.get_average_queue_time(since) == pytest.approx(20.0)

        future = now + timedelta(hours=1)
        assert await store.get_average_processing_time(future) == 0.0

        await store.close()

    @pytest.mark.asyncio
    async def test_find_orphaned_tasks(self, make_store):
        """Test stale and missing heartbeats are orphans, fresh ones are not."""
        store = make_store()
        await store.initialize()
        now = utcnow()

        stale = _record(status=TaskStatus.PROCESSING, last_heartbeat_at=now - timedelta(hours=1))
        never = _record(status=TaskStatus.PROCESSING)
        fresh = _record(status=TaskStatus.PROCESSING, last_heartbeat_at=now)
        queued = _record(status=TaskStatus.QUEUED, last_heartbeat_at=now - timedelta(hours=1))
        for record in (stale, never, fresh, queued):
            await store.create(record)

        orphans = await store.find_orphaned_tasks(timedelta(minutes=30))

        assert {r.task_id for r in orphans} == {stale.task_id, never.task_id}

        await store.close()


class TestInMemoryTaskStore:
    """Tests specific to InMemoryTaskStore."""

    @pytest.mark.asyncio
    async def test_records_are_copied(self):
        """Test that callers cannot mutate stored state."""
        store = InMemoryTaskStore()
        record = _record()
        await store.create(record)

        record.status = TaskStatus.FAILED
        loaded = await store.get_by_task_id(record.task_id)
        loaded.attempts = 99

        again = await store.get_by_task_id(record.task_id)
        assert again.status == TaskStatus.PENDING
        assert again.attempts == 0

    @pytest.mark.asyncio
    async def test_reads_wait_for_writes(self):
        """Test reads and aggregates take the same lock as writes."""
        store = InMemoryTaskStore()
        record = _record()
        await store.create(record)

        await store._lock.acquire()
        read = asyncio.create_task(store.get_by_task_id(record.task_id))
        count = asyncio.create_task(store.count_by_status(TaskStatus.PENDING))
        await asyncio.sleep(0.01)
        assert not read.done()
        assert not count.done()

        store._lock.release()
        assert (await read).task_id == record.task_id
        assert await count == 1


class TestSQLiteTaskStore:
    """Tests specific to SQLiteTaskStore."""

    @pytest.mark.asyncio
    async def test_persists_across_connections(self, tmp_path):
        """Test that records survive closing and reopening the database."""
        path = str(tmp_path / "tasks.db")

        store = SQLiteTaskStore(path)
        await store.initialize()
        record = _record(request_data="payload")
        await store.create(record)
        await store.close()

        reopened = SQLiteTaskStore(path)
        await reopened.initialize()
        loaded = await reopened.get_by_task_id(record.task_id)
        await reopened.close()

        assert loaded.request_data == "payload"

    @pytest.mark.asyncio
    async def test_requires_initialize(self, tmp_path):
        """Test using the store before initialize fails cleanly."""
        store = SQLiteTaskStore(str(tmp_path / "tasks.db"))

        with pytest.raises(StoreError):
            await store.get_by_task_id("x")
