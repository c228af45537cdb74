"""Tests for task queue operations."""

import tempfile
import threading
from pathlib import Path

import pytest

from pardus.core import tasks as tasks_mod
from pardus.db.engine import init_db

T0 = 1_700_000_000_000


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "test.db"


@pytest.fixture
def db(db_path):
    """Create a temporary SQLite database for testing."""
    conn = init_db(db_path)
    yield conn
    conn.close()


class TestTaskCRUD:
    def test_create_task(self, db):
        task = tasks_mod.create_task(db, "Daily report", "Summarize the news", due_time=T0)
        assert task.id is not None
        assert len(task.uuid) == 36
        assert task.title == "Daily report"
        assert task.description == "Summarize the news"
        assert task.status == "pending"
        assert task.due_time == T0
        assert task.created_at == task.updated_at
        assert task.recurrence_type == "none"
        assert task.is_recurring is False

    def test_create_task_defaults_due_to_now(self, db):
        before = tasks_mod.now_ms()
        task = tasks_mod.create_task(db, "Now", "run now")
        assert before <= task.due_time <= tasks_mod.now_ms()

    def test_create_recurring_task(self, db):
        task = tasks_mod.create_task(
            db, "Weekly", "check", due_time=T0, recurrence_type="weeks",
            recurrence_interval=2, recurrence_end_time=T0 + 10,
        )
        assert task.is_recurring
        assert task.recurrence_interval == 2
        assert task.recurrence_end_time == T0 + 10

    def test_invalid_recurrence_type(self, db):
        with pytest.raises(ValueError, match="Invalid recurrence type"):
            tasks_mod.create_task(db, "Bad", "x", recurrence_type="fortnights")

    def test_invalid_recurrence_interval(self, db):
        with pytest.raises(ValueError, match="positive"):
            tasks_mod.create_task(db, "Bad", "x", recurrence_type="days", recurrence_interval=0)

    def test_uuids_are_unique(self, db):
        t1 = tasks_mod.create_task(db, "A", "a")
        t2 = tasks_mod.create_task(db, "A", "a")
        assert t1.uuid != t2.uuid

    def test_get_task_by_uuid(self, db):
        task = tasks_mod.create_task(db, "By uuid", "x")
        found = tasks_mod.get_task_by_uuid(db, task.uuid)
        assert found.id == task.id

    def test_get_nonexistent_task(self, db):
        assert tasks_mod.get_task(db, 999) is None
        assert tasks_mod.get_task_by_uuid(db, "nope") is None

    def test_list_tasks_newest_first(self, db):
        t1 = tasks_mod.create_task(db, "Task 1", "x")
        t2 = tasks_mod.create_task(db, "Task 2", "x")
        assert [t.id for t in tasks_mod.list_tasks(db)] == [t2.id, t1.id]

    def test_list_tasks_by_status(self, db):
        t1 = tasks_mod.create_task(db, "Task A", "x")
        t2 = tasks_mod.create_task(db, "Task B", "x")
        tasks_mod.update_task_status(db, t1.id, "failed")
        pending = tasks_mod.list_tasks(db, status="pending")
        assert [t.id for t in pending] == [t2.id]

    def test_update_fields_bump_updated_at(self, db):
        task = tasks_mod.create_task(db, "Old", "x")
        db.execute("UPDATE tasks SET updated_at = 0 WHERE id = ?", (task.id,))
        db.commit()
        updated = tasks_mod.update_task_title(db, task.id, "New")
        assert updated.title == "New"
        assert updated.updated_at > 0
        assert updated.uuid == task.uuid

    def test_update_description_and_due_time(self, db):
        task = tasks_mod.create_task(db, "T", "old", due_time=T0)
        tasks_mod.update_task_description(db, task.id, "new")
        updated = tasks_mod.update_task_due_time(db, task.id, T0 + 5)
        assert updated.description == "new"
        assert updated.due_time == T0 + 5

    def test_update_unknown_task_returns_none(self, db):
        assert tasks_mod.update_task_title(db, 999, "x") is None
        assert tasks_mod.update_task_status(db, 999, "failed") is None
        assert tasks_mod.update_task_due_time(db, 999, T0) is None

    def test_invalid_status(self, db):
        task = tasks_mod.create_task(db, "T", "x")
        with pytest.raises(ValueError, match="Invalid status"):
            tasks_mod.update_task_status(db, task.id, "done")

    def test_delete_task(self, db):
        task = tasks_mod.create_task(db, "Temp", "x")
        assert tasks_mod.delete_task(db, task.id) is True
        assert tasks_mod.get_task(db, task.id) is None
        assert tasks_mod.delete_task(db, task.id) is False


class TestSearch:
    def test_search_orders_by_due_time(self, db):
        late = tasks_mod.create_task(db, "Late", "x", due_time=T0 + 2000)
        early = tasks_mod.create_task(db, "Early", "x", due_time=T0)
        results = tasks_mod.search_tasks(db)
        assert [t.id for t in results] == [early.id, late.id]

    def test_search_filters(self, db):
        tasks_mod.create_task(db, "Morning news", "x", due_time=T0)
        tasks_mod.create_task(db, "Evening news", "x", due_time=T0 + 10_000)
        tasks_mod.create_task(db, "Backup", "x", due_time=T0 + 5000)

        assert [t.title for t in tasks_mod.search_tasks(db, title_contains="news")] == [
            "Morning news",
            "Evening news",
        ]
        assert [t.title for t in tasks_mod.search_tasks(db, due_before=T0 + 6000)] == [
            "Morning news",
            "Backup",
        ]
        assert [t.title for t in tasks_mod.search_tasks(db, due_after=T0)] == [
            "Backup",
            "Evening news",
        ]
        assert tasks_mod.search_tasks(db, status="failed") == []


class TestClaim:
    def test_claim_earliest_due(self, db):
        tasks_mod.create_task(db, "Later", "x", due_time=T0 + 100)
        first = tasks_mod.create_task(db, "First", "x", due_time=T0)
        claimed = tasks_mod.claim_next_task(db, now=T0 + 1000)
        assert claimed.id == first.id
        assert claimed.status == "processing"
        assert tasks_mod.get_task(db, first.id).status == "processing"

    def test_ties_go_to_oldest(self, db):
        a = tasks_mod.create_task(db, "A", "x", due_time=T0)
        tasks_mod.create_task(db, "B", "x", due_time=T0)
        assert tasks_mod.claim_next_task(db, now=T0).id == a.id

    def test_nothing_due(self, db):
        tasks_mod.create_task(db, "Future", "x", due_time=T0 + 1)
        assert tasks_mod.claim_next_task(db, now=T0) is None

    def test_empty_queue(self, db):
        assert tasks_mod.claim_next_task(db, now=T0) is None

    def test_skips_non_pending(self, db):
        done = tasks_mod.create_task(db, "Done", "x", due_time=T0)
        tasks_mod.update_task_status(db, done.id, "completed")
        assert tasks_mod.claim_next_task(db, now=T0) is None

    def test_nothing_claimed_while_processing(self, db):
        tasks_mod.create_task(db, "A", "x", due_time=T0)
        b = tasks_mod.create_task(db, "B", "x", due_time=T0)
        assert tasks_mod.claim_next_task(db, now=T0) is not None
        assert tasks_mod.claim_next_task(db, now=T0) is None
        assert tasks_mod.get_task(db, b.id).status == "pending"

    def test_concurrent_claims_take_one_task(self, db, db_path):
        for i in range(5):
            tasks_mod.create_task(db, f"T{i}", "x", due_time=T0)

        claimed = []
        barrier = threading.Barrier(4)

        def worker():
            conn = init_db(db_path)
            try:
                barrier.wait()
                task = tasks_mod.claim_next_task(conn, now=T0)
                if task:
                    claimed.append(task.id)
            finally:
                conn.close()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(claimed) == 1
        assert len(tasks_mod.list_tasks(db, status="processing")) == 1

    def test_reset_processing_to_pending(self, db):
        task = tasks_mod.create_task(db, "Stuck", "x", due_time=T0)
        tasks_mod.claim_next_task(db, now=T0)
        assert tasks_mod.reset_processing_to_pending(db) == 1
        recovered = tasks_mod.get_task(db, task.id)
        assert recovered.status == "pending"
        assert recovered.due_time == T0
        assert tasks_mod.claim_next_task(db, now=T0).id == task.id


class TestOperatorMutations:
    def test_force_pending(self, db):
        task = tasks_mod.create_task(db, "Later", "x", due_time=T0 * 2)
        forced = tasks_mod.force_task(db, task.id)
        assert forced.status == "pending"
        assert forced.due_time <= tasks_mod.now_ms()

    def test_force_completed(self, db):
        task = tasks_mod.create_task(db, "Done", "x")
        tasks_mod.update_task_status(db, task.id, "completed")
        assert tasks_mod.force_task(db, task.id).status == "pending"

    def test_force_processing_rejected(self, db):
        task = tasks_mod.create_task(db, "Busy", "x", due_time=T0)
        tasks_mod.claim_next_task(db, now=T0)
        with pytest.raises(ValueError, match="already processing"):
            tasks_mod.force_task(db, task.id)

    def test_force_unknown(self, db):
        with pytest.raises(ValueError, match="Task not found"):
            tasks_mod.force_task(db, 42)

    def test_restart_only_finished(self, db):
        task = tasks_mod.create_task(db, "T", "x", due_time=T0)
        with pytest.raises(ValueError, match="Only completed or failed"):
            tasks_mod.restart_task(db, task.id)
        tasks_mod.update_task_status(db, task.id, "failed")
        restarted = tasks_mod.restart_task(db, task.id)
        assert restarted.status == "pending"
        assert restarted.due_time > T0

    def test_cancel_only_processing(self, db):
        task = tasks_mod.create_task(db, "T", "x", due_time=T0)
        with pytest.raises(ValueError, match="not processing"):
            tasks_mod.cancel_task(db, task.id)
        tasks_mod.claim_next_task(db, now=T0)
        cancelled = tasks_mod.cancel_task(db, task.id)
        assert cancelled.status == "pending"
        assert cancelled.due_time == T0


class TestAggregates:
    def test_counts(self, db):
        a = tasks_mod.create_task(db, "A", "x")
        tasks_mod.create_task(db, "B", "x")
        tasks_mod.update_task_status(db, a.id, "failed")
        counts = tasks_mod.count_by_status(db)
        assert counts == {"pending": 1, "processing": 0, "completed": 0, "failed": 1, "total": 2}

    def test_uuid_title_map(self, db):
        a = tasks_mod.create_task(db, "Alpha", "x")
        assert tasks_mod.get_uuid_title_map(db) == {a.uuid: "Alpha"}
