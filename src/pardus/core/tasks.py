"""Task queue operations: enqueue, claim, query and operator mutations."""

import sqlite3
import time
import uuid as uuid_lib

from pardus.db.models import RECURRENCE_TYPES, TASK_STATUSES, Task


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def create_task(
    db: sqlite3.Connection,
    title: str,
    description: str,
    due_time: int | None = None,
    recurrence_type: str = "none",
    recurrence_interval: int = 1,
    recurrence_end_time: int | None = None,
) -> Task:
    """Enqueue a new pending task with a fresh UUID."""
    if recurrence_type not in RECURRENCE_TYPES:
        raise ValueError(f"Invalid recurrence type: {recurrence_type}")
    if recurrence_interval < 1:
        raise ValueError("Recurrence interval must be a positive integer")

    now = now_ms()
    if due_time is None:
        due_time = now

    cur = db.execute(
        """INSERT INTO tasks
           (uuid, title, description, due_time, created_at, updated_at, status,
            recurrence_type, recurrence_interval, recurrence_end_time)
           VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?)""",
        (
            str(uuid_lib.uuid4()),
            title,
            description,
            int(due_time),
            now,
            now,
            recurrence_type,
            int(recurrence_interval),
            recurrence_end_time,
        ),
    )
    db.commit()
    return get_task(db, cur.lastrowid)


def claim_next_task(db: sqlite3.Connection, now: int | None = None) -> Task | None:
    """Atomically move the earliest due pending task to 'processing'.

    Ties on due_time go to the oldest row. Nothing is claimed while another
    row is already processing, so at most one task runs system-wide.
    """
    if now is None:
        now = now_ms()

    db.execute("BEGIN IMMEDIATE")
    try:
        row = db.execute(
            """SELECT id FROM tasks
               WHERE status = 'pending' AND due_time <= ?
                 AND NOT EXISTS (SELECT 1 FROM tasks WHERE status = 'processing')
               ORDER BY due_time ASC, id ASC
               LIMIT 1""",
            (now,),
        ).fetchone()
        if not row:
            db.rollback()
            return None
        db.execute(
            "UPDATE tasks SET status = 'processing', updated_at = ? WHERE id = ?",
            (now_ms(), row["id"]),
        )
        db.commit()
    except BaseException:
        db.rollback()
        raise
    return get_task(db, row["id"])


def get_task(db: sqlite3.Connection, task_id: int) -> Task | None:
    """Get a task by its numeric ID."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def get_task_by_uuid(db: sqlite3.Connection, task_uuid: str) -> Task | None:
    """Get a task by its UUID."""
    row = db.execute("SELECT * FROM tasks WHERE uuid = ?", (task_uuid,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def list_tasks(db: sqlite3.Connection, status: str | None = None) -> list[Task]:
    """List all tasks, newest first."""
    query = "SELECT * FROM tasks"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY created_at DESC, id DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def search_tasks(
    db: sqlite3.Connection,
    status: str | None = None,
    title_contains: str | None = None,
    due_before: int | None = None,
    due_after: int | None = None,
) -> list[Task]:
    """Search tasks by filters, ordered by due time."""
    query = "SELECT * FROM tasks WHERE 1=1"
    params: list = []

    if status:
        query += " AND status = ?"
        params.append(status)

    if title_contains:
        query += " AND title LIKE ?"
        params.append(f"%{title_contains}%")

    if due_before is not None:
        query += " AND due_time < ?"
        params.append(due_before)

    if due_after is not None:
        query += " AND due_time > ?"
        params.append(due_after)

    query += " ORDER BY due_time ASC, id ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def update_task_status(db: sqlite3.Connection, task_id: int, status: str) -> Task | None:
    """Set a task's status. Returns the updated task."""
    if status not in TASK_STATUSES:
        raise ValueError(f"Invalid status: {status}")
    return _update_fields(db, task_id, status=status)


def update_task_due_time(db: sqlite3.Connection, task_id: int, due_time: int) -> Task | None:
    """Set a task's due time without touching its UUID."""
    return _update_fields(db, task_id, due_time=int(due_time))


def update_task_title(db: sqlite3.Connection, task_id: int, title: str) -> Task | None:
    return _update_fields(db, task_id, title=title)


def update_task_description(
    db: sqlite3.Connection, task_id: int, description: str
) -> Task | None:
    return _update_fields(db, task_id, description=description)


def delete_task(db: sqlite3.Connection, task_id: int) -> bool:
    """Delete a task row."""
    result = db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    return result.rowcount > 0


def reset_processing_to_pending(db: sqlite3.Connection) -> int:
    """Return every 'processing' row to 'pending'. Used for startup recovery."""
    result = db.execute(
        "UPDATE tasks SET status = 'pending', updated_at = ? WHERE status = 'processing'",
        (now_ms(),),
    )
    db.commit()
    return result.rowcount


# ── Operator mutations ──────────────────────────────────────────────────────


def force_task(db: sqlite3.Connection, task_id: int) -> Task:
    """Make a task due now and pending so the next cycle picks it up."""
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    if task.status == "processing":
        raise ValueError("Task is already processing")
    return _update_fields(db, task_id, due_time=now_ms(), status="pending")


def restart_task(db: sqlite3.Connection, task_id: int) -> Task:
    """Re-run a completed or failed task now."""
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    if task.status not in ("completed", "failed"):
        raise ValueError(f"Only completed or failed tasks can be restarted (status: {task.status})")
    return _update_fields(db, task_id, due_time=now_ms(), status="pending")


def cancel_task(db: sqlite3.Connection, task_id: int) -> Task:
    """Return a processing task to pending. A running agent is not interrupted."""
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    if task.status != "processing":
        raise ValueError("Task is not processing")
    return _update_fields(db, task_id, status="pending")


# ── Aggregates ──────────────────────────────────────────────────────────────


def count_by_status(db: sqlite3.Connection) -> dict[str, int]:
    """Task counts per status, including a total."""
    counts = {s: 0 for s in TASK_STATUSES}
    for row in db.execute("SELECT status, COUNT(*) AS n FROM tasks GROUP BY status"):
        counts[row["status"]] = row["n"]
    counts["total"] = sum(counts[s] for s in TASK_STATUSES)
    return counts


def get_uuid_title_map(db: sqlite3.Connection) -> dict[str, str]:
    """Map of task UUID to title, for labelling workspaces and logs."""
    rows = db.execute("SELECT uuid, title FROM tasks").fetchall()
    return {r["uuid"]: r["title"] for r in rows}


def _update_fields(db: sqlite3.Connection, task_id: int, **fields) -> Task | None:
    set_parts = [f"{k} = ?" for k in fields]
    set_parts.append("updated_at = ?")
    values = list(fields.values()) + [now_ms(), task_id]
    result = db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
        values,
    )
    db.commit()
    if result.rowcount == 0:
        return None
    return get_task(db, task_id)


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        uuid=row["uuid"],
        title=row["title"],
        description=row["description"],
        due_time=row["due_time"],
        created_at=row["created_at"],
        updated_at=row["updated_at"] if row["updated_at"] is not None else row["created_at"],
        status=row["status"],
        recurrence_type=row["recurrence_type"] or "none",
        recurrence_interval=row["recurrence_interval"] or 1,
        recurrence_end_time=row["recurrence_end_time"],
    )
