"""Recurring task rescheduling.

A recurring task is a single row that moves forward in time: its UUID, and so
its workspace, memory and log, stay the same across occurrences.
"""

import sqlite3

from pardus.core.tasks import get_task, now_ms
from pardus.db.models import RECURRENCE_UNITS_MS, Task


def next_due_time(task: Task, now: int | None = None) -> int | None:
    """Compute the next due time for a task, or None if the series is over.

    Months are approximated as 30 days.
    """
    if task.recurrence_type == "none":
        return None

    if now is None:
        now = now_ms()

    end = task.recurrence_end_time
    if end is not None and now >= end:
        return None

    unit_ms = RECURRENCE_UNITS_MS.get(task.recurrence_type)
    if unit_ms is None:
        raise ValueError(f"Invalid recurrence type: {task.recurrence_type}")

    interval = task.recurrence_interval or 1
    next_due = task.due_time + interval * unit_ms

    if end is not None and next_due >= end:
        return None
    return next_due


def reschedule_task(
    db: sqlite3.Connection, task: Task, now: int | None = None
) -> Task | None:
    """Advance a recurring task in place to its next occurrence.

    Returns the updated task, or None when the series has ended.
    """
    next_due = next_due_time(task, now)
    if next_due is None:
        return None

    db.execute(
        "UPDATE tasks SET due_time = ?, status = 'pending', updated_at = ? WHERE id = ?",
        (next_due, now_ms(), task.id),
    )
    db.commit()
    return get_task(db, task.id)
