"""Data models for pardus."""

from dataclasses import dataclass

TASK_STATUSES = ("pending", "processing", "completed", "failed")

# Milliseconds per recurrence unit. Months are a flat 30 days, not calendar months.
RECURRENCE_UNITS_MS = {
    "seconds": 1000,
    "minutes": 60 * 1000,
    "hours": 60 * 60 * 1000,
    "days": 24 * 60 * 60 * 1000,
    "weeks": 7 * 24 * 60 * 60 * 1000,
    "months": 30 * 24 * 60 * 60 * 1000,
}

RECURRENCE_TYPES = ("none", *RECURRENCE_UNITS_MS)


@dataclass
class Task:
    id: int
    uuid: str
    title: str
    description: str
    due_time: int
    created_at: int
    updated_at: int
    status: str = "pending"
    recurrence_type: str = "none"
    recurrence_interval: int = 1
    recurrence_end_time: int | None = None

    @property
    def is_recurring(self) -> bool:
        return self.recurrence_type != "none"


@dataclass
class AgentResult:
    success: bool
    output: str | None = None
    error: str | None = None
    timed_out: bool = False
