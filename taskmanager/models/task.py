from __future__ import annotations

import datetime as _dt
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator

_ONE_DAY = _dt.timedelta(days=1)


class Priority(StrEnum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


# Sort rank: lower sorts first. Anything unrecognised ranks after Low.
PRIORITY_RANK: dict[str, int] = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}
UNKNOWN_PRIORITY_RANK = 3

PRIORITY_SCORE: dict[str, int] = {Priority.HIGH: 3, Priority.MEDIUM: 2, Priority.LOW: 1}

DEFAULT_CATEGORY = "Other"
CATEGORIES: tuple[str, ...] = ("Work", "Personal", "Shopping", "Health", "Education", "Other")

# Fields a caller may not change once the record exists.
IMMUTABLE_FIELDS = frozenset({"id", "user_id", "created_at"})


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.UTC)


def _aware(value: _dt.datetime) -> _dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=_dt.UTC)
    return value


def now_ms(now: _dt.datetime | None = None) -> int:
    """Epoch milliseconds, the unit of ``completed_at`` and ``reminder``."""
    return int(_aware(now or _utcnow()).timestamp() * 1000)


class Task(BaseModel):
    """A task owned by one user.

    - ``id`` stays empty until the store assigns one
    - ``completed_at`` is epoch milliseconds, ``0`` while the task is open
    - ``priority`` keeps unknown strings from other clients; they rank last
    """

    id: str = ""
    title: str = ""
    description: str = ""
    priority: str = Priority.MEDIUM.value
    category: str = DEFAULT_CATEGORY
    created_at: _dt.datetime = Field(default_factory=_utcnow)
    due_date: _dt.datetime | None = None
    completed_at: int = 0
    user_id: str = ""
    is_completed: bool = False
    tags: list[str] = Field(default_factory=list)
    reminder: int = 0
    notes: str = ""

    @field_validator("priority", mode="before")
    @classmethod
    def _priority_as_str(cls, value: Any) -> Any:
        if value is None:
            return Priority.MEDIUM.value
        if isinstance(value, Priority):
            return value.value
        return value

    @field_validator("category", mode="before")
    @classmethod
    def _category_default(cls, value: Any) -> Any:
        return DEFAULT_CATEGORY if value in (None, "") else value

    @field_validator("tags", mode="before")
    @classmethod
    def _string_tags_only(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list | tuple):
            return [v for v in value if isinstance(v, str)]
        return []

    @field_validator("created_at", "due_date")
    @classmethod
    def _timezone_aware(cls, value: _dt.datetime | None) -> _dt.datetime | None:
        return _aware(value) if value is not None else None

    # ----------------------------
    # Derived values
    # ----------------------------
    @property
    def priority_rank(self) -> int:
        return PRIORITY_RANK.get(self.priority, UNKNOWN_PRIORITY_RANK)

    @property
    def priority_score(self) -> int:
        return PRIORITY_SCORE.get(self.priority, 0)

    def _local_due(self, now: _dt.datetime) -> _dt.datetime | None:
        if self.due_date is None:
            return None
        return self.due_date.astimezone(now.tzinfo)

    def is_overdue(self, now: _dt.datetime | None = None) -> bool:
        now = _aware(now or _utcnow())
        return self.due_date is not None and not self.is_completed and self.due_date < now

    def is_due_today(self, now: _dt.datetime | None = None) -> bool:
        now = _aware(now or _utcnow())
        due = self._local_due(now)
        return due is not None and due.date() == now.date()

    def is_due_tomorrow(self, now: _dt.datetime | None = None) -> bool:
        now = _aware(now or _utcnow())
        due = self._local_due(now)
        return due is not None and due.date() == (now + _ONE_DAY).date()

    def days_until_due(self, now: _dt.datetime | None = None) -> int | None:
        """Whole days until the due date, floored. ``None`` without a due date."""
        if self.due_date is None:
            return None
        now = _aware(now or _utcnow())
        return (self.due_date - now) // _ONE_DAY

    def status_text(self, now: _dt.datetime | None = None) -> str:
        now = _aware(now or _utcnow())
        if self.is_completed:
            return "Completed"
        if self.is_overdue(now):
            return "Overdue"
        if self.is_due_today(now):
            return "Due Today"
        if self.is_due_tomorrow(now):
            return "Due Tomorrow"
        days = self.days_until_due(now)
        if days is None:
            return "No due date"
        if days > 0:
            return f"Due in {days} days"
        if days == 0:
            return "Due Today"
        return f"Overdue by {-days} days"

    # ----------------------------
    # Wire records
    # ----------------------------
    def to_record(self) -> dict[str, Any]:
        """JSON-safe record as stored by the backend. The id lives in the key."""
        return self.model_dump(mode="json", exclude={"id"})

    @classmethod
    def from_record(cls, record: dict[str, Any], task_id: str) -> Task:
        data = {k: v for k, v in record.items() if v is not None or k == "due_date"}
        data["id"] = task_id
        return cls.model_validate(data)


def completion_fields(completed: bool, now: _dt.datetime | None = None) -> dict[str, Any]:
    """Fields written by a toggle; keeps ``is_completed`` and ``completed_at`` in step."""
    return {"is_completed": completed, "completed_at": now_ms(now) if completed else 0}


__all__ = [
    "CATEGORIES",
    "DEFAULT_CATEGORY",
    "IMMUTABLE_FIELDS",
    "PRIORITY_RANK",
    "Priority",
    "Task",
    "completion_fields",
    "now_ms",
]
