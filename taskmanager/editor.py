from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from typing import Any

from taskmanager.auth import AuthGateway, require_user
from taskmanager.errors import NotFoundError, ValidationError
from taskmanager.models.task import DEFAULT_CATEGORY, Priority, Task
from taskmanager.observability import get_json_logger
from taskmanager.store.interface import TaskStore

TITLE_REQUIRED = "Please enter a task title"
DESCRIPTION_REQUIRED = "Please enter a task description"


@dataclass(frozen=True, slots=True)
class ValidationResult:
    title_error: str | None = None
    description_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.title_error is None and self.description_error is None


def validate(title: str, description: str) -> ValidationResult:
    """Check both required fields independently; whitespace-only counts as empty."""
    return ValidationResult(
        title_error=None if (title or "").strip() else TITLE_REQUIRED,
        description_error=None if (description or "").strip() else DESCRIPTION_REQUIRED,
    )


@dataclass(slots=True)
class TaskDraft:
    """What the add/edit form holds before it is saved."""

    title: str = ""
    description: str = ""
    priority: str = Priority.MEDIUM.value
    category: str = DEFAULT_CATEGORY
    due_date: _dt.datetime | None = None
    tags: list[str] = field(default_factory=list)
    reminder: int = 0
    notes: str = ""

    @classmethod
    def from_task(cls, task: Task) -> TaskDraft:
        return cls(
            title=task.title,
            description=task.description,
            priority=task.priority,
            category=task.category,
            due_date=task.due_date,
            tags=list(task.tags),
            reminder=task.reminder,
            notes=task.notes,
        )

    def editable_fields(self) -> dict[str, Any]:
        return {
            "title": self.title.strip(),
            "description": self.description.strip(),
            "priority": self.priority,
            "category": self.category or DEFAULT_CATEGORY,
            "due_date": self.due_date,
            "tags": list(self.tags),
            "reminder": self.reminder,
            "notes": self.notes,
        }


class TaskEditor:
    """Save path of the add/edit form."""

    def __init__(self, store: TaskStore, auth: AuthGateway) -> None:
        self._store = store
        self._auth = auth
        self._logger = get_json_logger("taskmanager.editor")

    async def load(self, task_id: str) -> TaskDraft:
        user_id = require_user(self._auth)
        task = await self._store.get(user_id, task_id)
        if task is None:
            raise NotFoundError(task_id)
        return TaskDraft.from_task(task)

    async def save(self, draft: TaskDraft, task_id: str | None = None) -> str:
        """Create a task, or update ``task_id`` keeping its owner and creation time.

        Raises ValidationError before any backend call when a field is empty.
        """
        result = validate(draft.title, draft.description)
        if not result.ok:
            raise ValidationError(result)
        user_id = require_user(self._auth)
        fields = draft.editable_fields()
        if task_id:
            await self._store.update(user_id, task_id, fields)
            self._logger.info(
                "task saved", extra={"event": "task_edited", "user_id": user_id, "task_id": task_id}
            )
            return task_id
        new_id = await self._store.create(Task(user_id=user_id, **fields))
        self._logger.info(
            "task saved", extra={"event": "task_added", "user_id": user_id, "task_id": new_id}
        )
        return new_id


__all__ = [
    "DESCRIPTION_REQUIRED",
    "TITLE_REQUIRED",
    "TaskDraft",
    "TaskEditor",
    "ValidationResult",
    "validate",
]
