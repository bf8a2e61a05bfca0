from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskmanager.editor import ValidationResult


class TaskManagerError(Exception):
    """Base class for failures surfaced to the interactive layer."""


class ValidationError(TaskManagerError):
    """A required form field is empty. Raised before any backend call."""

    def __init__(self, result: ValidationResult) -> None:
        messages = [m for m in (result.title_error, result.description_error) if m]
        super().__init__("; ".join(messages) or "invalid task")
        self.result = result


class AuthRequiredError(TaskManagerError):
    """No signed-in user; the operation is aborted."""

    def __init__(self, message: str = "sign in required") -> None:
        super().__init__(message)


class PersistenceError(TaskManagerError):
    """Backend create/update/delete failed. Not retried."""


class NotFoundError(TaskManagerError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"task not found: {task_id}")
        self.task_id = task_id


class SubscriptionError(TaskManagerError):
    """The snapshot stream failed; the last delivered list stays in place."""


__all__ = [
    "AuthRequiredError",
    "NotFoundError",
    "PersistenceError",
    "SubscriptionError",
    "TaskManagerError",
    "ValidationError",
]
