from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from typing import Any, Protocol

import pydantic

from taskmanager.models.task import IMMUTABLE_FIELDS, Task

SnapshotCallback = Callable[[list[Task]], None]
ErrorCallback = Callable[[Exception], None]


class Subscription:
    """Handle for one live snapshot subscription.

    Wraps the task that feeds the callbacks. ``cancel`` is safe to call any
    number of times; only the first call has an effect.
    """

    def __init__(self, user_id: str, task: asyncio.Task[None] | None = None) -> None:
        self.user_id = user_id
        self._task = task
        self._cancelled = False
        self._on_cancel: list[Callable[[], None]] = []

    def attach(self, task: asyncio.Task[None]) -> None:
        self._task = task

    def add_cancel_hook(self, hook: Callable[[], None]) -> None:
        self._on_cancel.append(hook)

    @property
    def active(self) -> bool:
        if self._cancelled:
            return False
        return self._task is None or not self._task.done()

    def cancel(self) -> bool:
        """Stop delivery. Returns ``True`` only for the call that cancelled."""
        if self._cancelled:
            return False
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        hooks, self._on_cancel = self._on_cancel, []
        for hook in hooks:
            hook()
        return True

    async def wait_closed(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class TaskStore(Protocol):
    """Adapter over the single system of record for tasks.

    Every method is a coroutine and must not block the event loop. Snapshots
    always carry the whole collection, never a diff.
    """

    def subscribe(
        self,
        user_id: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        """Start a live subscription on the running loop."""
        ...

    async def create(self, task: Task) -> str:
        """Persist ``task`` and return its id (assigned when empty)."""
        ...

    async def get(self, user_id: str, task_id: str) -> Task | None: ...

    async def update(self, user_id: str, task_id: str, fields: Mapping[str, Any]) -> None:
        """Merge ``fields`` into an existing task. Raises NotFoundError if it is gone."""
        ...

    async def delete(self, user_id: str, task_id: str) -> None:
        """Remove a task. A missing id is a successful no-op."""
        ...


def check_update_fields(fields: Mapping[str, Any]) -> None:
    if not fields:
        raise ValueError("no fields to update")
    unknown = set(fields) - set(Task.model_fields)
    if unknown:
        raise ValueError(f"unknown task fields: {', '.join(sorted(unknown))}")
    frozen = set(fields) & IMMUTABLE_FIELDS
    if frozen:
        raise ValueError(f"fields cannot be changed: {', '.join(sorted(frozen))}")


def merge_fields(current: Task, fields: Mapping[str, Any]) -> Task:
    """Apply a partial update to ``current``. Values that do not validate raise ``ValueError``."""
    try:
        return Task.model_validate({**current.model_dump(), **dict(fields)})
    except pydantic.ValidationError as e:
        bad = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        raise ValueError(f"invalid values for fields: {', '.join(bad)}") from e


def snapshot_order(tasks: list[Task]) -> list[Task]:
    """Canonical snapshot order: creation time, then id."""
    return sorted(tasks, key=lambda t: (t.created_at, t.id))


__all__ = [
    "ErrorCallback",
    "SnapshotCallback",
    "Subscription",
    "TaskStore",
    "check_update_fields",
    "merge_fields",
    "snapshot_order",
]
