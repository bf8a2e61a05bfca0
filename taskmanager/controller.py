from __future__ import annotations

import asyncio
import datetime as _dt
import functools
import inspect
import uuid
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from taskmanager.config import DEFAULT_UNDO_GRACE_SECONDS
from taskmanager.errors import PersistenceError, SubscriptionError, TaskManagerError
from taskmanager.models.task import Task, completion_fields
from taskmanager.observability import get_json_logger, get_metrics, use_session_context
from taskmanager.sorting import SortMode, sort_in_place
from taskmanager.store.interface import Subscription, TaskStore

ChangeKind = Literal["full_replace", "item_removed", "item_inserted"]


@dataclass(frozen=True, slots=True)
class ListChange:
    kind: ChangeKind
    index: int | None = None

    @classmethod
    def full_replace(cls) -> ListChange:
        return cls("full_replace")

    @classmethod
    def item_removed(cls, index: int) -> ListChange:
        return cls("item_removed", index)

    @classmethod
    def item_inserted(cls, index: int) -> ListChange:
        return cls("item_inserted", index)


class ListObserver(Protocol):
    """Display-side consumer of the controller's list.

    ``on_list_changed`` is called only after a mutation is complete; the
    sequence passed in is a read-only view of the current list.
    """

    def on_list_changed(self, tasks: Sequence[Task], change: ListChange) -> None: ...

    def on_error(self, error: TaskManagerError) -> None: ...


@dataclass(frozen=True, slots=True)
class ListStats:
    completed: int
    total: int

    @property
    def percent(self) -> int:
        if self.total == 0:
            return 0
        return int(self.completed / self.total * 100)


def _in_session(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Run a controller method with the controller's session bound to log lines."""
    if inspect.iscoroutinefunction(fn):

        @functools.wraps(fn)
        async def run_async(self: TaskListController, *args: Any, **kwargs: Any) -> Any:
            with self._session_context():
                return await fn(self, *args, **kwargs)

        return run_async

    @functools.wraps(fn)
    def run(self: TaskListController, *args: Any, **kwargs: Any) -> Any:
        with self._session_context():
            return fn(self, *args, **kwargs)

    return run


@dataclass(slots=True)
class _PendingDelete:
    task: Task
    index: int
    generation: int
    handle: asyncio.TimerHandle | None = None


class TaskListController:
    """Owns the ordered task list for one signed-in user.

    - The list only changes from the backend side through ``on_snapshot``,
      which replaces it wholesale and re-sorts.
    - ``toggle_complete`` does not touch the list; the next snapshot does.
    - ``delete`` removes optimistically and holds the backend delete for a
      grace window during which ``undo`` restores the row.
    """

    def __init__(
        self,
        store: TaskStore,
        user_id: str,
        observer: ListObserver | None = None,
        *,
        sort_mode: SortMode = SortMode.PRIORITY_THEN_RECENCY,
        grace_seconds: float = DEFAULT_UNDO_GRACE_SECONDS,
        clock: Callable[[], _dt.datetime] | None = None,
    ) -> None:
        if not user_id:
            raise ValueError("user_id must be non-empty")
        self._store = store
        self._user_id = user_id
        self._observer = observer
        self._sort_mode = SortMode(sort_mode)
        self._grace_seconds = grace_seconds
        self._clock = clock or (lambda: _dt.datetime.now(_dt.UTC))
        self._tasks: list[Task] = []
        self._last_snapshot: list[Task] = []
        # Bumped on every snapshot; tells undo whether its saved index is still meaningful
        self._generation = 0
        self._snapshot_received = False
        self._pending: dict[str, _PendingDelete] = {}
        self._inflight: set[asyncio.Task[None]] = set()
        self._subscription: Subscription | None = None
        self._closed = False
        self._session_id = str(uuid.uuid4())
        self._logger = get_json_logger("taskmanager.controller")

    @contextmanager
    def _session_context(self) -> Iterator[dict[str, Any]]:
        with use_session_context(self._user_id, self._session_id) as ctx:
            yield ctx

    # ----------------------------
    # State
    # ----------------------------
    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def tasks(self) -> Sequence[Task]:
        return tuple(self._tasks)

    @property
    def sort_mode(self) -> SortMode:
        return self._sort_mode

    @property
    def pending_deletes(self) -> frozenset[str]:
        return frozenset(self._pending)

    @property
    def loading(self) -> bool:
        """True until the first snapshot arrives."""
        return not self._snapshot_received

    def stats(self) -> ListStats:
        return ListStats(
            completed=sum(1 for t in self._tasks if t.is_completed), total=len(self._tasks)
        )

    def find(self, task_id: str) -> Task | None:
        for task in self._tasks:
            if task.id == task_id:
                return task
        return None

    # ----------------------------
    # Subscription lifecycle
    # ----------------------------
    @_in_session
    def start(self) -> Subscription:
        if self._closed:
            raise RuntimeError("controller is closed")
        if self._subscription is None:
            # The snapshot task inherits the session context from here
            self._subscription = self._store.subscribe(
                self._user_id, self.on_snapshot, self.on_subscription_error
            )
            self._logger.info(
                "list session started",
                extra={"event": "session_started", "sort_mode": str(self._sort_mode)},
            )
        return self._subscription

    @_in_session
    async def close(self) -> None:
        """End the session: cancel the subscription, commit held deletes, drain writes."""
        if self._closed:
            return
        self._closed = True
        if self._subscription is not None:
            self._subscription.cancel()
        for task_id in list(self._pending):
            self._commit_delete(task_id)
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        self._logger.info(
            "list session closed", extra={"event": "session_closed", "user_id": self._user_id}
        )

    # ----------------------------
    # Backend-driven updates
    # ----------------------------
    @_in_session
    def on_snapshot(self, tasks: Sequence[Task]) -> None:
        self._snapshot_received = True
        self._last_snapshot = list(tasks)
        self._generation += 1
        # Rows the user just swiped away stay hidden until undo or commit
        self._tasks = [t for t in tasks if t.id not in self._pending]
        sort_in_place(self._tasks, self._sort_mode)
        get_metrics().increment("snapshots_applied")
        self._logger.debug(
            "snapshot applied",
            extra={"event": "snapshot_applied", "user_id": self._user_id, "count": len(tasks)},
        )
        self._notify(ListChange.full_replace())

    @_in_session
    def on_subscription_error(self, exc: Exception) -> None:
        err = exc if isinstance(exc, SubscriptionError) else SubscriptionError(str(exc))
        self._logger.warning(
            "snapshot stream error; keeping last list",
            extra={"event": "snapshot_error", "user_id": self._user_id, "count": len(self._tasks)},
        )
        self._report(err)

    # ----------------------------
    # User intents
    # ----------------------------
    @_in_session
    def set_sort_mode(self, mode: SortMode) -> None:
        self._sort_mode = SortMode(mode)
        sort_in_place(self._tasks, self._sort_mode)
        self._notify(ListChange.full_replace())

    @_in_session
    async def toggle_complete(self, task_id: str, completed: bool) -> None:
        """Forward the completion change; the list updates on the next snapshot."""
        fields = completion_fields(completed, self._clock())
        await self._store.update(self._user_id, task_id, fields)
        self._logger.info(
            "task completed" if completed else "task reopened",
            extra={"event": "task_toggled", "user_id": self._user_id, "task_id": task_id},
        )

    @_in_session
    def delete(self, task_id: str) -> int | None:
        """Remove a row now and delete it from the backend after the grace window.

        Returns the index the row was removed from, or ``None`` if it is not
        in the list.
        """
        if self._closed:
            raise RuntimeError("controller is closed")
        index = next((i for i, t in enumerate(self._tasks) if t.id == task_id), None)
        if index is None:
            return None
        task = self._tasks.pop(index)
        pending = _PendingDelete(task=task, index=index, generation=self._generation)
        pending.handle = asyncio.get_running_loop().call_later(
            self._grace_seconds, self._commit_delete, task_id
        )
        previous = self._pending.pop(task_id, None)
        if previous is not None and previous.handle is not None:
            previous.handle.cancel()
        self._pending[task_id] = pending
        self._logger.info(
            "task removed; undo available",
            extra={"event": "delete_pending", "user_id": self._user_id, "task_id": task_id},
        )
        self._notify(ListChange.item_removed(index))
        return index

    @_in_session
    def undo(self, task_id: str) -> bool:
        """Cancel a held delete. Returns False once the window has passed."""
        pending = self._pending.pop(task_id, None)
        if pending is None:
            return False
        if pending.handle is not None:
            pending.handle.cancel()
        get_metrics().increment("undo_count")
        if pending.generation == self._generation:
            self._reinsert(pending)
        else:
            self._rebuild_from_snapshot(task_id)
        return True

    @_in_session
    async def delete_now(self, task_id: str) -> None:
        """Delete without a grace window (the confirm-dialog path)."""
        await self._store.delete(self._user_id, task_id)
        get_metrics().increment("deletes_committed")

    @_in_session
    async def restore(self, task: Task) -> str:
        """Write a deleted task back under its original id."""
        if task.user_id != self._user_id:
            raise ValueError("task belongs to another user")
        return await self._store.create(task)

    @_in_session
    async def clear_completed(self) -> int:
        """Delete every completed task currently listed. Returns how many were deleted."""
        completed = [t for t in self._tasks if t.is_completed]
        for task in completed:
            await self._store.delete(self._user_id, task.id)
        if completed:
            get_metrics().increment("deletes_committed", amount=len(completed))
        self._logger.info(
            "completed tasks cleared",
            extra={"event": "clear_completed", "user_id": self._user_id, "count": len(completed)},
        )
        return len(completed)

    # ----------------------------
    # Internals
    # ----------------------------
    def _reinsert(self, pending: _PendingDelete) -> None:
        index = pending.index
        if index > len(self._tasks) or self.find(pending.task.id) is not None:
            self._logger.info(
                "undo could not reinsert",
                extra={"event": "undo_skipped", "task_id": pending.task.id, "index": index},
            )
            return
        self._tasks.insert(index, pending.task)
        self._notify(ListChange.item_inserted(index))

    def _rebuild_from_snapshot(self, task_id: str) -> None:
        if not any(t.id == task_id for t in self._last_snapshot):
            self._logger.info(
                "undo target no longer in backend",
                extra={"event": "undo_skipped", "task_id": task_id},
            )
            return
        self._resync()

    def _resync(self) -> None:
        self._tasks = [t for t in self._last_snapshot if t.id not in self._pending]
        sort_in_place(self._tasks, self._sort_mode)
        self._notify(ListChange.full_replace())

    @_in_session
    def _commit_delete(self, task_id: str) -> None:
        pending = self._pending.pop(task_id, None)
        if pending is None:
            return
        if pending.handle is not None:
            pending.handle.cancel()
        job = asyncio.get_running_loop().create_task(self._issue_delete(task_id))
        self._inflight.add(job)
        job.add_done_callback(self._inflight.discard)

    async def _issue_delete(self, task_id: str) -> None:
        try:
            await self._store.delete(self._user_id, task_id)
        except PersistenceError as e:
            # Nothing changed in the backend, so no snapshot will bring the row back
            self._logger.warning(
                "held delete failed; restoring row",
                extra={"event": "delete_failed", "user_id": self._user_id, "task_id": task_id},
            )
            self._resync()
            self._report(e)
            return
        get_metrics().increment("deletes_committed")

    def _notify(self, change: ListChange) -> None:
        if self._observer is None:
            return
        self._observer.on_list_changed(tuple(self._tasks), change)

    def _report(self, error: TaskManagerError) -> None:
        if self._observer is None:
            return
        self._observer.on_error(error)


__all__ = ["ListChange", "ListObserver", "ListStats", "TaskListController"]
