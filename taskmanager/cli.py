from __future__ import annotations

import argparse
import asyncio
import datetime as _dt
import sys
from collections.abc import Callable, Sequence
from typing import Any, TextIO

from taskmanager.auth import AuthGateway, SessionAuthGateway, require_user
from taskmanager.config import AppConfig, load_config
from taskmanager.controller import ListChange, TaskListController
from taskmanager.display import format_detail, format_list, summary_text
from taskmanager.editor import TaskDraft, TaskEditor
from taskmanager.errors import NotFoundError, TaskManagerError
from taskmanager.models.task import CATEGORIES, Priority, Task
from taskmanager.sorting import SortMode
from taskmanager.store.interface import TaskStore


def _parse_due(value: str) -> _dt.datetime:
    """Accept an ISO date or datetime; dates mean end of that day in UTC."""
    try:
        if len(value) == 10:
            day = _dt.date.fromisoformat(value)
            return _dt.datetime.combine(day, _dt.time(23, 59), tzinfo=_dt.UTC)
        parsed = _dt.datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid due date: {value!r}") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=_dt.UTC)


class _SnapshotWaiter:
    """Observer that records full-list deliveries so a command can await them."""

    def __init__(self, on_list: Callable[[Sequence[Task]], None] | None = None) -> None:
        self.latest: list[Task] = []
        self.count = 0
        self.errors: list[TaskManagerError] = []
        self._on_list = on_list
        self._event = asyncio.Event()

    def on_list_changed(self, tasks: Sequence[Task], change: ListChange) -> None:
        if change.kind != "full_replace":
            return
        self.latest = list(tasks)
        self.count += 1
        self._event.set()
        if self._on_list is not None:
            self._on_list(tasks)

    def on_error(self, error: TaskManagerError) -> None:
        self.errors.append(error)
        if self.count:
            sys.stderr.write(f"warning: {error}\n")
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()
        self._event.clear()


async def _first_snapshot(controller: TaskListController, waiter: _SnapshotWaiter) -> None:
    """Start the session and wait for its first list; fail on an error that comes first."""
    controller.start()
    await waiter.wait()
    if not waiter.count:
        raise waiter.errors[0]


def _add_task_fields(p: argparse.ArgumentParser, *, required: bool) -> None:
    p.add_argument("--title", required=required)
    p.add_argument("--description", required=required)
    p.add_argument("--priority", choices=[m.value for m in Priority])
    p.add_argument("--category", help=f"e.g. {', '.join(CATEGORIES)}")
    p.add_argument("--due", type=_parse_due, help="ISO date or datetime")
    p.add_argument("--tag", action="append", dest="tags")
    p.add_argument("--notes")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser("taskmanager")
    parser.add_argument("--user", help="signed-in user id (default: $TASKMANAGER_USER)")
    parser.add_argument("--redis-url")
    parser.add_argument("--prefix")
    sub = parser.add_subparsers(dest="cmd")

    sort_choices = [m.value for m in SortMode]
    p_list = sub.add_parser("list", help="Print the current task list")
    p_list.add_argument("--sort", choices=sort_choices, default=SortMode.PRIORITY_THEN_RECENCY.value)

    p_watch = sub.add_parser("watch", help="Print the task list on every change")
    p_watch.add_argument("--sort", choices=sort_choices, default=SortMode.PRIORITY_THEN_RECENCY.value)
    p_watch.add_argument("--max-snapshots", type=int)

    p_add = sub.add_parser("add", help="Create a task")
    _add_task_fields(p_add, required=False)

    p_edit = sub.add_parser("edit", help="Edit a task")
    p_edit.add_argument("task_id")
    _add_task_fields(p_edit, required=False)

    for name, help_text in (
        ("show", "Show one task"),
        ("done", "Mark a task completed"),
        ("reopen", "Mark a task not completed"),
        ("rm", "Delete a task"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("task_id")

    sub.add_parser("clear-completed", help="Delete all completed tasks")
    return parser


def _apply_fields(draft: TaskDraft, args: argparse.Namespace) -> TaskDraft:
    for attr, key in (
        ("title", "title"),
        ("description", "description"),
        ("priority", "priority"),
        ("category", "category"),
        ("due_date", "due"),
        ("tags", "tags"),
        ("notes", "notes"),
    ):
        value: Any = getattr(args, key, None)
        if value is not None:
            setattr(draft, attr, value)
    return draft


async def run_command(
    args: argparse.Namespace,
    store: TaskStore,
    auth: AuthGateway,
    cfg: AppConfig,
    out: TextIO | None = None,
) -> int:
    out = out or sys.stdout
    cmd = args.cmd

    def emit(lines: Sequence[str] | str) -> None:
        if isinstance(lines, str):
            lines = [lines]
        for line in lines:
            out.write(line + "\n")

    editor = TaskEditor(store, auth)
    if cmd == "add":
        task_id = await editor.save(_apply_fields(TaskDraft(), args))
        emit(task_id)
        return 0
    if cmd == "edit":
        draft = await editor.load(args.task_id)
        await editor.save(_apply_fields(draft, args), task_id=args.task_id)
        emit(args.task_id)
        return 0

    user_id = require_user(auth)
    if cmd == "show":
        task = await store.get(user_id, args.task_id)
        if task is None:
            raise NotFoundError(args.task_id)
        emit(format_detail(task))
        return 0

    def print_list(tasks: Sequence[Task]) -> None:
        emit(format_list(tasks))

    printing = cmd == "watch"
    waiter = _SnapshotWaiter(print_list if printing else None)
    controller = TaskListController(
        store,
        user_id,
        waiter,
        sort_mode=SortMode(getattr(args, "sort", SortMode.PRIORITY_THEN_RECENCY.value)),
        grace_seconds=cfg.undo_grace_seconds,
    )
    try:
        if cmd in ("done", "reopen"):
            await controller.toggle_complete(args.task_id, cmd == "done")
            return 0
        if cmd == "rm":
            await controller.delete_now(args.task_id)
            return 0
        if cmd == "list":
            await _first_snapshot(controller, waiter)
            emit(summary_text(controller.stats()))
            emit(format_list(controller.tasks))
            return 0
        if cmd == "clear-completed":
            await _first_snapshot(controller, waiter)
            emit(f"deleted {await controller.clear_completed()} completed tasks")
            return 0
        if cmd == "watch":
            await _first_snapshot(controller, waiter)
            emit(summary_text(controller.stats()))
            limit = args.max_snapshots
            while limit is None or waiter.count < limit:
                seen = waiter.count
                await waiter.wait()
                if waiter.count > seen:
                    emit(summary_text(controller.stats()))
            return 0
    finally:
        await controller.close()
    raise ValueError(f"unknown command: {cmd}")


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        raise SystemExit(2)

    overrides: dict[str, str] = {}
    if args.redis_url:
        overrides["REDIS_URL"] = args.redis_url
    if args.prefix:
        overrides["TASK_STORE_PREFIX"] = args.prefix
    cfg = load_config(overrides)
    auth = SessionAuthGateway(args.user or cfg.default_user)

    # Deferred so --help works without the redis package installed
    from taskmanager.store.redis_store import RedisTaskStore

    store = RedisTaskStore.from_config(cfg)
    try:
        code = asyncio.run(run_command(args, store, auth, cfg))
    except TaskManagerError as exc:
        sys.stderr.write(f"error: {exc}\n")
        code = 1
    except KeyboardInterrupt:
        code = 130
    finally:
        store.close()
    raise SystemExit(code)


if __name__ == "__main__":
    main()
