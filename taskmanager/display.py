"""Plain-text rendering helpers for the command line front end."""

from __future__ import annotations

import datetime as _dt
from collections.abc import Sequence

from taskmanager.controller import ListStats
from taskmanager.models.task import Task

_PRIORITY_MARK = {"High": "!!!", "Medium": "!! ", "Low": "!  "}


def greeting(now: _dt.datetime) -> str:
    hour = now.hour
    if 5 <= hour <= 11:
        return "Good Morning"
    if 12 <= hour <= 16:
        return "Good Afternoon"
    if 17 <= hour <= 20:
        return "Good Evening"
    return "Good Night"


def welcome(user_label: str) -> str:
    name = user_label.split("@", 1)[0] or "User"
    return f"Welcome back, {name[:1].upper()}{name[1:]}!"


def summary_text(stats: ListStats) -> str:
    if stats.total == 0:
        return "No tasks yet"
    return f"{stats.completed} of {stats.total} completed ({stats.percent}%)"


def format_row(task: Task, now: _dt.datetime | None = None) -> str:
    box = "[x]" if task.is_completed else "[ ]"
    mark = _PRIORITY_MARK.get(task.priority, "   ")
    tags = f" #{' #'.join(task.tags)}" if task.tags else ""
    return (
        f"{box} {mark} {task.title} ({task.category}) - {task.status_text(now)}{tags}"
        f"  [{task.id}]"
    )


def format_list(tasks: Sequence[Task], now: _dt.datetime | None = None) -> list[str]:
    return [format_row(t, now) for t in tasks]


def format_detail(task: Task, now: _dt.datetime | None = None) -> list[str]:
    lines = [
        f"id:          {task.id}",
        f"title:       {task.title}",
        f"description: {task.description}",
        f"priority:    {task.priority}",
        f"category:    {task.category}",
        f"status:      {task.status_text(now)}",
        f"created:     {task.created_at.isoformat()}",
        f"due:         {task.due_date.isoformat() if task.due_date else '-'}",
    ]
    if task.tags:
        lines.append(f"tags:        {', '.join(task.tags)}")
    if task.notes:
        lines.append(f"notes:       {task.notes}")
    return lines


__all__ = ["format_detail", "format_list", "format_row", "greeting", "summary_text", "welcome"]
