from __future__ import annotations

import math
from collections.abc import Callable, Iterable
from enum import StrEnum
from typing import Any

from taskmanager.models.task import Task


class SortMode(StrEnum):
    PRIORITY_THEN_RECENCY = "priority"
    RECENCY_ONLY = "recency"
    COMPLETION_ONLY = "completion"
    DUE_DATE = "due"


# Every policy puts open tasks before completed ones. Keys are tuples so that a
# single stable sort applies all levels at once; descending timestamps are negated.


def _priority_then_recency(task: Task) -> tuple[Any, ...]:
    return (task.is_completed, task.priority_rank, -task.created_at.timestamp())


def _recency_only(task: Task) -> tuple[Any, ...]:
    return (task.is_completed, -task.created_at.timestamp())


def _completion_only(task: Task) -> tuple[Any, ...]:
    return (task.is_completed,)


def _due_date(task: Task) -> tuple[Any, ...]:
    due = task.due_date.timestamp() if task.due_date is not None else math.inf
    return (task.is_completed, due)


SORT_KEYS: dict[SortMode, Callable[[Task], tuple[Any, ...]]] = {
    SortMode.PRIORITY_THEN_RECENCY: _priority_then_recency,
    SortMode.RECENCY_ONLY: _recency_only,
    SortMode.COMPLETION_ONLY: _completion_only,
    SortMode.DUE_DATE: _due_date,
}


def sort_tasks(tasks: Iterable[Task], mode: SortMode = SortMode.PRIORITY_THEN_RECENCY) -> list[Task]:
    """Return ``tasks`` ordered by ``mode``. Ties keep their incoming order."""
    return sorted(tasks, key=SORT_KEYS[SortMode(mode)])


def sort_in_place(tasks: list[Task], mode: SortMode = SortMode.PRIORITY_THEN_RECENCY) -> None:
    tasks.sort(key=SORT_KEYS[SortMode(mode)])


__all__ = ["SORT_KEYS", "SortMode", "sort_in_place", "sort_tasks"]
