from .task import CATEGORIES, DEFAULT_CATEGORY, Priority, Task, completion_fields, now_ms

__all__ = ["CATEGORIES", "DEFAULT_CATEGORY", "Priority", "Task", "completion_fields", "now_ms"]
