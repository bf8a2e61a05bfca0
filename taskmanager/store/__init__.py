from .interface import Subscription, TaskStore

__all__ = ["Subscription", "TaskStore"]
