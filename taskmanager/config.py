from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_KEY_PREFIX = "taskmanager"
# Length of a long snackbar on the mobile client the list was designed for.
DEFAULT_UNDO_GRACE_SECONDS = 2.75


@dataclass(slots=True)
class AppConfig:
    redis_url: str
    key_prefix: str
    undo_grace_seconds: float
    block_ms: int
    subscription_retry_seconds: float
    change_stream_maxlen: int
    default_user: str | None


def _float(raw: str | None, default: float, minimum: float) -> float:
    try:
        value = float((raw or "").strip()) if (raw or "").strip() else default
    except ValueError:
        value = default
    return max(minimum, value)


def _int(raw: str | None, default: int, minimum: int) -> int:
    try:
        value = int((raw or "").strip()) if (raw or "").strip() else default
    except ValueError:
        value = default
    return max(minimum, value)


def load_config(env: dict[str, str] | None = None) -> AppConfig:
    e: dict[str, Any] = dict(os.environ)
    if env:
        e.update(env)
    prefix = (e.get("TASK_STORE_PREFIX") or DEFAULT_KEY_PREFIX).strip().rstrip(":")
    user = (e.get("TASKMANAGER_USER") or "").strip() or None
    return AppConfig(
        redis_url=e.get("REDIS_URL") or DEFAULT_REDIS_URL,
        key_prefix=prefix or DEFAULT_KEY_PREFIX,
        undo_grace_seconds=_float(e.get("UNDO_GRACE_SECONDS"), DEFAULT_UNDO_GRACE_SECONDS, 0.0),
        block_ms=_int(e.get("STORE_BLOCK_MS"), 1000, 10),
        subscription_retry_seconds=_float(e.get("SUBSCRIPTION_RETRY_SECONDS"), 1.0, 0.05),
        change_stream_maxlen=_int(e.get("CHANGE_STREAM_MAXLEN"), 1000, 10),
        default_user=user,
    )


__all__ = ["AppConfig", "load_config"]
