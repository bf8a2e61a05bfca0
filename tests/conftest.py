from __future__ import annotations

import datetime as dt
import os
import time
import uuid
from collections.abc import Callable, Generator
from typing import Any

import pytest

from taskmanager.models.task import Task
from taskmanager.observability import reset_metrics

FIXED_NOW = dt.datetime(2024, 5, 15, 12, 0, tzinfo=dt.UTC)


def _redis_ping(url: str) -> bool:
    try:
        import redis

        r = redis.Redis.from_url(url, socket_connect_timeout=0.5)
        return bool(r.ping())
    except Exception:
        return False


def _redis_candidate() -> str:
    return os.getenv("REDIS_URL", "redis://localhost:6379/0")


@pytest.fixture(scope="session")
def redis_url() -> str:
    """Provide a reachable Redis URL (``REDIS_URL`` or localhost) or skip."""
    url = _redis_candidate()
    if _redis_ping(url):
        return url
    pytest.skip("Redis not available; set REDIS_URL or start a local Redis")


@pytest.fixture()
def unique_prefix() -> str:
    # millisecond prefix plus uuid to avoid collisions between runs
    return f"test:{int(time.time() * 1000)}:{uuid.uuid4().hex[:8]}"


@pytest.fixture(autouse=True)
def _fresh_metrics() -> Generator[None, None, None]:
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture()
def now() -> dt.datetime:
    return FIXED_NOW


@pytest.fixture()
def make_task() -> Callable[..., Task]:
    """Build tasks with distinct, increasing ``created_at`` unless given."""
    counter = {"n": 0}

    def _make(title: str = "Task", **kwargs: Any) -> Task:
        counter["n"] += 1
        kwargs.setdefault("id", f"t{counter['n']}")
        kwargs.setdefault("user_id", "alice")
        kwargs.setdefault("description", f"{title} details")
        kwargs.setdefault("created_at", FIXED_NOW - dt.timedelta(hours=100 - counter["n"]))
        return Task(title=title, **kwargs)

    return _make


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip Redis-backed tests up front when no Redis is reachable."""
    if _redis_ping(_redis_candidate()):
        return
    for item in items:
        fixture_names = set(getattr(item, "fixturenames", []) or [])
        if "redis_url" in fixture_names:
            item.add_marker(
                pytest.mark.skip(reason="Redis not available; set REDIS_URL or start local Redis")
            )
