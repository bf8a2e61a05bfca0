from __future__ import annotations

import asyncio
import datetime as dt
import json
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from taskmanager.errors import NotFoundError, PersistenceError
from taskmanager.models.task import Task
from taskmanager.store.redis_store import RedisTaskStore


@pytest_asyncio.fixture()
async def store(redis_url: str, unique_prefix: str) -> AsyncGenerator[RedisTaskStore, None]:
    s = RedisTaskStore(url=redis_url, key_prefix=unique_prefix, block_ms=100, retry_seconds=0.05)
    yield s
    client = s.get_client()
    keys = list(client.scan_iter(f"{unique_prefix}:*"))
    if keys:
        client.delete(*keys)
    s.close()


async def _next(queue: asyncio.Queue[list[Task]], timeout: float = 3.0) -> list[Task]:
    return await asyncio.wait_for(queue.get(), timeout)


@pytest.mark.asyncio
async def test_create_get_and_persist_across_instances(
    store: RedisTaskStore, redis_url: str, unique_prefix: str
) -> None:
    task_id = await store.create(Task(title="Write tests", description="d", user_id="alice"))
    assert task_id

    fetched = await store.get("alice", task_id)
    assert fetched is not None
    assert fetched.id == task_id
    assert fetched.title == "Write tests"

    other = RedisTaskStore(url=redis_url, key_prefix=unique_prefix)
    again = await other.get("alice", task_id)
    assert again is not None and again.id == task_id
    assert await other.get("bob", task_id) is None
    other.close()


@pytest.mark.asyncio
async def test_update_merges_fields_and_rejects_missing(store: RedisTaskStore) -> None:
    task_id = await store.create(Task(title="Edit me", user_id="alice", tags=["x"]))
    await store.update("alice", task_id, {"title": "Edited", "is_completed": True, "completed_at": 9})

    got = await store.get("alice", task_id)
    assert got is not None
    assert (got.title, got.is_completed, got.completed_at, got.tags) == ("Edited", True, 9, ["x"])

    with pytest.raises(NotFoundError):
        await store.update("alice", "missing", {"title": "x"})
    with pytest.raises(ValueError):
        await store.update("alice", task_id, {"user_id": "mallory"})


@pytest.mark.asyncio
async def test_delete_is_idempotent(store: RedisTaskStore) -> None:
    task_id = await store.create(Task(title="Remove me", user_id="alice"))
    await store.delete("alice", task_id)
    await store.delete("alice", task_id)
    assert await store.get("alice", task_id) is None


@pytest.mark.asyncio
async def test_subscription_delivers_full_snapshots(store: RedisTaskStore) -> None:
    base = dt.datetime(2024, 1, 1, tzinfo=dt.UTC)
    first = await store.create(Task(title="first", user_id="alice", created_at=base))

    queue: asyncio.Queue[list[Task]] = asyncio.Queue()
    errors: list[Exception] = []
    sub = store.subscribe("alice", queue.put_nowait, errors.append)
    try:
        initial = await _next(queue)
        assert [t.id for t in initial] == [first]

        second = await store.create(
            Task(title="second", user_id="alice", created_at=base + dt.timedelta(minutes=1))
        )
        after_create = await _next(queue)
        assert [t.id for t in after_create] == [first, second]

        await store.delete("alice", first)
        after_delete = await _next(queue)
        assert [t.id for t in after_delete] == [second]
        assert errors == []
    finally:
        assert sub.cancel() is True
        assert sub.cancel() is False
        await sub.wait_closed()
    assert not sub.active


@pytest.mark.asyncio
async def test_undecodable_record_is_skipped(store: RedisTaskStore, unique_prefix: str) -> None:
    good = await store.create(Task(title="good", user_id="alice"))
    client = store.get_client()
    client.hset(f"{unique_prefix}:user:alice:tasks", "broken", "{not json")
    client.hset(
        f"{unique_prefix}:user:alice:tasks", "wrongtype", json.dumps({"created_at": "yesterday"})
    )

    tasks = await store.list_tasks("alice")
    assert [t.id for t in tasks] == [good]


@pytest.mark.asyncio
async def test_delete_writes_one_change_entry_only_when_removed(
    store: RedisTaskStore, unique_prefix: str
) -> None:
    task_id = await store.create(Task(title="Remove me", user_id="alice"))
    client = store.get_client()
    changes = f"{unique_prefix}:user:alice:changes"
    assert client.xlen(changes) == 1

    await store.delete("alice", task_id)
    await store.delete("alice", task_id)

    entries = client.xrange(changes)
    assert [fields for _, fields in entries] == [
        {"op": "create", "id": task_id},
        {"op": "delete", "id": task_id},
    ]


@pytest.mark.asyncio
async def test_update_reports_bad_values_and_corrupt_records(
    store: RedisTaskStore, unique_prefix: str
) -> None:
    task_id = await store.create(Task(title="Check me", user_id="alice"))
    with pytest.raises(ValueError, match="is_completed"):
        await store.update("alice", task_id, {"is_completed": "maybe"})
    got = await store.get("alice", task_id)
    assert got is not None and got.is_completed is False

    store.get_client().hset(f"{unique_prefix}:user:alice:tasks", "rotten", "{not json")
    with pytest.raises(PersistenceError, match="rotten"):
        await store.update("alice", "rotten", {"title": "x"})
