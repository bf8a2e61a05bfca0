from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Callable, Mapping
from typing import Any, TypeVar, cast

import pydantic
import redis

from taskmanager.config import DEFAULT_KEY_PREFIX, DEFAULT_REDIS_URL, AppConfig
from taskmanager.errors import NotFoundError, PersistenceError, SubscriptionError
from taskmanager.models.task import Task
from taskmanager.observability import get_json_logger, get_metrics

from .interface import (
    ErrorCallback,
    SnapshotCallback,
    Subscription,
    TaskStore,
    check_update_fields,
    merge_fields,
    snapshot_order,
)

T = TypeVar("T")


class RedisTaskStore(TaskStore):
    """Redis-backed task store.

    Data structures:
    - Hash per user: key `{prefix}:user:{user_id}:tasks`, field=task id, value=compact JSON
    - Stream per user: key `{prefix}:user:{user_id}:changes`, one entry per write
      (`op`, `id`), trimmed approximately to `stream_maxlen`

    Subscribers block on the change stream and re-read the whole hash whenever
    entries arrive, so every delivery is a full snapshot.
    """

    def __init__(
        self,
        *,
        url: str | None = None,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        block_ms: int = 1000,
        retry_seconds: float = 1.0,
        stream_maxlen: int = 1000,
        client: Any | None = None,
    ) -> None:
        if client is not None:
            self._redis = client
        else:
            # decode_responses=True returns str everywhere for easier JSON handling
            self._redis = redis.Redis.from_url(url or DEFAULT_REDIS_URL, decode_responses=True)
        self._prefix = key_prefix.rstrip(":")
        self._block_ms = block_ms
        self._retry_seconds = retry_seconds
        self._stream_maxlen = stream_maxlen
        self._logger = get_json_logger("taskmanager.store")

    @classmethod
    def from_config(cls, cfg: AppConfig) -> RedisTaskStore:
        return cls(
            url=cfg.redis_url,
            key_prefix=cfg.key_prefix,
            block_ms=cfg.block_ms,
            retry_seconds=cfg.subscription_retry_seconds,
            stream_maxlen=cfg.change_stream_maxlen,
        )

    def get_client(self) -> Any:
        return self._redis

    def close(self) -> None:
        self._redis.close()

    # key helpers
    def _tasks_key(self, user_id: str) -> str:
        return f"{self._prefix}:user:{user_id}:tasks"

    def _changes_key(self, user_id: str) -> str:
        return f"{self._prefix}:user:{user_id}:changes"

    @staticmethod
    def _encode(task: Task) -> str:
        return json.dumps(task.to_record(), separators=(",", ":"))

    def _decode(self, task_id: str, raw: str) -> Task | None:
        try:
            return Task.from_record(json.loads(raw), task_id)
        except (json.JSONDecodeError, pydantic.ValidationError, TypeError, AttributeError):
            self._logger.warning(
                "invalid task record",
                extra={"event": "record_decode_failed", "task_id": task_id},
            )
            get_metrics().increment("record_decode_errors", {"store": "redis"})
            return None

    def _append_change(self, pipe: Any, user_id: str, op: str, task_id: str) -> None:
        pipe.xadd(
            self._changes_key(user_id),
            {"op": op, "id": task_id},
            maxlen=self._stream_maxlen,
            approximate=True,
        )

    # ----------------------------
    # Blocking operations (run in worker threads)
    # ----------------------------
    def _load_all(self, user_id: str) -> list[Task]:
        raw = cast(dict[str, str], self._redis.hgetall(self._tasks_key(user_id)) or {})
        tasks: list[Task] = []
        for task_id, payload in raw.items():
            task = self._decode(task_id, payload)
            if task is not None:
                tasks.append(task)
        return snapshot_order(tasks)

    def _get_sync(self, user_id: str, task_id: str) -> Task | None:
        raw = cast(str | None, self._redis.hget(self._tasks_key(user_id), task_id))
        if raw is None:
            return None
        return self._decode(task_id, raw)

    def _create_sync(self, task: Task) -> str:
        task_id = task.id or str(uuid.uuid4())
        stored = task.model_copy(update={"id": task_id})
        p = self._redis.pipeline()
        p.hset(self._tasks_key(task.user_id), task_id, self._encode(stored))
        self._append_change(p, task.user_id, "create", task_id)
        p.execute()
        return task_id

    def _update_sync(self, user_id: str, task_id: str, fields: Mapping[str, Any]) -> None:
        key = self._tasks_key(user_id)

        def _apply(pipe: Any) -> None:
            raw = pipe.hget(key, task_id)
            if raw is None:
                raise NotFoundError(task_id)
            try:
                current = Task.from_record(json.loads(raw), task_id)
            except (json.JSONDecodeError, pydantic.ValidationError, TypeError, AttributeError) as e:
                get_metrics().increment("record_decode_errors", {"store": "redis"})
                raise PersistenceError(f"stored task {task_id} is unreadable") from e
            merged = merge_fields(current, fields)
            pipe.multi()
            pipe.hset(key, task_id, self._encode(merged))
            self._append_change(pipe, user_id, "update", task_id)

        # WATCH the hash so a concurrent delete aborts and retries instead of resurrecting
        self._redis.transaction(_apply, key)

    def _delete_sync(self, user_id: str, task_id: str) -> bool:
        key = self._tasks_key(user_id)

        def _apply(pipe: Any) -> bool:
            if not pipe.hexists(key, task_id):
                return False
            pipe.multi()
            pipe.hdel(key, task_id)
            self._append_change(pipe, user_id, "delete", task_id)
            return True

        # Same WATCH as update: the row and its change entry go in one MULTI
        return bool(self._redis.transaction(_apply, key, value_from_callable=True))

    def _stream_tail_id(self, user_id: str) -> str:
        entries = self._redis.xrevrange(self._changes_key(user_id), "+", "-", count=1) or []
        return str(entries[0][0]) if entries else "0-0"

    def _wait_for_changes(self, user_id: str, cursor: str) -> str | None:
        resp = self._redis.xread(
            streams={self._changes_key(user_id): cursor}, count=100, block=self._block_ms
        )
        if not resp:
            return None
        # resp shape: [(stream, [(entry_id, {field: value, ...}), ...])]
        _, items = resp[0]
        if not items:
            return None
        return str(items[-1][0])

    # ----------------------------
    # Public API
    # ----------------------------
    async def _call(self, op: str, user_id: str, fn: Callable[..., T], *args: Any) -> T:
        metrics = get_metrics()
        metrics.increment("store_ops", {"op": op})
        try:
            return await asyncio.to_thread(fn, *args)
        except redis.exceptions.RedisError as e:
            self._logger.error(
                "store error",
                extra={
                    "event": "store_error",
                    "user_id": user_id,
                    "metadata": {"op": op, "error": str(e)[:200]},
                },
            )
            metrics.increment("store_errors", {"op": op})
            raise PersistenceError(f"{op} failed: {e}") from e

    async def create(self, task: Task) -> str:
        if not task.user_id:
            raise ValueError("task.user_id must be non-empty")
        task_id = await self._call("create", task.user_id, self._create_sync, task)
        self._logger.info(
            "task created",
            extra={"event": "task_created", "user_id": task.user_id, "task_id": task_id},
        )
        return task_id

    async def get(self, user_id: str, task_id: str) -> Task | None:
        return await self._call("get", user_id, self._get_sync, user_id, task_id)

    async def list_tasks(self, user_id: str) -> list[Task]:
        return await self._call("list", user_id, self._load_all, user_id)

    async def update(self, user_id: str, task_id: str, fields: Mapping[str, Any]) -> None:
        check_update_fields(fields)
        await self._call("update", user_id, self._update_sync, user_id, task_id, fields)
        self._logger.info(
            "task updated",
            extra={
                "event": "task_updated",
                "user_id": user_id,
                "task_id": task_id,
                "metadata": {"fields": sorted(fields)},
            },
        )

    async def delete(self, user_id: str, task_id: str) -> None:
        removed = await self._call("delete", user_id, self._delete_sync, user_id, task_id)
        self._logger.info(
            "task deleted" if removed else "task already absent",
            extra={"event": "task_deleted", "user_id": user_id, "task_id": task_id},
        )

    def subscribe(
        self,
        user_id: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        if not user_id:
            raise ValueError("user_id must be non-empty")
        sub = Subscription(user_id)
        loop = asyncio.get_running_loop()
        task = loop.create_task(
            self._feed(sub, on_snapshot, on_error), name=f"task-snapshots:{user_id}"
        )
        sub.attach(task)
        return sub

    async def _feed(
        self,
        sub: Subscription,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> None:
        user_id = sub.user_id
        metrics = get_metrics()
        cursor: str | None = None
        need_snapshot = True
        self._logger.info(
            "subscription started", extra={"event": "subscription_started", "user_id": user_id}
        )
        try:
            while sub.active:
                try:
                    if cursor is None:
                        # Read the tail before the snapshot so no write slips between them
                        cursor = await asyncio.to_thread(self._stream_tail_id, user_id)
                    if need_snapshot:
                        tasks = await asyncio.to_thread(self._load_all, user_id)
                        need_snapshot = False
                        if not sub.active:
                            return
                        metrics.increment("snapshots_delivered", {"store": "redis"})
                        self._deliver(on_snapshot, tasks, user_id)
                    latest = await asyncio.to_thread(self._wait_for_changes, user_id, cursor)
                    if latest is not None:
                        cursor = latest
                        need_snapshot = True
                except redis.exceptions.RedisError as e:
                    err = SubscriptionError(f"snapshot stream failed: {e}")
                    err.__cause__ = e
                    self._logger.warning(
                        "subscription error",
                        extra={
                            "event": "subscription_error",
                            "user_id": user_id,
                            "metadata": {"error": str(e)[:200]},
                        },
                    )
                    metrics.increment("subscription_errors", {"store": "redis"})
                    if sub.active:
                        self._deliver(on_error, err, user_id)
                    need_snapshot = True
                    await asyncio.sleep(self._retry_seconds)
        finally:
            self._logger.info(
                "subscription stopped",
                extra={"event": "subscription_stopped", "user_id": user_id},
            )

    def _deliver(self, callback: Callable[[Any], None], value: Any, user_id: str) -> None:
        try:
            callback(value)
        except Exception:
            # A faulty consumer must not end the subscription
            self._logger.exception(
                "subscriber callback failed",
                extra={"event": "subscriber_callback_failed", "user_id": user_id},
            )


__all__ = ["RedisTaskStore"]
