from __future__ import annotations

import datetime as dt
from collections.abc import Callable

import pytest

from taskmanager.auth import SessionAuthGateway, require_user
from taskmanager.editor import (
    DESCRIPTION_REQUIRED,
    TITLE_REQUIRED,
    TaskDraft,
    TaskEditor,
    validate,
)
from taskmanager.errors import AuthRequiredError, NotFoundError, ValidationError
from taskmanager.models.task import Task
from tests.helpers.store import InMemoryTaskStore


def test_validate_title_only_error() -> None:
    result = validate("", "x")
    assert result.title_error == TITLE_REQUIRED
    assert result.description_error is None
    assert not result.ok


def test_validate_both_errors() -> None:
    result = validate("", "")
    assert result.title_error == TITLE_REQUIRED
    assert result.description_error == DESCRIPTION_REQUIRED


def test_validate_ok() -> None:
    assert validate("a", "b").ok


def test_validate_trims_whitespace() -> None:
    result = validate("   ", "\t\n")
    assert result.title_error and result.description_error


def test_require_user() -> None:
    auth = SessionAuthGateway()
    with pytest.raises(AuthRequiredError):
        require_user(auth)
    auth.sign_in("alice")
    assert require_user(auth) == "alice"
    auth.sign_out()
    auth.sign_out()
    assert auth.current_user_id() is None


@pytest.mark.asyncio
async def test_save_creates_task_for_signed_in_user() -> None:
    store = InMemoryTaskStore()
    editor = TaskEditor(store, SessionAuthGateway("alice"))

    task_id = await editor.save(
        TaskDraft(title="  Pay rent ", description="before Friday", priority="High", tags=["home"])
    )

    saved = await store.get("alice", task_id)
    assert saved is not None
    assert saved.id == task_id
    assert saved.title == "Pay rent"
    assert saved.user_id == "alice"
    assert saved.priority == "High"
    assert saved.tags == ["home"]
    assert saved.is_completed is False


@pytest.mark.asyncio
async def test_invalid_draft_never_reaches_store() -> None:
    store = InMemoryTaskStore()
    editor = TaskEditor(store, SessionAuthGateway("alice"))

    with pytest.raises(ValidationError) as ei:
        await editor.save(TaskDraft(title="", description=""))

    assert ei.value.result.title_error == TITLE_REQUIRED
    assert ei.value.result.description_error == DESCRIPTION_REQUIRED
    assert store.calls == []


@pytest.mark.asyncio
async def test_save_without_user_is_aborted() -> None:
    store = InMemoryTaskStore()
    editor = TaskEditor(store, SessionAuthGateway())
    with pytest.raises(AuthRequiredError):
        await editor.save(TaskDraft(title="a", description="b"))
    assert store.calls == []


@pytest.mark.asyncio
async def test_edit_keeps_owner_and_creation_time(make_task: Callable[..., Task], now: dt.datetime) -> None:
    store = InMemoryTaskStore()
    original = make_task("Draft", category="Work")
    store.seed(original)
    editor = TaskEditor(store, SessionAuthGateway("alice"))

    draft = await editor.load(original.id)
    assert draft.title == "Draft"
    draft.title = "Final"
    draft.due_date = now + dt.timedelta(days=1)
    await editor.save(draft, task_id=original.id)

    saved = await store.get("alice", original.id)
    assert saved is not None
    assert saved.title == "Final"
    assert saved.category == "Work"
    assert saved.created_at == original.created_at
    assert saved.user_id == "alice"
    assert saved.due_date == now + dt.timedelta(days=1)


@pytest.mark.asyncio
async def test_load_missing_task() -> None:
    editor = TaskEditor(InMemoryTaskStore(), SessionAuthGateway("alice"))
    with pytest.raises(NotFoundError):
        await editor.load("nope")
