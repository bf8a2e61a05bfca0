from __future__ import annotations

import json
import logging
from typing import Any

import pytest

from taskmanager.observability import (
    ConsoleLogFormatter,
    Metrics,
    get_json_logger,
    get_session_context,
    use_session_context,
)


def _parse_json_lines(output: str) -> list[dict[str, Any]]:
    return [json.loads(line) for line in output.strip().splitlines() if line.strip()]


def test_json_logger_redacts_and_formats(capsys: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_FORMAT", "json")
    logger = get_json_logger("obs-test-json")
    logger.info(
        "hello",
        extra={
            "event": "greeting",
            "task_id": "t1",
            "attributes": {"password": "hunter2", "nested": {"token": "abc"}, "safe": "ok"},
        },
    )

    rec = _parse_json_lines(capsys.readouterr().err)[0]
    assert rec["msg"] == "hello"
    assert rec["level"] == "info"
    assert rec["event"] == "greeting"
    assert rec["task_id"] == "t1"
    assert rec["attributes"]["safe"] == "ok"
    assert rec["attributes"]["password"] == "[REDACTED]"
    assert rec["attributes"]["nested"]["token"] == "[REDACTED]"


def test_session_context_enriches_lines(capsys: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_FORMAT", "json")
    logger = get_json_logger("obs-test-session")
    with use_session_context("alice", "s-1") as ctx:
        assert get_session_context() == ctx
        logger.info("inside")
    logger.info("outside")
    assert get_session_context() is None

    inside, outside = _parse_json_lines(capsys.readouterr().err)
    assert inside["user_id"] == "alice"
    assert inside["session_id"] == "s-1"
    assert "user_id" not in outside


def test_module_level_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "INFO")
    monkeypatch.setenv("LOG_MODULE_LEVELS", "obs-quiet=ERROR")
    assert get_json_logger("obs-quiet.child").level == logging.ERROR
    assert get_json_logger("obs-loud").level == logging.INFO


def test_console_formatter_is_single_line() -> None:
    record = logging.LogRecord("taskmanager.store", logging.WARNING, __file__, 1, "boom", None, None)
    record.event = "store_error"
    record.task_id = "abcdef123456"
    line = ConsoleLogFormatter().format(record)
    assert "\n" not in line
    assert "WARNING" in line and "store_error" in line and "task=abcdef12" in line
    assert line.endswith("boom")


def test_metrics_counters() -> None:
    m = Metrics()
    m.increment("store_ops", {"op": "create"})
    m.increment("store_ops", {"op": "create"})
    m.increment("store_ops", {"op": "delete"}, amount=3)
    assert m.value("store_ops", {"op": "create"}) == 2
    assert m.total("store_ops") == 5
    assert {"name": "store_ops", "labels": {"op": "delete"}, "value": 3} in m.snapshot()
