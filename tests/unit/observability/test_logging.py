"""
shipwright — unit tests for observability logging

File: tests/unit/observability/test_logging.py

Purpose
- Validate structured JSON logging with redaction, correlation metadata and queue-backed delivery.

What this test file should cover
- JSON line validity and redaction guarantees.
- Correlation field propagation, including the session id on every record.
- structlog decision logs landing in the same sink.
- Multi-threaded logging stability and queue drain on shutdown.

Non-functional requirements
- Deterministic and non-flaky.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import threading
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from shipwright.observability.logging import (
    LoggingConfig,
    correlation_scope,
    default_log_redactor,
    get_active_logging_handle,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()
    structlog.reset_defaults()


def _logger_name() -> str:
    return f"shipwright.tests.logging.{uuid4().hex}"


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


@pytest.mark.unit
def test_json_logging_redacts_secrets_and_preserves_correlation_fields(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            session_id="session-redaction",
            base_log_dir=tmp_path,
            logger_name=logger_name,
        )
    )
    logger = logging.getLogger(logger_name)

    with correlation_scope(run_id="run-123", stage="plan_gate"):
        logger.info(
            "payload token=tok-FAKE and api_key=sk-FAKE123456789012345",
            extra={"nested": {"password": "hunter2", "safe": "ok"}},
        )
    logger.info("outside scope", extra={"header": "Bearer abc.def"})

    shutdown_logging(handle)

    assert handle.log_path == tmp_path / "session-redaction" / "shipwright.jsonl"
    parsed = _read_json_lines(handle.log_path)
    assert len(parsed) == 2
    first, second = parsed
    assert first["session_id"] == "session-redaction"
    assert first["run_id"] == "run-123"
    assert first["stage"] == "plan_gate"
    assert first["fields"] == {"nested": {"password": "***REDACTED***", "safe": "ok"}}
    assert second["session_id"] == "session-redaction"
    assert "run_id" not in second

    line = handle.log_path.read_text(encoding="utf-8")
    assert "tok-FAKE" not in line
    assert "sk-FAKE" not in line
    assert "hunter2" not in line
    assert "abc.def" not in line
    assert "***REDACTED***" in line


@pytest.mark.unit
def test_correlation_scope_nests_and_resets() -> None:
    assert get_correlation_context() == {}
    with correlation_scope(run_id="run-1"):
        with correlation_scope(stage="dispatch"):
            assert get_correlation_context() == {"run_id": "run-1", "stage": "dispatch"}
        with correlation_scope(run_id=None):
            assert get_correlation_context() == {}
        assert get_correlation_context() == {"run_id": "run-1"}
    assert get_correlation_context() == {}

    with pytest.raises(ValueError):
        with correlation_scope(run_id="  "):
            pass


@pytest.mark.unit
def test_default_redactor_handles_nested_values() -> None:
    redacted = default_log_redactor(
        {"Authorization": "Bearer x", "items": ["password=abc", "plain"], "count": 3}
    )
    assert redacted == {
        "Authorization": "***REDACTED***",
        "items": ["password=***REDACTED***", "plain"],
        "count": 3,
    }


@pytest.mark.unit
def test_setup_logging_wrapper_uses_observability_config(tmp_path: Path) -> None:
    logger = setup_logging(
        {
            "log_level": "INFO",
            "log_dir": str(tmp_path),
            "redact_secrets": True,
        },
        session_id="session-wrapper",
    )

    assert logger.name == "shipwright"
    logger.info("hello", extra={"token": "t-123"})
    logger.debug("not emitted")
    structlog.get_logger("shipwright.control_plane.dispatcher").info(
        "run_dispatch_started", run_id="run-9", attempt=1
    )
    shutdown_logging()

    log_path = tmp_path / "session-wrapper" / "shipwright.jsonl"
    content = log_path.read_text(encoding="utf-8")
    assert "t-123" not in content
    assert "not emitted" not in content

    parsed = _read_json_lines(log_path)
    assert [entry["message"] for entry in parsed] == ["hello", "run_dispatch_started"]
    decision = parsed[1]
    assert decision["logger"] == "shipwright.control_plane.dispatcher"
    assert decision["run_id"] == "run-9"
    assert decision["fields"]["attempt"] == 1  # type: ignore[index]


@pytest.mark.unit
def test_setup_rejects_bad_configuration(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        setup_structured_logging(LoggingConfig(session_id=" ", base_log_dir=tmp_path))
    with pytest.raises(ValueError):
        setup_structured_logging(
            LoggingConfig(session_id="s", base_log_dir=tmp_path, log_filename="a/b.jsonl")
        )
    with pytest.raises(ValueError):
        setup_structured_logging(
            LoggingConfig(session_id="s", base_log_dir=tmp_path, level="CHATTY")
        )


@pytest.mark.unit
def test_multithreaded_logging_produces_valid_json_lines(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            session_id="session-threaded",
            base_log_dir=tmp_path,
            logger_name=logger_name,
            queue_size=4096,
        )
    )
    logger = logging.getLogger(logger_name)

    total_threads = 8
    per_thread = 40

    def worker(thread_idx: int) -> None:
        with correlation_scope(run_id=f"run-{thread_idx}"):
            for i in range(per_thread):
                logger.info(
                    f"thread={thread_idx} index={i} token=tok-secret-{thread_idx}-{i}",
                    extra={"api_key": f"sk-FAKE-{thread_idx}-{i}", "thread_idx": thread_idx},
                )

    threads = [threading.Thread(target=worker, args=(idx,)) for idx in range(total_threads)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    shutdown_logging(handle)

    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == total_threads * per_thread
    for line in lines:
        parsed = json.loads(line)
        assert isinstance(parsed, dict)
        assert parsed["run_id"] == f"run-{parsed['fields']['thread_idx']}"
        assert "tok-secret" not in line
        assert "sk-FAKE" not in line


@pytest.mark.unit
def test_queue_handler_non_blocking_and_shutdown_flushes(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            session_id="session-flush",
            base_log_dir=tmp_path,
            logger_name=logger_name,
            queue_size=10_000,
        )
    )
    logger = logging.getLogger(logger_name)

    queue_handlers = [h for h in logger.handlers if isinstance(h, logging.handlers.QueueHandler)]
    assert queue_handlers, "expected queue-backed non-blocking logging"
    assert get_active_logging_handle() is handle

    expected = 300
    for i in range(expected):
        logger.info("message %s", i)

    shutdown_logging(handle)
    shutdown_logging(handle)

    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert handle.dropped_records == 0
    assert handle.is_shutdown
    assert len(lines) == expected
    assert get_active_logging_handle() is None


@pytest.mark.unit
def test_new_setup_replaces_previous_session(tmp_path: Path) -> None:
    first = setup_structured_logging(
        LoggingConfig(session_id="one", base_log_dir=tmp_path, logger_name=_logger_name())
    )
    second = setup_structured_logging(
        LoggingConfig(session_id="two", base_log_dir=tmp_path, logger_name=_logger_name())
    )

    assert first.is_shutdown
    assert get_active_logging_handle() is second
