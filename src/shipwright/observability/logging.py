"""
shipwright — session logging

File: src/shipwright/observability/logging.py

Purpose
- One JSON-lines log per CLI or worker session at
  ``<log_dir>/<session_id>/shipwright.jsonl``, optionally mirrored to stderr.
- Producers never block: records go through a bounded queue and a
  ``QueueListener`` thread writes them out. A full queue drops the record and
  counts it.
- Correlation fields bound with :func:`correlation_scope` (``run_id``,
  ``stage``, ...) are captured on the producing thread and promoted to
  top-level keys of every record in scope.
- structlog decision logs (dispatcher, gate) reach the same sinks through
  :func:`configure_structlog`.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import math
import queue
import sys
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import structlog

from shipwright.domain.models import JSONValue
from shipwright.observability.redaction import (
    LogRedactor,
    default_log_redactor,
    keep_secrets,
)

LOG_FILENAME: Final[str] = "shipwright.jsonl"
ROOT_LOGGER: Final[str] = "shipwright"

# Promoted to top-level keys when set as a string on the record.
_PROMOTED: Final[tuple[str, ...]] = ("session_id", "run_id", "stage", "artifact_id", "operation")

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_BUILTIN_ATTRS: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName", "correlation"}

_Bound = tuple[tuple[str, str], ...]
_bound_fields: contextvars.ContextVar[_Bound] = contextvars.ContextVar(
    "shipwright_log_correlation", default=()
)


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    session_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = ROOT_LOGGER
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = LOG_FILENAME
    log_to_stderr: bool = False
    redact_secrets: bool = True


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------


def get_correlation_context() -> dict[str, str]:
    return dict(_bound_fields.get())


def set_correlation_fields(**fields: str | None) -> contextvars.Token[_Bound]:
    """Bind fields (``None`` unbinds one) and return the token that undoes it."""

    bound = get_correlation_context()
    for key, value in fields.items():
        name = _required_text(key, "correlation key")
        if value is None:
            bound.pop(name, None)
        else:
            bound[name] = _required_text(value, "correlation value")
    return _bound_fields.set(tuple(bound.items()))


def reset_correlation_fields(token: contextvars.Token[_Bound]) -> None:
    _bound_fields.reset(token)


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    token = set_correlation_fields(**fields)
    try:
        yield
    finally:
        reset_correlation_fields(token)


# ---------------------------------------------------------------------------
# Handlers and formatting
# ---------------------------------------------------------------------------


class _ContextQueueHandler(logging.handlers.QueueHandler):
    def __init__(self, records: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(records)
        self._records = records
        self._drop_lock = threading.Lock()
        self._dropped = 0

    @property
    def dropped(self) -> int:
        with self._drop_lock:
            return self._dropped

    @property
    def pending(self) -> int:
        return self._records.unfinished_tasks

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The listener thread cannot see this thread's contextvars.
        bound = get_correlation_context()
        if bound:
            record.correlation = bound
        prepared: logging.LogRecord = super().prepare(record)
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._drop_lock:
                self._dropped += 1


class JsonLineFormatter(logging.Formatter):
    """Render a record as one key-sorted JSON object, redacted."""

    def __init__(self, session_id: str, redactor: LogRedactor = default_log_redactor) -> None:
        super().__init__()
        self._session_id = session_id
        self._redact = redactor

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, JSONValue] = {
            "timestamp": _utc_stamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": _as_text(self._redact(record.getMessage())),
            "session_id": self._session_id,
        }
        line.update(_correlation_of(record))

        extras = {
            key: _jsonable(value)
            for key, value in vars(record).items()
            if key not in _BUILTIN_ATTRS and key not in _PROMOTED and not key.startswith("_")
        }
        if extras:
            line["fields"] = self._redact(extras)
        if record.exc_info:
            line["exception"] = _as_text(self._redact(self.formatException(record.exc_info)))

        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _correlation_of(record: logging.LogRecord) -> dict[str, str]:
    found: dict[str, str] = {}
    bound = getattr(record, "correlation", None)
    if isinstance(bound, Mapping):
        found.update(
            (key, value.strip())
            for key, value in bound.items()
            if isinstance(key, str) and isinstance(value, str) and value.strip()
        )
    for key in _PROMOTED:
        value = getattr(record, key, None)
        if isinstance(value, str) and value.strip():
            found[key] = value.strip()
    return found


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


class StructuredLoggingHandle:
    """A running logging session. Shutting it down drains the queue first."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        session_id: str,
        log_path: Path,
        queue_handler: _ContextQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.session_id = session_id
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._lock = threading.Lock()
        self._closed = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue_handler.pending and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.flush()
                sink.close()
            self._closed = True


class _ActiveSession:
    """Process-wide slot for the current session handle."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handle: StructuredLoggingHandle | None = None
        self._atexit_hooked = False

    def get(self) -> StructuredLoggingHandle | None:
        with self._lock:
            return self._handle

    def install(self, handle: StructuredLoggingHandle) -> None:
        with self._lock:
            self._handle = handle
            if not self._atexit_hooked:
                atexit.register(shutdown_logging)
                self._atexit_hooked = True

    def release(self, handle: StructuredLoggingHandle) -> None:
        with self._lock:
            if self._handle is handle:
                self._handle = None


_active = _ActiveSession()


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Start a session, replacing (and shutting down) any session already running."""

    previous = _active.get()
    if previous is not None:
        shutdown_logging(previous)

    session_id = _required_text(config.session_id, "session_id")
    logger_name = _required_text(config.logger_name, "logger_name")
    filename = _required_text(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    if isinstance(config.queue_size, bool) or not isinstance(config.queue_size, int):
        raise ValueError("queue_size must be a positive integer")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be a positive integer")
    level = _resolve_level(config.level)

    log_path = Path(config.base_log_dir) / session_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = JsonLineFormatter(
        session_id, default_log_redactor if config.redact_secrets else keep_secrets
    )
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stderr:
        sinks.append(logging.StreamHandler(sys.stderr))
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    records: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _ContextQueueHandler(records)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(records, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)

    handle = StructuredLoggingHandle(
        logger=logger,
        session_id=session_id,
        log_path=log_path,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    _active.install(handle)
    return handle


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    session_id: str,
    log_dir: Path | str | None = None,
) -> logging.Logger:
    """Start a session from an ``[observability]`` config section and route structlog into it."""

    section = dict(observability_config or {})
    level = section.get("log_level", "INFO")
    base_dir = log_dir if log_dir is not None else section.get("log_dir", "logs")

    handle = setup_structured_logging(
        LoggingConfig(
            session_id=session_id,
            base_log_dir=base_dir if isinstance(base_dir, (Path, str)) else "logs",
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stderr=bool(section.get("log_to_stderr", False)),
            redact_secrets=bool(section.get("redact_secrets", True)),
        )
    )
    configure_structlog()
    return handle.logger


def configure_structlog() -> None:
    """Send ``structlog.get_logger(name)`` events to the stdlib logger ``name``.

    The event name becomes the message and the bound keys become ``extra``,
    so correlation keys like ``run_id`` are promoted by :class:`JsonLineFormatter`.
    """

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    return _active.get()


def flush_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    target = handle if handle is not None else _active.get()
    if target is not None:
        target.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    """Drain and close ``handle`` (default: the active session). Safe to call twice."""

    target = handle if handle is not None else _active.get()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    _active.release(target)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _required_text(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        raise ValueError(f"{name} must not be empty")
    return text


def _resolve_level(level: int | str) -> int:
    if isinstance(level, bool):
        raise ValueError("level must be a level name or number")
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        resolved = logging.getLevelNamesMapping().get(level.strip().upper())
        if resolved is not None:
            return resolved
    raise ValueError(f"unsupported logging level {level!r}")


def _utc_stamp(epoch_seconds: float) -> str:
    stamp = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _as_text(value: JSONValue) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _jsonable(value: object) -> JSONValue:
    """Coerce arbitrary ``extra`` values into JSON-safe data."""

    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, datetime):
        aware = value if value.utcoffset() is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_jsonable(item) for item in value), key=_as_text)
    return repr(value)


__all__ = [
    "LOG_FILENAME",
    "ROOT_LOGGER",
    "JsonLineFormatter",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "reset_correlation_fields",
    "set_correlation_fields",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
