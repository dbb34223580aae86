"""
shipwright — supervisor event log

File: src/shipwright/observability/event_log.py

Purpose
- Append-only recorder for one run's supervisor events, optionally backed
  by a JSON-lines file, mirrored to structured logging.

Non-functional requirements
- Events are never updated or removed once recorded.
- The clock is injected so recorded streams replay byte-for-byte in tests.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path

from shipwright.domain.events import (
    SupervisorEvent,
    SupervisorEventType,
    make_supervisor_event,
    redact_sensitive,
)
from shipwright.utils.fs import atomic_write

Clock = Callable[[], datetime]

_LOGGER = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class SupervisorEventRecorder:
    """Collects the supervisor events emitted during one pipeline run."""

    def __init__(
        self,
        run_id: str,
        *,
        clock: Clock | None = None,
        sink: Path | str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if not isinstance(run_id, str) or not run_id.strip():
            raise ValueError("run_id must be a non-empty string")
        self._run_id = run_id.strip()
        self._clock = clock or _utc_now
        self._sink = Path(sink) if sink is not None else None
        self._logger = logger or _LOGGER
        self._lock = threading.Lock()
        self._events: list[SupervisorEvent] = []
        if self._sink is not None:
            self._sink.parent.mkdir(parents=True, exist_ok=True)

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def events(self) -> tuple[SupervisorEvent, ...]:
        with self._lock:
            return tuple(self._events)

    def record(
        self,
        event: SupervisorEventType | str,
        stage: str,
        summary: str,
        details: Mapping[str, object] | None = None,
    ) -> SupervisorEvent:
        """Build an event stamped with the recorder clock and append it."""

        built = make_supervisor_event(
            event, self._run_id, stage, summary, details, now=self._clock()
        )
        self.append(built)
        return built

    def append(self, event: SupervisorEvent) -> None:
        if event.run_id != self._run_id:
            raise ValueError(
                f"event run_id {event.run_id!r} does not match recorder run_id {self._run_id!r}"
            )
        with self._lock:
            self._events.append(event)
            if self._sink is not None:
                with self._sink.open("a", encoding="utf-8") as handle:
                    handle.write(event.to_json())
                    handle.write("\n")

        safe = redact_sensitive(event)
        self._logger.info(
            "supervisor_event",
            extra={
                "run_id": safe.run_id,
                "stage": safe.stage,
                "event_type": safe.event.value,
                "summary": safe.summary,
                "details": safe.details,
            },
        )


def read_event_stream(path: Path | str) -> tuple[SupervisorEvent, ...]:
    """Parse a JSON-lines event file; blank lines are skipped."""

    source = Path(path)
    events: list[SupervisorEvent] = []
    with source.open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            stripped = line.strip()
            if not stripped:
                continue
            try:
                events.append(SupervisorEvent.from_json(stripped))
            except ValueError as exc:
                raise ValueError(f"{source}:{line_number}: {exc}") from exc
    return tuple(events)


def write_event_stream(path: Path | str, events: Iterable[SupervisorEvent]) -> None:
    payload = "".join(f"{event.to_json()}\n" for event in events)
    atomic_write(path, payload)


__all__ = [
    "Clock",
    "SupervisorEventRecorder",
    "read_event_stream",
    "write_event_stream",
]
