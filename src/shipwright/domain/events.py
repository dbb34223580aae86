"""Supervisor events: the audit trail a run leaves as it moves through the pipeline."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Final

from shipwright.domain.models import JSONValue, coerce_json_value

_FIELDS: Final[frozenset[str]] = frozenset({"event", "timestamp", "run_id", "stage", "summary"})
_MAX_TEXT: Final[int] = 4096

_SECRET_TERMS: Final[tuple[str, ...]] = ("secret", "key", "password", "token", "authorization")
REDACTED: Final[str] = "***REDACTED***"


class SupervisorEventType(StrEnum):
    RUN_STARTED = "run_started"
    INTENT_CLASSIFIED = "intent_classified"
    ROUTE_SELECTED = "route_selected"
    GATE_STARTED = "gate_started"
    GATE_PASSED = "gate_passed"
    GATE_FAILED = "gate_failed"
    AUTOFIX_STARTED = "autofix_started"
    AUTOFIX_SUCCEEDED = "autofix_succeeded"
    AUTOFIX_FAILED = "autofix_failed"
    FALLBACK_INVOKED = "fallback_invoked"
    RUN_COMPLETED = "run_completed"


@dataclass(frozen=True, slots=True)
class SupervisorEvent:
    """One pipeline milestone. Fields are validated and normalized on construction."""

    event: SupervisorEventType
    timestamp: datetime
    run_id: str
    stage: str
    summary: str
    details: dict[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        normalized = {
            "event": _event_type(self.event),
            "timestamp": _utc(self.timestamp, "timestamp"),
            "run_id": _text(self.run_id, "run_id"),
            "stage": _text(self.stage, "stage"),
            "summary": _text(self.summary, "summary"),
            "details": _details(self.details),
        }
        for name, value in normalized.items():
            object.__setattr__(self, name, value)

    def to_dict(self) -> dict[str, JSONValue]:
        stamp = self.timestamp.isoformat(timespec="microseconds").replace("+00:00", "Z")
        return {
            "event": self.event.value,
            "timestamp": stamp,
            "run_id": self.run_id,
            "stage": self.stage,
            "summary": self.summary,
            "details": dict(self.details),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SupervisorEvent:
        if not isinstance(data, Mapping):
            raise ValueError(f"SupervisorEvent: expected object, got {type(data).__name__}")
        keys = set(data)
        unknown = sorted(str(key) for key in keys - _FIELDS - {"details"})
        if unknown:
            raise ValueError(f"SupervisorEvent: unexpected fields: {unknown}")
        missing = sorted(_FIELDS - keys)
        if missing:
            raise ValueError(f"SupervisorEvent: missing required fields: {missing}")
        return cls(
            event=_event_type(data["event"]),
            timestamp=_utc(data["timestamp"], "timestamp"),
            run_id=_text(data["run_id"], "run_id"),
            stage=_text(data["stage"], "stage"),
            summary=_text(data["summary"], "summary"),
            details=_details(data.get("details", {})),
        )

    @classmethod
    def from_json(cls, raw: str) -> SupervisorEvent:
        try:
            parsed = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            raise ValueError(f"SupervisorEvent: invalid JSON: {exc}") from exc
        return cls.from_dict(parsed)


def make_supervisor_event(
    event: SupervisorEventType | str,
    run_id: str,
    stage: str,
    summary: str,
    details: Mapping[str, object] | None = None,
    *,
    now: datetime | None = None,
) -> SupervisorEvent:
    """Build one event; ``now`` is injectable so recorded streams replay exactly."""

    return SupervisorEvent(
        event=_event_type(event),
        timestamp=now if now is not None else datetime.now(UTC),
        run_id=run_id,
        stage=stage,
        summary=summary,
        details=_details(dict(details or {})),
    )


def format_supervisor_event_line(event: SupervisorEvent) -> str:
    """``[HH:MM:SS] summary`` on the UTC clock."""

    return f"[{event.timestamp.astimezone(UTC):%H:%M:%S}] {event.summary}"


def redact_sensitive(event: SupervisorEvent) -> SupervisorEvent:
    """Copy of ``event`` whose details hide values under secret-looking keys, at any depth."""

    return replace(event, details={key: _masked(key, item) for key, item in event.details.items()})


def _masked(key: str | None, value: JSONValue) -> JSONValue:
    if key is not None and any(term in key.lower() for term in _SECRET_TERMS):
        return REDACTED
    if isinstance(value, dict):
        return {child: _masked(child, item) for child, item in value.items()}
    if isinstance(value, list):
        return [_masked(None, item) for item in value]
    return value


def _event_type(value: object) -> SupervisorEventType:
    if isinstance(value, SupervisorEventType):
        return value
    try:
        return SupervisorEventType(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in SupervisorEventType)
        raise ValueError(
            f"SupervisorEvent.event: unsupported event type {value!r}; allowed: {allowed}"
        ) from exc


def _text(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"SupervisorEvent.{name}: expected string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        raise ValueError(f"SupervisorEvent.{name}: must not be empty")
    if len(text) > _MAX_TEXT:
        raise ValueError(f"SupervisorEvent.{name}: must be <= {_MAX_TEXT} characters")
    return text


def _utc(value: object, name: str) -> datetime:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError(f"SupervisorEvent.{name}: invalid ISO-8601 datetime") from exc
    if not isinstance(value, datetime):
        raise ValueError(
            f"SupervisorEvent.{name}: expected datetime or ISO-8601 string, "
            f"got {type(value).__name__}"
        )
    if value.utcoffset() is None:
        raise ValueError(f"SupervisorEvent.{name}: datetime must be timezone-aware UTC")
    return value.astimezone(UTC)


def _details(value: object) -> dict[str, JSONValue]:
    parsed = coerce_json_value(value, "SupervisorEvent.details")
    if not isinstance(parsed, dict):
        raise ValueError("SupervisorEvent.details: expected object")
    return parsed


__all__ = [
    "REDACTED",
    "SupervisorEvent",
    "SupervisorEventType",
    "format_supervisor_event_line",
    "make_supervisor_event",
    "redact_sensitive",
]
