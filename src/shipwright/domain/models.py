"""Background-run domain models with strict validation and canonical serialization."""

from __future__ import annotations

import dataclasses
import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import Final, Literal, NoReturn, TypeVar

from shipwright.constants import MAX_ERROR_MESSAGE_CHARS, RUN_RECORD_SCHEMA_VERSION

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 8192
_MAX_JSON_DEPTH = 16
_MAX_JSON_COLLECTION = 512


class RunStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: Final[frozenset[RunStatus]] = frozenset(
    {RunStatus.SUCCEEDED, RunStatus.CANCELLED}
)


class RunOperation(StrEnum):
    """Operations accepted by the background-run transition function."""

    START = "start"
    PROGRESS = "progress"
    COMPLETE = "complete"
    FAIL = "fail"
    REQUEST_CANCEL = "request-cancel"
    CANCEL = "cancel"
    RETRY = "retry"
    HEARTBEAT = "heartbeat"


class TransitionCode(StrEnum):
    """Stable failure codes surfaced to transition callers."""

    INVALID_PAYLOAD = "invalid_payload"
    INVALID_TRANSITION = "invalid_transition"
    MAX_ATTEMPTS_REACHED = "max_attempts_reached"
    NOT_RETRYABLE = "not_retryable"


class UnsetType(Enum):
    UNSET = "UNSET"

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Final = UnsetType.UNSET

_MUTATION_FIELDS: Final[tuple[str, ...]] = (
    "status",
    "progress",
    "attempt_count",
    "cancel_requested",
    "started_at",
    "finished_at",
    "next_retry_at",
    "last_heartbeat_at",
    "error_message",
    "output",
)


@dataclass(frozen=True, slots=True)
class RunMutation:
    """
    Field changes produced by one successful transition.

    Every field defaults to ``UNSET`` so "clear to ``None``" and "leave
    untouched" stay distinguishable on the wire and when applied.
    """

    status: RunStatus | UnsetType = UNSET
    progress: int | UnsetType = UNSET
    attempt_count: int | UnsetType = UNSET
    cancel_requested: bool | UnsetType = UNSET
    started_at: datetime | None | UnsetType = UNSET
    finished_at: datetime | None | UnsetType = UNSET
    next_retry_at: datetime | None | UnsetType = UNSET
    last_heartbeat_at: datetime | None | UnsetType = UNSET
    error_message: str | None | UnsetType = UNSET
    output: JSONValue | UnsetType = UNSET

    def changes(self) -> dict[str, object]:
        """Return only the fields this mutation sets."""

        out: dict[str, object] = {}
        for name in _MUTATION_FIELDS:
            value = getattr(self, name)
            if value is not UNSET:
                out[name] = value
        return out

    @property
    def is_empty(self) -> bool:
        return not self.changes()

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            name: _serialize_value(value, f"RunMutation.{name}", max_items=None)
            for name, value in sorted(self.changes().items())
        }


@dataclass(frozen=True, slots=True)
class BackgroundRunRecord:
    """
    One asynchronous unit of pipeline work.

    Records are immutable snapshots: transitions return a ``RunMutation``
    and callers build the next snapshot with :meth:`apply`. Construction
    rejects snapshots that violate the record invariants.
    """

    status: RunStatus
    max_attempts: int
    attempt_count: int = 0
    progress: int = 0
    retryable: bool = True
    cancel_requested: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None
    next_retry_at: datetime | None = None
    last_heartbeat_at: datetime | None = None
    error_message: str | None = None
    output: JSONValue = None
    run_id: str | None = None
    schema_version: int = RUN_RECORD_SCHEMA_VERSION

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "status", _as_enum(RunStatus, self.status, "BackgroundRunRecord.status")
        )
        _as_int(self.max_attempts, "BackgroundRunRecord.max_attempts", minimum=0)
        _as_int(self.attempt_count, "BackgroundRunRecord.attempt_count", minimum=0)
        if self.attempt_count > self.max_attempts:
            _fail(
                "BackgroundRunRecord.attempt_count",
                f"must be <= max_attempts ({self.attempt_count} > {self.max_attempts})",
            )
        _as_int(self.progress, "BackgroundRunRecord.progress", minimum=0)
        if self.progress > 100:
            _fail("BackgroundRunRecord.progress", "must be <= 100")
        _as_bool(self.retryable, "BackgroundRunRecord.retryable")
        _as_bool(self.cancel_requested, "BackgroundRunRecord.cancel_requested")
        for name in ("started_at", "finished_at", "next_retry_at", "last_heartbeat_at"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(
                    self, name, _as_datetime(value, f"BackgroundRunRecord.{name}")
                )
        if self.error_message is not None:
            _as_str(
                self.error_message,
                "BackgroundRunRecord.error_message",
                max_len=MAX_ERROR_MESSAGE_CHARS,
                strip=False,
            )
        object.__setattr__(
            self, "output", coerce_run_output(self.output, "BackgroundRunRecord.output")
        )
        if self.run_id is not None:
            _as_str(self.run_id, "BackgroundRunRecord.run_id", max_len=128)
        _as_int(self.schema_version, "BackgroundRunRecord.schema_version", minimum=1)

    @classmethod
    def queued(
        cls,
        *,
        max_attempts: int,
        retryable: bool = True,
        run_id: str | None = None,
    ) -> BackgroundRunRecord:
        """Create a fresh record in ``queued`` the way an external scheduler would."""

        return cls(
            status=RunStatus.QUEUED,
            max_attempts=max_attempts,
            retryable=retryable,
            run_id=run_id,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def apply(self, mutation: RunMutation) -> BackgroundRunRecord:
        """Return a new snapshot with ``mutation`` merged in; ``self`` is untouched."""

        return dataclasses.replace(self, **mutation.changes())

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            item.name: _serialize_value(
                getattr(self, item.name), f"BackgroundRunRecord.{item.name}", max_items=None
            )
            for item in dataclasses.fields(self)
        }

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> BackgroundRunRecord:
        parsed = _expect_object(
            data,
            "BackgroundRunRecord",
            required={"status", "max_attempts"},
            optional={
                "attempt_count",
                "progress",
                "retryable",
                "cancel_requested",
                "started_at",
                "finished_at",
                "next_retry_at",
                "last_heartbeat_at",
                "error_message",
                "output",
                "run_id",
                "schema_version",
            },
        )
        return cls(
            status=_as_enum(RunStatus, parsed["status"], "BackgroundRunRecord.status"),
            max_attempts=_as_int(parsed["max_attempts"], "BackgroundRunRecord.max_attempts"),
            attempt_count=_as_int(
                parsed.get("attempt_count", 0), "BackgroundRunRecord.attempt_count"
            ),
            progress=_as_int(parsed.get("progress", 0), "BackgroundRunRecord.progress"),
            retryable=_as_bool(parsed.get("retryable", True), "BackgroundRunRecord.retryable"),
            cancel_requested=_as_bool(
                parsed.get("cancel_requested", False), "BackgroundRunRecord.cancel_requested"
            ),
            started_at=_as_optional_datetime(
                parsed.get("started_at"), "BackgroundRunRecord.started_at"
            ),
            finished_at=_as_optional_datetime(
                parsed.get("finished_at"), "BackgroundRunRecord.finished_at"
            ),
            next_retry_at=_as_optional_datetime(
                parsed.get("next_retry_at"), "BackgroundRunRecord.next_retry_at"
            ),
            last_heartbeat_at=_as_optional_datetime(
                parsed.get("last_heartbeat_at"), "BackgroundRunRecord.last_heartbeat_at"
            ),
            error_message=_as_optional_str(
                parsed.get("error_message"),
                "BackgroundRunRecord.error_message",
                max_len=MAX_ERROR_MESSAGE_CHARS,
            ),
            output=coerce_run_output(parsed.get("output"), "BackgroundRunRecord.output"),
            run_id=_as_optional_str(parsed.get("run_id"), "BackgroundRunRecord.run_id"),
            schema_version=_as_int(
                parsed.get("schema_version", RUN_RECORD_SCHEMA_VERSION),
                "BackgroundRunRecord.schema_version",
                minimum=1,
            ),
        )

    @classmethod
    def from_json(cls, raw: str) -> BackgroundRunRecord:
        return cls.from_dict(_load_json_object(raw, "BackgroundRunRecord"))


@dataclass(frozen=True, slots=True)
class RunTransitionRequest:
    """Canonical single input shape of the transition function."""

    operation: RunOperation
    progress: int | None = None
    output: JSONValue | UnsetType = UNSET
    error_message: str | None = None
    retry_after_seconds: int | float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "operation",
            _as_enum(RunOperation, self.operation, "RunTransitionRequest.operation"),
        )


@dataclass(frozen=True, slots=True)
class TransitionSuccess:
    operation: RunOperation
    mutation: RunMutation
    ok: Literal[True] = field(default=True, init=False)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "ok": True,
            "operation": self.operation.value,
            "mutation": self.mutation.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class TransitionFailure:
    code: TransitionCode
    message: str
    ok: Literal[False] = field(default=False, init=False)

    def to_dict(self) -> dict[str, JSONValue]:
        return {"ok": False, "code": self.code.value, "message": self.message}


TransitionResult = TransitionSuccess | TransitionFailure


def coerce_json_value(
    value: object, path: str, *, max_items: int | None = _MAX_JSON_COLLECTION
) -> JSONValue:
    """
    Validate ``value`` as bounded JSON data, raising ``ValueError`` otherwise.

    Nesting is always capped; ``max_items=None`` lifts the per-collection cap.
    """

    return _as_json_value(value, path, max_items=max_items)


def coerce_run_output(value: object, path: str = "output") -> JSONValue:
    """Validate an executor result: any JSON data within the nesting cap."""

    return _as_json_value(value, path, max_items=None)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _load_json_object(raw: str, path: str) -> dict[str, object]:
    if not isinstance(raw, str):
        _fail(path, f"expected JSON string, got {type(raw).__name__}")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        _fail(path, f"invalid JSON: {exc}")
    if not isinstance(parsed, dict):
        _fail(path, "JSON root must be an object")
    return parsed


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, max_len=max_len)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _as_optional_datetime(value: object, path: str) -> datetime | None:
    if value is None:
        return None
    return _as_datetime(value, path)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_json_value(
    value: object,
    path: str,
    *,
    depth: int = 0,
    max_items: int | None = _MAX_JSON_COLLECTION,
) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")

    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        if max_items is not None and len(value) > max_items:
            _fail(path, f"list length exceeds {max_items}")
        return [
            _as_json_value(item, f"{path}[{idx}]", depth=depth + 1, max_items=max_items)
            for idx, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        if max_items is not None and len(value) > max_items:
            _fail(path, f"object size exceeds {max_items}")
        parsed: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object key must be string, got {type(key).__name__}")
            parsed[key] = _as_json_value(
                item, f"{path}.{key}", depth=depth + 1, max_items=max_items
            )
        return parsed

    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def _serialize_value(
    value: object, path: str, *, max_items: int | None = _MAX_JSON_COLLECTION
) -> JSONValue:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _datetime_to_iso8601z(value)
    return _as_json_value(value, path, max_items=max_items)


__all__ = [
    "TERMINAL_STATUSES",
    "UNSET",
    "UnsetType",
    "BackgroundRunRecord",
    "JSONValue",
    "RunMutation",
    "RunOperation",
    "RunStatus",
    "RunTransitionRequest",
    "TransitionCode",
    "TransitionFailure",
    "TransitionResult",
    "TransitionSuccess",
    "coerce_json_value",
    "coerce_run_output",
]
