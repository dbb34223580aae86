"""
Boundary adapter between wire payloads and the run transition function.

Two payload shapes arrive at the worker boundary:

- canonical: ``{"operation": "start", "progress": 5, ...}``
- legacy: ``{"status": "failed", "errorMessage": "..."}``

Both are normalized into one ``RunTransitionRequest`` here so the state
machine only ever sees a single input shape.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Final

from shipwright.control_plane.run_state_machine import compute_run_transition
from shipwright.domain.models import (
    UNSET,
    RunOperation,
    RunStatus,
    RunTransitionRequest,
    TransitionCode,
    TransitionFailure,
)

if TYPE_CHECKING:
    from datetime import datetime

    from shipwright.domain.models import BackgroundRunRecord, TransitionResult

_LEGACY_STATUS_OPERATIONS: Final[dict[RunStatus, RunOperation]] = {
    RunStatus.RUNNING: RunOperation.START,
    RunStatus.SUCCEEDED: RunOperation.COMPLETE,
    RunStatus.FAILED: RunOperation.FAIL,
    RunStatus.CANCELLED: RunOperation.CANCEL,
    RunStatus.QUEUED: RunOperation.RETRY,
}

# (canonical key, accepted aliases)
_FIELD_ALIASES: Final[tuple[tuple[str, tuple[str, ...]], ...]] = (
    ("operation", ("operation", "action")),
    ("status", ("status",)),
    ("progress", ("progress",)),
    ("output", ("output",)),
    ("error_message", ("error_message", "errorMessage")),
    ("retry_after_seconds", ("retry_after_seconds", "retryAfterSeconds")),
)
_KNOWN_KEYS: Final[frozenset[str]] = frozenset(
    alias for _, aliases in _FIELD_ALIASES for alias in aliases
)


def normalize_run_request(payload: object) -> RunTransitionRequest | TransitionFailure:
    """Map a canonical or legacy payload onto ``RunTransitionRequest``."""

    if not isinstance(payload, Mapping):
        return _invalid("Request body must be a JSON object.")
    unknown = sorted(str(key) for key in payload if key not in _KNOWN_KEYS)
    if unknown:
        return _invalid(f"Unexpected fields: {', '.join(unknown)}.")

    fields: dict[str, object] = {}
    for canonical, aliases in _FIELD_ALIASES:
        present = [alias for alias in aliases if alias in payload]
        if len(present) > 1:
            return _invalid(f"Conflicting fields: {', '.join(present)}.")
        if present:
            fields[canonical] = payload[present[0]]

    operation = _resolve_operation(fields)
    if isinstance(operation, TransitionFailure):
        return operation

    error_message = fields.get("error_message")
    if error_message is not None and not isinstance(error_message, str):
        return _invalid("error_message must be a string.")

    progress = fields.get("progress")
    if progress is not None and (isinstance(progress, bool) or not isinstance(progress, int)):
        return _invalid("progress must be an integer between 0 and 100.")

    retry_after = fields.get("retry_after_seconds")
    if retry_after is not None and (
        isinstance(retry_after, bool) or not isinstance(retry_after, (int, float))
    ):
        return _invalid("retry_after_seconds must be a non-negative number.")

    return RunTransitionRequest(
        operation=operation,
        progress=progress,
        output=fields["output"] if "output" in fields else UNSET,
        error_message=error_message,
        retry_after_seconds=retry_after,
    )


def apply_run_request(
    record: BackgroundRunRecord,
    payload: object,
    now: datetime,
) -> TransitionResult:
    """Normalize ``payload`` and run it through the transition function."""

    request = normalize_run_request(payload)
    if isinstance(request, TransitionFailure):
        return request
    return compute_run_transition(record, request, now)


def _resolve_operation(fields: Mapping[str, object]) -> RunOperation | TransitionFailure:
    raw_operation = fields.get("operation")
    raw_status = fields.get("status")

    if raw_operation is not None:
        if raw_status is not None:
            return _invalid("Provide either operation or status, not both.")
        if not isinstance(raw_operation, str):
            return _invalid("operation must be a string.")
        try:
            return RunOperation(raw_operation.strip().lower())
        except ValueError:
            return _invalid(f"Unsupported operation '{raw_operation}'.")

    if raw_status is not None:
        if not isinstance(raw_status, str):
            return _invalid("status must be a string.")
        try:
            status = RunStatus(raw_status.strip().lower())
        except ValueError:
            return _invalid(f"Unsupported status '{raw_status}'.")
        return _LEGACY_STATUS_OPERATIONS[status]

    if "progress" in fields:
        return RunOperation.PROGRESS
    return _invalid("Request must include an operation, a status, or a progress value.")


def _invalid(message: str) -> TransitionFailure:
    return TransitionFailure(TransitionCode.INVALID_PAYLOAD, message)


__all__ = [
    "apply_run_request",
    "normalize_run_request",
]
