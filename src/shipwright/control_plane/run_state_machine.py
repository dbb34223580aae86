"""
shipwright — background run state machine

File: src/shipwright/control_plane/run_state_machine.py

Purpose
- Pure transition function over a ``BackgroundRunRecord``:
  ``(record, request, now) -> TransitionSuccess | TransitionFailure``.

Functional requirements
- queued -> running (start), running -> succeeded (complete),
  running -> failed (fail), failed -> queued (retry),
  queued|running -> cancelled (cancel).
- ``progress``, ``heartbeat`` and ``request-cancel`` keep a running run
  observable and let another actor signal cancellation without preemption.
- Every refused operation returns a typed failure with a stable code and
  mutates nothing.

Non-functional requirements
- Deterministic given ``now``; no clock reads, no IO, no shared state.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Final

from shipwright.constants import (
    DEFAULT_FAILURE_MESSAGE,
    DEFAULT_RETRY_AFTER_SECONDS,
    MAX_ERROR_MESSAGE_CHARS,
)
from shipwright.domain.models import (
    TERMINAL_STATUSES,
    UNSET,
    BackgroundRunRecord,
    JSONValue,
    RunMutation,
    RunOperation,
    RunStatus,
    RunTransitionRequest,
    TransitionCode,
    TransitionFailure,
    TransitionResult,
    TransitionSuccess,
    UnsetType,
    coerce_run_output,
)

_Handler = Callable[[BackgroundRunRecord, RunTransitionRequest, datetime], TransitionResult]


def compute_run_transition(
    record: BackgroundRunRecord,
    request: RunTransitionRequest,
    now: datetime,
) -> TransitionResult:
    """Compute the mutation ``request`` would apply to ``record`` at ``now``."""

    if now.tzinfo is None or now.utcoffset() is None:
        raise ValueError("now: datetime must be timezone-aware UTC")
    handler = _HANDLERS[request.operation]
    return handler(record, request, now)


def is_terminal(status: RunStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_retry(record: BackgroundRunRecord) -> bool:
    """Eligibility check callers use before scheduling a retry."""

    return (
        record.status is RunStatus.FAILED
        and record.retryable
        and record.attempt_count < record.max_attempts
    )


def _start(
    record: BackgroundRunRecord, request: RunTransitionRequest, now: datetime
) -> TransitionResult:
    if record.status is not RunStatus.QUEUED:
        return _invalid_transition(record, request.operation)
    if record.cancel_requested:
        return TransitionFailure(
            TransitionCode.INVALID_TRANSITION,
            "Run has a pending cancel request and cannot start.",
        )
    if record.attempt_count >= record.max_attempts:
        return _max_attempts(record)

    progress: int
    if request.progress is None:
        progress = max(1, record.progress)
    else:
        parsed = _parse_progress(request.progress)
        if isinstance(parsed, TransitionFailure):
            return parsed
        progress = parsed

    return TransitionSuccess(
        operation=request.operation,
        mutation=RunMutation(
            status=RunStatus.RUNNING,
            progress=progress,
            attempt_count=record.attempt_count + 1,
            started_at=now,
            finished_at=None,
            next_retry_at=None,
            last_heartbeat_at=now,
        ),
    )


def _progress(
    record: BackgroundRunRecord, request: RunTransitionRequest, now: datetime
) -> TransitionResult:
    if record.status is not RunStatus.RUNNING:
        return _invalid_transition(record, request.operation)
    if request.progress is None:
        return TransitionFailure(TransitionCode.INVALID_PAYLOAD, "progress is required.")
    parsed = _parse_progress(request.progress)
    if isinstance(parsed, TransitionFailure):
        return parsed
    return TransitionSuccess(
        operation=request.operation,
        mutation=RunMutation(progress=parsed, last_heartbeat_at=now),
    )


def _complete(
    record: BackgroundRunRecord, request: RunTransitionRequest, now: datetime
) -> TransitionResult:
    if record.status is not RunStatus.RUNNING:
        return _invalid_transition(record, request.operation)
    output = _parse_output(request)
    if isinstance(output, TransitionFailure):
        return output
    return TransitionSuccess(
        operation=request.operation,
        mutation=RunMutation(
            status=RunStatus.SUCCEEDED,
            progress=100,
            finished_at=now,
            next_retry_at=None,
            error_message=None,
            output=output,
        ),
    )


def _fail(
    record: BackgroundRunRecord, request: RunTransitionRequest, now: datetime
) -> TransitionResult:
    if record.status is not RunStatus.RUNNING:
        return _invalid_transition(record, request.operation)
    message = request.error_message
    if message is not None and not isinstance(message, str):
        return TransitionFailure(TransitionCode.INVALID_PAYLOAD, "error_message must be a string.")
    output = _parse_output(request)
    if isinstance(output, TransitionFailure):
        return output
    return TransitionSuccess(
        operation=request.operation,
        mutation=RunMutation(
            status=RunStatus.FAILED,
            finished_at=now,
            next_retry_at=None,
            error_message=_error_text(message),
            output=output,
        ),
    )


def _retry(
    record: BackgroundRunRecord, request: RunTransitionRequest, now: datetime
) -> TransitionResult:
    if record.status is not RunStatus.FAILED:
        return _invalid_transition(record, request.operation)
    if not record.retryable:
        return TransitionFailure(TransitionCode.NOT_RETRYABLE, "Run is marked as not retryable.")
    if record.attempt_count >= record.max_attempts:
        return _max_attempts(record)

    delay = request.retry_after_seconds
    if delay is None:
        delay = DEFAULT_RETRY_AFTER_SECONDS
    if (
        isinstance(delay, bool)
        or not isinstance(delay, (int, float))
        or not math.isfinite(delay)
        or delay < 0
    ):
        return TransitionFailure(
            TransitionCode.INVALID_PAYLOAD,
            "retry_after_seconds must be a non-negative number.",
        )
    try:
        next_retry_at = now + timedelta(seconds=delay)
    except (OverflowError, ValueError):
        return TransitionFailure(
            TransitionCode.INVALID_PAYLOAD,
            "retry_after_seconds puts next_retry_at beyond the supported date range.",
        )

    return TransitionSuccess(
        operation=request.operation,
        mutation=RunMutation(
            status=RunStatus.QUEUED,
            progress=0,
            started_at=None,
            finished_at=None,
            error_message=None,
            cancel_requested=False,
            next_retry_at=next_retry_at,
        ),
    )


def _cancel(
    record: BackgroundRunRecord, request: RunTransitionRequest, now: datetime
) -> TransitionResult:
    if record.status not in (RunStatus.QUEUED, RunStatus.RUNNING):
        return _invalid_transition(record, request.operation)
    return TransitionSuccess(operation=request.operation, mutation=_cancelled(now))


def _request_cancel(
    record: BackgroundRunRecord, request: RunTransitionRequest, now: datetime
) -> TransitionResult:
    if record.status is RunStatus.QUEUED:
        # Nothing is executing yet, so the request is also the confirmation.
        return TransitionSuccess(operation=request.operation, mutation=_cancelled(now))
    if record.status is RunStatus.RUNNING:
        return TransitionSuccess(
            operation=request.operation,
            mutation=RunMutation(cancel_requested=True),
        )
    return _invalid_transition(record, request.operation)


def _heartbeat(
    record: BackgroundRunRecord, request: RunTransitionRequest, now: datetime
) -> TransitionResult:
    if record.status is not RunStatus.RUNNING:
        return _invalid_transition(record, request.operation)
    return TransitionSuccess(
        operation=request.operation,
        mutation=RunMutation(last_heartbeat_at=now),
    )


def _cancelled(now: datetime) -> RunMutation:
    return RunMutation(
        status=RunStatus.CANCELLED,
        cancel_requested=True,
        finished_at=now,
        next_retry_at=None,
    )


def _parse_progress(value: object) -> int | TransitionFailure:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 100:
        return TransitionFailure(
            TransitionCode.INVALID_PAYLOAD,
            "progress must be an integer between 0 and 100.",
        )
    return value


def _error_text(message: str | None) -> str:
    text = (message or "").strip() or DEFAULT_FAILURE_MESSAGE
    if len(text) > MAX_ERROR_MESSAGE_CHARS:
        marker = "... [truncated]"
        text = text[: MAX_ERROR_MESSAGE_CHARS - len(marker)] + marker
    return text


def _parse_output(request: RunTransitionRequest) -> JSONValue | UnsetType | TransitionFailure:
    if request.output is UNSET:
        return UNSET
    try:
        return coerce_run_output(request.output)
    except ValueError as exc:
        return TransitionFailure(TransitionCode.INVALID_PAYLOAD, str(exc))


def _invalid_transition(record: BackgroundRunRecord, operation: RunOperation) -> TransitionFailure:
    return TransitionFailure(
        TransitionCode.INVALID_TRANSITION,
        f"Cannot {operation.value} a run in status '{record.status.value}'.",
    )


def _max_attempts(record: BackgroundRunRecord) -> TransitionFailure:
    return TransitionFailure(
        TransitionCode.MAX_ATTEMPTS_REACHED,
        f"Run has reached max attempts ({record.attempt_count}/{record.max_attempts}).",
    )


_HANDLERS: Final[dict[RunOperation, _Handler]] = {
    RunOperation.START: _start,
    RunOperation.PROGRESS: _progress,
    RunOperation.COMPLETE: _complete,
    RunOperation.FAIL: _fail,
    RunOperation.RETRY: _retry,
    RunOperation.CANCEL: _cancel,
    RunOperation.REQUEST_CANCEL: _request_cancel,
    RunOperation.HEARTBEAT: _heartbeat,
}


__all__ = [
    "can_retry",
    "compute_run_transition",
    "is_terminal",
]
