"""
shipwright — domain layer

Purpose
- Domain types shared across planes: the background run record and its
  transition contract, and the supervisor event stream.
- Kept free of IO side effects; every type serializes to canonical JSON.
"""

from shipwright.domain.events import (
    SupervisorEvent,
    SupervisorEventType,
    format_supervisor_event_line,
    make_supervisor_event,
    redact_sensitive,
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
    coerce_json_value,
    coerce_run_output,
)

__all__ = [
    "TERMINAL_STATUSES",
    "UNSET",
    "BackgroundRunRecord",
    "JSONValue",
    "RunMutation",
    "RunOperation",
    "RunStatus",
    "RunTransitionRequest",
    "SupervisorEvent",
    "SupervisorEventType",
    "TransitionCode",
    "TransitionFailure",
    "TransitionResult",
    "TransitionSuccess",
    "UnsetType",
    "coerce_json_value",
    "coerce_run_output",
    "format_supervisor_event_line",
    "make_supervisor_event",
    "redact_sensitive",
]
