"""
shipwright — control plane

Purpose
- Background run lifecycle: the pure transition function, the wire
  adapter in front of it, failure classification and the dispatcher loop.
"""

from shipwright.control_plane.dispatcher import (
    DispatchAction,
    DispatchOutcome,
    InMemoryRunStore,
    PermanentRunError,
    RunDispatcher,
    RunStore,
    StaleRecordError,
    UnknownRunError,
    is_heartbeat_stale,
)
from shipwright.control_plane.failure_classifier import (
    FailureKind,
    RetryDecision,
    classify_failure,
    compute_retry_delay_seconds,
    decide_retry,
    is_transient_model_error,
)
from shipwright.control_plane.run_requests import apply_run_request, normalize_run_request
from shipwright.control_plane.run_state_machine import (
    can_retry,
    compute_run_transition,
    is_terminal,
)

__all__ = [
    "DispatchAction",
    "DispatchOutcome",
    "FailureKind",
    "InMemoryRunStore",
    "PermanentRunError",
    "RetryDecision",
    "RunDispatcher",
    "RunStore",
    "StaleRecordError",
    "UnknownRunError",
    "apply_run_request",
    "can_retry",
    "classify_failure",
    "compute_retry_delay_seconds",
    "compute_run_transition",
    "decide_retry",
    "is_heartbeat_stale",
    "is_terminal",
    "is_transient_model_error",
    "normalize_run_request",
]
