"""
Failure classification and retry decisions for background runs.

Transient failures (timeouts, rate limits, 5xx, overloaded models) are
retried automatically with exponential backoff while attempts remain;
everything else is permanent and must surface to an operator.
The substring table comes from the governance policy, not from this module.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from shipwright.constants import RETRY_BASE_DELAY_SECONDS, RETRY_MAX_DELAY_SECONDS
from shipwright.domain.models import RunStatus
from shipwright.governance.policy import default_policy

if TYPE_CHECKING:
    from shipwright.domain.models import BackgroundRunRecord
    from shipwright.governance.policy import GovernancePolicy


class FailureKind(StrEnum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(frozen=True, slots=True)
class RetryDecision:
    """Whether a failed run should be re-queued, and after how long."""

    retry: bool
    kind: FailureKind
    retry_after_seconds: int
    reason: str


def is_transient_model_error(
    message: str | None,
    policy: GovernancePolicy | None = None,
) -> bool:
    """Case-insensitive substring match against the policy's transient patterns."""

    if not message:
        return False
    lowered = message.lower()
    patterns = (policy or default_policy()).transient_error_patterns
    return any(pattern in lowered for pattern in patterns)


def classify_failure(
    message: str | None,
    policy: GovernancePolicy | None = None,
) -> FailureKind:
    if is_transient_model_error(message, policy):
        return FailureKind.TRANSIENT
    return FailureKind.PERMANENT


def compute_retry_delay_seconds(
    attempt_count: int,
    *,
    base_seconds: int = RETRY_BASE_DELAY_SECONDS,
    max_seconds: int = RETRY_MAX_DELAY_SECONDS,
) -> int:
    """Exponential backoff: ``base * 2**(attempt-1)`` capped at ``max_seconds``."""

    if base_seconds < 0 or max_seconds < 0:
        raise ValueError("retry delays must be >= 0")
    exponent = max(0, attempt_count - 1)
    # Cap the exponent so huge attempt counts never build enormous integers.
    delay = base_seconds * (2 ** min(exponent, 32))
    return min(delay, max_seconds)


def decide_retry(
    record: BackgroundRunRecord,
    message: str | None,
    *,
    policy: GovernancePolicy | None = None,
    base_seconds: int = RETRY_BASE_DELAY_SECONDS,
    max_seconds: int = RETRY_MAX_DELAY_SECONDS,
) -> RetryDecision:
    """Combine classification with the record's retry eligibility."""

    kind = classify_failure(message, policy)
    if record.status is not RunStatus.FAILED:
        return RetryDecision(False, kind, 0, f"run is {record.status.value}, not failed")
    if kind is FailureKind.PERMANENT:
        return RetryDecision(False, kind, 0, "permanent failure requires operator attention")
    if not record.retryable:
        return RetryDecision(False, kind, 0, "run is not retryable")
    if record.attempt_count >= record.max_attempts:
        return RetryDecision(False, kind, 0, "max attempts reached")
    delay = compute_retry_delay_seconds(
        record.attempt_count, base_seconds=base_seconds, max_seconds=max_seconds
    )
    return RetryDecision(True, kind, delay, "transient failure with attempts remaining")


__all__ = [
    "FailureKind",
    "RetryDecision",
    "classify_failure",
    "compute_retry_delay_seconds",
    "decide_retry",
    "is_transient_model_error",
]
