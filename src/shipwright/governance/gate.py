"""
shipwright — governance gate protocol

File: src/shipwright/governance/gate.py

Purpose
- Review-state machine over one proposed artifact (a plan or a file
  structure): ``proposed -> reviewing -> approved | approved_with_amendments
  | rejected | escalated``.
- Turn a validated verdict into a gate decision, folding in the mandatory
  critical-path escalation policy.

Functional requirements
- Escalation to a human is mandatory whenever the verdict's affected areas
  hit a critical-path category of the governance policy, whatever the
  reviewer concluded. The reviewer cannot waive it.
- Malformed reviewer output blocks the gate and carries every protocol
  violation as a reason.
- One ``GovernanceGate`` serves both the plan and the structure gate.

Non-functional requirements
- ``evaluate_gate`` is pure; ``GovernanceGate`` adds events and logging.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

import structlog

from shipwright.domain.events import SupervisorEventType
from shipwright.governance.policy import default_policy
from shipwright.governance.verdict import (
    GovernanceProtocolError,
    GovernanceVerdict,
    ProtectedInvariant,
    ProtocolViolation,
    VerdictKind,
    parse_governance_output,
    validate_verdict_payload,
)
from shipwright.observability.logging import correlation_scope

if TYPE_CHECKING:
    from shipwright.governance.policy import GovernancePolicy
    from shipwright.observability.event_log import SupervisorEventRecorder


class GateStage(StrEnum):
    PLAN = "plan"
    STRUCTURE = "structure"


class ReviewState(StrEnum):
    PROPOSED = "proposed"
    REVIEWING = "reviewing"
    APPROVED = "approved"
    APPROVED_WITH_AMENDMENTS = "approved_with_amendments"
    REJECTED = "rejected"
    ESCALATED = "escalated"


MAX_ARTIFACT_ID_CHARS: Final[int] = 256


class GateOutcome(StrEnum):
    PROCEED = "proceed"
    PROCEED_WITH_AMENDMENTS = "proceed_with_amendments"
    BLOCKED = "blocked"
    REQUIRES_HUMAN = "requires_human"


_CONCLUDED_STATES: Final[dict[GateOutcome, ReviewState]] = {
    GateOutcome.PROCEED: ReviewState.APPROVED,
    GateOutcome.PROCEED_WITH_AMENDMENTS: ReviewState.APPROVED_WITH_AMENDMENTS,
    GateOutcome.BLOCKED: ReviewState.REJECTED,
    GateOutcome.REQUIRES_HUMAN: ReviewState.ESCALATED,
}


class GateTransitionError(RuntimeError):
    """Raised when a review step is attempted from the wrong state."""


@dataclass(frozen=True, slots=True)
class GateDecision:
    """What the pipeline may do after one gate."""

    stage: GateStage
    outcome: GateOutcome
    escalation_categories: tuple[str, ...] = ()
    amendments: tuple[str, ...] = ()
    hard_invariants: tuple[ProtectedInvariant, ...] = ()
    soft_invariants: tuple[ProtectedInvariant, ...] = ()
    reasons: tuple[str, ...] = ()

    @property
    def may_proceed(self) -> bool:
        return self.outcome in (GateOutcome.PROCEED, GateOutcome.PROCEED_WITH_AMENDMENTS)

    @property
    def requires_human_approval(self) -> bool:
        return self.outcome is GateOutcome.REQUIRES_HUMAN

    def to_dict(self) -> dict[str, object]:
        return {
            "stage": self.stage.value,
            "outcome": self.outcome.value,
            "may_proceed": self.may_proceed,
            "requires_human_approval": self.requires_human_approval,
            "escalation_categories": list(self.escalation_categories),
            "amendments": list(self.amendments),
            "hard_invariants": [item.to_dict() for item in self.hard_invariants],
            "soft_invariants": [item.to_dict() for item in self.soft_invariants],
            "reasons": list(self.reasons),
        }


@dataclass(frozen=True, slots=True)
class GateReview:
    """One artifact moving through the review-state machine."""

    stage: GateStage
    artifact_id: str
    state: ReviewState = ReviewState.PROPOSED
    verdict: GovernanceVerdict | None = None
    decision: GateDecision | None = None
    violations: tuple[ProtocolViolation, ...] = ()

    @property
    def is_concluded(self) -> bool:
        return self.decision is not None

    def to_dict(self) -> dict[str, object]:
        return {
            "stage": self.stage.value,
            "artifact_id": self.artifact_id,
            "state": self.state.value,
            "verdict": self.verdict.to_dict() if self.verdict is not None else None,
            "decision": self.decision.to_dict() if self.decision is not None else None,
            "violations": [item.to_dict() for item in self.violations],
        }


def propose_artifact(stage: GateStage | str, artifact_id: str) -> GateReview:
    if not isinstance(artifact_id, str) or not artifact_id.strip():
        raise ValueError("artifact_id must be a non-empty string")
    if len(artifact_id.strip()) > MAX_ARTIFACT_ID_CHARS:
        raise ValueError(f"artifact_id must be <= {MAX_ARTIFACT_ID_CHARS} characters")
    return GateReview(stage=GateStage(stage), artifact_id=artifact_id.strip())


def begin_review(review: GateReview) -> GateReview:
    if review.state is not ReviewState.PROPOSED:
        raise GateTransitionError(
            f"cannot begin review of {review.artifact_id!r} in state '{review.state.value}'"
        )
    return dataclasses.replace(review, state=ReviewState.REVIEWING)


def conclude_review(
    review: GateReview,
    output: str | Mapping[str, object] | GovernanceVerdict,
    *,
    policy: GovernancePolicy | None = None,
) -> GateReview:
    """Conclude a review from raw reviewer output, a decoded payload or a verdict."""

    if review.state is not ReviewState.REVIEWING:
        raise GateTransitionError(
            f"cannot conclude review of {review.artifact_id!r} in state '{review.state.value}'"
        )

    try:
        verdict = _coerce_verdict(output)
    except GovernanceProtocolError as exc:
        decision = GateDecision(
            stage=review.stage,
            outcome=GateOutcome.BLOCKED,
            reasons=tuple(f"Protocol violation: {item}" for item in exc.violations),
        )
        return dataclasses.replace(
            review,
            state=ReviewState.REJECTED,
            decision=decision,
            violations=exc.violations,
        )

    decision = evaluate_gate(verdict, stage=review.stage, policy=policy)
    return dataclasses.replace(
        review,
        state=_CONCLUDED_STATES[decision.outcome],
        verdict=verdict,
        decision=decision,
    )


def evaluate_gate(
    verdict: GovernanceVerdict,
    *,
    stage: GateStage | str,
    policy: GovernancePolicy | None = None,
) -> GateDecision:
    """Combine a verdict with the mandatory escalation policy."""

    active_policy = policy or default_policy()
    categories = active_policy.critical_categories_for(verdict.scope.affected_areas)

    reasons: list[str] = []
    if verdict.verdict is VerdictKind.REJECTED and verdict.rejection_reason:
        reasons.append(f"Rejected: {verdict.rejection_reason}")
    if verdict.verdict is VerdictKind.ESCALATE and verdict.escalation_reason:
        reasons.append(f"Escalated: {verdict.escalation_reason}")
    for category_id in categories:
        description = active_policy.category(category_id).description
        reasons.append(f"Critical path touched: {description} ({category_id})")

    if categories or verdict.verdict is VerdictKind.ESCALATE:
        outcome = GateOutcome.REQUIRES_HUMAN
    elif verdict.verdict is VerdictKind.REJECTED:
        outcome = GateOutcome.BLOCKED
    elif verdict.verdict is VerdictKind.APPROVED_WITH_AMENDMENTS:
        outcome = GateOutcome.PROCEED_WITH_AMENDMENTS
    else:
        outcome = GateOutcome.PROCEED

    return GateDecision(
        stage=GateStage(stage),
        outcome=outcome,
        escalation_categories=categories,
        amendments=verdict.amendments,
        hard_invariants=verdict.hard_invariants,
        soft_invariants=verdict.soft_invariants,
        reasons=tuple(reasons),
    )


class GovernanceGate:
    """Runs the review protocol for plan and structure artifacts."""

    def __init__(
        self,
        policy: GovernancePolicy | None = None,
        recorder: SupervisorEventRecorder | None = None,
        *,
        logger: Any | None = None,
    ) -> None:
        self._policy = policy or default_policy()
        self._recorder = recorder
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def policy(self) -> GovernancePolicy:
        return self._policy

    def review(
        self,
        stage: GateStage | str,
        artifact_id: str,
        output: str | Mapping[str, object] | GovernanceVerdict,
    ) -> GateReview:
        review = begin_review(propose_artifact(stage, artifact_id))
        with correlation_scope(stage=review.stage.value, artifact_id=review.artifact_id):
            self._emit(
                SupervisorEventType.GATE_STARTED,
                review,
                f"Reviewing {review.stage.value} {review.artifact_id}.",
                {},
            )
            concluded = conclude_review(review, output, policy=self._policy)
            decision = concluded.decision
            if decision is None:
                raise GateTransitionError(f"review of {artifact_id!r} did not conclude")

            details: dict[str, object] = {
                "state": concluded.state.value,
                "outcome": decision.outcome.value,
                "escalation_categories": list(decision.escalation_categories),
                "reasons": list(decision.reasons),
            }
            if decision.may_proceed:
                self._emit(
                    SupervisorEventType.GATE_PASSED,
                    concluded,
                    f"{review.stage.value.capitalize()} gate passed ({decision.outcome.value}).",
                    details,
                )
            else:
                self._emit(
                    SupervisorEventType.GATE_FAILED,
                    concluded,
                    f"{review.stage.value.capitalize()} gate stopped ({decision.outcome.value}).",
                    details,
                )

            self._logger.info(
                "governance_gate_decision",
                stage=review.stage.value,
                artifact_id=review.artifact_id,
                state=concluded.state.value,
                outcome=decision.outcome.value,
                escalation_categories=list(decision.escalation_categories),
                violation_count=len(concluded.violations),
                policy_version=self._policy.policy_version,
            )
        return concluded

    def _emit(
        self,
        event: SupervisorEventType,
        review: GateReview,
        summary: str,
        details: dict[str, object],
    ) -> None:
        if self._recorder is None:
            return
        payload: dict[str, object] = {"artifact_id": review.artifact_id}
        payload.update(details)
        self._recorder.record(event, f"{review.stage.value}_gate", summary, payload)


def _coerce_verdict(output: str | Mapping[str, object] | GovernanceVerdict) -> GovernanceVerdict:
    if isinstance(output, GovernanceVerdict):
        return output
    if isinstance(output, str):
        return parse_governance_output(output)
    return validate_verdict_payload(output)


__all__ = [
    "MAX_ARTIFACT_ID_CHARS",
    "GateDecision",
    "GateOutcome",
    "GateReview",
    "GateStage",
    "GateTransitionError",
    "GovernanceGate",
    "ReviewState",
    "begin_review",
    "conclude_review",
    "evaluate_gate",
    "propose_artifact",
]
