"""
shipwright — unit tests for the governance gate protocol

File: tests/unit/governance/test_gate.py

Purpose
- Validate the review-state machine and mandatory critical-path escalation.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime

import pytest

from shipwright.domain.events import SupervisorEventType
from shipwright.governance.gate import (
    MAX_ARTIFACT_ID_CHARS,
    GateOutcome,
    GateStage,
    GateTransitionError,
    GovernanceGate,
    ReviewState,
    begin_review,
    conclude_review,
    evaluate_gate,
    propose_artifact,
)
from shipwright.governance.verdict import validate_verdict_payload
from shipwright.observability.event_log import SupervisorEventRecorder


@dataclass
class RecordingLogger:
    events: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append((event, kwargs))


def _payload(verdict: str = "approved", areas: list[str] | None = None, **extra: object) -> dict:
    payload: dict[str, object] = {
        "verdict": verdict,
        "confidence": "medium",
        "scope": {
            "intent": "Adjust the landing hero",
            "affected_areas": areas if areas is not None else ["src/app/page.tsx"],
        },
        "protected_invariants": [
            {"description": "Checkout flow", "scope": ["src/checkout"], "severity": "hard"}
        ],
    }
    payload.update(extra)
    return payload


@pytest.mark.unit
@pytest.mark.parametrize(
    ("payload", "outcome"),
    [
        (_payload(), GateOutcome.PROCEED),
        (
            _payload("approved_with_amendments", amendments=["x"]),
            GateOutcome.PROCEED_WITH_AMENDMENTS,
        ),
        (_payload("rejected", rejection_reason="Out of scope"), GateOutcome.BLOCKED),
        (_payload("escalate", escalation_reason="Unclear ask"), GateOutcome.REQUIRES_HUMAN),
    ],
)
def test_verdict_kinds_map_to_outcomes(payload: dict, outcome: GateOutcome) -> None:
    decision = evaluate_gate(validate_verdict_payload(payload), stage=GateStage.PLAN)
    assert decision.outcome is outcome
    proceeds = outcome in (GateOutcome.PROCEED, GateOutcome.PROCEED_WITH_AMENDMENTS)
    assert decision.may_proceed is proceeds
    assert [item.description for item in decision.hard_invariants] == ["Checkout flow"]


@pytest.mark.unit
def test_critical_path_forces_escalation_even_when_approved() -> None:
    verdict = validate_verdict_payload(_payload(areas=["src/auth/login.ts", "src/app/page.tsx"]))
    decision = evaluate_gate(verdict, stage="structure")

    assert decision.outcome is GateOutcome.REQUIRES_HUMAN
    assert decision.requires_human_approval
    assert not decision.may_proceed
    assert decision.escalation_categories == ("authentication",)
    assert decision.reasons == (
        "Critical path touched: Authentication and authorization (authentication)",
    )


@pytest.mark.unit
def test_rejection_on_critical_path_still_escalates() -> None:
    verdict = validate_verdict_payload(
        _payload("rejected", areas=["db/migrations/002.sql"], rejection_reason="Unsafe")
    )
    decision = evaluate_gate(verdict, stage=GateStage.PLAN)
    assert decision.outcome is GateOutcome.REQUIRES_HUMAN
    assert decision.reasons[0] == "Rejected: Unsafe"


@pytest.mark.unit
def test_review_state_machine() -> None:
    review = propose_artifact("plan", " plan-1 ")
    assert review.state is ReviewState.PROPOSED
    assert review.artifact_id == "plan-1"

    with pytest.raises(GateTransitionError):
        conclude_review(review, _payload())

    reviewing = begin_review(review)
    assert reviewing.state is ReviewState.REVIEWING
    with pytest.raises(GateTransitionError):
        begin_review(reviewing)

    concluded = conclude_review(reviewing, json.dumps(_payload()))
    assert concluded.state is ReviewState.APPROVED
    assert concluded.is_concluded
    assert concluded.to_dict()["decision"]["outcome"] == "proceed"  # type: ignore[index]

    with pytest.raises(ValueError):
        propose_artifact("plan", "  ")


@pytest.mark.unit
def test_malformed_output_blocks_with_violations() -> None:
    reviewing = begin_review(propose_artifact(GateStage.STRUCTURE, "tree-1"))
    concluded = conclude_review(reviewing, "I approve this plan!")

    assert concluded.state is ReviewState.REJECTED
    assert concluded.verdict is None
    assert concluded.decision is not None
    assert concluded.decision.outcome is GateOutcome.BLOCKED
    assert concluded.violations
    assert concluded.decision.reasons[0].startswith("Protocol violation: $:")


@pytest.mark.unit
def test_governance_gate_emits_events_and_logs() -> None:
    clock_value = datetime(2026, 7, 1, tzinfo=UTC)
    recorder = SupervisorEventRecorder("run-gate", clock=lambda: clock_value)
    logger = RecordingLogger()
    gate = GovernanceGate(recorder=recorder, logger=logger)

    passed = gate.review(GateStage.PLAN, "plan-7", _payload())
    stopped = gate.review(GateStage.STRUCTURE, "tree-7", _payload(areas=["app/billing/page.tsx"]))

    assert passed.state is ReviewState.APPROVED
    assert stopped.state is ReviewState.ESCALATED
    assert [event.event for event in recorder.events] == [
        SupervisorEventType.GATE_STARTED,
        SupervisorEventType.GATE_PASSED,
        SupervisorEventType.GATE_STARTED,
        SupervisorEventType.GATE_FAILED,
    ]
    assert recorder.events[1].stage == "plan_gate"
    assert recorder.events[3].details["escalation_categories"] == ["payments"]

    assert [name for name, _ in logger.events] == [
        "governance_gate_decision",
        "governance_gate_decision",
    ]
    assert logger.events[1][1]["outcome"] == "requires_human"
    assert logger.events[1][1]["policy_version"] == gate.policy.policy_version


@pytest.mark.unit
def test_overlong_artifact_id_is_refused_before_any_event() -> None:
    recorder = SupervisorEventRecorder("run-gate", clock=lambda: datetime(2026, 7, 1, tzinfo=UTC))
    gate = GovernanceGate(recorder=recorder, logger=RecordingLogger())

    with pytest.raises(ValueError, match="artifact_id"):
        gate.review(GateStage.PLAN, "a" * 5000, _payload())
    assert recorder.events == ()

    longest = "a" * MAX_ARTIFACT_ID_CHARS
    reviewed = gate.review(GateStage.PLAN, longest, _payload())
    assert reviewed.artifact_id == longest
    assert longest in recorder.events[0].summary
