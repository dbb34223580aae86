"""
shipwright — governance plane

Purpose
- Versioned policy table, the verdict contract emitted by read-only
  reviewers, the gate protocol that turns verdicts into pipeline decisions,
  and the tool kernel that keeps reviewers read-only.
"""

from shipwright.governance.capabilities import (
    AgentRole,
    GovernanceError,
    InspectionCapabilities,
    ReadOnlyWorkspace,
    ToolAuthorization,
    ToolKernel,
    ViolationLog,
    assert_intent_allowed,
    authorize_tool,
)
from shipwright.governance.gate import (
    GateDecision,
    GateOutcome,
    GateReview,
    GateStage,
    GateTransitionError,
    GovernanceGate,
    ReviewState,
    begin_review,
    conclude_review,
    evaluate_gate,
    propose_artifact,
)
from shipwright.governance.policy import (
    GovernancePolicy,
    PolicyLoadError,
    default_policy,
    load_governance_policy,
)
from shipwright.governance.verdict import (
    Confidence,
    GovernanceProtocolError,
    GovernanceVerdict,
    InvariantSeverity,
    ProtectedInvariant,
    VerdictKind,
    VerdictScope,
    format_verdict_for_agent,
    parse_governance_output,
    summarize_for_user,
    validate_verdict_payload,
)

__all__ = [
    "AgentRole",
    "Confidence",
    "GateDecision",
    "GateOutcome",
    "GateReview",
    "GateStage",
    "GateTransitionError",
    "GovernanceError",
    "GovernanceGate",
    "GovernancePolicy",
    "GovernanceProtocolError",
    "GovernanceVerdict",
    "InspectionCapabilities",
    "InvariantSeverity",
    "PolicyLoadError",
    "ProtectedInvariant",
    "ReadOnlyWorkspace",
    "ReviewState",
    "ToolAuthorization",
    "ToolKernel",
    "VerdictKind",
    "VerdictScope",
    "ViolationLog",
    "assert_intent_allowed",
    "authorize_tool",
    "begin_review",
    "conclude_review",
    "default_policy",
    "evaluate_gate",
    "format_verdict_for_agent",
    "load_governance_policy",
    "parse_governance_output",
    "propose_artifact",
    "summarize_for_user",
    "validate_verdict_payload",
]
