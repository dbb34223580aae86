"""
shipwright — governance verdict contract

File: src/shipwright/governance/verdict.py

Purpose
- Parse and validate the verdict a read-only reviewer emits for a proposed
  plan or file structure.
- Render a validated verdict as the contract block handed to downstream
  agents, and as a one-line summary for people.

Functional requirements
- Reviewer output must be exactly one JSON object, optionally wrapped in a
  single fenced ``json`` block, with nothing before or after it.
- Validation is strict and exhaustive: every protocol violation in a
  payload is collected and reported together via
  ``GovernanceProtocolError``. Nothing is defaulted or repaired.
- Verdict-specific fields are required on their verdict kind and
  forbidden on every other kind.

Non-functional requirements
- Deterministic rendering (jinja2 with ``StrictUndefined``).
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from functools import lru_cache
from pathlib import Path
from typing import Final, TypeVar

from jinja2 import Environment, FileSystemLoader, StrictUndefined

TEnum = TypeVar("TEnum", bound=StrEnum)

_TEMPLATE_ROOT: Final[Path] = Path(__file__).resolve().parent / "templates"
_CONTRACT_TEMPLATE: Final[str] = "governance_contract.j2"

_FENCED_BLOCK_RE: Final[re.Pattern[str]] = re.compile(
    r"\A```(?:json)?[ \t]*\r?\n(?P<body>.*?)\r?\n?```\Z", re.DOTALL | re.IGNORECASE
)

_MAX_TEXT: Final[int] = 4096

_TOP_LEVEL_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "verdict",
        "confidence",
        "scope",
        "protected_invariants",
        "amendments",
        "rejection_reason",
        "escalation_reason",
        "notes",
    }
)


class VerdictKind(StrEnum):
    APPROVED = "approved"
    APPROVED_WITH_AMENDMENTS = "approved_with_amendments"
    REJECTED = "rejected"
    ESCALATE = "escalate"


class Confidence(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class InvariantSeverity(StrEnum):
    HARD = "hard"
    SOFT = "soft"


class ViolationCode(StrEnum):
    MALFORMED_OUTPUT = "malformed_output"
    MISSING_FIELD = "missing_field"
    INVALID_TYPE = "invalid_type"
    INVALID_VALUE = "invalid_value"
    UNEXPECTED_FIELD = "unexpected_field"
    FORBIDDEN_FIELD = "forbidden_field"


# Field each verdict kind must carry; it is forbidden on every other kind.
_KIND_SPECIFIC_FIELDS: Final[dict[VerdictKind, str]] = {
    VerdictKind.APPROVED_WITH_AMENDMENTS: "amendments",
    VerdictKind.REJECTED: "rejection_reason",
    VerdictKind.ESCALATE: "escalation_reason",
}


@dataclass(frozen=True, slots=True)
class ProtocolViolation:
    path: str
    code: ViolationCode
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "code": self.code.value, "message": self.message}

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


class GovernanceProtocolError(ValueError):
    """Raised when reviewer output violates the verdict contract."""

    def __init__(self, violations: tuple[ProtocolViolation, ...]) -> None:
        self.violations = violations
        super().__init__("; ".join(str(item) for item in violations))


@dataclass(frozen=True, slots=True)
class VerdictScope:
    intent: str
    affected_areas: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        return {"intent": self.intent, "affected_areas": list(self.affected_areas)}


@dataclass(frozen=True, slots=True)
class ProtectedInvariant:
    """A property the build must not change; ``hard`` breaks block shipping."""

    description: str
    scope: tuple[str, ...]
    severity: InvariantSeverity

    @property
    def is_hard(self) -> bool:
        return self.severity is InvariantSeverity.HARD

    def to_dict(self) -> dict[str, object]:
        return {
            "description": self.description,
            "scope": list(self.scope),
            "severity": self.severity.value,
        }


@dataclass(frozen=True, slots=True)
class GovernanceVerdict:
    """One validated verdict over a plan or structure artifact."""

    verdict: VerdictKind
    confidence: Confidence
    scope: VerdictScope
    protected_invariants: tuple[ProtectedInvariant, ...] = ()
    amendments: tuple[str, ...] = ()
    rejection_reason: str | None = None
    escalation_reason: str | None = None
    notes: str | None = None

    @property
    def hard_invariants(self) -> tuple[ProtectedInvariant, ...]:
        return tuple(item for item in self.protected_invariants if item.is_hard)

    @property
    def soft_invariants(self) -> tuple[ProtectedInvariant, ...]:
        return tuple(item for item in self.protected_invariants if not item.is_hard)

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {
            "verdict": self.verdict.value,
            "confidence": self.confidence.value,
            "scope": self.scope.to_dict(),
            "protected_invariants": [item.to_dict() for item in self.protected_invariants],
        }
        if self.amendments:
            out["amendments"] = list(self.amendments)
        if self.rejection_reason is not None:
            out["rejection_reason"] = self.rejection_reason
        if self.escalation_reason is not None:
            out["escalation_reason"] = self.escalation_reason
        if self.notes is not None:
            out["notes"] = self.notes
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def parse_governance_output(raw: str) -> GovernanceVerdict:
    """Parse raw reviewer output into a validated verdict or raise."""

    if not isinstance(raw, str):
        raise GovernanceProtocolError(
            (_violation("$", ViolationCode.MALFORMED_OUTPUT, "output must be a string"),)
        )

    text = raw.strip()
    if not text:
        raise GovernanceProtocolError(
            (_violation("$", ViolationCode.MALFORMED_OUTPUT, "output is empty"),)
        )

    if text.startswith("```"):
        match = _FENCED_BLOCK_RE.match(text)
        if match is None:
            raise GovernanceProtocolError(
                (
                    _violation(
                        "$",
                        ViolationCode.MALFORMED_OUTPUT,
                        "fenced output must be a single ```json block with nothing after it",
                    ),
                )
            )
        text = match.group("body").strip()

    try:
        payload = json.loads(
            text,
            object_pairs_hook=_reject_duplicate_keys,
            parse_constant=_reject_constant,
        )
    except ValueError as exc:
        raise GovernanceProtocolError(
            (
                _violation(
                    "$",
                    ViolationCode.MALFORMED_OUTPUT,
                    f"output must be exactly one JSON object with no surrounding text ({exc})",
                ),
            )
        ) from exc

    return validate_verdict_payload(payload)


def validate_verdict_payload(payload: object) -> GovernanceVerdict:
    """Validate a decoded verdict, reporting every violation at once."""

    issues = _IssueCollector()
    if not isinstance(payload, Mapping):
        issues.add("$", ViolationCode.INVALID_TYPE, "verdict must be a JSON object")
        raise GovernanceProtocolError(issues.freeze())

    for key in sorted(str(item) for item in payload if item not in _TOP_LEVEL_FIELDS):
        issues.add(f"$.{key}", ViolationCode.UNEXPECTED_FIELD, "unknown field")

    verdict = _enum_field(payload, "verdict", VerdictKind, issues)
    confidence = _enum_field(payload, "confidence", Confidence, issues)
    scope = _scope_field(payload.get("scope"), verdict, issues)
    invariants = _invariants_field(payload, issues)

    amendments: tuple[str, ...] = ()
    raw_amendments = payload.get("amendments")
    if raw_amendments is not None:
        amendments = _string_list(raw_amendments, "$.amendments", issues)
    rejection_reason = _optional_text(
        payload.get("rejection_reason"), "$.rejection_reason", issues
    )
    escalation_reason = _optional_text(
        payload.get("escalation_reason"), "$.escalation_reason", issues
    )
    notes = _optional_text(payload.get("notes"), "$.notes", issues)

    if verdict is not None:
        _check_kind_specific_fields(payload, verdict, issues)

    if issues or verdict is None or confidence is None or scope is None:
        raise GovernanceProtocolError(issues.freeze())

    return GovernanceVerdict(
        verdict=verdict,
        confidence=confidence,
        scope=scope,
        protected_invariants=invariants,
        amendments=amendments,
        rejection_reason=rejection_reason,
        escalation_reason=escalation_reason,
        notes=notes,
    )


def format_verdict_for_agent(verdict: GovernanceVerdict) -> str:
    """Render the contract block appended to downstream agent context."""

    template = _environment().get_template(_CONTRACT_TEMPLATE)
    return template.render(
        intent=verdict.scope.intent,
        affected_areas=list(verdict.scope.affected_areas),
        invariants=[item.to_dict() for item in verdict.protected_invariants],
        amendments=list(verdict.amendments),
        notes=verdict.notes,
    )


def summarize_for_user(verdict: GovernanceVerdict) -> str:
    """One friendly sentence: what changes and what is kept intact."""

    parts: list[str] = []
    intent = verdict.scope.intent.rstrip(". ")
    if intent:
        parts.append(intent)
    if verdict.protected_invariants:
        kept = ", ".join(item.description for item in verdict.protected_invariants)
        parts.append(f"Keeping intact: {kept}")
    return ". ".join(parts) + "."


class _IssueCollector:
    def __init__(self) -> None:
        self._items: list[ProtocolViolation] = []

    def add(self, path: str, code: ViolationCode, message: str) -> None:
        self._items.append(ProtocolViolation(path=path, code=code, message=message))

    def freeze(self) -> tuple[ProtocolViolation, ...]:
        return tuple(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)


@lru_cache(maxsize=1)
def _environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(_TEMPLATE_ROOT)),
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        newline_sequence="\n",
        keep_trailing_newline=False,
    )


def _violation(path: str, code: ViolationCode, message: str) -> ProtocolViolation:
    return ProtocolViolation(path=path, code=code, message=message)


def _reject_duplicate_keys(pairs: list[tuple[str, object]]) -> dict[str, object]:
    out: dict[str, object] = {}
    for key, value in pairs:
        if key in out:
            raise ValueError(f"duplicate key {key!r}")
        out[key] = value
    return out


def _reject_constant(name: str) -> object:
    raise ValueError(f"non-finite number {name} is not valid JSON")


def _check_kind_specific_fields(
    payload: Mapping[str, object],
    verdict: VerdictKind,
    issues: _IssueCollector,
) -> None:
    required = _KIND_SPECIFIC_FIELDS.get(verdict)
    for kind, field_name in _KIND_SPECIFIC_FIELDS.items():
        provided = payload.get(field_name) is not None
        if field_name == required:
            if not provided:
                detail = "at least one amendment" if field_name == "amendments" else "a reason"
                issues.add(
                    f"$.{field_name}",
                    ViolationCode.MISSING_FIELD,
                    f"verdict '{verdict.value}' requires {detail}",
                )
            elif field_name == "amendments" and payload[field_name] == []:
                issues.add(
                    "$.amendments",
                    ViolationCode.INVALID_VALUE,
                    f"verdict '{verdict.value}' requires at least one amendment",
                )
        elif provided:
            issues.add(
                f"$.{field_name}",
                ViolationCode.FORBIDDEN_FIELD,
                f"only allowed with verdict '{kind.value}'",
            )


def _enum_field(
    payload: Mapping[str, object],
    name: str,
    enum_type: type[TEnum],
    issues: _IssueCollector,
    *,
    prefix: str = "$",
) -> TEnum | None:
    path = f"{prefix}.{name}"
    if payload.get(name) is None:
        issues.add(path, ViolationCode.MISSING_FIELD, "required")
        return None
    value = payload[name]
    if not isinstance(value, str):
        issues.add(path, ViolationCode.INVALID_TYPE, "expected string")
        return None
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(item.value for item in enum_type)
        issues.add(path, ViolationCode.INVALID_VALUE, f"expected one of: {allowed}")
        return None


def _scope_field(
    value: object,
    verdict: VerdictKind | None,
    issues: _IssueCollector,
) -> VerdictScope | None:
    if value is None:
        issues.add("$.scope", ViolationCode.MISSING_FIELD, "required")
        return None
    if not isinstance(value, Mapping):
        issues.add("$.scope", ViolationCode.INVALID_TYPE, "expected object")
        return None
    for key in sorted(str(item) for item in value if item not in {"intent", "affected_areas"}):
        issues.add(f"$.scope.{key}", ViolationCode.UNEXPECTED_FIELD, "unknown field")

    intent = _required_text(value.get("intent"), "$.scope.intent", issues)

    raw_areas = value.get("affected_areas")
    areas: tuple[str, ...] = ()
    if raw_areas is None:
        issues.add("$.scope.affected_areas", ViolationCode.MISSING_FIELD, "required")
    else:
        areas = _string_list(raw_areas, "$.scope.affected_areas", issues)
        # Only a rejected proposal may carry an empty scope.
        if isinstance(raw_areas, list) and not raw_areas and verdict is not VerdictKind.REJECTED:
            issues.add(
                "$.scope.affected_areas",
                ViolationCode.INVALID_VALUE,
                "must list at least one area unless the proposal is rejected",
            )

    if intent is None:
        return None
    return VerdictScope(intent=intent, affected_areas=areas)


def _invariants_field(
    payload: Mapping[str, object],
    issues: _IssueCollector,
) -> tuple[ProtectedInvariant, ...]:
    path = "$.protected_invariants"
    if "protected_invariants" not in payload or payload["protected_invariants"] is None:
        issues.add(path, ViolationCode.MISSING_FIELD, "required (use [] when there are none)")
        return ()
    raw = payload["protected_invariants"]
    if not isinstance(raw, list):
        issues.add(path, ViolationCode.INVALID_TYPE, "expected list")
        return ()

    invariants: list[ProtectedInvariant] = []
    for index, entry in enumerate(raw):
        entry_path = f"{path}[{index}]"
        if not isinstance(entry, Mapping):
            issues.add(entry_path, ViolationCode.INVALID_TYPE, "expected object")
            continue
        for key in sorted(
            str(item) for item in entry if item not in {"description", "scope", "severity"}
        ):
            issues.add(f"{entry_path}.{key}", ViolationCode.UNEXPECTED_FIELD, "unknown field")
        description = _required_text(
            entry.get("description"), f"{entry_path}.description", issues
        )
        raw_scope = entry.get("scope")
        scope: tuple[str, ...] = ()
        if raw_scope is None:
            issues.add(f"{entry_path}.scope", ViolationCode.MISSING_FIELD, "required")
        else:
            scope = _string_list(raw_scope, f"{entry_path}.scope", issues)
        severity = _enum_field(entry, "severity", InvariantSeverity, issues, prefix=entry_path)
        if description is not None and severity is not None:
            invariants.append(
                ProtectedInvariant(description=description, scope=scope, severity=severity)
            )
    return tuple(invariants)


def _required_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    if value is None:
        issues.add(path, ViolationCode.MISSING_FIELD, "required")
        return None
    if not isinstance(value, str):
        issues.add(path, ViolationCode.INVALID_TYPE, "expected string")
        return None
    stripped = value.strip()
    if not stripped:
        issues.add(path, ViolationCode.INVALID_VALUE, "must not be empty")
        return None
    if len(stripped) > _MAX_TEXT:
        issues.add(path, ViolationCode.INVALID_VALUE, f"must be <= {_MAX_TEXT} characters")
        return None
    return stripped


def _optional_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    if value is None:
        return None
    return _required_text(value, path, issues)


def _string_list(value: object, path: str, issues: _IssueCollector) -> tuple[str, ...]:
    if not isinstance(value, list):
        issues.add(path, ViolationCode.INVALID_TYPE, "expected list of strings")
        return ()
    out: list[str] = []
    for index, item in enumerate(value):
        text = _required_text(item, f"{path}[{index}]", issues)
        if text is not None:
            out.append(text)
    return tuple(out)


__all__ = [
    "Confidence",
    "GovernanceProtocolError",
    "GovernanceVerdict",
    "InvariantSeverity",
    "ProtectedInvariant",
    "ProtocolViolation",
    "VerdictKind",
    "VerdictScope",
    "ViolationCode",
    "format_verdict_for_agent",
    "parse_governance_output",
    "summarize_for_user",
    "validate_verdict_payload",
]
