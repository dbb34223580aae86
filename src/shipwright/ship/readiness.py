"""
Release readiness evaluation.

Readiness needs all of: auditor passed, preview verified, runtime probe
passed, and no pending human review. Hard protected-invariant violations
supplied by the caller block as well; soft ones only warn. ``rescue_count``
is carried for audit and never blocks on its own.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Final

from shipwright.governance.verdict import InvariantSeverity, ProtectedInvariant

BLOCKER_AUDITOR: Final[str] = "Auditor verification has not passed."
BLOCKER_PREVIEW: Final[str] = "Preview verification is incomplete."
BLOCKER_RUNTIME_PROBE: Final[str] = "Runtime probe did not pass for the current build."
BLOCKER_HUMAN_REVIEW: Final[str] = "Human review is required before shipping."

WARNING_MANUAL_RESCUE: Final[str] = "Build required manual rescue before ship."
WARNING_RUNTIME_HASH: Final[str] = "Runtime hash is missing from verification payload."
WARNING_LOCK_HASH: Final[str] = "Dependency lock hash is missing from verification payload."

# wire (camelCase) name -> attribute name
_SNAPSHOT_FIELDS: Final[dict[str, str]] = {
    "auditorPassed": "auditor_passed",
    "previewVerified": "preview_verified",
    "runtimeProbePassed": "runtime_probe_passed",
    "runtimeHash": "runtime_hash",
    "dependencyLockHash": "dependency_lock_hash",
    "rescueCount": "rescue_count",
    "requiresHumanReview": "requires_human_review",
    "verifiedAt": "verified_at",
}
_REQUIRED_SNAPSHOT_FIELDS: Final[frozenset[str]] = frozenset(
    {"auditor_passed", "preview_verified", "runtime_probe_passed"}
)


@dataclass(frozen=True, slots=True)
class GovernanceSnapshot:
    """Audit and verification signals gathered for one build."""

    auditor_passed: bool
    preview_verified: bool
    runtime_probe_passed: bool
    runtime_hash: str | None = None
    dependency_lock_hash: str | None = None
    rescue_count: int = 0
    requires_human_review: bool = False
    verified_at: datetime | None = None

    def __post_init__(self) -> None:
        for name in (
            "auditor_passed",
            "preview_verified",
            "runtime_probe_passed",
            "requires_human_review",
        ):
            if not isinstance(getattr(self, name), bool):
                raise ValueError(f"GovernanceSnapshot.{name}: expected boolean")
        for name in ("runtime_hash", "dependency_lock_hash"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                raise ValueError(f"GovernanceSnapshot.{name}: expected string or null")
        if (
            isinstance(self.rescue_count, bool)
            or not isinstance(self.rescue_count, int)
            or self.rescue_count < 0
        ):
            raise ValueError("GovernanceSnapshot.rescue_count: expected integer >= 0")
        if self.verified_at is not None:
            if not isinstance(self.verified_at, datetime) or self.verified_at.utcoffset() is None:
                raise ValueError("GovernanceSnapshot.verified_at: expected timezone-aware datetime")
            object.__setattr__(self, "verified_at", self.verified_at.astimezone(UTC))

    @property
    def manual_rescue_required(self) -> bool:
        return self.rescue_count > 0

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {}
        for wire_name, attr in _SNAPSHOT_FIELDS.items():
            value = getattr(self, attr)
            if isinstance(value, datetime):
                value = value.isoformat(timespec="microseconds").replace("+00:00", "Z")
            out[wire_name] = value
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> GovernanceSnapshot:
        """Accept camelCase wire keys or snake_case attribute names."""

        if not isinstance(data, Mapping):
            raise ValueError("GovernanceSnapshot: expected object")
        values: dict[str, object] = {}
        known = set(_SNAPSHOT_FIELDS) | set(_SNAPSHOT_FIELDS.values())
        unknown = sorted(str(key) for key in data if key not in known)
        if unknown:
            raise ValueError(f"GovernanceSnapshot: unexpected fields {unknown}")
        for wire_name, attr in _SNAPSHOT_FIELDS.items():
            for key in (wire_name, attr):
                if key in data:
                    if attr in values:
                        raise ValueError(f"GovernanceSnapshot: both {wire_name} and {attr} given")
                    values[attr] = data[key]
        missing = sorted(_REQUIRED_SNAPSHOT_FIELDS - set(values))
        if missing:
            raise ValueError(f"GovernanceSnapshot: missing required fields {missing}")
        if values.get("rescue_count") is None:
            values["rescue_count"] = 0
        if values.get("requires_human_review") is None:
            values["requires_human_review"] = False
        raw_verified = values.get("verified_at")
        if isinstance(raw_verified, str):
            values["verified_at"] = _parse_timestamp(raw_verified)
        return cls(**values)  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class InvariantViolation:
    """A protected invariant the caller observed to be broken."""

    description: str
    severity: InvariantSeverity
    detail: str | None = None

    @classmethod
    def of(cls, invariant: ProtectedInvariant, detail: str | None = None) -> InvariantViolation:
        return cls(description=invariant.description, severity=invariant.severity, detail=detail)

    def render(self) -> str:
        suffix = f" ({self.detail})" if self.detail else ""
        return f"{self.description}{suffix}"


@dataclass(frozen=True, slots=True)
class ReadinessReport:
    ready: bool
    blockers: tuple[str, ...]
    warnings: tuple[str, ...]
    manual_rescue_required: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "ready": self.ready,
            "blockers": list(self.blockers),
            "warnings": list(self.warnings),
            "manualRescueRequired": self.manual_rescue_required,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ReadinessReport:
        ready = data.get("ready")
        manual = data.get("manualRescueRequired")
        blockers = data.get("blockers")
        warnings = data.get("warnings")
        if not isinstance(ready, bool) or not isinstance(manual, bool):
            raise ValueError("ReadinessReport: ready and manualRescueRequired must be booleans")
        if not _is_str_list(blockers) or not _is_str_list(warnings):
            raise ValueError("ReadinessReport: blockers and warnings must be string lists")
        return cls(
            ready=ready,
            blockers=tuple(blockers),  # type: ignore[arg-type]
            warnings=tuple(warnings),  # type: ignore[arg-type]
            manual_rescue_required=manual,
        )


def evaluate_release_readiness(
    snapshot: GovernanceSnapshot,
    *,
    invariant_violations: Iterable[InvariantViolation] = (),
) -> ReadinessReport:
    blockers: list[str] = []
    warnings: list[str] = []

    if not snapshot.auditor_passed:
        blockers.append(BLOCKER_AUDITOR)
    if not snapshot.preview_verified:
        blockers.append(BLOCKER_PREVIEW)
    if not snapshot.runtime_probe_passed:
        blockers.append(BLOCKER_RUNTIME_PROBE)
    if snapshot.requires_human_review:
        blockers.append(BLOCKER_HUMAN_REVIEW)

    for violation in invariant_violations:
        if violation.severity is InvariantSeverity.HARD:
            blockers.append(f"Protected invariant broken: {violation.render()}")
        else:
            warnings.append(f"Soft invariant broken: {violation.render()}")

    if snapshot.manual_rescue_required:
        warnings.append(WARNING_MANUAL_RESCUE)
    if not snapshot.runtime_hash:
        warnings.append(WARNING_RUNTIME_HASH)
    if not snapshot.dependency_lock_hash:
        warnings.append(WARNING_LOCK_HASH)

    return ReadinessReport(
        ready=not blockers,
        blockers=tuple(blockers),
        warnings=tuple(warnings),
        manual_rescue_required=snapshot.manual_rescue_required,
    )


def _parse_timestamp(raw: str) -> datetime:
    text = raw.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"GovernanceSnapshot.verified_at: invalid timestamp {raw!r}") from exc
    if parsed.utcoffset() is None:
        raise ValueError("GovernanceSnapshot.verified_at: timestamp must include a UTC offset")
    return parsed


def _is_str_list(value: object) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


__all__ = [
    "BLOCKER_AUDITOR",
    "BLOCKER_HUMAN_REVIEW",
    "BLOCKER_PREVIEW",
    "BLOCKER_RUNTIME_PROBE",
    "WARNING_LOCK_HASH",
    "WARNING_MANUAL_RESCUE",
    "WARNING_RUNTIME_HASH",
    "GovernanceSnapshot",
    "InvariantViolation",
    "ReadinessReport",
    "evaluate_release_readiness",
]
