"""
shipwright — governance policy table

File: src/shipwright/governance/policy.py

Purpose
- Load the versioned policy table that names the critical-path escalation
  categories and the transient error substrings.
- Answer "which critical-path categories does this set of paths touch?".

Functional requirements
- Policy lives in YAML data (``governance/data/default_policy.yaml``), not
  in inline literals, so policy changes never touch transition logic.
- Loading validates structure and fails loudly with ``PolicyLoadError``.
- Matching is deterministic: results are sorted category identifiers.

Non-functional requirements
- The packaged default is parsed once per process and cached.
"""

from __future__ import annotations

import fnmatch
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, cast

import yaml

from shipwright.constants import GOVERNANCE_POLICY_SCHEMA_VERSION

DEFAULT_POLICY_PATH: Final[Path] = Path(__file__).resolve().parent / "data" / "default_policy.yaml"

_CATEGORY_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[a-z][a-z0-9_]*$")
_WORD_SPLIT_RE: Final[re.Pattern[str]] = re.compile(r"[^a-z0-9]+")
_ROOT_KEYS: Final[frozenset[str]] = frozenset(
    {"schema_version", "policy_version", "transient_error_patterns", "critical_paths"}
)


class PolicyLoadError(ValueError):
    """Raised when a governance policy file is unreadable or structurally invalid."""


@dataclass(frozen=True, slots=True)
class CriticalPathCategory:
    """One mandatory-escalation category."""

    category_id: str
    description: str
    path_patterns: tuple[str, ...]
    keywords: frozenset[str]

    def matches(self, area: str) -> bool:
        normalized = _normalize_area(area)
        if not normalized:
            return False
        for pattern in self.path_patterns:
            if fnmatch.fnmatchcase(normalized, pattern):
                return True
            if pattern.startswith("**/") and fnmatch.fnmatchcase(normalized, pattern[3:]):
                return True
        return not self.keywords.isdisjoint(_area_terms(normalized))


@dataclass(frozen=True, slots=True)
class GovernancePolicy:
    """Immutable, versioned governance policy table."""

    schema_version: int
    policy_version: str
    transient_error_patterns: tuple[str, ...]
    critical_paths: tuple[CriticalPathCategory, ...]

    def critical_categories_for(self, areas: Iterable[str]) -> tuple[str, ...]:
        """Return sorted ids of every critical-path category any of ``areas`` touches."""

        materialized = tuple(areas)
        hits = {
            category.category_id
            for category in self.critical_paths
            if any(category.matches(area) for area in materialized)
        }
        return tuple(sorted(hits))

    def category(self, category_id: str) -> CriticalPathCategory:
        for category in self.critical_paths:
            if category.category_id == category_id:
                return category
        raise KeyError(category_id)

    def to_dict(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "policy_version": self.policy_version,
            "transient_error_patterns": list(self.transient_error_patterns),
            "critical_paths": {
                category.category_id: {
                    "description": category.description,
                    "path_patterns": list(category.path_patterns),
                    "keywords": sorted(category.keywords),
                }
                for category in self.critical_paths
            },
        }


def load_governance_policy(path: str | Path | None = None) -> GovernancePolicy:
    """Load and validate a policy file; ``None`` loads the packaged default."""

    if path is None:
        return default_policy()
    return _load_policy_file(Path(path))


@lru_cache(maxsize=1)
def default_policy() -> GovernancePolicy:
    """Return the packaged default policy (parsed once)."""

    return _load_policy_file(DEFAULT_POLICY_PATH)


def parse_governance_policy(payload: object, *, source: str = "<memory>") -> GovernancePolicy:
    """Validate an already-decoded policy mapping."""

    root = _expect_mapping(payload, source)
    unknown = sorted(set(root) - _ROOT_KEYS)
    if unknown:
        raise PolicyLoadError(f"{source}: unexpected fields: {unknown}")

    schema_version = root.get("schema_version")
    if schema_version != GOVERNANCE_POLICY_SCHEMA_VERSION:
        raise PolicyLoadError(
            f"{source}.schema_version: expected {GOVERNANCE_POLICY_SCHEMA_VERSION}, "
            f"got {schema_version!r}"
        )

    policy_version = root.get("policy_version")
    if not isinstance(policy_version, str) or not policy_version.strip():
        raise PolicyLoadError(f"{source}.policy_version: expected non-empty string")

    patterns = _str_list(
        root.get("transient_error_patterns"), f"{source}.transient_error_patterns"
    )
    if not patterns:
        raise PolicyLoadError(f"{source}.transient_error_patterns: must not be empty")

    raw_paths = _expect_mapping(root.get("critical_paths"), f"{source}.critical_paths")
    if not raw_paths:
        raise PolicyLoadError(f"{source}.critical_paths: must not be empty")

    categories: list[CriticalPathCategory] = []
    for category_id in sorted(raw_paths):
        entry_path = f"{source}.critical_paths.{category_id}"
        if not _CATEGORY_ID_RE.fullmatch(category_id):
            raise PolicyLoadError(f"{entry_path}: category id must be snake_case")
        entry = _expect_mapping(raw_paths[category_id], entry_path)
        description = entry.get("description")
        if not isinstance(description, str) or not description.strip():
            raise PolicyLoadError(f"{entry_path}.description: expected non-empty string")
        path_patterns = _str_list(entry.get("path_patterns", []), f"{entry_path}.path_patterns")
        keywords = _str_list(entry.get("keywords", []), f"{entry_path}.keywords")
        if not path_patterns and not keywords:
            raise PolicyLoadError(f"{entry_path}: needs at least one path pattern or keyword")
        categories.append(
            CriticalPathCategory(
                category_id=category_id,
                description=description.strip(),
                path_patterns=tuple(_normalize_area(item) for item in path_patterns),
                keywords=frozenset(item.lower() for item in keywords),
            )
        )

    return GovernancePolicy(
        schema_version=GOVERNANCE_POLICY_SCHEMA_VERSION,
        policy_version=policy_version.strip(),
        transient_error_patterns=tuple(item.lower() for item in patterns),
        critical_paths=tuple(categories),
    )


def _load_policy_file(path: Path) -> GovernancePolicy:
    try:
        with path.open("r", encoding="utf-8") as handle:
            loaded = cast("object", yaml.safe_load(handle))
    except yaml.YAMLError as exc:
        raise PolicyLoadError(f"{path}: invalid YAML: {exc}") from exc
    except OSError as exc:
        raise PolicyLoadError(f"{path}: unable to read policy file: {exc}") from exc
    return parse_governance_policy(loaded, source=path.name)


def _expect_mapping(value: object, path: str) -> dict[str, object]:
    if not isinstance(value, Mapping):
        raise PolicyLoadError(f"{path}: expected mapping, got {type(value).__name__}")
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise PolicyLoadError(f"{path}: keys must be strings")
        out[key] = item
    return out


def _str_list(value: object, path: str) -> list[str]:
    if not isinstance(value, list):
        raise PolicyLoadError(f"{path}: expected list, got {type(value).__name__}")
    out: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str) or not item.strip():
            raise PolicyLoadError(f"{path}[{index}]: expected non-empty string")
        out.append(item.strip())
    return out


def _normalize_area(value: str) -> str:
    collapsed = re.sub(r"/{2,}", "/", value.strip().replace("\\", "/"))
    return collapsed.lstrip("/").lower()


def _area_terms(normalized: str) -> set[str]:
    terms: set[str] = set()
    for segment in normalized.split("/"):
        stem = segment.split(".", 1)[0] if not segment.startswith(".") else segment[1:]
        if not stem:
            continue
        terms.add(stem)
        terms.update(word for word in _WORD_SPLIT_RE.split(stem) if word)
    return terms


__all__ = [
    "DEFAULT_POLICY_PATH",
    "CriticalPathCategory",
    "GovernancePolicy",
    "PolicyLoadError",
    "default_policy",
    "load_governance_policy",
    "parse_governance_policy",
]
