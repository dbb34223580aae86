"""
shipwright — configuration schema and validation.

File: src/shipwright/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Deterministic deep-merge helpers.
- Redaction rules for sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Secrets are never embedded in config; only the names of env vars holding them.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from shipwright.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_DISPATCH_LIMIT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_SIGNING_KEY_ID,
    DEFAULT_STALE_AFTER_SECONDS,
    MAX_DISPATCH_LIMIT,
    MAX_STALE_AFTER_SECONDS,
    MIN_STALE_AFTER_SECONDS,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_MAX_DELAY_SECONDS,
    SIGNING_SECRET_ENVS,
    TRUST_ARTIFACT_DIR,
    WORKER_TOKEN_ENVS,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "token",
        "password",
        "passwd",
        "key",
        "apikey",
        "private",
        "credential",
        "credentials",
        "auth",
    }
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Keys that look sensitive but hold identifiers, not secret material.
_NON_SECRET_KEYS: Final[frozenset[str]] = frozenset({"signing_key_id"})

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("governance", "policy_path"),
    ("governance", "tool_policy_path"),
    ("observability", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class RunsConfig(TypedDict):
    default_max_attempts: int
    retry_base_seconds: int
    retry_max_seconds: int
    stale_after_seconds: int
    dispatch_limit: int


class GovernanceConfig(TypedDict):
    policy_path: NotRequired[str]
    tool_policy_path: NotRequired[str]


class ShipConfig(TypedDict):
    artifact_dir: str
    signing_key_id: str
    signing_secret_envs: list[str]


class WorkerConfig(TypedDict):
    token_envs: list[str]


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stderr: bool
    redact_secrets: bool


class ShipwrightConfig(TypedDict):
    meta: MetaConfig
    runs: RunsConfig
    governance: GovernanceConfig
    ship: ShipConfig
    worker: WorkerConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[ShipwrightConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "runs": {
        "default_max_attempts": DEFAULT_MAX_ATTEMPTS,
        "retry_base_seconds": RETRY_BASE_DELAY_SECONDS,
        "retry_max_seconds": RETRY_MAX_DELAY_SECONDS,
        "stale_after_seconds": DEFAULT_STALE_AFTER_SECONDS,
        "dispatch_limit": DEFAULT_DISPATCH_LIMIT,
    },
    "governance": {},
    "ship": {
        "artifact_dir": str(TRUST_ARTIFACT_DIR),
        "signing_key_id": DEFAULT_SIGNING_KEY_ID,
        "signing_secret_envs": list(SIGNING_SECRET_ENVS),
    },
    "worker": {
        "token_envs": list(WORKER_TOKEN_ENVS),
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs",
        "log_to_stderr": False,
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> ShipwrightConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade shipwright.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the shipwright runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``.

    Nested tables merge key by key; any other value (lists included) replaces
    what was there. Neither input is mutated.
    """

    merged: dict[str, Any] = _copy_tree(base)
    for key in _str_keys(overlay):
        value = overlay[key]
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = _copy_tree(value)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, "", issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Key-sorted copy of ``config`` with secret-looking values replaced by ``<redacted>``."""

    if not isinstance(config, Mapping):
        return {}
    return {key: _redacted(key, config[key]) for key in _str_keys(config)}


dump_redacted = redact_config


FieldKind = Literal["int", "text", "path", "relative_path", "bool", "log_level", "env_names"]


@dataclass(frozen=True, slots=True)
class _Field:
    kind: FieldKind
    required: bool = True
    minimum: int | None = None
    maximum: int | None = None


# Section -> field -> rule. Field order is the order issues are reported in.
_SECTIONS: Final[dict[str, dict[str, _Field]]] = {
    "meta": {
        "schema_version": _Field("int", minimum=1),
    },
    "runs": {
        "default_max_attempts": _Field("int", minimum=1),
        "retry_base_seconds": _Field("int", minimum=0),
        "retry_max_seconds": _Field("int", minimum=0),
        "stale_after_seconds": _Field(
            "int", minimum=MIN_STALE_AFTER_SECONDS, maximum=MAX_STALE_AFTER_SECONDS
        ),
        "dispatch_limit": _Field("int", minimum=1, maximum=MAX_DISPATCH_LIMIT),
    },
    "governance": {
        "policy_path": _Field("path", required=False),
        "tool_policy_path": _Field("path", required=False),
    },
    "ship": {
        "artifact_dir": _Field("relative_path"),
        "signing_key_id": _Field("text"),
        "signing_secret_envs": _Field("env_names"),
    },
    "worker": {
        "token_envs": _Field("env_names"),
    },
    "observability": {
        "log_level": _Field("log_level"),
        "log_dir": _Field("path"),
        "log_to_stderr": _Field("bool"),
        "redact_secrets": _Field("bool"),
    },
}
_LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "ERROR", "INFO", "WARNING")


def _validate_root(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    _check_keys(payload, _SECTIONS, path, issues)

    out: dict[str, Any] = {}
    for name, fields in _SECTIONS.items():
        if name not in payload:
            continue
        section_path = _join(path, name)
        section = _as_object(payload[name], section_path, issues)
        if section is None:
            continue
        _check_keys(section, fields, section_path, issues)
        checked: dict[str, Any] = {}
        for key, rule in fields.items():
            if key not in section:
                continue
            value = _check_value(rule, section[key], _join(section_path, key), issues)
            if value is not None:
                checked[key] = value
        out[name] = checked

    _check_cross_field(out, issues)
    return out


def _check_cross_field(config: Mapping[str, Any], issues: _IssueCollector) -> None:
    version = config.get("meta", {}).get("schema_version")
    if isinstance(version, int) and version != ConfigSchemaVersion:
        issues.add("meta.schema_version", migration_guidance(version))

    runs = config.get("runs", {})
    base = runs.get("retry_base_seconds")
    ceiling = runs.get("retry_max_seconds")
    if isinstance(base, int) and isinstance(ceiling, int) and ceiling < base:
        issues.add("runs.retry_max_seconds", "must be >= runs.retry_base_seconds")


def _check_value(rule: _Field, value: object, path: str, issues: _IssueCollector) -> object:
    """Return the normalized value, or ``None`` after recording an issue."""

    if rule.kind == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            issues.add(path, f"expected integer, got {type(value).__name__}")
            return None
        if rule.minimum is not None and value < rule.minimum:
            issues.add(path, f"must be >= {rule.minimum}")
            return None
        if rule.maximum is not None and value > rule.maximum:
            issues.add(path, f"must be <= {rule.maximum}")
            return None
        return value

    if rule.kind == "bool":
        if isinstance(value, bool):
            return value
        issues.add(path, f"expected boolean, got {type(value).__name__}")
        return None

    if rule.kind == "env_names":
        return _env_names(value, path, issues)

    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    text = value.strip()
    if not text:
        issues.add(path, "must not be empty")
        return None
    if rule.kind in ("path", "relative_path") and "\x00" in text:
        issues.add(path, "must not contain NUL bytes")
        return None
    if rule.kind == "relative_path" and (text.startswith("/") or ".." in text.split("/")):
        issues.add(path, "must be a relative path inside the shipped project")
        return None
    if rule.kind == "log_level" and text not in _LOG_LEVELS:
        issues.add(path, f"invalid value {text!r}; expected one of: {', '.join(_LOG_LEVELS)}")
        return None
    return text


def _env_names(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected list of env var names, got {type(value).__name__}")
        return None
    if not value:
        issues.add(path, "must name at least one env var")
        return None
    names: list[str] = []
    for index, item in enumerate(value):
        item_path = f"{path}[{index}]"
        name = item.strip() if isinstance(item, str) else None
        if not name or not _ENV_NAME_PATTERN.fullmatch(name):
            issues.add(item_path, "must be an env var name (example: SHIPWRIGHT_SIGNING_SECRET)")
        elif name in names:
            issues.add(item_path, f"duplicate env var name {name!r}")
        else:
            names.append(name)
    return names


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _check_keys(
    payload: Mapping[str, object],
    known: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> None:
    """Report unknown keys (secret-looking ones specially), then missing required ones."""

    for key in sorted(payload):
        if key in known:
            continue
        if _looks_sensitive_key(key):
            issues.add(
                _join(path, key),
                "embedded secret values are forbidden; name the env var that holds the secret",
            )
        else:
            issues.add(_join(path, key), "unknown field")
    for key in sorted(known):
        rule = known[key]
        required = rule.required if isinstance(rule, _Field) else True
        if required and key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized in _NON_SECRET_KEYS or normalized.endswith("_envs"):
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _str_keys(mapping: Mapping[Any, object]) -> list[str]:
    return sorted(key for key in mapping if isinstance(key, str))


def _copy_tree(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _copy_tree(value[key]) for key in _str_keys(value)}
    if isinstance(value, (list, tuple)):
        return [_copy_tree(item) for item in value]
    return copy.deepcopy(value)


def _redacted(key: str, value: object) -> object:
    if isinstance(value, (list, tuple)):
        return [_redacted(key, item) for item in value]
    if _looks_sensitive_key(key):
        return "<redacted>"
    if isinstance(value, Mapping):
        return redact_config(value)
    return value


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "ShipwrightConfig",
    "assert_valid_config",
    "default_config",
    "dump_redacted",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
