"""
shipwright — reviewer capabilities and tool kernel

File: src/shipwright/governance/capabilities.py

Purpose
- ``InspectionCapabilities``: the only surface a reviewing agent is given.
  It can read files, list the tree, search code and query indexed docs;
  it has no write or execute members, so a reviewer can never also be
  the executor.
- ``ReadOnlyWorkspace``: filesystem-backed implementation confined to one
  workspace root.
- Tool kernel: fail-closed authorization of agent tool calls and intents
  against the allowlists in ``governance/data/agent_tools.yaml``, with a
  bounded log of denied attempts.

Functional requirements
- Anything not explicitly allowed is denied.
- Read-only roles are denied every mutating tool, even one their own
  allowlist names.
- Denials never carry secret-looking argument values.
"""

from __future__ import annotations

import fnmatch
import re
import threading
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

import yaml

from shipwright.governance.policy import PolicyLoadError
from shipwright.utils.fs import resolve_within
from shipwright.utils.hashing import iter_regular_files

DEFAULT_TOOL_POLICY_PATH: Final[Path] = (
    Path(__file__).resolve().parent / "data" / "agent_tools.yaml"
)
MAX_VIOLATION_LOG: Final[int] = 200

_MAX_READ_BYTES: Final[int] = 1_000_000
_SENSITIVE_ARG_RE: Final[re.Pattern[str]] = re.compile(
    r"token|secret|key|password|credential|auth", re.IGNORECASE
)
_REDACTED_ARG: Final[str] = "[REDACTED]"
_WORD_RE: Final[re.Pattern[str]] = re.compile(r"[a-z0-9]+")


class AgentRole(StrEnum):
    ARCHITECT = "architect"
    PLANNER = "planner"
    FRONTEND = "frontend"
    BACKEND = "backend"
    DATABASE = "database"
    DEVOPS = "devops"
    QA = "qa"
    STRATEGIST = "strategist"
    AUDITOR = "auditor"


class IntentKind(StrEnum):
    CHAT = "chat"
    CREATE = "create"
    EDIT = "edit"
    DEBUG = "debug"
    DEPLOY = "deploy"


class ViolationKind(StrEnum):
    UNAUTHORIZED_TOOL = "unauthorized_tool"
    UNAUTHORIZED_INTENT = "unauthorized_intent"
    READ_ONLY_MUTATION = "read_only_mutation"


# ---------------------------------------------------------------------------
# Inspection capabilities
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SearchHit:
    path: str
    line_number: int
    line: str

    def to_dict(self) -> dict[str, object]:
        return {"path": self.path, "line_number": self.line_number, "line": self.line}


@dataclass(frozen=True, slots=True)
class DocMatch:
    doc_id: str
    score: int
    excerpt: str


class InspectionCapabilities(Protocol):
    """Read-only surface available to reviewing agents."""

    def read_file(self, path: str) -> str: ...

    def list_files(self, pattern: str = "**") -> tuple[str, ...]: ...

    def search_code(self, query: str, *, max_results: int = 50) -> tuple[SearchHit, ...]: ...

    def query_docs(self, query: str, *, max_results: int = 5) -> tuple[DocMatch, ...]: ...


class ReadOnlyWorkspace:
    """``InspectionCapabilities`` over a directory tree and an in-memory doc index."""

    def __init__(self, root: Path | str, docs: Mapping[str, str] | None = None) -> None:
        resolved = Path(root).resolve(strict=True)
        if not resolved.is_dir():
            raise NotADirectoryError(f"{resolved} is not a directory")
        self._root = resolved
        self._docs = dict(docs or {})

    @property
    def root(self) -> Path:
        return self._root

    def read_file(self, path: str) -> str:
        target = resolve_within(self._root, path)
        if not target.is_file():
            raise FileNotFoundError(f"not a file inside the workspace: {path!r}")
        data = target.read_bytes()
        if len(data) > _MAX_READ_BYTES:
            raise ValueError(f"{path!r} exceeds the {_MAX_READ_BYTES}-byte inspection limit")
        return data.decode("utf-8", errors="replace")

    def list_files(self, pattern: str = "**") -> tuple[str, ...]:
        return tuple(
            rel for rel, _ in iter_regular_files(self._root) if _glob_match(rel, pattern)
        )

    def search_code(self, query: str, *, max_results: int = 50) -> tuple[SearchHit, ...]:
        needle = query.strip().lower()
        if not needle:
            raise ValueError("query must not be empty")
        hits: list[SearchHit] = []
        for rel, absolute in iter_regular_files(self._root):
            try:
                text = absolute.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            for line_number, line in enumerate(text.splitlines(), start=1):
                if needle in line.lower():
                    hits.append(SearchHit(rel, line_number, line.strip()))
                    if len(hits) >= max_results:
                        return tuple(hits)
        return tuple(hits)

    def query_docs(self, query: str, *, max_results: int = 5) -> tuple[DocMatch, ...]:
        """Rank indexed docs by how many query words they contain."""

        words = set(_WORD_RE.findall(query.lower()))
        if not words:
            return ()
        scored: list[DocMatch] = []
        for doc_id, body in self._docs.items():
            lowered = body.lower()
            score = sum(lowered.count(word) for word in words)
            if score:
                scored.append(DocMatch(doc_id, score, body.strip()[:280]))
        scored.sort(key=lambda match: (-match.score, match.doc_id))
        return tuple(scored[:max_results])


def _glob_match(rel: str, pattern: str) -> bool:
    if pattern in ("**", "*", ""):
        return True
    if fnmatch.fnmatchcase(rel, pattern):
        return True
    return pattern.startswith("**/") and fnmatch.fnmatchcase(rel, pattern[3:])


# ---------------------------------------------------------------------------
# Tool kernel
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RolePermissions:
    role: AgentRole
    read_only: bool
    intents: frozenset[IntentKind]
    tools: frozenset[str]


@dataclass(frozen=True, slots=True)
class ToolPolicy:
    mutating_tools: frozenset[str]
    roles: Mapping[AgentRole, RolePermissions]

    def permissions(self, role: AgentRole | str) -> RolePermissions:
        return self.roles[AgentRole(role)]

    def is_mutating(self, tool: str) -> bool:
        return tool in self.mutating_tools

    def tool_names(self, role: AgentRole | str) -> tuple[str, ...]:
        return tuple(sorted(self.permissions(role).tools))

    @property
    def read_only_roles(self) -> frozenset[AgentRole]:
        return frozenset(role for role, perms in self.roles.items() if perms.read_only)


@dataclass(frozen=True, slots=True)
class GovernanceViolationRecord:
    """One denied tool call or intent, safe to surface to operators."""

    role: AgentRole
    kind: ViolationKind
    message: str
    target: str
    timestamp: datetime
    metadata: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "role": self.role.value,
            "kind": self.kind.value,
            "message": self.message,
            "target": self.target,
            "timestamp": self.timestamp.astimezone(UTC)
            .isoformat(timespec="microseconds")
            .replace("+00:00", "Z"),
            "metadata": self.metadata,
        }


class GovernanceError(PermissionError):
    """Raised when an agent attempts an intent outside its allowlist."""

    def __init__(self, violation: GovernanceViolationRecord) -> None:
        self.violation = violation
        super().__init__(violation.message)


@dataclass(frozen=True, slots=True)
class ToolAuthorization:
    allowed: bool
    violation: GovernanceViolationRecord | None = None


class ViolationLog:
    """Bounded in-memory buffer of recent violations; oldest entries drop first."""

    def __init__(self, max_entries: int = MAX_VIOLATION_LOG) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self._lock = threading.Lock()
        self._entries: deque[GovernanceViolationRecord] = deque(maxlen=max_entries)

    def record(self, violation: GovernanceViolationRecord) -> None:
        with self._lock:
            self._entries.append(violation)

    def entries(self) -> tuple[GovernanceViolationRecord, ...]:
        with self._lock:
            return tuple(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass(slots=True)
class ToolKernel:
    """Fail-closed permission layer between the orchestrator and tool execution."""

    policy: ToolPolicy = field(default_factory=lambda: default_tool_policy())
    log: ViolationLog = field(default_factory=ViolationLog)
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(UTC))

    def authorize_tool(
        self,
        role: AgentRole | str,
        tool: str,
        args: Mapping[str, object] | None = None,
    ) -> ToolAuthorization:
        agent = AgentRole(role)
        permissions = self.policy.permissions(agent)

        if tool not in permissions.tools:
            return self._deny(
                agent,
                ViolationKind.UNAUTHORIZED_TOOL,
                f'Agent "{agent.value}" is not permitted to use tool "{tool}".',
                tool,
                args,
            )
        if permissions.read_only and self.policy.is_mutating(tool):
            return self._deny(
                agent,
                ViolationKind.READ_ONLY_MUTATION,
                f'Read-only agent "{agent.value}" attempted mutating tool "{tool}".',
                tool,
                args,
            )
        return ToolAuthorization(allowed=True)

    def assert_intent_allowed(self, role: AgentRole | str, intent: IntentKind | str) -> None:
        agent = AgentRole(role)
        try:
            kind: IntentKind | None = IntentKind(intent)
        except ValueError:
            kind = None
        if kind is not None and kind in self.policy.permissions(agent).intents:
            return
        violation = GovernanceViolationRecord(
            role=agent,
            kind=ViolationKind.UNAUTHORIZED_INTENT,
            message=f'Agent "{agent.value}" is not permitted to handle intent "{intent}".',
            target=str(intent),
            timestamp=self.clock(),
        )
        self.log.record(violation)
        raise GovernanceError(violation)

    def is_read_only(self, role: AgentRole | str) -> bool:
        return self.policy.permissions(role).read_only

    def _deny(
        self,
        role: AgentRole,
        kind: ViolationKind,
        message: str,
        tool: str,
        args: Mapping[str, object] | None,
    ) -> ToolAuthorization:
        violation = GovernanceViolationRecord(
            role=role,
            kind=kind,
            message=message,
            target=tool,
            timestamp=self.clock(),
            metadata=sanitize_tool_args(args),
        )
        self.log.record(violation)
        return ToolAuthorization(allowed=False, violation=violation)


def authorize_tool(
    role: AgentRole | str,
    tool: str,
    args: Mapping[str, object] | None = None,
    *,
    log: ViolationLog | None = None,
) -> ToolAuthorization:
    """Convenience wrapper over a ``ToolKernel`` with the packaged policy."""

    kernel = ToolKernel(log=log) if log is not None else ToolKernel()
    return kernel.authorize_tool(role, tool, args)


def assert_intent_allowed(
    role: AgentRole | str,
    intent: IntentKind | str,
    *,
    log: ViolationLog | None = None,
) -> None:
    kernel = ToolKernel(log=log) if log is not None else ToolKernel()
    kernel.assert_intent_allowed(role, intent)


def sanitize_tool_args(args: Mapping[str, object] | None) -> dict[str, object] | None:
    """Copy ``args`` with secret-looking keys replaced, recursing into mappings."""

    if args is None:
        return None
    sanitized: dict[str, object] = {}
    for key, value in args.items():
        name = str(key)
        if _SENSITIVE_ARG_RE.search(name):
            sanitized[name] = _REDACTED_ARG
        elif isinstance(value, Mapping):
            sanitized[name] = sanitize_tool_args(cast("Mapping[str, object]", value))
        else:
            sanitized[name] = value
    return sanitized


def load_tool_policy(path: Path | str | None = None) -> ToolPolicy:
    if path is None:
        return default_tool_policy()
    return _load_tool_policy_file(Path(path))


@lru_cache(maxsize=1)
def default_tool_policy() -> ToolPolicy:
    return _load_tool_policy_file(DEFAULT_TOOL_POLICY_PATH)


def _load_tool_policy_file(path: Path) -> ToolPolicy:
    try:
        with path.open("r", encoding="utf-8") as handle:
            loaded = cast("object", yaml.safe_load(handle))
    except yaml.YAMLError as exc:
        raise PolicyLoadError(f"{path}: invalid YAML: {exc}") from exc
    except OSError as exc:
        raise PolicyLoadError(f"{path}: unable to read tool policy: {exc}") from exc
    return parse_tool_policy(loaded, source=path.name)


def parse_tool_policy(payload: object, *, source: str = "<memory>") -> ToolPolicy:
    if not isinstance(payload, Mapping):
        raise PolicyLoadError(f"{source}: expected mapping")
    if payload.get("schema_version") != 1:
        raise PolicyLoadError(f"{source}.schema_version: expected 1")

    mutating = _name_list(payload.get("mutating_tools"), f"{source}.mutating_tools")
    raw_roles = payload.get("roles")
    if not isinstance(raw_roles, Mapping):
        raise PolicyLoadError(f"{source}.roles: expected mapping")

    roles: dict[AgentRole, RolePermissions] = {}
    for raw_role, entry in raw_roles.items():
        path = f"{source}.roles.{raw_role}"
        try:
            role = AgentRole(raw_role)
        except ValueError as exc:
            raise PolicyLoadError(f"{path}: unknown role") from exc
        if not isinstance(entry, Mapping):
            raise PolicyLoadError(f"{path}: expected mapping")
        read_only = entry.get("read_only")
        if not isinstance(read_only, bool):
            raise PolicyLoadError(f"{path}.read_only: expected boolean")
        try:
            intents = frozenset(
                IntentKind(item) for item in _name_list(entry.get("intents"), f"{path}.intents")
            )
        except ValueError as exc:
            raise PolicyLoadError(f"{path}.intents: {exc}") from exc
        tools = frozenset(_name_list(entry.get("tools"), f"{path}.tools"))
        roles[role] = RolePermissions(role, read_only, intents, tools)

    missing = sorted(role.value for role in AgentRole if role not in roles)
    if missing:
        raise PolicyLoadError(f"{source}.roles: missing roles {missing}")
    return ToolPolicy(mutating_tools=frozenset(mutating), roles=roles)


def _name_list(value: object, path: str) -> list[str]:
    if not isinstance(value, list) or not value:
        raise PolicyLoadError(f"{path}: expected non-empty list")
    out: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str) or not item.strip():
            raise PolicyLoadError(f"{path}[{index}]: expected non-empty string")
        out.append(item.strip())
    return out


__all__ = [
    "DEFAULT_TOOL_POLICY_PATH",
    "MAX_VIOLATION_LOG",
    "AgentRole",
    "DocMatch",
    "GovernanceError",
    "GovernanceViolationRecord",
    "InspectionCapabilities",
    "IntentKind",
    "ReadOnlyWorkspace",
    "RolePermissions",
    "SearchHit",
    "ToolAuthorization",
    "ToolKernel",
    "ToolPolicy",
    "ViolationKind",
    "ViolationLog",
    "assert_intent_allowed",
    "authorize_tool",
    "default_tool_policy",
    "load_tool_policy",
    "parse_tool_policy",
    "sanitize_tool_args",
]
