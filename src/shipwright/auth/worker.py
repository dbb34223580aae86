"""Worker-request authorization for the background-run dispatch endpoint.

File: src/shipwright/auth/worker.py

A worker tick is authorized by a shared token, presented either in the
``x-shipwright-worker-token`` header or as ``Authorization: Bearer <token>``.
Tokens are read from the environment; with none configured every request is
refused.
"""

from __future__ import annotations

import enum
import os
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Final

from shipwright.constants import WORKER_TOKEN_ENVS, WORKER_TOKEN_HEADER
from shipwright.utils.hashing import constant_time_equals

_BEARER_PATTERN: Final[re.Pattern[str]] = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)

# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


class WorkerAuthMethod(enum.Enum):
    """Which credential carried the accepted token."""

    HEADER_TOKEN = "header-token"
    BEARER_TOKEN = "bearer-token"


@dataclass(frozen=True, slots=True)
class WorkerAuthorization:
    ok: bool
    method: WorkerAuthMethod | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        if self.ok and self.method is not None:
            return {"ok": True, "method": self.method.value}
        return {"ok": False, "error": self.error}


# ---------------------------------------------------------------------------
# Token helpers
# ---------------------------------------------------------------------------


def _normalize_token(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def parse_bearer_token(authorization_header: str | None) -> str | None:
    value = _normalize_token(authorization_header)
    if value is None:
        return None
    match = _BEARER_PATTERN.match(value)
    if match is None:
        return None
    return _normalize_token(match.group(1))


def configured_worker_tokens(
    environ: Mapping[str, str] | None = None,
    env_names: Sequence[str] = WORKER_TOKEN_ENVS,
) -> tuple[str, ...]:
    """Distinct configured tokens, in ``env_names`` order."""

    source = os.environ if environ is None else environ
    tokens: list[str] = []
    for name in env_names:
        token = _normalize_token(source.get(name))
        if token is not None and token not in tokens:
            tokens.append(token)
    return tuple(tokens)


def _matches_any(candidate: str, tokens: Sequence[str]) -> bool:
    # Every configured token is compared so timing does not reveal which matched.
    matched = False
    for token in tokens:
        if constant_time_equals(candidate, token):
            matched = True
    return matched


def authorize_worker_request(
    headers: Mapping[str, str],
    environ: Mapping[str, str] | None = None,
    env_names: Sequence[str] = WORKER_TOKEN_ENVS,
) -> WorkerAuthorization:
    tokens = configured_worker_tokens(environ, env_names)
    if not tokens:
        return WorkerAuthorization(
            ok=False,
            error=(
                "Worker authorization is not configured. "
                f"Set {' or '.join(env_names)}."
            ),
        )

    lowered = {str(key).lower(): value for key, value in headers.items()}
    header_token = _normalize_token(lowered.get(WORKER_TOKEN_HEADER))
    bearer_token = parse_bearer_token(lowered.get("authorization"))

    if header_token is None and bearer_token is None:
        return WorkerAuthorization(
            ok=False,
            error=(
                f"Missing worker token. Provide {WORKER_TOKEN_HEADER} "
                "or Authorization: Bearer <token>."
            ),
        )
    if header_token is not None and _matches_any(header_token, tokens):
        return WorkerAuthorization(ok=True, method=WorkerAuthMethod.HEADER_TOKEN)
    if bearer_token is not None and _matches_any(bearer_token, tokens):
        return WorkerAuthorization(ok=True, method=WorkerAuthMethod.BEARER_TOKEN)
    return WorkerAuthorization(ok=False, error="Invalid worker token.")


__all__ = [
    "WorkerAuthMethod",
    "WorkerAuthorization",
    "authorize_worker_request",
    "configured_worker_tokens",
    "parse_bearer_token",
]
