"""
shipwright — log redaction

File: src/shipwright/observability/redaction.py

Purpose
- Strip secrets out of JSON-shaped log payloads before any sink sees them.

Rules
- A value stored under a secret-looking key is replaced wholesale.
- Inside free text, ``Bearer <token>`` and ``token=<value>`` style assignments
  keep their label and lose their value.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Final

from shipwright.domain.models import JSONValue

REDACTED: Final[str] = "***REDACTED***"

LogRedactor = Callable[[JSONValue], JSONValue]

_SECRET_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
    "signature",
)

_ASSIGNMENT: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(?P<label>api[_-]?key|token|password|secret|authorization)\b"
    r"\s*(?P<sep>[:=])\s*[^\s,;]+"
)
_BEARER: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")


def is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(term in lowered for term in _SECRET_KEY_TERMS)


def redact_text(text: str) -> str:
    # Bearer tokens before assignments.
    masked = _BEARER.sub(f"Bearer {REDACTED}", text)
    return _ASSIGNMENT.sub(lambda m: f"{m['label']}{m['sep']}{REDACTED}", masked)


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Redact ``value`` recursively; numbers, booleans and ``None`` pass through."""

    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if is_secret_key(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def keep_secrets(value: JSONValue) -> JSONValue:
    return value


__all__ = [
    "REDACTED",
    "LogRedactor",
    "default_log_redactor",
    "is_secret_key",
    "keep_secrets",
    "redact_text",
]
