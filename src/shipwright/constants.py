"""Stable constants shared across the shipwright planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
RUN_RECORD_SCHEMA_VERSION: Final[int] = 1
GOVERNANCE_POLICY_SCHEMA_VERSION: Final[int] = 1
TRUST_BUNDLE_VERSION: Final[str] = "1.0.0"

# Background run lifecycle defaults.
DEFAULT_MAX_ATTEMPTS: Final[int] = 3
DEFAULT_RETRY_AFTER_SECONDS: Final[int] = 0
DEFAULT_FAILURE_MESSAGE: Final[str] = "Run failed"
MAX_ERROR_MESSAGE_CHARS: Final[int] = 8192
RETRY_BASE_DELAY_SECONDS: Final[int] = 30
RETRY_MAX_DELAY_SECONDS: Final[int] = 900

# Worker loop bounds.
DEFAULT_STALE_AFTER_SECONDS: Final[int] = 600
MIN_STALE_AFTER_SECONDS: Final[int] = 60
MAX_STALE_AFTER_SECONDS: Final[int] = 86_400
DEFAULT_DISPATCH_LIMIT: Final[int] = 5
MAX_DISPATCH_LIMIT: Final[int] = 20
WATCHDOG_FAILURE_MESSAGE: Final[str] = "Run heartbeat timed out and was recovered by watchdog."

# Shipped audit artifacts (relative to the shipped project root).
TRUST_ARTIFACT_DIR: Final[PurePosixPath] = PurePosixPath(".shipwright")
TRUST_BUNDLE_ARTIFACT: Final[PurePosixPath] = TRUST_ARTIFACT_DIR / "TRUST_BUNDLE.json"
TRUST_MANIFEST_ARTIFACT: Final[PurePosixPath] = TRUST_ARTIFACT_DIR / "TRUST_FILE_MANIFEST.json"
SHIP_CHECKLIST_ARTIFACT: Final[PurePosixPath] = TRUST_ARTIFACT_DIR / "SHIP_CHECKLIST.md"

# Signing.
SIGNATURE_ALGORITHM: Final[str] = "HMAC-SHA256"
DEFAULT_SIGNING_KEY_ID: Final[str] = "shipwright-default"
SIGNING_SECRET_ENVS: Final[tuple[str, ...]] = (
    "SHIPWRIGHT_AUDIT_SIGNING_SECRET",
    "SHIPWRIGHT_SIGNING_SECRET",
)

# Worker authorization.
WORKER_TOKEN_HEADER: Final[str] = "x-shipwright-worker-token"
WORKER_TOKEN_ENVS: Final[tuple[str, ...]] = ("SHIPWRIGHT_WORKER_TOKEN", "SHIPWRIGHT_CRON_SECRET")

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_DISPATCH_LIMIT",
    "DEFAULT_FAILURE_MESSAGE",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_RETRY_AFTER_SECONDS",
    "DEFAULT_SIGNING_KEY_ID",
    "DEFAULT_STALE_AFTER_SECONDS",
    "GOVERNANCE_POLICY_SCHEMA_VERSION",
    "MAX_DISPATCH_LIMIT",
    "MAX_ERROR_MESSAGE_CHARS",
    "MAX_STALE_AFTER_SECONDS",
    "MIN_STALE_AFTER_SECONDS",
    "RETRY_BASE_DELAY_SECONDS",
    "RETRY_MAX_DELAY_SECONDS",
    "RUN_RECORD_SCHEMA_VERSION",
    "SHIP_CHECKLIST_ARTIFACT",
    "SIGNATURE_ALGORITHM",
    "SIGNING_SECRET_ENVS",
    "TRUST_ARTIFACT_DIR",
    "TRUST_BUNDLE_ARTIFACT",
    "TRUST_BUNDLE_VERSION",
    "TRUST_MANIFEST_ARTIFACT",
    "WATCHDOG_FAILURE_MESSAGE",
    "WORKER_TOKEN_ENVS",
    "WORKER_TOKEN_HEADER",
]
