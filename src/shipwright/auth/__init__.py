"""Worker authorization for shipwright."""

from shipwright.auth.worker import (
    WorkerAuthMethod,
    WorkerAuthorization,
    authorize_worker_request,
    configured_worker_tokens,
    parse_bearer_token,
)

__all__ = [
    "WorkerAuthMethod",
    "WorkerAuthorization",
    "authorize_worker_request",
    "configured_worker_tokens",
    "parse_bearer_token",
]
