from __future__ import annotations

import pytest

from shipwright.auth.worker import (
    WorkerAuthMethod,
    authorize_worker_request,
    configured_worker_tokens,
    parse_bearer_token,
)

ENV = {"SHIPWRIGHT_WORKER_TOKEN": " worker-secret ", "SHIPWRIGHT_CRON_SECRET": "cron-secret"}


@pytest.mark.unit
@pytest.mark.parametrize(
    ("header", "expected"),
    [
        ("Bearer abc", "abc"),
        ("bearer   abc  ", "abc"),
        ("Basic abc", None),
        ("Bearer    ", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_bearer_token(header: str | None, expected: str | None) -> None:
    assert parse_bearer_token(header) == expected


@pytest.mark.unit
def test_configured_tokens_are_trimmed_and_deduplicated() -> None:
    assert configured_worker_tokens(ENV) == ("worker-secret", "cron-secret")
    assert configured_worker_tokens(
        {"SHIPWRIGHT_WORKER_TOKEN": "same", "SHIPWRIGHT_CRON_SECRET": "same"}
    ) == ("same",)
    assert configured_worker_tokens({"SHIPWRIGHT_WORKER_TOKEN": "  "}) == ()


@pytest.mark.unit
def test_fails_closed_without_configured_tokens() -> None:
    result = authorize_worker_request({"x-shipwright-worker-token": "anything"}, environ={})
    assert not result.ok
    assert result.error == (
        "Worker authorization is not configured. "
        "Set SHIPWRIGHT_WORKER_TOKEN or SHIPWRIGHT_CRON_SECRET."
    )


@pytest.mark.unit
def test_header_token_is_accepted_case_insensitively() -> None:
    result = authorize_worker_request({"X-Shipwright-Worker-Token": "worker-secret"}, ENV)
    assert result.ok
    assert result.method is WorkerAuthMethod.HEADER_TOKEN
    assert result.to_dict() == {"ok": True, "method": "header-token"}


@pytest.mark.unit
def test_bearer_token_matches_any_configured_secret() -> None:
    result = authorize_worker_request({"Authorization": "Bearer cron-secret"}, ENV)
    assert result.ok
    assert result.method is WorkerAuthMethod.BEARER_TOKEN


@pytest.mark.unit
def test_wrong_header_falls_back_to_valid_bearer() -> None:
    result = authorize_worker_request(
        {"x-shipwright-worker-token": "nope", "authorization": "Bearer worker-secret"}, ENV
    )
    assert result.ok
    assert result.method is WorkerAuthMethod.BEARER_TOKEN


@pytest.mark.unit
def test_missing_and_invalid_tokens_are_refused() -> None:
    missing = authorize_worker_request({"content-type": "application/json"}, ENV)
    assert not missing.ok
    assert missing.error is not None and missing.error.startswith("Missing worker token.")

    invalid = authorize_worker_request({"authorization": "Bearer guess"}, ENV)
    assert invalid.to_dict() == {"ok": False, "error": "Invalid worker token."}


@pytest.mark.unit
def test_custom_env_names() -> None:
    result = authorize_worker_request(
        {"authorization": "Bearer t1"}, {"MY_TOKEN": "t1"}, env_names=("MY_TOKEN",)
    )
    assert result.ok
