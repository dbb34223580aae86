"""
shipwright — unit tests for config schema validation

File: tests/unit/config/test_schema.py

Purpose
- Validate strict config schema behavior, structured errors, and redaction.

What this test file should cover
- Validates the repository's live shipwright.toml successfully.
- Rejects unknown keys and invalid types with actionable paths.
- Rejects embedded secrets while accepting env-var references.
- Ensures redaction is recursive and non-destructive.
"""

from __future__ import annotations

import tomllib
from pathlib import Path

import pytest

from shipwright.config.schema import (
    ConfigSchemaVersion,
    ConfigValidationError,
    assert_valid_config,
    default_config,
    dump_redacted,
    merge_config,
    migration_guidance,
    validate_config,
)

REPO_ROOT = Path(__file__).resolve().parents[3]


def _issue_map(payload: object) -> dict[str, str]:
    result = validate_config(payload)
    assert not result.is_valid
    return {issue.path: issue.message for issue in result.issues}


@pytest.mark.unit
def test_live_config_file_is_valid() -> None:
    with (REPO_ROOT / "shipwright.toml").open("rb") as handle:
        payload = tomllib.load(handle)

    result = validate_config(merge_config(default_config(), payload))
    assert result.is_valid, result.issues
    assert result.config == merge_config(default_config(), payload)


@pytest.mark.unit
def test_defaults_are_valid_and_independent_copies() -> None:
    first = default_config()
    first["runs"]["dispatch_limit"] = 99

    assert default_config()["runs"]["dispatch_limit"] == 5
    assert validate_config(default_config()).is_valid


@pytest.mark.unit
def test_unknown_keys_and_bad_types_report_paths() -> None:
    payload = merge_config(
        default_config(),
        {
            "runs": {"dispatch_limit": 50, "stale_after_seconds": "600", "turbo": True},
            "observability": {"log_level": "TRACE", "log_to_stderr": "yes"},
            "extras": {},
        },
    )
    issues = _issue_map(payload)

    assert issues["extras"] == "unknown field"
    assert issues["runs.turbo"] == "unknown field"
    assert issues["runs.dispatch_limit"] == "must be <= 20"
    assert issues["runs.stale_after_seconds"] == "expected integer, got str"
    assert issues["observability.log_level"].startswith("invalid value 'TRACE'")
    assert issues["observability.log_to_stderr"] == "expected boolean, got str"


@pytest.mark.unit
def test_missing_sections_and_fields_are_reported() -> None:
    payload = default_config()
    del payload["worker"]  # type: ignore[misc]
    del payload["runs"]["retry_base_seconds"]  # type: ignore[misc]

    issues = _issue_map(payload)
    assert issues["worker"] == "missing required field"
    assert issues["runs.retry_base_seconds"] == "missing required field"
    assert validate_config([]).issues[0].path == "<root>"


@pytest.mark.unit
def test_retry_ceiling_must_not_undercut_base() -> None:
    payload = merge_config(
        default_config(), {"runs": {"retry_base_seconds": 60, "retry_max_seconds": 30}}
    )
    assert _issue_map(payload) == {"runs.retry_max_seconds": "must be >= runs.retry_base_seconds"}


@pytest.mark.unit
def test_embedded_secrets_rejected_but_env_references_allowed() -> None:
    embedded = merge_config(default_config(), {"ship": {"signing_secret": "hunter2"}})
    issues = _issue_map(embedded)
    assert issues["ship.signing_secret"].startswith("embedded secret values are forbidden")

    camel = merge_config(default_config(), {"worker": {"apiKey": "abc"}})
    assert "worker.apiKey" in _issue_map(camel)

    references = merge_config(
        default_config(), {"worker": {"token_envs": ["MY_CRON_TOKEN", "OTHER_TOKEN"]}}
    )
    assert validate_config(references).is_valid


@pytest.mark.unit
@pytest.mark.parametrize(
    ("envs", "message"),
    [
        ([], "must name at least one env var"),
        ("SHIPWRIGHT_WORKER_TOKEN", "expected list of env var names, got str"),
    ],
)
def test_env_name_lists_are_validated(envs: object, message: str) -> None:
    payload = merge_config(default_config(), {"worker": {"token_envs": envs}})
    assert _issue_map(payload)["worker.token_envs"] == message


@pytest.mark.unit
def test_env_name_list_items_are_validated() -> None:
    payload = merge_config(
        default_config(), {"worker": {"token_envs": ["lower-case", "A_B", "A_B"]}}
    )
    issues = _issue_map(payload)
    assert issues["worker.token_envs[0]"].startswith("must be an env var name")
    assert issues["worker.token_envs[2]"] == "duplicate env var name 'A_B'"


@pytest.mark.unit
def test_artifact_dir_must_stay_inside_project() -> None:
    for bad in ("/etc/shipwright", "../outside"):
        payload = merge_config(default_config(), {"ship": {"artifact_dir": bad}})
        assert "ship.artifact_dir" in _issue_map(payload)


@pytest.mark.unit
def test_schema_version_mismatch_includes_migration_guidance() -> None:
    payload = merge_config(default_config(), {"meta": {"schema_version": ConfigSchemaVersion + 1}})
    assert _issue_map(payload)["meta.schema_version"] == migration_guidance(
        ConfigSchemaVersion + 1
    )
    assert "older" in migration_guidance(0)
    assert migration_guidance(ConfigSchemaVersion) == "schema version is current"


@pytest.mark.unit
def test_assert_valid_config_raises_with_all_issues() -> None:
    payload = merge_config(
        default_config(), {"runs": {"dispatch_limit": 0, "default_max_attempts": 0}}
    )
    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(payload)
    assert [issue.path for issue in excinfo.value.issues] == [
        "runs.default_max_attempts",
        "runs.dispatch_limit",
    ]
    assert "- runs.dispatch_limit: must be >= 1" in str(excinfo.value)


@pytest.mark.unit
def test_redaction_is_recursive_and_non_destructive() -> None:
    payload = {
        "ship": {"signing_key_id": "k1", "signing_secret_envs": ["SHIPWRIGHT_SIGNING_SECRET"]},
        "extra": {"nested": {"client_secret": "abc", "label": "ok"}, "tokens": ["a", "b"]},
    }
    redacted = dump_redacted(payload)

    assert redacted == {
        "extra": {"nested": {"client_secret": "<redacted>", "label": "ok"}, "tokens": ["a", "b"]},
        "ship": {"signing_key_id": "k1", "signing_secret_envs": ["SHIPWRIGHT_SIGNING_SECRET"]},
    }
    assert payload["extra"]["nested"]["client_secret"] == "abc"  # type: ignore[index]
    assert dump_redacted("not a mapping") == {}


@pytest.mark.unit
def test_merge_config_is_deep_and_does_not_mutate_inputs() -> None:
    base = {"runs": {"dispatch_limit": 5, "retry_base_seconds": 30}}
    overlay = {"runs": {"dispatch_limit": 7}}
    merged = merge_config(base, overlay)

    assert merged == {"runs": {"dispatch_limit": 7, "retry_base_seconds": 30}}
    assert base["runs"]["dispatch_limit"] == 5
