"""
shipwright — unit tests for config loader

File: tests/unit/config/test_loader.py

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Deterministic env var path mapping and type coercion.
- Path normalization relative to the config file.
- Redacted effective config dumping.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from shipwright.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    env_bindings,
    env_overrides,
    load_config,
)
from shipwright.config.schema import ConfigValidationError


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


@pytest.mark.unit
def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "shipwright.toml"
    default_path = tmp_path / "empty.toml"
    _write_config(default_path, "")
    _write_config(
        config_path,
        """
[runs]
dispatch_limit = 4
""".strip(),
    )

    default_loaded = load_config(default_path, environ={})
    file_loaded = load_config(config_path, environ={})
    env_loaded = load_config(config_path, environ={"SHIPWRIGHT_RUNS_DISPATCH_LIMIT": "6"})
    cli_loaded = load_config(
        config_path,
        environ={"SHIPWRIGHT_RUNS_DISPATCH_LIMIT": "6"},
        cli_overrides={"runs.dispatch_limit": 7},
    )

    assert default_loaded["runs"]["dispatch_limit"] == 5
    assert file_loaded["runs"]["dispatch_limit"] == 4
    assert env_loaded["runs"]["dispatch_limit"] == 6
    assert cli_loaded["runs"]["dispatch_limit"] == 7


@pytest.mark.unit
def test_env_mapping_coerces_types(tmp_path: Path) -> None:
    config_path = tmp_path / "shipwright.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={
            "SHIPWRIGHT_OBSERVABILITY_LOG_TO_STDERR": "yes",
            "SHIPWRIGHT_OBSERVABILITY_LOG_LEVEL": " DEBUG ",
            "SHIPWRIGHT_WORKER_TOKEN_ENVS": "CRON_A, CRON_B,,",
            "SHIPWRIGHT_GOVERNANCE_POLICY_PATH": "policy/paths.yaml",
            "SHIPWRIGHT_WORKER_TOKEN": "not-a-config-key",
        },
    )

    assert loaded["observability"]["log_to_stderr"] is True
    assert loaded["observability"]["log_level"] == "DEBUG"
    assert loaded["worker"]["token_envs"] == ["CRON_A", "CRON_B"]
    assert loaded["governance"]["policy_path"] == (
        tmp_path.resolve() / "policy/paths.yaml"
    ).as_posix()


@pytest.mark.unit
@pytest.mark.parametrize(
    ("env_name", "raw", "message"),
    [
        ("SHIPWRIGHT_RUNS_DISPATCH_LIMIT", "many", "must be an integer"),
        ("SHIPWRIGHT_OBSERVABILITY_REDACT_SECRETS", "maybe", "must be a boolean"),
    ],
)
def test_env_coercion_errors(tmp_path: Path, env_name: str, raw: str, message: str) -> None:
    config_path = tmp_path / "shipwright.toml"
    _write_config(config_path, "")
    with pytest.raises(ConfigLoadError, match=message):
        load_config(config_path, environ={env_name: raw})


@pytest.mark.unit
def test_paths_are_normalized_relative_to_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / "conf" / "shipwright.toml"
    _write_config(
        config_path,
        """
[governance]
policy_path = "../policy/critical.yaml"

[observability]
log_dir = "run-logs"
""".strip(),
    )

    loaded = load_config(config_path, environ={})

    assert loaded["governance"]["policy_path"] == (
        tmp_path.resolve() / "policy/critical.yaml"
    ).as_posix()
    assert loaded["observability"]["log_dir"] == (tmp_path.resolve() / "conf/run-logs").as_posix()
    assert loaded["ship"]["artifact_dir"] == ".shipwright"


@pytest.mark.unit
def test_missing_explicit_file_and_invalid_toml_fail(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="not found"):
        load_config(tmp_path / "absent.toml", environ={})

    broken = tmp_path / "broken.toml"
    _write_config(broken, "[runs\n")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})


@pytest.mark.unit
def test_implicit_config_file_is_optional(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    loaded = load_config(environ={})
    assert loaded["runs"]["default_max_attempts"] == 3


@pytest.mark.unit
def test_invalid_values_surface_validation_errors(tmp_path: Path) -> None:
    config_path = tmp_path / "shipwright.toml"
    _write_config(
        config_path,
        """
[worker]
token = "literal-secret"
""".strip(),
    )
    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(config_path, environ={})
    assert [issue.path for issue in excinfo.value.issues] == ["worker.token"]

    clean = tmp_path / "clean.toml"
    _write_config(clean, "")
    with pytest.raises(ConfigValidationError):
        load_config(
            clean,
            environ={},
            cli_overrides={"runs.stale_after_seconds": 5},
        )


@pytest.mark.unit
def test_dump_effective_config_is_deterministic(tmp_path: Path) -> None:
    config_path = tmp_path / "shipwright.toml"
    _write_config(config_path, "")

    first = dump_effective_config(load_config(config_path, environ={}))
    second = dump_effective_config(load_config(config_path, environ={}))

    assert first == second
    parsed = json.loads(first)
    assert list(parsed) == sorted(parsed)
    assert parsed["worker"]["token_envs"] == ["SHIPWRIGHT_WORKER_TOKEN", "SHIPWRIGHT_CRON_SECRET"]


@pytest.mark.unit
def test_env_bindings_cover_default_keys_and_optional_paths() -> None:
    bindings = {binding.env_name: binding for binding in env_bindings()}

    assert list(bindings) == sorted(bindings)
    assert bindings["SHIPWRIGHT_RUNS_DISPATCH_LIMIT"].dotted == "runs.dispatch_limit"
    assert bindings["SHIPWRIGHT_GOVERNANCE_TOOL_POLICY_PATH"].key == (
        "governance",
        "tool_policy_path",
    )
    assert "SHIPWRIGHT_WORKER_TOKEN" not in bindings
    assert env_overrides({"SHIPWRIGHT_SHIP_SIGNING_SECRET_ENVS": "A_KEY,B_KEY"}) == {
        "ship": {"signing_secret_envs": ["A_KEY", "B_KEY"]}
    }
