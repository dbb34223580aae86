"""
shipwright — unit tests for the CLI router

File: tests/unit/ui/test_cli.py

Purpose
- Exercise every CLI command in-process with ``--json`` and check the
  exit-code contract: 0 success, 1 blocked/refused, 2 config, 3 integrity.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest

from shipwright.config.loader import ConfigLoadError
from shipwright.control_plane import apply_run_request
from shipwright.domain.models import BackgroundRunRecord, TransitionSuccess
from shipwright.main import ExitCode, classify_exception, cli_entrypoint
from shipwright.ship.trust_bundle import TrustBundleError
from shipwright.ui.cli import run_cli

if TYPE_CHECKING:
    from pathlib import Path

NOW = datetime(2026, 3, 1, 10, 0, tzinfo=UTC)

SNAPSHOT = {
    "auditorPassed": True,
    "previewVerified": True,
    "runtimeProbePassed": True,
    "runtimeHash": "rt-1",
    "dependencyLockHash": "lock-1",
}


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    for name in ("SHIPWRIGHT_AUDIT_SIGNING_SECRET", "SHIPWRIGHT_SIGNING_SECRET"):
        monkeypatch.delenv(name, raising=False)


def _write_json(path: Path, payload: object) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def _json_out(capsys: pytest.CaptureFixture[str]) -> dict[str, object]:
    out = capsys.readouterr().out.strip().splitlines()
    assert len(out) == 1, out
    return json.loads(out[0])


def _advance(record: BackgroundRunRecord, payload: dict[str, object]) -> BackgroundRunRecord:
    result = apply_run_request(record, payload, NOW)
    assert isinstance(result, TransitionSuccess)
    return record.apply(result.mutation)


def _verdict(areas: list[str]) -> dict[str, object]:
    return {
        "verdict": "approved",
        "confidence": "high",
        "scope": {"intent": "Tweak the hero copy", "affected_areas": areas},
        "protected_invariants": [],
    }


# ---------------------------------------------------------------------------
# transition / classify
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_transition_start_writes_record(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    record_path = tmp_path / "run.json"
    record_path.write_text(
        BackgroundRunRecord.queued(max_attempts=3, run_id="run-1").to_json(), encoding="utf-8"
    )

    code = run_cli(
        [
            "transition",
            str(record_path),
            '{"operation": "start"}',
            "--now",
            "2026-03-01T10:00:00Z",
            "--write",
            "--json",
        ]
    )

    assert code == ExitCode.SUCCESS
    payload = _json_out(capsys)
    assert payload["result"]["operation"] == "start"  # type: ignore[index]
    assert payload["record"]["status"] == "running"  # type: ignore[index]
    stored = BackgroundRunRecord.from_json(record_path.read_text(encoding="utf-8"))
    assert stored.attempt_count == 1
    assert stored.started_at == NOW


@pytest.mark.unit
@pytest.mark.parametrize(
    ("request_body", "code"),
    [
        ('{"operation": "complete"}', "invalid_transition"),
        ('{"operation": "start", "bogus": 1}', "invalid_payload"),
    ],
)
def test_transition_refusal_exits_blocked(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], request_body: str, code: str
) -> None:
    record_path = _write_json(
        tmp_path / "run.json", BackgroundRunRecord.queued(max_attempts=3).to_dict()
    )

    exit_code = run_cli(["transition", str(record_path), request_body, "--json"])

    assert exit_code == ExitCode.BLOCKED
    assert _json_out(capsys)["result"]["code"] == code  # type: ignore[index]


@pytest.mark.unit
def test_transition_human_output(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    record_path = _write_json(
        tmp_path / "run.json", BackgroundRunRecord.queued(max_attempts=3).to_dict()
    )
    request_path = _write_json(tmp_path / "req.json", {"operation": "request-cancel"})

    assert run_cli(["transition", str(record_path), str(request_path), "--no-color"]) == 0
    out = capsys.readouterr().out
    assert "OK  request-cancel: queued -> cancelled" in out


@pytest.mark.unit
def test_classify_with_retry_decision(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    record = BackgroundRunRecord.queued(max_attempts=3, run_id="run-2")
    record = _advance(record, {"operation": "start"})
    record = _advance(record, {"operation": "fail", "error_message": "upstream timed out"})
    record_path = _write_json(tmp_path / "failed.json", record.to_dict())

    assert run_cli(["classify", "Upstream timed out", "--record", str(record_path), "--json"]) == 0
    payload = _json_out(capsys)
    assert payload == {
        "command": "classify",
        "kind": "transient",
        "retry": True,
        "retry_after_seconds": 30,
        "reason": "transient failure with attempts remaining",
    }

    assert run_cli(["classify", "Invalid schema", "--json"]) == 0
    assert _json_out(capsys)["kind"] == "permanent"


# ---------------------------------------------------------------------------
# gate / events
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_gate_proceeds_on_approval(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    output = _write_json(tmp_path / "review.json", _verdict(["src/app/page.tsx"]))

    assert run_cli(["gate", "plan", "plan-1", str(output), "--json"]) == ExitCode.SUCCESS
    review = _json_out(capsys)["review"]
    assert review["state"] == "approved"  # type: ignore[index]


@pytest.mark.unit
def test_gate_escalation_records_events(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    output = _write_json(tmp_path / "review.json", _verdict(["src/checkout/pay.ts"]))
    events = tmp_path / "run.events.jsonl"

    code = run_cli(
        [
            "gate",
            "structure",
            "tree-1",
            str(output),
            "--run-id",
            "run-9",
            "--events",
            str(events),
            "--json",
        ]
    )

    assert code == ExitCode.BLOCKED
    review = _json_out(capsys)["review"]
    assert review["state"] == "escalated"  # type: ignore[index]
    assert review["decision"]["escalation_categories"] == ["payments"]  # type: ignore[index]

    assert run_cli(["events", str(events), "--json"]) == 0
    streamed = _json_out(capsys)["events"]
    assert isinstance(streamed, list)
    assert [item["event"] for item in streamed] == ["gate_started", "gate_failed"]
    assert {item["run_id"] for item in streamed} == {"run-9"}


@pytest.mark.unit
def test_gate_blocks_malformed_output(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    output = tmp_path / "review.txt"
    output.write_text("Looks great to me!", encoding="utf-8")

    assert run_cli(["gate", "plan", "plan-2", str(output), "--no-color"]) == ExitCode.BLOCKED
    out = capsys.readouterr().out
    assert "State: rejected" in out
    assert "Outcome: blocked" in out


@pytest.mark.unit
def test_events_reports_corrupt_stream(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    broken = tmp_path / "broken.jsonl"
    broken.write_text("{oops}\n", encoding="utf-8")

    assert run_cli(["events", str(broken)]) == ExitCode.INTEGRITY_ERROR
    assert "broken.jsonl:1:" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# readiness / bundle
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_readiness_ready_and_blocked(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    ready = _write_json(tmp_path / "ready.json", SNAPSHOT)
    blocked = _write_json(tmp_path / "blocked.json", {**SNAPSHOT, "previewVerified": False})

    assert run_cli(["readiness", str(ready), "--no-color"]) == ExitCode.SUCCESS
    assert "OK  Release is ready to ship" in capsys.readouterr().out

    assert run_cli(["readiness", str(blocked), "--json"]) == ExitCode.BLOCKED
    readiness = _json_out(capsys)["readiness"]
    assert readiness["blockers"] == ["Preview verification is incomplete."]  # type: ignore[index]


@pytest.mark.unit
def test_readiness_hard_violation_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    snapshot = _write_json(tmp_path / "snap.json", SNAPSHOT)
    violations = _write_json(
        tmp_path / "violations.json", [{"description": "Checkout flow", "severity": "hard"}]
    )

    code = run_cli(["readiness", str(snapshot), "--violations", str(violations), "--json"])
    assert code == ExitCode.BLOCKED
    assert _json_out(capsys)["readiness"]["blockers"] == [  # type: ignore[index]
        "Protected invariant broken: Checkout flow"
    ]


@pytest.mark.unit
def test_bundle_create_sign_verify_cycle(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("SHIPWRIGHT_SIGNING_SECRET", "cli-secret")
    project = tmp_path / "project"
    (project / "src").mkdir(parents=True)
    (project / "src" / "index.ts").write_text("export {}\n", encoding="utf-8")
    (project / "package.json").write_text('{"name":"demo"}\n', encoding="utf-8")
    snapshot = _write_json(tmp_path / "snap.json", SNAPSHOT)
    bundle_path = tmp_path / "bundle.json"

    code = run_cli(
        [
            "bundle",
            "create",
            "--dir",
            str(project),
            "--governance",
            str(snapshot),
            "--project",
            "demo",
            "--actor",
            "user-1",
            "--sign",
            "--write-artifacts",
            "--out",
            str(bundle_path),
            "--json",
        ]
    )
    assert code == ExitCode.SUCCESS
    bundle = _json_out(capsys)["bundle"]
    assert bundle["signature"]["keyId"] == "shipwright-default"  # type: ignore[index]
    assert [entry["path"] for entry in bundle["fileManifest"]] == [  # type: ignore[index]
        "package.json",
        "src/index.ts",
    ]
    assert (project / ".shipwright" / "SHIP_CHECKLIST.md").is_file()

    verify_args = ["bundle", "verify", str(bundle_path), "--dir", str(project), "--require-ready"]
    assert run_cli([*verify_args, "--json"]) == ExitCode.SUCCESS
    assert _json_out(capsys)["valid"] is True

    (project / "src" / "index.ts").write_text("export const x = 1\n", encoding="utf-8")
    assert run_cli([*verify_args, "--json"]) == ExitCode.INTEGRITY_ERROR
    assert _json_out(capsys)["problems"] == ["content changed: src/index.ts"]

    monkeypatch.setenv("SHIPWRIGHT_SIGNING_SECRET", "other-secret")
    assert run_cli(["bundle", "verify", str(bundle_path), "--json"]) == ExitCode.INTEGRITY_ERROR
    assert _json_out(capsys)["problems"] == ["signature does not match bundle contents"]


@pytest.mark.unit
def test_bundle_sign_rotates_key_id(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    project = tmp_path / "project"
    project.mkdir()
    (project / "a.txt").write_text("a\n", encoding="utf-8")
    snapshot = _write_json(tmp_path / "snap.json", SNAPSHOT)
    bundle_path = tmp_path / "bundle.json"

    create = [
        "bundle",
        "create",
        "--dir",
        str(project),
        "--governance",
        str(snapshot),
        "--project",
        "demo",
        "--actor",
        "u",
        "--out",
        str(bundle_path),
        "--json",
    ]
    assert run_cli(create) == ExitCode.SUCCESS
    capsys.readouterr()

    assert run_cli(["bundle", "verify", str(bundle_path)]) == ExitCode.CONFIG_ERROR
    assert "no signing secret configured" in capsys.readouterr().err

    monkeypatch.setenv("SHIPWRIGHT_AUDIT_SIGNING_SECRET", "audit-secret")
    assert run_cli(["bundle", "sign", str(bundle_path), "--key-id", "k2", "--json"]) == 0
    assert _json_out(capsys)["key_id"] == "k2"
    assert run_cli(["bundle", "verify", str(bundle_path), "--json"]) == ExitCode.SUCCESS
    capsys.readouterr()


@pytest.mark.unit
def test_bundle_verify_rejects_malformed_file(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("SHIPWRIGHT_SIGNING_SECRET", "s")
    bad = tmp_path / "bundle.json"
    bad.write_text("{}", encoding="utf-8")

    assert run_cli(["bundle", "verify", str(bad)]) == ExitCode.INTEGRITY_ERROR
    assert "invalid trust bundle" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# tools / config / entrypoint
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_tools_command(capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["tools", "devops", "edit_file", "--json"]) == ExitCode.SUCCESS
    assert _json_out(capsys)["allowed"] is True

    assert run_cli(["tools", "auditor", "edit_file", "--json"]) == ExitCode.BLOCKED
    payload = _json_out(capsys)
    assert payload["allowed"] is False
    assert payload["violation"]["kind"] == "unauthorized_tool"  # type: ignore[index]


@pytest.mark.unit
def test_config_command_uses_local_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (tmp_path / "shipwright.toml").write_text("[runs]\ndispatch_limit = 9\n", encoding="utf-8")

    assert run_cli(["config", "--json"]) == ExitCode.SUCCESS
    config = _json_out(capsys)["config"]
    assert config["runs"]["dispatch_limit"] == 9  # type: ignore[index]


@pytest.mark.unit
def test_invalid_config_and_missing_files_exit_config_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    (tmp_path / "shipwright.toml").write_text("[runs]\ndispatch_limit = 99\n", encoding="utf-8")
    assert run_cli(["config"]) == ExitCode.CONFIG_ERROR
    assert "runs.dispatch_limit" in capsys.readouterr().err

    assert run_cli(["readiness", str(tmp_path / "nope.json")]) == ExitCode.CONFIG_ERROR
    assert "file not found" in capsys.readouterr().err


@pytest.mark.unit
def test_log_flag_writes_session_log(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    output = _write_json(tmp_path / "review.json", _verdict(["src/app/page.tsx"]))

    assert run_cli(["gate", "plan", "plan-3", str(output), "--log", "--json"]) == 0
    capsys.readouterr()

    logs = list((tmp_path / "logs").glob("cli-*/shipwright.jsonl"))
    assert len(logs) == 1
    messages = [json.loads(line)["message"] for line in logs[0].read_text().splitlines()]
    assert "governance_gate_decision" in messages


@pytest.mark.unit
def test_entrypoint_normalizes_argparse_exit(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["transition"]) == ExitCode.CONFIG_ERROR
    assert "usage:" in capsys.readouterr().err


@pytest.mark.unit
def test_exceptions_map_to_exit_codes_through_their_causes() -> None:
    assert classify_exception(TrustBundleError("bad signature")) is ExitCode.INTEGRITY_ERROR
    assert classify_exception(ConfigLoadError("missing file")) is ExitCode.CONFIG_ERROR
    assert classify_exception(KeyError("boom")) is ExitCode.INTERNAL_ERROR

    try:
        try:
            raise TrustBundleError("digest mismatch")
        except TrustBundleError as inner:
            raise RuntimeError("ship failed") from inner
    except RuntimeError as outer:
        assert classify_exception(outer) is ExitCode.INTEGRITY_ERROR
