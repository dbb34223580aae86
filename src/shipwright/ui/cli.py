"""Command-line interface router for shipwright."""

from __future__ import annotations

import argparse
import json
import sys
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from shipwright.config import (
    ConfigLoadError,
    ConfigValidationError,
    effective_config,
    load_config,
)
from shipwright.control_plane import apply_run_request, classify_failure, decide_retry
from shipwright.domain.events import format_supervisor_event_line
from shipwright.domain.models import BackgroundRunRecord, TransitionFailure
from shipwright.governance.capabilities import AgentRole, ToolKernel, load_tool_policy
from shipwright.governance.gate import GateStage, GovernanceGate
from shipwright.governance.policy import (
    GovernancePolicy,
    PolicyLoadError,
    default_policy,
    load_governance_policy,
)
from shipwright.governance.verdict import InvariantSeverity, summarize_for_user
from shipwright.main import ExitCode
from shipwright.observability.event_log import SupervisorEventRecorder, read_event_stream
from shipwright.observability.logging import (
    configure_structlog,
    setup_logging,
    shutdown_logging,
)
from shipwright.ship.readiness import (
    GovernanceSnapshot,
    InvariantViolation,
    evaluate_release_readiness,
)
from shipwright.ship.trust_bundle import (
    ShipTarget,
    TrustBundle,
    TrustBundleError,
    WorkflowMode,
    collect_ship_files,
    create_ship_trust_bundle,
    diff_manifest,
    resolve_signing_secret,
    sign_ship_trust_bundle,
    verify_ship_trust_bundle,
    write_trust_bundle_artifacts,
)
from shipwright.ui.render import CLIRenderer, create_renderer


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = int(ExitCode.CONFIG_ERROR)

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="shipwright",
        description=(
            "shipwright — governed pipeline core.\n\n"
            "Common workflows:\n"
            "  shipwright transition run.json request.json   Apply a run operation\n"
            "  shipwright gate plan plan-1 verdict.json      Review a plan verdict\n"
            "  shipwright bundle create --dir build/ ...     Seal a release bundle\n"
            "  shipwright bundle verify TRUST_BUNDLE.json    Check a shipped bundle\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to shipwright TOML config (default: ./shipwright.toml if present).",
    )
    common.add_argument("--json", action="store_true", default=False, help="Emit JSON output")
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument(
        "--log",
        action="store_true",
        default=False,
        help="Write structured JSON-lines logs under the configured log_dir.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # transition ----------------------------------------------------------
    transition_parser = subparsers.add_parser(
        "transition",
        parents=[common],
        help="Apply one lifecycle operation to a background-run record",
        description=(
            "Read a run record and a transition request, print the mutation or the\n"
            "typed refusal. Exit code 1 when the transition is refused.\n\n"
            "Examples:\n"
            '  shipwright transition run.json \'{"operation": "start"}\'\n'
            "  shipwright transition run.json request.json --write\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    transition_parser.add_argument("record", help="Run record JSON file")
    transition_parser.add_argument("request", help="Request JSON file or inline JSON object")
    transition_parser.add_argument("--now", default=None, help="ISO-8601 timestamp to use")
    transition_parser.add_argument(
        "--write", action="store_true", help="Write the updated record back to the record file"
    )
    transition_parser.set_defaults(handler=_cmd_transition)

    # classify ------------------------------------------------------------
    classify_parser = subparsers.add_parser(
        "classify",
        parents=[common],
        help="Classify a failure message as transient or permanent",
    )
    classify_parser.add_argument("message", help="Failure message to classify")
    classify_parser.add_argument(
        "--record", default=None, help="Failed run record; adds the retry decision"
    )
    classify_parser.add_argument("--policy", default=None, help="Governance policy YAML")
    classify_parser.set_defaults(handler=_cmd_classify)

    # gate ----------------------------------------------------------------
    gate_parser = subparsers.add_parser(
        "gate",
        parents=[common],
        help="Run a plan or structure governance gate over reviewer output",
        description=(
            "Validate reviewer output and apply the escalation policy.\n"
            "Exit code 0 when the pipeline may proceed, 1 otherwise.\n\n"
            "Examples:\n"
            "  shipwright gate plan plan-7 reviewer.txt\n"
            "  shipwright gate structure tree-2 verdict.json --events run.events.jsonl\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    gate_parser.add_argument("stage", choices=[item.value for item in GateStage])
    gate_parser.add_argument("artifact_id", help="Identifier of the reviewed artifact")
    gate_parser.add_argument("output", help="File with the raw reviewer output")
    gate_parser.add_argument("--policy", default=None, help="Governance policy YAML")
    gate_parser.add_argument("--run-id", default=None, help="Run id stamped on gate events")
    gate_parser.add_argument("--events", default=None, help="Append gate events to this file")
    gate_parser.set_defaults(handler=_cmd_gate)

    # readiness -----------------------------------------------------------
    readiness_parser = subparsers.add_parser(
        "readiness",
        parents=[common],
        help="Evaluate release readiness from a governance snapshot",
    )
    readiness_parser.add_argument("snapshot", help="Governance snapshot JSON file")
    readiness_parser.add_argument(
        "--violations",
        default=None,
        help="JSON list of broken invariants: {description, severity, detail?}",
    )
    readiness_parser.set_defaults(handler=_cmd_readiness)

    # bundle --------------------------------------------------------------
    bundle_parser = subparsers.add_parser(
        "bundle",
        help="Create, sign and verify release trust bundles",
    )
    bundle_sub = bundle_parser.add_subparsers(dest="bundle_command", required=True)

    create_parser = bundle_sub.add_parser(
        "create", parents=[common], help="Build a trust bundle over a project directory"
    )
    create_parser.add_argument("--dir", required=True, help="Project directory to ship")
    create_parser.add_argument("--governance", required=True, help="Governance snapshot JSON")
    create_parser.add_argument("--project", required=True, help="Project name")
    create_parser.add_argument("--actor", required=True, help="Acting user id")
    create_parser.add_argument(
        "--target", choices=[item.value for item in ShipTarget], default=ShipTarget.DEPLOY.value
    )
    create_parser.add_argument(
        "--workflow",
        choices=[item.value for item in WorkflowMode],
        default=WorkflowMode.PR_FIRST.value,
    )
    create_parser.add_argument("--violations", default=None, help="Broken invariants JSON list")
    create_parser.add_argument("--sign", action="store_true", help="Sign with the env secret")
    create_parser.add_argument(
        "--write-artifacts",
        action="store_true",
        help="Write the audit artifacts into the project directory",
    )
    create_parser.add_argument("--out", default=None, help="Write bundle JSON to this file")
    create_parser.set_defaults(handler=_cmd_bundle_create)

    sign_parser = bundle_sub.add_parser(
        "sign", parents=[common], help="Sign a bundle with the configured secret"
    )
    sign_parser.add_argument("bundle", help="Trust bundle JSON file")
    sign_parser.add_argument("--key-id", default=None, help="Signing key id")
    sign_parser.add_argument("--out", default=None, help="Output file (default: in place)")
    sign_parser.set_defaults(handler=_cmd_bundle_sign)

    verify_parser = bundle_sub.add_parser(
        "verify", parents=[common], help="Verify bundle integrity and signature"
    )
    verify_parser.add_argument("bundle", help="Trust bundle JSON file")
    verify_parser.add_argument("--dir", default=None, help="Also compare files in this directory")
    verify_parser.add_argument(
        "--require-ready", action="store_true", help="Fail when readiness is not met"
    )
    verify_parser.set_defaults(handler=_cmd_bundle_verify)

    # events --------------------------------------------------------------
    events_parser = subparsers.add_parser(
        "events", parents=[common], help="Print a supervisor event stream"
    )
    events_parser.add_argument("path", help="JSON-lines event file")
    events_parser.set_defaults(handler=_cmd_events)

    # tools ---------------------------------------------------------------
    tools_parser = subparsers.add_parser(
        "tools", parents=[common], help="Check whether an agent role may call a tool"
    )
    tools_parser.add_argument("role", choices=[item.value for item in AgentRole])
    tools_parser.add_argument("tool", help="Tool name")
    tools_parser.set_defaults(handler=_cmd_tools)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration (redacted)",
        description=(
            "Display the effective config after merging defaults, file and env.\n"
            "Sensitive values are redacted.\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    # Decision logs go through stdlib handlers, never straight to stdout.
    configure_structlog()
    logging_enabled = _flag(namespace, "log")
    try:
        if logging_enabled:
            config = _load_effective_config(namespace)
            setup_logging(
                _mapping(config.get("observability")),
                session_id=f"cli-{uuid.uuid4().hex[:12]}",
            )
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    finally:
        if logging_enabled:
            shutdown_logging()
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    """Compatibility wrapper for main-module wiring."""

    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_transition(args: argparse.Namespace) -> int:
    record_path = Path(args.record)
    record = _load_record(record_path)
    request = _load_json_argument(args.request, "request")
    now = _parse_now(args.now)

    result = apply_run_request(record, request, now)
    if isinstance(result, TransitionFailure):
        payload: dict[str, object] = {"command": "transition", "result": result.to_dict()}
        if _flag(args, "json"):
            _emit_json(payload)
        else:
            renderer = _get_renderer(args)
            renderer.fail(f"{result.code.value}: {result.message}")
        return int(ExitCode.BLOCKED)

    updated = record.apply(result.mutation)
    if _flag(args, "write"):
        record_path.write_text(updated.to_json() + "\n", encoding="utf-8")

    if _flag(args, "json"):
        _emit_json(
            {"command": "transition", "result": result.to_dict(), "record": updated.to_dict()}
        )
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.ok(f"{result.operation.value}: {record.status.value} -> {updated.status.value}")
    rows = [[name, _display(value)] for name, value in sorted(result.mutation.to_dict().items())]
    renderer.table(["field", "value"], rows, title="Mutation")
    return int(ExitCode.SUCCESS)


def _cmd_classify(args: argparse.Namespace) -> int:
    policy = _load_policy(args)
    kind = classify_failure(args.message, policy)
    payload: dict[str, object] = {"command": "classify", "kind": kind.value}

    decision = None
    if args.record is not None:
        record = _load_record(Path(args.record))
        config = _load_effective_config(args)
        runs = _mapping(config.get("runs"))
        decision = decide_retry(
            record,
            args.message,
            policy=policy,
            base_seconds=int(runs.get("retry_base_seconds", 30)),
            max_seconds=int(runs.get("retry_max_seconds", 900)),
        )
        payload["retry"] = decision.retry
        payload["retry_after_seconds"] = decision.retry_after_seconds
        payload["reason"] = decision.reason

    if _flag(args, "json"):
        _emit_json(payload)
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.kv("Failure kind", kind.value)
    if decision is not None:
        renderer.kv("Retry", "yes" if decision.retry else "no")
        renderer.kv("Retry after (s)", decision.retry_after_seconds)
        renderer.kv("Reason", decision.reason)
    return int(ExitCode.SUCCESS)


def _cmd_gate(args: argparse.Namespace) -> int:
    policy = _load_policy(args)
    raw_output = _read_text(Path(args.output))

    recorder = None
    if args.events is not None or args.run_id is not None:
        recorder = SupervisorEventRecorder(
            args.run_id or f"gate-{args.artifact_id}",
            sink=args.events,
        )

    gate = GovernanceGate(policy, recorder)
    review = gate.review(args.stage, args.artifact_id, raw_output)
    decision = review.decision
    if decision is None:
        raise CLIError("gate review did not conclude", exit_code=int(ExitCode.INTERNAL_ERROR))

    exit_code = ExitCode.SUCCESS if decision.may_proceed else ExitCode.BLOCKED
    if _flag(args, "json"):
        _emit_json({"command": "gate", "review": review.to_dict()})
        return int(exit_code)

    renderer = _get_renderer(args)
    renderer.kv("Stage", review.stage.value)
    renderer.kv("Artifact", review.artifact_id)
    renderer.kv("State", review.state.value)
    renderer.kv("Outcome", decision.outcome.value)
    if review.verdict is not None:
        renderer.kv("Summary", summarize_for_user(review.verdict))
    if decision.reasons:
        renderer.section("Reasons:")
        renderer.items(list(decision.reasons))
    if decision.amendments:
        renderer.section("Required amendments:")
        renderer.items(list(decision.amendments))
    if review.violations and renderer.verbose:
        renderer.table(
            ["path", "code", "message"],
            [[item.path, item.code.value, item.message] for item in review.violations],
            title="Protocol violations",
        )
    return int(exit_code)


def _cmd_readiness(args: argparse.Namespace) -> int:
    snapshot = _load_snapshot(Path(args.snapshot))
    violations = _load_violations(getattr(args, "violations", None))
    report = evaluate_release_readiness(snapshot, invariant_violations=violations)
    exit_code = ExitCode.SUCCESS if report.ready else ExitCode.BLOCKED

    if _flag(args, "json"):
        _emit_json({"command": "readiness", "readiness": report.to_dict()})
        return int(exit_code)

    renderer = _get_renderer(args)
    if report.ready:
        renderer.ok("Release is ready to ship")
    else:
        renderer.fail("Release is blocked")
    if report.blockers:
        renderer.section("Blockers:")
        renderer.items(list(report.blockers))
    for warning in report.warnings:
        renderer.warning(warning)
    return int(exit_code)


def _cmd_bundle_create(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    ship = _mapping(config.get("ship"))
    project_dir = Path(args.dir).expanduser().resolve()
    if not project_dir.is_dir():
        raise CLIError(f"project directory not found: {project_dir}")

    try:
        bundle = create_ship_trust_bundle(
            project_name=args.project,
            target=args.target,
            workflow_mode=args.workflow,
            actor_user_id=args.actor,
            governance=_load_snapshot(Path(args.governance)),
            files=collect_ship_files(project_dir),
            invariant_violations=_load_violations(getattr(args, "violations", None)),
        )
        if _flag(args, "sign"):
            bundle = sign_ship_trust_bundle(
                bundle,
                _require_signing_secret(ship),
                str(ship.get("signing_key_id") or "shipwright-default"),
            )
    except TrustBundleError as exc:
        raise CLIError(str(exc)) from exc

    if _flag(args, "write_artifacts"):
        write_trust_bundle_artifacts(project_dir, bundle)
    if args.out is not None:
        Path(args.out).write_text(bundle.to_json(), encoding="utf-8")

    exit_code = ExitCode.SUCCESS if bundle.readiness.ready else ExitCode.BLOCKED
    if _flag(args, "json"):
        _emit_json({"command": "bundle.create", "bundle": bundle.to_dict()})
        return int(exit_code)

    renderer = _get_renderer(args)
    _render_bundle(renderer, bundle)
    return int(exit_code)


def _cmd_bundle_sign(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    ship = _mapping(config.get("ship"))
    bundle_path = Path(args.bundle)
    bundle = _load_bundle(bundle_path)
    key_id = args.key_id or str(ship.get("signing_key_id") or "shipwright-default")

    try:
        signed = sign_ship_trust_bundle(bundle, _require_signing_secret(ship), key_id)
    except TrustBundleError as exc:
        raise CLIError(str(exc)) from exc

    target = Path(args.out) if args.out is not None else bundle_path
    target.write_text(signed.to_json(), encoding="utf-8")

    if _flag(args, "json"):
        _emit_json({"command": "bundle.sign", "path": str(target), "key_id": key_id})
        return int(ExitCode.SUCCESS)
    renderer = _get_renderer(args)
    renderer.ok(f"Signed {target} with key {key_id}")
    return int(ExitCode.SUCCESS)


def _cmd_bundle_verify(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    ship = _mapping(config.get("ship"))
    bundle = _load_bundle(Path(args.bundle))
    verification = verify_ship_trust_bundle(bundle, _require_signing_secret(ship))

    problems = list(verification.problems)
    if args.dir is not None:
        problems.extend(diff_manifest(bundle, collect_ship_files(Path(args.dir))))
    not_ready = _flag(args, "require_ready") and not bundle.readiness.ready

    if problems:
        exit_code = ExitCode.INTEGRITY_ERROR
    elif not_ready:
        exit_code = ExitCode.BLOCKED
    else:
        exit_code = ExitCode.SUCCESS

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "bundle.verify",
                "valid": not problems,
                "ready": bundle.readiness.ready,
                "problems": problems,
            }
        )
        return int(exit_code)

    renderer = _get_renderer(args)
    if problems:
        renderer.fail("Trust bundle failed verification")
        renderer.items(problems)
    else:
        renderer.ok("Trust bundle verified")
    if not_ready:
        renderer.fail("Release is not ready")
        renderer.items(list(bundle.readiness.blockers))
    return int(exit_code)


def _cmd_events(args: argparse.Namespace) -> int:
    try:
        events = read_event_stream(args.path)
    except FileNotFoundError as exc:
        raise CLIError(f"event file not found: {args.path}") from exc
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.INTEGRITY_ERROR)) from exc

    if _flag(args, "json"):
        _emit_json({"command": "events", "events": [event.to_dict() for event in events]})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    for event in events:
        renderer.text(format_supervisor_event_line(event))
    return int(ExitCode.SUCCESS)


def _cmd_tools(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    governance = _mapping(config.get("governance"))
    tool_policy_path = governance.get("tool_policy_path")
    try:
        policy = load_tool_policy(tool_policy_path if isinstance(tool_policy_path, str) else None)
    except PolicyLoadError as exc:
        raise CLIError(str(exc)) from exc

    authorization = ToolKernel(policy=policy).authorize_tool(args.role, args.tool)
    exit_code = ExitCode.SUCCESS if authorization.allowed else ExitCode.BLOCKED
    if _flag(args, "json"):
        payload: dict[str, object] = {
            "command": "tools",
            "role": args.role,
            "tool": args.tool,
            "allowed": authorization.allowed,
        }
        if authorization.violation is not None:
            payload["violation"] = authorization.violation.to_dict()
        _emit_json(payload)
        return int(exit_code)

    renderer = _get_renderer(args)
    if authorization.allowed:
        renderer.ok(f"{args.role} may call {args.tool}")
    else:
        reason = authorization.violation.message if authorization.violation else "denied"
        renderer.fail(f"{args.role} may not call {args.tool}: {reason}")
    return int(exit_code)


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    redacted = effective_config(config)

    if _flag(args, "json"):
        _emit_json({"command": "config", "config": redacted})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.document(redacted)
    return int(ExitCode.SUCCESS)


# ---------------------------------------------------------------------------
# Helpers — rendering
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _render_bundle(renderer: CLIRenderer, bundle: TrustBundle) -> None:
    renderer.kv("Project", bundle.project_name)
    renderer.kv("Target", bundle.target.value)
    renderer.kv("Workflow", bundle.workflow_mode.value)
    renderer.kv("Ready", "YES" if bundle.readiness.ready else "NO")
    renderer.kv("Files", len(bundle.file_manifest))
    renderer.kv("Bundle hash", bundle.bundle_hash)
    if bundle.signature is not None:
        renderer.kv("Signature", f"{bundle.signature.algorithm}/{bundle.signature.key_id}")
    if bundle.readiness.blockers:
        renderer.section("Blockers:")
        renderer.items(list(bundle.readiness.blockers))
    if renderer.verbose:
        renderer.table(
            ["path", "bytes", "hash"],
            [
                [entry.path, str(entry.bytes), entry.content_hash[:16]]
                for entry in bundle.file_manifest
            ],
            title="Manifest",
        )


def _display(value: object) -> str:
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, ensure_ascii=False)
    return str(value)


# ---------------------------------------------------------------------------
# Helpers — inputs
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    cached = getattr(args, "_effective_config", None)
    if isinstance(cached, dict):
        return cached
    try:
        loaded = load_config(_optional_str(getattr(args, "config_path", None)))
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc)) from exc
    args._effective_config = loaded
    return loaded


def _load_policy(args: argparse.Namespace) -> GovernancePolicy:
    path = _optional_str(getattr(args, "policy", None))
    if path is None:
        governance = _mapping(_load_effective_config(args).get("governance"))
        path = _optional_str(governance.get("policy_path"))
    if path is None:
        return default_policy()
    try:
        return load_governance_policy(path)
    except PolicyLoadError as exc:
        raise CLIError(str(exc)) from exc


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise CLIError(f"file not found: {path}") from exc
    except OSError as exc:
        raise CLIError(f"unable to read {path}: {exc}") from exc


def _load_json_file(path: Path, name: str) -> object:
    raw = _read_text(path)
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CLIError(f"{name} is not valid JSON ({path}): {exc.msg}") from exc


def _load_json_argument(value: str, name: str) -> object:
    """Inline JSON objects are accepted in place of a file path."""

    stripped = value.strip()
    if stripped.startswith("{"):
        try:
            return json.loads(stripped)
        except json.JSONDecodeError as exc:
            raise CLIError(f"{name} is not valid JSON: {exc.msg}") from exc
    return _load_json_file(Path(value), name)


def _load_record(path: Path) -> BackgroundRunRecord:
    payload = _load_json_file(path, "run record")
    if not isinstance(payload, Mapping):
        raise CLIError(f"run record must be a JSON object: {path}")
    try:
        return BackgroundRunRecord.from_dict(payload)
    except ValueError as exc:
        raise CLIError(f"invalid run record {path}: {exc}") from exc


def _load_snapshot(path: Path) -> GovernanceSnapshot:
    payload = _load_json_file(path, "governance snapshot")
    if not isinstance(payload, Mapping):
        raise CLIError(f"governance snapshot must be a JSON object: {path}")
    try:
        return GovernanceSnapshot.from_dict(payload)
    except ValueError as exc:
        raise CLIError(f"invalid governance snapshot {path}: {exc}") from exc


def _load_violations(path: str | None) -> tuple[InvariantViolation, ...]:
    if path is None:
        return ()
    payload = _load_json_file(Path(path), "invariant violations")
    if not isinstance(payload, list):
        raise CLIError("invariant violations must be a JSON list")
    violations: list[InvariantViolation] = []
    for index, item in enumerate(payload):
        if not isinstance(item, Mapping):
            raise CLIError(f"invariant violations[{index}] must be an object")
        description = item.get("description")
        detail = item.get("detail")
        if not isinstance(description, str) or not description.strip():
            raise CLIError(f"invariant violations[{index}].description is required")
        try:
            severity = InvariantSeverity(str(item.get("severity", "hard")))
        except ValueError as exc:
            raise CLIError(f"invariant violations[{index}].severity: {exc}") from exc
        violations.append(
            InvariantViolation(
                description=description.strip(),
                severity=severity,
                detail=detail if isinstance(detail, str) else None,
            )
        )
    return tuple(violations)


def _load_bundle(path: Path) -> TrustBundle:
    try:
        return TrustBundle.from_json(_read_text(path))
    except TrustBundleError as exc:
        raise CLIError(
            f"invalid trust bundle {path}: {exc}", exit_code=int(ExitCode.INTEGRITY_ERROR)
        ) from exc


def _require_signing_secret(ship: Mapping[str, object]) -> str:
    raw_envs = ship.get("signing_secret_envs")
    env_names = tuple(raw_envs) if isinstance(raw_envs, list) else ()
    secret = resolve_signing_secret(env_names=env_names) if env_names else None
    if secret is None:
        names = ", ".join(env_names) or "ship.signing_secret_envs"
        raise CLIError(f"no signing secret configured; set one of: {names}")
    return secret


def _parse_now(raw: str | None) -> datetime:
    if raw is None:
        return datetime.now(UTC)
    text = raw.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise CLIError(f"--now is not an ISO-8601 timestamp: {raw!r}") from exc
    if parsed.utcoffset() is None:
        raise CLIError("--now must include a UTC offset")
    return parsed.astimezone(UTC)


def _mapping(value: object) -> dict[str, Any]:
    if isinstance(value, Mapping):
        return dict(value)
    return {}


def _optional_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
