"""
shipwright — release trust bundle

File: src/shipwright/ship/trust_bundle.py

Purpose
- Assemble the sealed shipping artifact: file manifest, readiness verdict,
  governance snapshot and integrity hashes, optionally HMAC-signed.
- Write the audit artifacts (bundle JSON, manifest JSON, checklist) that
  travel with the shipped code under ``.shipwright/``.

Functional requirements
- Manifest entries are keyed by normalized forward-slash paths, sorted, and
  unique after normalization.
- ``bundle_hash`` covers the canonical unsigned bundle with ``bundleHash``
  blanked; the signature covers the canonical bundle without ``signature``.
- Signing is deterministic for a fixed bundle, secret and key id. Any field
  change produces a different signature.
- Verification fails closed: unsigned, tampered or unknown-algorithm bundles
  never verify.

Non-functional requirements
- Pure functions apart from ``collect_ship_files`` and
  ``write_trust_bundle_artifacts``.
- Artifact bytes are stable for downstream auditing tools.
"""

from __future__ import annotations

import dataclasses
import json
import os
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from functools import lru_cache
from pathlib import Path
from typing import Final

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from shipwright.constants import (
    DEFAULT_SIGNING_KEY_ID,
    SHIP_CHECKLIST_ARTIFACT,
    SIGNATURE_ALGORITHM,
    SIGNING_SECRET_ENVS,
    TRUST_ARTIFACT_DIR,
    TRUST_BUNDLE_ARTIFACT,
    TRUST_BUNDLE_VERSION,
    TRUST_MANIFEST_ARTIFACT,
)
from shipwright.ship.readiness import (
    GovernanceSnapshot,
    InvariantViolation,
    ReadinessReport,
    evaluate_release_readiness,
)
from shipwright.utils.fs import atomic_write, resolve_within
from shipwright.utils.hashing import (
    canonical_json,
    constant_time_equals,
    hmac_sha256_hex,
    iter_regular_files,
    sha256_bytes,
    sha256_json,
)

PathLike = str | os.PathLike[str]

_TEMPLATE_ROOT: Final[Path] = Path(__file__).resolve().parent / "templates"
_CHECKLIST_TEMPLATE: Final[str] = "ship_checklist.md.j2"
_DUPLICATE_SLASHES: Final[re.Pattern[str]] = re.compile(r"/{2,}")
_HEX_DIGEST: Final[re.Pattern[str]] = re.compile(r"^[0-9a-f]{64}$")


class ShipTarget(StrEnum):
    DEPLOY = "deploy"
    GITHUB = "github"
    MOBILE = "mobile"


class WorkflowMode(StrEnum):
    PR_FIRST = "pr-first"
    DIRECT = "direct"


class TrustBundleError(ValueError):
    """Raised when a bundle is malformed, unsigned, tampered with or not shippable."""


def normalize_ship_path(value: str) -> str:
    """Canonical manifest key: forward slashes, no duplicates, no leading slash."""

    if not isinstance(value, str):
        raise TrustBundleError("ship path must be a string")
    normalized = _DUPLICATE_SLASHES.sub("/", value.replace("\\", "/"))
    return normalized.lstrip("/")


@dataclass(frozen=True, slots=True)
class ShipFile:
    path: str
    content: str | bytes

    def __post_init__(self) -> None:
        if not isinstance(self.path, str) or not self.path.strip():
            raise TrustBundleError("ShipFile.path must be a non-empty string")
        if not isinstance(self.content, (str, bytes)):
            raise TrustBundleError(f"ShipFile.content for {self.path!r} must be str or bytes")

    @property
    def data(self) -> bytes:
        if isinstance(self.content, bytes):
            return self.content
        return self.content.encode("utf-8")


@dataclass(frozen=True, slots=True)
class ManifestEntry:
    path: str
    bytes: int
    content_hash: str

    @classmethod
    def for_file(cls, file: ShipFile) -> ManifestEntry:
        data = file.data
        return cls(
            path=normalize_ship_path(file.path),
            bytes=len(data),
            content_hash=sha256_bytes(data),
        )

    def to_dict(self) -> dict[str, object]:
        return {"path": self.path, "bytes": self.bytes, "hash": self.content_hash}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ManifestEntry:
        path = data.get("path")
        size = data.get("bytes")
        digest = data.get("hash")
        if not isinstance(path, str) or not path:
            raise TrustBundleError("fileManifest[].path must be a non-empty string")
        if isinstance(size, bool) or not isinstance(size, int) or size < 0:
            raise TrustBundleError(f"fileManifest[{path}].bytes must be an integer >= 0")
        if not isinstance(digest, str) or _HEX_DIGEST.fullmatch(digest) is None:
            raise TrustBundleError(f"fileManifest[{path}].hash must be a sha256 hex digest")
        return cls(path=path, bytes=size, content_hash=digest)


@dataclass(frozen=True, slots=True)
class BundleSignature:
    algorithm: str
    key_id: str
    value: str

    def to_dict(self) -> dict[str, object]:
        return {"algorithm": self.algorithm, "keyId": self.key_id, "value": self.value}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> BundleSignature:
        algorithm = data.get("algorithm")
        key_id = data.get("keyId")
        value = data.get("value")
        if not all(isinstance(item, str) and item for item in (algorithm, key_id, value)):
            raise TrustBundleError("signature requires non-empty algorithm, keyId and value")
        return cls(algorithm=str(algorithm), key_id=str(key_id), value=str(value))


@dataclass(frozen=True, slots=True)
class TrustBundle:
    version: str
    generated_at: datetime
    target: ShipTarget
    workflow_mode: WorkflowMode
    actor_user_id: str
    project_name: str
    governance: GovernanceSnapshot
    readiness: ReadinessReport
    file_manifest: tuple[ManifestEntry, ...]
    file_manifest_hash: str
    bundle_hash: str
    signature: BundleSignature | None = None

    @property
    def is_signed(self) -> bool:
        return self.signature is not None

    def unsigned_dict(self) -> dict[str, object]:
        return {
            "version": self.version,
            "generatedAt": _datetime_to_iso8601z(self.generated_at),
            "target": self.target.value,
            "workflowMode": self.workflow_mode.value,
            "actorUserId": self.actor_user_id,
            "projectName": self.project_name,
            "governance": self.governance.to_dict(),
            "readiness": self.readiness.to_dict(),
            "fileManifest": [entry.to_dict() for entry in self.file_manifest],
            "fileManifestHash": self.file_manifest_hash,
            "bundleHash": self.bundle_hash,
        }

    def to_dict(self) -> dict[str, object]:
        out = self.unsigned_dict()
        if self.signature is not None:
            out["signature"] = self.signature.to_dict()
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False) + "\n"

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TrustBundle:
        if not isinstance(data, Mapping):
            raise TrustBundleError("trust bundle must be a JSON object")
        try:
            manifest_raw = data["fileManifest"]
            if not isinstance(manifest_raw, list):
                raise TrustBundleError("fileManifest must be a list")
            signature_raw = data.get("signature")
            if signature_raw is not None and not isinstance(signature_raw, Mapping):
                raise TrustBundleError("signature must be an object")
            governance_raw = data["governance"]
            readiness_raw = data["readiness"]
            if not isinstance(governance_raw, Mapping) or not isinstance(readiness_raw, Mapping):
                raise TrustBundleError("governance and readiness must be objects")
            return cls(
                version=_require_str(data, "version"),
                generated_at=_parse_timestamp(_require_str(data, "generatedAt")),
                target=ShipTarget(_require_str(data, "target")),
                workflow_mode=WorkflowMode(_require_str(data, "workflowMode")),
                actor_user_id=_require_str(data, "actorUserId"),
                project_name=_require_str(data, "projectName"),
                governance=GovernanceSnapshot.from_dict(governance_raw),
                readiness=ReadinessReport.from_dict(readiness_raw),
                file_manifest=tuple(
                    ManifestEntry.from_dict(_require_mapping(item)) for item in manifest_raw
                ),
                file_manifest_hash=_require_str(data, "fileManifestHash"),
                bundle_hash=_require_str(data, "bundleHash"),
                signature=(
                    BundleSignature.from_dict(signature_raw) if signature_raw is not None else None
                ),
            )
        except KeyError as exc:
            raise TrustBundleError(f"trust bundle is missing field {exc.args[0]!r}") from exc
        except TrustBundleError:
            raise
        except ValueError as exc:
            raise TrustBundleError(f"invalid trust bundle: {exc}") from exc

    @classmethod
    def from_json(cls, raw: str) -> TrustBundle:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise TrustBundleError(f"trust bundle is not valid JSON: {exc.msg}") from exc
        return cls.from_dict(payload)


@dataclass(frozen=True, slots=True)
class BundleVerification:
    valid: bool
    problems: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {"valid": self.valid, "problems": list(self.problems)}


# ---------------------------------------------------------------------------
# Assembly and signing
# ---------------------------------------------------------------------------


def create_file_manifest(files: Iterable[ShipFile]) -> tuple[ManifestEntry, ...]:
    entries: dict[str, ManifestEntry] = {}
    for file in files:
        entry = ManifestEntry.for_file(file)
        if not entry.path:
            raise TrustBundleError(f"ship path {file.path!r} normalizes to an empty path")
        if entry.path in entries:
            raise TrustBundleError(f"duplicate ship path after normalization: {entry.path!r}")
        entries[entry.path] = entry
    return tuple(entries[path] for path in sorted(entries))


def manifest_hash(entries: Sequence[ManifestEntry]) -> str:
    return sha256_json([entry.to_dict() for entry in entries])


def create_ship_trust_bundle(
    *,
    project_name: str,
    target: ShipTarget | str,
    workflow_mode: WorkflowMode | str,
    actor_user_id: str,
    governance: GovernanceSnapshot,
    files: Iterable[ShipFile],
    invariant_violations: Iterable[InvariantViolation] = (),
    now: datetime | None = None,
) -> TrustBundle:
    """Build the unsigned bundle; readiness is evaluated here, signing is separate."""

    if not isinstance(project_name, str) or not project_name.strip():
        raise TrustBundleError("project_name must be a non-empty string")
    if not isinstance(actor_user_id, str) or not actor_user_id.strip():
        raise TrustBundleError("actor_user_id must be a non-empty string")
    try:
        ship_target = ShipTarget(target)
        mode = WorkflowMode(workflow_mode)
    except ValueError as exc:
        raise TrustBundleError(str(exc)) from exc

    generated_at = now if now is not None else datetime.now(tz=UTC)
    if generated_at.utcoffset() is None:
        raise TrustBundleError("generated_at must be timezone-aware")

    manifest = create_file_manifest(files)
    draft = TrustBundle(
        version=TRUST_BUNDLE_VERSION,
        generated_at=generated_at.astimezone(UTC),
        target=ship_target,
        workflow_mode=mode,
        actor_user_id=actor_user_id,
        project_name=project_name,
        governance=governance,
        readiness=evaluate_release_readiness(
            governance, invariant_violations=invariant_violations
        ),
        file_manifest=manifest,
        file_manifest_hash=manifest_hash(manifest),
        bundle_hash="",
    )
    return dataclasses.replace(draft, bundle_hash=compute_bundle_hash(draft))


def compute_bundle_hash(bundle: TrustBundle) -> str:
    unsigned = bundle.unsigned_dict()
    unsigned["bundleHash"] = ""
    return sha256_json(unsigned)


def signing_payload(bundle: TrustBundle) -> str:
    return canonical_json(bundle.unsigned_dict())


def sign_ship_trust_bundle(
    bundle: TrustBundle,
    secret: str | bytes,
    key_id: str = DEFAULT_SIGNING_KEY_ID,
) -> TrustBundle:
    """
    Attach an HMAC-SHA256 signature. Any prior signature is replaced.

    Readiness is not checked here; ``assert_shippable`` enforces it.
    """

    if not isinstance(key_id, str) or not key_id.strip():
        raise TrustBundleError("key_id must be a non-empty string")
    try:
        value = hmac_sha256_hex(secret, signing_payload(bundle))
    except ValueError as exc:
        raise TrustBundleError(f"cannot sign trust bundle: {exc}") from exc
    signature = BundleSignature(algorithm=SIGNATURE_ALGORITHM, key_id=key_id, value=value)
    return dataclasses.replace(bundle, signature=signature)


def verify_ship_trust_bundle(bundle: TrustBundle, secret: str | bytes) -> BundleVerification:
    problems: list[str] = []
    if manifest_hash(bundle.file_manifest) != bundle.file_manifest_hash:
        problems.append("file manifest hash does not match manifest entries")
    if compute_bundle_hash(bundle) != bundle.bundle_hash:
        problems.append("bundle hash does not match bundle contents")

    signature = bundle.signature
    if signature is None:
        problems.append("bundle is not signed")
    elif signature.algorithm != SIGNATURE_ALGORITHM:
        problems.append(f"unsupported signature algorithm {signature.algorithm!r}")
    else:
        try:
            expected = hmac_sha256_hex(secret, signing_payload(bundle))
        except ValueError as exc:
            problems.append(f"cannot verify signature: {exc}")
        else:
            if not constant_time_equals(expected, signature.value):
                problems.append("signature does not match bundle contents")

    return BundleVerification(valid=not problems, problems=tuple(problems))


def assert_shippable(bundle: TrustBundle, secret: str | bytes) -> None:
    verification = verify_ship_trust_bundle(bundle, secret)
    if not verification.valid:
        raise TrustBundleError("; ".join(verification.problems))
    if not bundle.readiness.ready:
        blockers = "; ".join(bundle.readiness.blockers) or "readiness not met"
        raise TrustBundleError(f"release is not ready: {blockers}")


def diff_manifest(bundle: TrustBundle, files: Iterable[ShipFile]) -> tuple[str, ...]:
    """Describe differences between shipped files and the bundle manifest."""

    expected = {entry.path: entry for entry in bundle.file_manifest}
    artifact_paths = {
        str(TRUST_BUNDLE_ARTIFACT),
        str(TRUST_MANIFEST_ARTIFACT),
        str(SHIP_CHECKLIST_ARTIFACT),
    }
    seen: set[str] = set()
    problems: list[str] = []
    for file in files:
        path = normalize_ship_path(file.path)
        if path in artifact_paths:
            continue
        seen.add(path)
        entry = expected.get(path)
        if entry is None:
            problems.append(f"unexpected file: {path}")
            continue
        data = file.data
        if len(data) != entry.bytes or sha256_bytes(data) != entry.content_hash:
            problems.append(f"content changed: {path}")
    for path in sorted(set(expected) - seen):
        problems.append(f"missing file: {path}")
    return tuple(problems)


# ---------------------------------------------------------------------------
# Shipped artifacts
# ---------------------------------------------------------------------------


def render_ship_checklist(bundle: TrustBundle) -> str:
    template = _environment().get_template(_CHECKLIST_TEMPLATE)
    rendered = template.render(
        generated_at=_datetime_to_iso8601z(bundle.generated_at),
        target=bundle.target.value,
        workflow_mode=bundle.workflow_mode.value,
        ready=bundle.readiness.ready,
        manual_rescue_required=bundle.readiness.manual_rescue_required,
        blockers=list(bundle.readiness.blockers),
        warnings=list(bundle.readiness.warnings),
        file_manifest_hash=bundle.file_manifest_hash,
        bundle_hash=bundle.bundle_hash,
        signature=bundle.signature,
    )
    return rendered.rstrip("\n") + "\n"


def trust_bundle_artifacts(bundle: TrustBundle) -> tuple[ShipFile, ...]:
    manifest = [entry.to_dict() for entry in bundle.file_manifest]
    return (
        ShipFile(path=str(TRUST_BUNDLE_ARTIFACT), content=bundle.to_json()),
        ShipFile(
            path=str(TRUST_MANIFEST_ARTIFACT),
            content=json.dumps(manifest, indent=2, ensure_ascii=False) + "\n",
        ),
        ShipFile(path=str(SHIP_CHECKLIST_ARTIFACT), content=render_ship_checklist(bundle)),
    )


def append_trust_bundle_artifacts(
    files: Iterable[ShipFile], bundle: TrustBundle
) -> list[ShipFile]:
    """Return ``files`` plus the three audit artifacts; stale copies are replaced."""

    artifacts = trust_bundle_artifacts(bundle)
    replaced = {artifact.path for artifact in artifacts}
    kept = [file for file in files if normalize_ship_path(file.path) not in replaced]
    return [*kept, *artifacts]


def write_trust_bundle_artifacts(root: PathLike, bundle: TrustBundle) -> tuple[Path, ...]:
    written: list[Path] = []
    for artifact in trust_bundle_artifacts(bundle):
        target = resolve_within(root, artifact.path)
        atomic_write(target, artifact.data)
        written.append(target)
    return tuple(written)


def collect_ship_files(directory: PathLike) -> list[ShipFile]:
    """Read every regular file under ``directory``, skipping previous audit artifacts."""

    skip_prefix = f"{TRUST_ARTIFACT_DIR}/"
    files: list[ShipFile] = []
    for relative, path in iter_regular_files(directory):
        if relative.startswith(skip_prefix):
            continue
        files.append(ShipFile(path=relative, content=path.read_bytes()))
    return files


def resolve_signing_secret(
    environ: Mapping[str, str] | None = None,
    env_names: Sequence[str] = SIGNING_SECRET_ENVS,
) -> str | None:
    """First non-blank secret among ``env_names``, stripped; ``None`` when unset."""

    source = os.environ if environ is None else environ
    for name in env_names:
        value = source.get(name)
        if value and value.strip():
            return value.strip()
    return None


@lru_cache(maxsize=1)
def _environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(_TEMPLATE_ROOT)),
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        newline_sequence="\n",
        keep_trailing_newline=False,
    )


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = value.astimezone(UTC)
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _parse_timestamp(raw: str) -> datetime:
    text = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise TrustBundleError(f"generatedAt is not an ISO-8601 timestamp: {raw!r}") from exc
    if parsed.utcoffset() is None:
        raise TrustBundleError("generatedAt must include a UTC offset")
    return parsed.astimezone(UTC)


def _require_str(data: Mapping[str, object], key: str) -> str:
    value = data[key]
    if not isinstance(value, str):
        raise TrustBundleError(f"{key} must be a string")
    return value


def _require_mapping(value: object) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise TrustBundleError("fileManifest entries must be objects")
    return value


__all__ = [
    "BundleSignature",
    "BundleVerification",
    "ManifestEntry",
    "ShipFile",
    "ShipTarget",
    "TrustBundle",
    "TrustBundleError",
    "WorkflowMode",
    "append_trust_bundle_artifacts",
    "assert_shippable",
    "collect_ship_files",
    "compute_bundle_hash",
    "create_file_manifest",
    "create_ship_trust_bundle",
    "diff_manifest",
    "manifest_hash",
    "normalize_ship_path",
    "render_ship_checklist",
    "resolve_signing_secret",
    "sign_ship_trust_bundle",
    "signing_payload",
    "trust_bundle_artifacts",
    "verify_ship_trust_bundle",
    "write_trust_bundle_artifacts",
]
