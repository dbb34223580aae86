"""
shipwright — release shipping

Purpose
- Readiness evaluation over audit and verification signals, and the signed
  trust bundle that travels with shipped code.
"""

from shipwright.ship.readiness import (
    GovernanceSnapshot,
    InvariantViolation,
    ReadinessReport,
    evaluate_release_readiness,
)
from shipwright.ship.trust_bundle import (
    BundleSignature,
    BundleVerification,
    ManifestEntry,
    ShipFile,
    ShipTarget,
    TrustBundle,
    TrustBundleError,
    WorkflowMode,
    append_trust_bundle_artifacts,
    assert_shippable,
    collect_ship_files,
    create_ship_trust_bundle,
    diff_manifest,
    normalize_ship_path,
    resolve_signing_secret,
    sign_ship_trust_bundle,
    verify_ship_trust_bundle,
    write_trust_bundle_artifacts,
)

__all__ = [
    "BundleSignature",
    "BundleVerification",
    "GovernanceSnapshot",
    "InvariantViolation",
    "ManifestEntry",
    "ReadinessReport",
    "ShipFile",
    "ShipTarget",
    "TrustBundle",
    "TrustBundleError",
    "WorkflowMode",
    "append_trust_bundle_artifacts",
    "assert_shippable",
    "collect_ship_files",
    "create_ship_trust_bundle",
    "diff_manifest",
    "evaluate_release_readiness",
    "normalize_ship_path",
    "resolve_signing_secret",
    "sign_ship_trust_bundle",
    "verify_ship_trust_bundle",
    "write_trust_bundle_artifacts",
]
