"""Utility exports for filesystem and hashing helpers."""

from shipwright.utils.fs import atomic_write, is_within, resolve_within
from shipwright.utils.hashing import (
    canonical_json,
    constant_time_equals,
    hmac_sha256_hex,
    iter_regular_files,
    sha256_bytes,
    sha256_json,
    sha256_text,
)

__all__ = [
    "atomic_write",
    "canonical_json",
    "constant_time_equals",
    "hmac_sha256_hex",
    "is_within",
    "iter_regular_files",
    "resolve_within",
    "sha256_bytes",
    "sha256_json",
    "sha256_text",
]
