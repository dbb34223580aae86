"""
shipwright — hashing and canonical serialization utilities

File: src/shipwright/utils/hashing.py

Purpose
- Deterministic SHA-256 helpers for bytes and text.
- Canonical JSON rendering used for every hash and signature in the
  trust-bundle contract.
- Keyed HMAC-SHA256 digests and constant-time comparison.

Functional requirements
- Canonical JSON sorts keys, uses compact separators, and keeps non-ASCII
  characters verbatim so the same logical value always hashes identically.
- Directory walks yield relative POSIX paths in deterministic order.

Non-functional requirements
- Standard library only; behavior is cross-platform deterministic.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import stat
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

PathLike = str | os.PathLike[str]

__all__ = [
    "canonical_json",
    "constant_time_equals",
    "hmac_sha256_hex",
    "iter_regular_files",
    "sha256_bytes",
    "sha256_json",
    "sha256_text",
]


def sha256_bytes(data: bytes) -> str:
    """Return SHA-256 hex digest for raw bytes."""

    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    """Return SHA-256 hex digest for text encoded with ``encoding``."""

    return sha256_bytes(text.encode(encoding))


def canonical_json(value: object) -> str:
    """Render ``value`` as canonical JSON (sorted keys, compact separators)."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_json(value: object) -> str:
    """Return SHA-256 hex digest of the canonical JSON rendering of ``value``."""

    return sha256_text(canonical_json(value))


def hmac_sha256_hex(secret: str | bytes, message: str | bytes) -> str:
    """Return the HMAC-SHA256 hex digest of ``message`` keyed by ``secret``."""

    key = secret.encode("utf-8") if isinstance(secret, str) else secret
    payload = message.encode("utf-8") if isinstance(message, str) else message
    if not key:
        raise ValueError("HMAC secret must not be empty")
    return hmac.new(key, payload, hashlib.sha256).hexdigest()


def constant_time_equals(left: str, right: str) -> bool:
    """Compare two strings without leaking timing information about their content."""

    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


def iter_regular_files(directory: PathLike) -> Iterator[tuple[str, Path]]:
    """
    Yield ``(relative_posix_path, absolute_path)`` for regular files under ``directory``.

    Traversal is sorted and does not follow symlinks, so repeated walks over
    an unchanged tree yield the same sequence.
    """

    root = Path(directory).resolve(strict=True)
    if not root.is_dir():
        raise NotADirectoryError(f"{root!s} is not a directory")

    for current_dir, dir_names, file_names in os.walk(root, topdown=True, followlinks=False):
        dir_names.sort()
        file_names.sort()
        current = Path(current_dir)
        for file_name in file_names:
            file_path = current / file_name
            try:
                mode = file_path.lstat().st_mode
            except FileNotFoundError:
                # Vanished during traversal; callers can rerun for a stable snapshot.
                continue
            if not stat.S_ISREG(mode):
                continue
            yield file_path.relative_to(root).as_posix(), file_path
