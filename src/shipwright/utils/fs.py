"""
shipwright — filesystem utilities

File: src/shipwright/utils/fs.py

Purpose
- Atomic writes for shipped audit artifacts and event streams.
- Containment checks that keep read-only inspection inside a workspace root.

Non-functional requirements
- Standard library only and cross-platform behavior where feasible.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "is_within",
    "resolve_within",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The temp file is created beside the target, fsynced, then moved into
    place with ``os.replace``. Missing parent directories are created.
    """

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target_parent = target.parent.resolve(strict=True)

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)
    payload = data if isinstance(data, bytes) else data.encode(encoding)

    try:
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.replace(temp_path, target)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if resolved ``child`` is within resolved ``parent``."""

    try:
        resolved_parent = Path(parent).resolve(strict=True)
    except FileNotFoundError:
        return False
    if not resolved_parent.is_dir():
        return False

    resolved_child = Path(child).resolve(strict=False)
    return _is_relative_to(resolved_child, resolved_parent)


def resolve_within(root: PathLike, relative: str) -> Path:
    """
    Resolve ``relative`` against ``root`` and refuse anything that escapes it.

    Raises ``PermissionError`` for absolute paths, ``..`` escapes, and
    symlinks pointing outside the root.
    """

    base = Path(root).resolve(strict=True)
    candidate = Path(relative)
    if candidate.is_absolute():
        raise PermissionError(f"absolute paths are not inspectable: {relative!r}")
    resolved = (base / candidate).resolve(strict=False)
    if not _is_relative_to(resolved, base):
        raise PermissionError(f"path escapes workspace root: {relative!r}")
    return resolved


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True
