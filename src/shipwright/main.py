"""
shipwright — process entrypoint.

File: src/shipwright/main.py

Purpose
- Own the exit-code contract shared by every CLI command and map uncaught
  exceptions onto it.

Exit codes
- 0 success, 1 blocked (a gate, readiness check or transition refused),
  2 configuration or input error, 3 integrity failure (bad signature, malformed
  governance output, corrupt event stream), 4 internal error.
"""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    BLOCKED = 1
    CONFIG_ERROR = 2
    INTEGRITY_ERROR = 3
    INTERNAL_ERROR = 4


_KNOWN_CODES = frozenset(int(code) for code in ExitCode)

# Input problems that surface as builtins rather than shipwright errors.
_BUILTIN_INPUT_ERRORS: tuple[type[BaseException], ...] = (
    FileNotFoundError,
    NotADirectoryError,
    PermissionError,
    ValueError,
)


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run the CLI and always return one of the ``ExitCode`` values."""

    from shipwright.ui.cli import run_cli

    try:
        return _coerce_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _coerce_exit_code(exc.code)
    except Exception as exc:  # noqa: BLE001 - CLI boundary normalization.
        code = classify_exception(exc)
        _report(exc, code)
        return int(code)


def classify_exception(exc: BaseException) -> ExitCode:
    """Pick the exit code for ``exc`` by walking its cause chain, outermost first."""

    table = _routing_table()
    for link in _causes(exc):
        for code, types in table:
            if isinstance(link, types):
                return code
    return ExitCode.INTERNAL_ERROR


def _routing_table() -> tuple[tuple[ExitCode, tuple[type[BaseException], ...]], ...]:
    from shipwright.config.loader import ConfigLoadError
    from shipwright.config.schema import ConfigValidationError
    from shipwright.governance.policy import PolicyLoadError
    from shipwright.governance.verdict import GovernanceProtocolError
    from shipwright.ship.trust_bundle import TrustBundleError

    # Integrity errors subclass ValueError, so they are checked first.
    return (
        (ExitCode.INTEGRITY_ERROR, (GovernanceProtocolError, TrustBundleError)),
        (ExitCode.CONFIG_ERROR, (ConfigLoadError, ConfigValidationError, PolicyLoadError)),
        (ExitCode.CONFIG_ERROR, _BUILTIN_INPUT_ERRORS),
    )


def _causes(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


def _coerce_exit_code(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and raw in _KNOWN_CODES:
        return int(raw)
    if isinstance(raw, str) and raw.strip():
        _stderr(raw.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _report(exc: BaseException, code: ExitCode) -> None:
    if code is ExitCode.INTERNAL_ERROR:
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
    else:
        _stderr(str(exc).strip() or type(exc).__name__)


def _stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "classify_exception", "cli_entrypoint"]
