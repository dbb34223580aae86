"""Module entrypoint for ``python -m shipwright``."""

from __future__ import annotations

from shipwright.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
