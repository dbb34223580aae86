"""
shipwright — human-readable CLI output

File: src/shipwright/ui/render.py

Purpose
- Render command results through a ``rich`` console for people; ``--json``
  output bypasses this module entirely.
- Color only on a TTY, and never when ``NO_COLOR`` is set or ``--no-color``
  is passed. Piped output is plain text at a fixed width.
"""

from __future__ import annotations

import os
import sys
from typing import IO, TYPE_CHECKING, Final

from rich.console import Console
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

_PLAIN_WIDTH: Final[int] = 120

# Marker and style per check outcome.
_MARKS: Final[dict[str, tuple[str, str]]] = {
    "ok": ("OK", "green"),
    "fail": ("FAIL", "red"),
    "warning": ("Warning:", "yellow"),
}


class CLIRenderer:
    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        file: IO[str] | None = None,
    ) -> None:
        stream = file if file is not None else sys.stdout
        colored = (
            not no_color
            and not os.environ.get("NO_COLOR")
            and bool(getattr(stream, "isatty", lambda: False)())
        )
        self.verbose = verbose
        self._console = Console(
            file=stream,
            no_color=not colored,
            color_system="auto" if colored else None,
            highlight=False,
            soft_wrap=True,
            width=None if colored else _PLAIN_WIDTH,
        )

    def text(self, line: str) -> None:
        self._console.print(Text(line))

    def kv(self, key: str, value: object) -> None:
        self._console.print(Text.assemble((f"{key}: ", "bold"), str(value)))

    def section(self, title: str) -> None:
        """Blank line, then an underlined title."""

        self._console.print()
        self._console.print(Text(title, style="bold underline"))

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._console.print(Text(f"  {prefix}{entry}"))

    def ok(self, label: str) -> None:
        self._mark("ok", label)

    def fail(self, label: str) -> None:
        self._mark("fail", label)

    def warning(self, label: str) -> None:
        self._mark("warning", label)

    def document(self, data: Mapping[str, object]) -> None:
        """Pretty-print a JSON document (indented, key-sorted)."""

        self._console.print_json(data=data, indent=2, sort_keys=True)

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[object]],
        *,
        title: str | None = None,
    ) -> None:
        """Rows are padded or cut to the header count. An empty row set prints nothing."""

        if not rows:
            return
        width = len(headers)
        table = Table(
            *headers, title=title, show_edge=False, header_style="bold", title_justify="left"
        )
        for row in rows:
            cells = [str(cell) for cell in row[:width]]
            table.add_row(*cells, *([""] * (width - len(cells))))
        self._console.print(table)

    def _mark(self, kind: str, label: str) -> None:
        marker, style = _MARKS[kind]
        self._console.print(Text(f"  {marker}  {label}", style=style))


def create_renderer(
    *,
    no_color: bool = False,
    verbose: bool = False,
    file: IO[str] | None = None,
) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose, file=file)


__all__ = ["CLIRenderer", "create_renderer"]
