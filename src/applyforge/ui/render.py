"""Output rendering for the applyforge CLI.

Purpose
- Provide a thin rendering layer over a ``rich`` console.
- Respect the ``NO_COLOR`` environment variable and the ``--no-color`` flag.

Functional requirements
- Output stays plain and deterministic when color is disabled or stdout is
  not a terminal, so it can be captured by tests and log collectors.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, TextIO

from rich.console import Console
from rich.markup import escape
from rich.table import Table

if TYPE_CHECKING:
    from collections.abc import Sequence


def _color_allowed(no_color_flag: bool, stream: TextIO) -> bool:
    """Check whether color output should be attempted."""

    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    """Thin CLI output renderer backed by ``rich.console.Console``."""

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        file: TextIO | None = None,
    ) -> None:
        stream = file if file is not None else sys.stdout
        self.verbose = verbose
        self._color = _color_allowed(no_color, stream)
        self._console = Console(
            file=stream,
            no_color=not self._color,
            highlight=False,
            soft_wrap=True,
            emoji=False,
            force_terminal=self._color or None,
            color_system="auto" if self._color else None,
        )

    @property
    def console(self) -> Console:
        return self._console

    def heading(self, text: str) -> None:
        self._console.print(escape(text), style="bold")

    def kv(self, key: str, value: object) -> None:
        """Print a ``key: value`` pair."""

        self._console.print(f"[bold]{escape(key)}:[/bold] {escape(str(value))}")

    def text(self, line: str) -> None:
        self._console.print(escape(line))

    def blank(self) -> None:
        self._console.print()

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        self._console.print()
        self._console.print(escape(title), style="bold")

    def warning(self, text: str) -> None:
        self._console.print(f"  [yellow]Warning:[/yellow] {escape(text)}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        """Print a bulleted list."""

        for entry in entries:
            self._console.print(f"  {escape(prefix)}{escape(entry)}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        if not rows:
            return
        if title:
            self.section(title)
        table = Table(show_edge=False, box=None, pad_edge=False, header_style="bold")
        for header in headers:
            table.add_column(escape(header))
        for row in rows:
            cells = [escape(str(cell)) for cell in row]
            cells.extend("" for _ in range(len(headers) - len(cells)))
            table.add_row(*cells[: len(headers)])
        self._console.print(table)

    def next_steps(self, steps: Sequence[str]) -> None:
        """Print actionable next-step hints."""

        if not steps:
            return
        self.section("Next steps:")
        for step in steps:
            self._console.print(f"  $ {escape(step)}")

    def ok(self, label: str) -> None:
        self._console.print(f"  [green]OK[/green]  {escape(label)}")

    def fail(self, label: str) -> None:
        self._console.print(f"  [red]FAIL[/red]  {escape(label)}")


def create_renderer(
    *, no_color: bool = False, verbose: bool = False, file: TextIO | None = None
) -> CLIRenderer:
    """Create a CLI renderer with the given settings."""

    return CLIRenderer(no_color=no_color, verbose=verbose, file=file)


__all__ = ["CLIRenderer", "create_renderer"]
