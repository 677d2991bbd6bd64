"""
applyforge process entrypoint.

``cli_entrypoint`` is the only place where exceptions become exit codes. The
command router returns codes for outcomes it understands (blocked, paused,
resume blocked); anything that escapes is mapped by walking the exception's
cause/context chain so that wrapped domain errors keep their code.
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
    BLOCKING_FAILURE = 1
    CONFIG_ERROR = 2
    RESUME_BLOCKED = 3
    INTERNAL_ERROR = 4
    PAUSED_FOR_REBOOT = 5


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run the CLI and always return a contract exit code (never raises)."""

    try:
        from applyforge.ui.cli import run_cli

        return _as_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _as_exit_code(exc.code)
    except BaseException as exc:  # noqa: BLE001 - process boundary.
        code = _route_exception(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            _stderr_line(str(exc).strip() or type(exc).__name__)
        return int(code)


def _as_exit_code(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int):
        try:
            return int(ExitCode(raw))
        except ValueError:
            return int(ExitCode.INTERNAL_ERROR)
    if isinstance(raw, str) and raw.strip():
        _stderr_line(raw.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _route_exception(exc: BaseException) -> ExitCode:
    from applyforge.apply_plane.errors import (
        ApplyPreconditionError,
        BlockingFailureError,
        ResumeContextError,
    )
    from applyforge.config.loader import ConfigLoadError
    from applyforge.config.schema import ConfigValidationError

    # First match along the chain wins; order matters within one link.
    routes: tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...] = (
        ((ResumeContextError,), ExitCode.RESUME_BLOCKED),
        ((BlockingFailureError,), ExitCode.BLOCKING_FAILURE),
        (
            (
                ConfigLoadError,
                ConfigValidationError,
                ApplyPreconditionError,
                FileNotFoundError,
                NotADirectoryError,
                PermissionError,
                ValueError,
            ),
            ExitCode.CONFIG_ERROR,
        ),
    )
    for link in _exception_chain(exc):
        for kinds, code in routes:
            if isinstance(link, kinds):
                return code
    return ExitCode.INTERNAL_ERROR


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
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


def _stderr_line(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint"]
