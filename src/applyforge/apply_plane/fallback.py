"""
applyforge: per-control fallback and retry classification.

Purpose
- Attempt a control with a primary method, then an optional secondary, and
  record a manual-intervention attempt when both fail.

Functional requirements
- ``apply_with_fallback`` never raises; every attempt is recorded as data.
- ``is_retryable`` separates transient contention from permanent failures.
"""

from __future__ import annotations

import errno
import re
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Final

import structlog

MANUAL_METHOD: Final[str] = "manual"
PRIMARY_METHOD: Final[str] = "primary"
SECONDARY_METHOD: Final[str] = "secondary"
PRIMARY_RETURNED_FAILURE: Final[str] = "Primary method returned failure"
SECONDARY_RETURNED_FAILURE: Final[str] = "Secondary method returned failure"
MANUAL_INTERVENTION: Final[str] = "Requires manual intervention"

_RETRYABLE_ERRNOS: Final[frozenset[int]] = frozenset(
    {errno.EBUSY, errno.EAGAIN, errno.ETXTBSY, errno.EDEADLK}
)
_RETRYABLE_MESSAGE: Final[re.Pattern[str]] = re.compile(
    r"\b(?:being used by another process|sharing violation|lock violation|locked)\b"
)

ControlMethod = Callable[[], bool]


@dataclass(frozen=True, slots=True)
class FallbackAttempt:
    method: str
    succeeded: bool
    error: str | None = None


@dataclass(frozen=True, slots=True)
class FallbackResult:
    control_id: str
    succeeded: bool
    requires_manual: bool
    final_method: str
    attempts: tuple[FallbackAttempt, ...]

    @property
    def successful_method(self) -> str | None:
        for attempt in self.attempts:
            if attempt.succeeded:
                return attempt.method
        return None


def is_retryable(error: BaseException) -> bool:
    """Whether ``error`` looks like transient contention worth retrying."""

    if isinstance(error, PermissionError):
        return False
    if isinstance(error, (TimeoutError, subprocess.TimeoutExpired, ConnectionError)):
        return True
    if isinstance(error, OSError):
        if error.errno in _RETRYABLE_ERRNOS:
            return True
        return _RETRYABLE_MESSAGE.search(str(error).lower()) is not None
    # ValueError, TypeError, LookupError and RuntimeError are permanent.
    return False


class FallbackHandler:
    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def apply_with_fallback(
        self,
        control_id: str,
        primary: ControlMethod,
        secondary: ControlMethod | None = None,
    ) -> FallbackResult:
        attempts: list[FallbackAttempt] = []

        primary_attempt = self._attempt(control_id, PRIMARY_METHOD, primary, PRIMARY_RETURNED_FAILURE)
        attempts.append(primary_attempt)
        if primary_attempt.succeeded:
            return FallbackResult(control_id, True, False, PRIMARY_METHOD, tuple(attempts))

        if secondary is not None:
            secondary_attempt = self._attempt(
                control_id, SECONDARY_METHOD, secondary, SECONDARY_RETURNED_FAILURE
            )
            attempts.append(secondary_attempt)
            if secondary_attempt.succeeded:
                return FallbackResult(
                    control_id, True, False, SECONDARY_METHOD, tuple(attempts)
                )

        attempts.append(FallbackAttempt(MANUAL_METHOD, False, MANUAL_INTERVENTION))
        self._logger.warning(
            "apply_control_requires_manual",
            control_id=control_id,
            attempts=len(attempts),
        )
        return FallbackResult(control_id, False, True, MANUAL_METHOD, tuple(attempts))

    def _attempt(
        self,
        control_id: str,
        method_name: str,
        method: ControlMethod,
        returned_failure: str,
    ) -> FallbackAttempt:
        try:
            succeeded = bool(method())
        except Exception as exc:
            self._logger.warning(
                "apply_control_attempt_failed",
                control_id=control_id,
                method=method_name,
                error=str(exc),
                retryable=is_retryable(exc),
            )
            return FallbackAttempt(method_name, False, str(exc) or type(exc).__name__)
        if succeeded:
            return FallbackAttempt(method_name, True)
        return FallbackAttempt(method_name, False, returned_failure)


__all__ = [
    "ControlMethod",
    "FallbackAttempt",
    "FallbackHandler",
    "FallbackResult",
    "MANUAL_INTERVENTION",
    "MANUAL_METHOD",
    "PRIMARY_METHOD",
    "PRIMARY_RETURNED_FAILURE",
    "SECONDARY_METHOD",
    "is_retryable",
]
