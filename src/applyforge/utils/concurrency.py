"""Cooperative cancellation for sequential apply runs."""

from __future__ import annotations

import threading


class OperationCancelledError(RuntimeError):
    """Raised when a cancellation token fires at a checkpoint."""


class CancellationToken:
    """Cooperative cancellation token backed by ``threading.Event``.

    Runs are synchronous, so the token is checked at coarse checkpoints
    (before each step, during file enumeration) rather than awaited.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self, what: str = "operation") -> None:
        if self._event.is_set():
            raise OperationCancelledError(f"{what} cancelled")


__all__ = [
    "CancellationToken",
    "OperationCancelledError",
]
