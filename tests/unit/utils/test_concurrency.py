"""Unit tests for cooperative cancellation tokens."""

from __future__ import annotations

import threading

import pytest

from applyforge.utils.concurrency import CancellationToken, OperationCancelledError


@pytest.mark.unit
def test_token_starts_clear_and_cancel_is_sticky() -> None:
    token = CancellationToken()
    assert not token.is_cancelled
    token.raise_if_cancelled("step")

    token.cancel()
    token.cancel()
    assert token.is_cancelled
    with pytest.raises(OperationCancelledError, match="^step cancelled$"):
        token.raise_if_cancelled("step")


@pytest.mark.unit
def test_default_checkpoint_label() -> None:
    token = CancellationToken()
    token.cancel()
    with pytest.raises(OperationCancelledError, match="operation cancelled"):
        token.raise_if_cancelled()


@pytest.mark.unit
def test_wait_observes_cancel_from_another_thread() -> None:
    token = CancellationToken()
    assert token.wait(timeout=0.01) is False

    canceller = threading.Timer(0.05, token.cancel)
    canceller.start()
    try:
        assert token.wait(timeout=5.0) is True
    finally:
        canceller.cancel()
