"""Unit tests for per-control fallback and retry classification."""

from __future__ import annotations

import errno
import subprocess

import pytest

from applyforge.apply_plane.fallback import (
    MANUAL_INTERVENTION,
    PRIMARY_RETURNED_FAILURE,
    FallbackHandler,
    is_retryable,
)


def _raise(exc: BaseException):
    def method() -> bool:
        raise exc

    return method


@pytest.mark.unit
def test_primary_success_skips_secondary() -> None:
    calls: list[str] = []

    def secondary() -> bool:
        calls.append("secondary")
        return True

    result = FallbackHandler().apply_with_fallback("CTRL-1", lambda: True, secondary)

    assert result.succeeded
    assert not result.requires_manual
    assert result.successful_method == "primary"
    assert result.final_method == "primary"
    assert len(result.attempts) == 1
    assert calls == []


@pytest.mark.unit
def test_secondary_runs_after_primary_exception() -> None:
    result = FallbackHandler().apply_with_fallback(
        "CTRL-2", _raise(RuntimeError("registry path missing")), lambda: True
    )
    assert result.succeeded
    assert result.successful_method == "secondary"
    assert result.final_method == "secondary"
    assert result.attempts[0].error == "registry path missing"


@pytest.mark.unit
def test_both_failing_records_manual_intervention() -> None:
    result = FallbackHandler().apply_with_fallback(
        "CTRL-3", lambda: False, _raise(ValueError())
    )
    assert not result.succeeded
    assert result.requires_manual
    assert result.successful_method is None
    assert result.final_method == "manual"
    assert [attempt.method for attempt in result.attempts] == ["primary", "secondary", "manual"]
    assert result.attempts[0].error == PRIMARY_RETURNED_FAILURE
    assert result.attempts[1].error == "ValueError"
    assert result.attempts[2].error == MANUAL_INTERVENTION


@pytest.mark.unit
def test_without_secondary_goes_straight_to_manual() -> None:
    result = FallbackHandler().apply_with_fallback("CTRL-4", lambda: False)
    assert result.final_method == "manual"
    assert [attempt.method for attempt in result.attempts] == ["primary", "manual"]


@pytest.mark.unit
@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (TimeoutError("slow"), True),
        (subprocess.TimeoutExpired(["tool"], 5), True),
        (ConnectionResetError("reset"), True),
        (OSError(errno.EBUSY, "Device or resource busy"), True),
        (OSError("The file is being used by another process"), True),
        (OSError("sharing violation on hive"), True),
        (OSError("registry hive is locked"), True),
        (OSError("operation blocked by policy"), False),
        (OSError("clock skew detected"), False),
        (OSError("volume already unlocked"), False),
        (PermissionError(errno.EACCES, "denied"), False),
        (FileNotFoundError(errno.ENOENT, "missing"), False),
        (ValueError("bad input"), False),
        (RuntimeError("boom"), False),
    ],
)
def test_retry_classification(error: BaseException, expected: bool) -> None:
    assert is_retryable(error) is expected
