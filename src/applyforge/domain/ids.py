"""
applyforge: identifiers for apply runs, evidence, snapshots, and traces.

Run, evidence, and snapshot ids are ``<prefix>-<ULID>`` strings so that they
sort by creation time inside evidence trees and checkpoint listings. Trace and
span ids follow W3C trace-context sizes and are handed to child processes as a
``traceparent`` value.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1

RUN_ID_PREFIX: Final[str] = "run"
EVIDENCE_ID_PREFIX: Final[str] = "ev"
SNAPSHOT_ID_PREFIX: Final[str] = "snap"

TRACE_ID_HEX_LENGTH: Final[int] = 32
SPAN_ID_HEX_LENGTH: Final[int] = 16

_SEPARATOR: Final[str] = "-"
_BITS_PER_CHAR: Final[int] = 5
_RANDOM_BITS: Final[int] = ULID_RANDOM_BYTES * 8
_ULID_BITS: Final[int] = 128
_CHAR_VALUES: Final[dict[str, int]] = {
    char: value for value, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

RandomSource = Callable[[int], bytes]


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: RandomSource | None = None,
) -> str:
    """Return a 26-character uppercase Crockford Base32 ULID.

    ``timestamp_ms`` and ``randbytes`` exist for deterministic tests; production
    callers leave both unset.
    """

    millis = _timestamp(timestamp_ms)
    entropy = _entropy(randbytes or secrets.token_bytes)
    value = (millis << _RANDOM_BITS) | int.from_bytes(entropy, "big")

    chars: list[str] = []
    for _ in range(ULID_LENGTH):
        value, digit = divmod(value, 1 << _BITS_PER_CHAR)
        chars.append(CROCKFORD_BASE32_ALPHABET[digit])
    return "".join(reversed(chars))


def validate_ulid(s: str) -> None:
    """Raise ``ValueError`` unless ``s`` is a well-formed ULID (case-insensitive)."""

    if not isinstance(s, str):
        raise ValueError(f"ulid must be a string, got {type(s).__name__}")
    if len(s) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(s)}")

    total = 0
    for position, char in enumerate(s):
        digit = _CHAR_VALUES.get(char.upper())
        if digit is None:
            raise ValueError(f"invalid ULID character {char!r} at index {position}")
        total = (total << _BITS_PER_CHAR) | digit
    if total.bit_length() > _ULID_BITS:
        raise ValueError("ulid overflow: value exceeds maximum 128-bit ULID")


def generate_prefixed_id(
    prefix: str,
    *,
    timestamp_ms: int | None = None,
    randbytes: RandomSource | None = None,
) -> str:
    _check_prefix(prefix)
    return prefix + _SEPARATOR + generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    """Validate ``<expected_prefix>-<ulid>``."""

    _check_prefix(expected_prefix)
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")
    prefix, separator, ulid = id_str.partition(_SEPARATOR)
    if prefix != expected_prefix or not separator:
        raise ValueError(f"expected prefix '{expected_prefix}{_SEPARATOR}'")
    try:
        validate_ulid(ulid)
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def generate_run_id(*, timestamp_ms: int | None = None, randbytes: RandomSource | None = None) -> str:
    return generate_prefixed_id(RUN_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_evidence_id(
    *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    return generate_prefixed_id(EVIDENCE_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_snapshot_id(
    *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    return generate_prefixed_id(SNAPSHOT_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_trace_id() -> str:
    return _random_hex(TRACE_ID_HEX_LENGTH)


def generate_span_id() -> str:
    return _random_hex(SPAN_ID_HEX_LENGTH)


def format_traceparent(trace_id: str, span_id: str) -> str:
    """``traceparent`` value (version 00, sampled) for child processes."""

    for name, value, width in (
        ("trace_id", trace_id, TRACE_ID_HEX_LENGTH),
        ("span_id", span_id, SPAN_ID_HEX_LENGTH),
    ):
        if len(value) != width:
            raise ValueError(f"{name} must be {width} hex characters")
    return f"00-{trace_id}-{span_id}-01"


def _random_hex(width: int) -> str:
    # All-zero ids are invalid in trace-context.
    candidate = "0" * width
    while int(candidate, 16) == 0:
        candidate = secrets.token_hex(width // 2)
    return candidate


def _timestamp(timestamp_ms: int | None) -> int:
    if timestamp_ms is None:
        return time.time_ns() // 1_000_000
    if not isinstance(timestamp_ms, int):
        raise ValueError(f"timestamp_ms must be an int, got {type(timestamp_ms).__name__}")
    if timestamp_ms < 0 or timestamp_ms > ULID_MAX_TIMESTAMP_MS:
        raise ValueError(
            f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}, got {timestamp_ms}"
        )
    return timestamp_ms


def _entropy(source: RandomSource) -> bytes:
    raw = source(ULID_RANDOM_BYTES)
    if not isinstance(raw, (bytes, bytearray, memoryview)):
        raise ValueError("randbytes must return a bytes-like object")
    data = bytes(raw)
    if len(data) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")
    return data


def _check_prefix(prefix: str) -> None:
    if not isinstance(prefix, str) or not prefix:
        raise ValueError("prefix must be a non-empty string")
    if _SEPARATOR in prefix:
        raise ValueError(f"prefix must not contain '{_SEPARATOR}'")


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "EVIDENCE_ID_PREFIX",
    "RUN_ID_PREFIX",
    "SNAPSHOT_ID_PREFIX",
    "SPAN_ID_HEX_LENGTH",
    "TRACE_ID_HEX_LENGTH",
    "ULID_LENGTH",
    "ULID_MAX_TIMESTAMP_MS",
    "format_traceparent",
    "generate_evidence_id",
    "generate_prefixed_id",
    "generate_run_id",
    "generate_snapshot_id",
    "generate_span_id",
    "generate_trace_id",
    "generate_ulid",
    "validate_prefixed_id",
    "validate_ulid",
]
