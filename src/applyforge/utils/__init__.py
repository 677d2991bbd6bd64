"""Utility exports for filesystem, hashing, and cancellation helpers."""

from applyforge.utils.concurrency import CancellationToken, OperationCancelledError
from applyforge.utils.fs import atomic_write, atomic_write_json, ensure_directory
from applyforge.utils.hashing import sha256_bytes, sha256_file, sha256_text

__all__ = [
    "CancellationToken",
    "OperationCancelledError",
    "atomic_write",
    "atomic_write_json",
    "ensure_directory",
    "sha256_bytes",
    "sha256_file",
    "sha256_text",
]
