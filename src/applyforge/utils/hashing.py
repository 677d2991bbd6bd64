"""SHA-256 digests used for evidence manifests, snapshot records, and checkpoint fingerprints."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

PathLike = str | os.PathLike[str]

DEFAULT_CHUNK_SIZE = 1 << 20


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    return hashlib.sha256(text.encode(encoding)).hexdigest()


def sha256_file(path: PathLike, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """Digest a file without loading it whole; step output logs can be large."""

    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be > 0, got {chunk_size}")
    digest = hashlib.sha256()
    with Path(path).open("rb") as handle:
        for block in iter(lambda: handle.read(chunk_size), b""):
            digest.update(block)
    return digest.hexdigest()


__all__ = ["DEFAULT_CHUNK_SIZE", "sha256_bytes", "sha256_file", "sha256_text"]
