"""MD5 helpers for verifying downloads against server-reported hashes."""

from __future__ import annotations

import hashlib
from pathlib import Path

CHUNK_SIZE = 2 * 1024 * 1024  # 2 MiB


def md5_bytes(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def md5_file(path: Path, chunk_size: int = CHUNK_SIZE) -> str:
    """Hash a file in bounded chunks.  Raises FileNotFoundError if absent."""
    digest = hashlib.md5()
    with open(path, "rb") as fh:
        while chunk := fh.read(chunk_size):
            digest.update(chunk)
    return digest.hexdigest()


def matches(actual: str, expected: str) -> bool:
    return actual.lower() == expected.strip().lower()
