"""
hashing.py - Digest helpers for archives.

Registry documents carry two digest formats:
    dist.shasum     - sha1 hex digest
    dist.integrity  - Subresource Integrity string: "sha512-<base64>"

Usage:
    from global_install.hashing import integrity_file, check_integrity

    sri = integrity_file(Path("pkg-1.0.0.tgz"))
    ok = check_integrity(Path("pkg-1.0.0.tgz"), sri)
"""

import base64
import hashlib
from pathlib import Path
from typing import Union


def _digest_file(path: Union[str, Path], algorithm: str, chunk_size: int = 65536) -> "hashlib._Hash":
    h = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h


def sha256_file(path: Union[str, Path]) -> str:
    """Lowercase hex SHA256 of a file's contents."""
    return _digest_file(path, "sha256").hexdigest()


def sha1_file(path: Union[str, Path]) -> str:
    """Lowercase hex SHA1 of a file's contents (registry `shasum`)."""
    return _digest_file(path, "sha1").hexdigest()


def integrity_file(path: Union[str, Path], algorithm: str = "sha512") -> str:
    """SRI string for a file: '<algorithm>-<base64 digest>'."""
    digest = _digest_file(path, algorithm).digest()
    return f"{algorithm}-{base64.b64encode(digest).decode('ascii')}"


def integrity_bytes(data: bytes, algorithm: str = "sha512") -> str:
    """SRI string for an in-memory buffer."""
    digest = hashlib.new(algorithm, data).digest()
    return f"{algorithm}-{base64.b64encode(digest).decode('ascii')}"


def check_integrity(path: Union[str, Path], sri: str) -> bool:
    """True when any hash in a (space separated) SRI string matches the file.

    Unknown algorithms are ignored; an SRI with no usable hash never matches.
    """
    for token in sri.split():
        algorithm, _, expected = token.partition("-")
        if algorithm not in hashlib.algorithms_available or not expected:
            continue
        # Drop SRI options ("?foo") before comparing
        expected = expected.split("?", 1)[0]
        if integrity_file(path, algorithm).partition("-")[2] == expected:
            return True
    return False
