# src/kinesis_deaggregator/checksum.py

"""MD5 integrity check for the trailer of a KPL aggregate."""

import hashlib

DIGEST_SIZE = 16


def digest(data: bytes) -> bytes:
    """Returns the 16-byte MD5 digest of *data*."""
    return hashlib.md5(data, usedforsecurity=False).digest()


def verify(data: bytes, trailer: bytes) -> bool:
    # Integrity only, not authentication; no constant-time compare needed.
    return len(trailer) == DIGEST_SIZE and digest(data) == trailer
