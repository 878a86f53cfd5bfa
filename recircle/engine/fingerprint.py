"""
Byte-exact image fingerprint (SHA-256).

Deliberately not perceptual: a re-encoded image is a different image here.
"""

import hashlib


def fingerprint(data: bytes) -> str:
    """Hex SHA-256 of the raw payload bytes."""
    return hashlib.sha256(data).hexdigest()
