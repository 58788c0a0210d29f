"""Hashing and random-secret helpers for high-entropy tokens.

SHA-256 without a salt is only appropriate because every input here is a
server-generated secret of at least 256 bits. Passwords go through
``warden.service.passwords`` instead.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets


def hash_token(secret: str) -> str:
    """Lowercase hex SHA-256 of ``secret`` (64 characters)."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def generate_secure_token(nbytes: int = 32) -> str:
    if nbytes < 32:
        raise ValueError("tokens need at least 32 bytes of entropy")
    return secrets.token_urlsafe(nbytes)


def generate_numeric_code(length: int) -> str:
    if length < 1:
        raise ValueError("code length must be positive")
    return "".join(secrets.choice("0123456789") for _ in range(length))


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


__all__ = [
    "hash_token",
    "generate_secure_token",
    "generate_numeric_code",
    "constant_time_equals",
]
