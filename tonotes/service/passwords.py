from __future__ import annotations

import base64
import binascii
import hmac
import secrets

from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw

from tonotes.logging import get_logger

logger = get_logger(__name__)

SALT_BYTES = 16


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii").rstrip("=")


def _b64decode(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.b64decode(segment + padding, validate=True)


def meets_policy(password: str) -> bool:
    """At least six characters with an upper, lower, digit and symbol."""
    if len(password) < 6:
        return False
    has_upper = any(ch.isupper() for ch in password)
    has_lower = any(ch.islower() for ch in password)
    has_digit = any(ch.isdigit() for ch in password)
    has_symbol = any(not ch.isalnum() and not ch.isspace() for ch in password)
    return has_upper and has_lower and has_digit and has_symbol


class PasswordHasher:
    """Argon2id key derivation encoded as ``b64(salt)$b64(key)``."""

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 2,
        hash_len: int = 32,
    ) -> None:
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism
        self.hash_len = hash_len

    def _derive(self, password: str, salt: bytes) -> bytes:
        return hash_secret_raw(
            secret=password.encode("utf-8"),
            salt=salt,
            time_cost=self.time_cost,
            memory_cost=self.memory_cost,
            parallelism=self.parallelism,
            hash_len=self.hash_len,
            type=Type.ID,
        )

    def hash(self, password: str) -> str:
        salt = secrets.token_bytes(SALT_BYTES)
        key = self._derive(password, salt)
        return f"{_b64encode(salt)}${_b64encode(key)}"

    def verify(self, password: str, encoded: str) -> bool:
        """Constant-time check; malformed encodings verify as False."""
        try:
            salt_b64, key_b64 = encoded.split("$")
            salt = _b64decode(salt_b64)
            expected = _b64decode(key_b64)
        except (ValueError, binascii.Error, AttributeError):
            logger.warning("password_hash_malformed")
            return False
        if not salt or not expected:
            return False
        try:
            derived = self._derive(password, salt)
        except (HashingError, UnicodeEncodeError) as exc:
            logger.warning("password_derivation_failed", error=str(exc))
            return False
        return hmac.compare_digest(derived, expected)


__all__ = ["PasswordHasher", "meets_policy"]
