from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import io
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

import pyotp
import qrcode

from tonotes.logging import get_logger
from tonotes.service.deadline import call_store
from tonotes.service.errors import (
    AuthenticationError,
    InvalidRecoveryCodeError,
    NotEnrolledError,
    NotFoundError,
    ValidationError,
)
from tonotes.storage.models import User

if TYPE_CHECKING:
    from tonotes.service.auth import AuthStore

logger = get_logger(__name__)

RECOVERY_CODE_COUNT = 10
RECOVERY_CODE_LENGTH = 16
_RECOVERY_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"


@dataclass(frozen=True)
class Enrollment:
    secret: str
    otpauth_url: str
    qr_code: str


def normalize_recovery_code(code: str) -> str:
    return code.replace("-", "").replace(" ", "").strip().upper()


def hash_recovery_code(code: str, salt: Optional[bytes] = None) -> str:
    salt = salt if salt is not None else secrets.token_bytes(16)
    digest = hashlib.sha256(salt + normalize_recovery_code(code).encode()).hexdigest()
    return f"{base64.b64encode(salt).decode('ascii')}${digest}"


def recovery_code_matches(code: str, stored: str) -> bool:
    try:
        salt_b64, digest = stored.split("$")
        salt = base64.b64decode(salt_b64)
    except ValueError:
        return False
    expected = hashlib.sha256(salt + normalize_recovery_code(code).encode()).hexdigest()
    return hmac.compare_digest(expected, digest)


def generate_recovery_codes(count: int = RECOVERY_CODE_COUNT) -> List[str]:
    return [
        "".join(secrets.choice(_RECOVERY_ALPHABET) for _ in range(RECOVERY_CODE_LENGTH))
        for _ in range(count)
    ]


def qr_data_uri(payload: str) -> str:
    image = qrcode.make(payload)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


class TwoFactorService:
    """TOTP enrollment and verification plus single-use recovery codes."""

    def __init__(
        self, store: "AuthStore", *, issuer: str = "ToNotes", store_timeout: float = 10.0
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.store_timeout = store_timeout
        self.logger = logger

    async def _store(self, func, *args):
        return await call_store(func, *args, timeout=self.store_timeout)

    async def _require_user(self, user_id: str) -> User:
        user = await self._store(self.store.get_user, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    @staticmethod
    def verify_totp(secret: str, code: Optional[str]) -> bool:
        """Current 30-second step plus one step either side."""
        if not secret or not code:
            return False
        candidate = code.strip()
        if not candidate.isdigit():
            return False
        try:
            return pyotp.TOTP(secret).verify(candidate, valid_window=1)
        except (ValueError, TypeError):
            return False

    async def generate_enrollment(self, user_id: str) -> Enrollment:
        """New secret and QR code for the authenticator app; nothing is stored."""
        user = await self._require_user(user_id)
        if user.two_factor_enabled:
            raise ValidationError("2FA is already enabled")
        secret = pyotp.random_base32()
        uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=self.issuer)
        qr_code = await asyncio.to_thread(qr_data_uri, uri)
        return Enrollment(secret=secret, otpauth_url=uri, qr_code=qr_code)

    async def enable(self, user_id: str, secret: str, code: str) -> List[str]:
        """Turn on 2FA once ``code`` proves possession of ``secret``.

        Returns:
            The plaintext recovery codes; only their salted hashes are stored
        """
        user = await self._require_user(user_id)
        if user.two_factor_enabled:
            raise ValidationError("2FA is already enabled")
        if not self.verify_totp(secret, code):
            raise ValidationError("Invalid 2FA code")
        codes = generate_recovery_codes()
        hashes = [hash_recovery_code(c) for c in codes]
        if not await self._store(self.store.enable_two_factor, user_id, secret, hashes):
            raise NotFoundError("User not found")
        self.logger.info("two_factor_enabled", user_id=user_id)
        return codes

    async def verify(self, user_id: str, code: str) -> bool:
        user = await self._require_user(user_id)
        if not user.two_factor_enabled or not user.two_factor_secret:
            raise NotEnrolledError()
        return self.verify_totp(user.two_factor_secret, code)

    async def disable(self, user_id: str, code: str) -> None:
        user = await self._require_user(user_id)
        if not user.two_factor_enabled or not user.two_factor_secret:
            raise NotEnrolledError()
        if not self.verify_totp(user.two_factor_secret, code):
            raise AuthenticationError("Invalid 2FA code")
        if not await self._store(self.store.disable_two_factor, user_id):
            raise NotFoundError("User not found")
        self.logger.info("two_factor_disabled", user_id=user_id)

    async def consume_recovery(self, user_id: str, code: str) -> int:
        """Spend one recovery code.

        Returns:
            Number of unused codes left

        Raises:
            InvalidRecoveryCodeError: unknown code, or a concurrent call spent it first
        """
        user = await self._require_user(user_id)
        if not user.two_factor_enabled:
            raise NotEnrolledError()
        return await self._consume_for(user, code)

    async def _consume_for(self, user: User, code: str) -> int:
        if not code or not normalize_recovery_code(code):
            raise InvalidRecoveryCodeError()
        match = next(
            (stored for stored in user.recovery_codes if recovery_code_matches(code, stored)),
            None,
        )
        if match is None:
            raise InvalidRecoveryCodeError()
        remaining = await self._store(self.store.remove_recovery_code, user.id, match)
        if remaining is None:
            raise InvalidRecoveryCodeError()
        self.logger.info("recovery_code_consumed", user_id=user.id, remaining=remaining)
        return remaining

    async def check_login_code(self, user: User, code: Optional[str]) -> bool:
        """Accept a current TOTP or, failing that, an unused recovery code."""
        if self.verify_totp(user.two_factor_secret or "", code):
            return True
        if not code:
            return False
        try:
            await self._consume_for(user, code)
        except InvalidRecoveryCodeError:
            return False
        return True
