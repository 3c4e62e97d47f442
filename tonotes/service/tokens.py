from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import secrets
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from tonotes.config import Settings
from tonotes.logging import get_logger
from tonotes.service.errors import (
    InvalidClaimsError,
    InvalidTokenError,
    TokenExpiredError,
    TokenRevokedError,
)
from tonotes.storage.redis_cache import RedisCache

logger = get_logger(__name__)

ISSUER = "toNotes"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


# User-visible messages per failure and token class
_MESSAGES: Dict[TokenKind, Dict[str, str]] = {
    TokenKind.ACCESS: {
        "invalid": "Invalid token",
        "expired": "Token has expired",
        "claims": "Invalid token claims",
        "revoked": "Token has been invalidated",
    },
    TokenKind.REFRESH: {
        "invalid": "invalid refresh",
        "expired": "refresh token has expired",
        "claims": "invalid claims",
        "revoked": "invalid refresh",
    },
}


def token_message(kind: TokenKind, failure: str) -> str:
    return _MESSAGES[kind][failure]


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    iat: int
    exp: int
    iss: str
    jti: Optional[str] = None
    type: Optional[str] = None

    @property
    def kind(self) -> TokenKind:
        return TokenKind.REFRESH if self.type == TokenKind.REFRESH.value else TokenKind.ACCESS


@dataclass(frozen=True)
class TokenPair:
    access: str
    refresh: str


class TokenService:
    """HS256 access/refresh tokens and the revocation blacklist.

    The blacklist lives in Redis. Without a cache (tests and the development
    fallback) it is kept in a lock-guarded dict with the same key format.
    """

    def __init__(
        self,
        secret: str,
        *,
        access_ttl: int = 3600,
        refresh_ttl: int = 604800,
        cache: Optional[RedisCache] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise RuntimeError("JWT secret must be configured before minting tokens")
        self._secret = secret.encode()
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.cache = cache
        self.clock = clock
        self._local_blacklist: Dict[str, float] = {}
        self._state_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls, settings: Settings, cache: Optional[RedisCache] = None
    ) -> "TokenService":
        return cls(
            settings.jwt_secret_key,
            access_ttl=settings.jwt_expiration_time,
            refresh_ttl=settings.refresh_token_expiration_time,
            cache=cache,
        )

    # encoding --------------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Signature-checked payload, or None for anything malformed."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (ValueError, AttributeError):
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None

    @staticmethod
    def _is_int(value: Any) -> bool:
        return isinstance(value, int) and not isinstance(value, bool)

    def _claims_from_payload(self, payload: dict[str, Any]) -> Optional[TokenClaims]:
        user_id = payload.get("user_id")
        exp = payload.get("exp")
        iat = payload.get("iat")
        if not isinstance(user_id, str) or not user_id:
            return None
        if not self._is_int(exp) or not self._is_int(iat):
            return None
        if payload.get("iss") != ISSUER:
            return None
        token_type = payload.get("type")
        jti = payload.get("jti")
        return TokenClaims(
            user_id=user_id,
            iat=iat,
            exp=exp,
            iss=ISSUER,
            jti=jti if isinstance(jti, str) else None,
            type=token_type if isinstance(token_type, str) else None,
        )

    # minting ---------------------------------------------------------------

    def _mint(self, user_id: str, kind: TokenKind) -> str:
        now = int(self.clock())
        ttl = self.refresh_ttl if kind is TokenKind.REFRESH else self.access_ttl
        payload: dict[str, Any] = {
            "user_id": user_id,
            "iat": now,
            "exp": now + ttl,
            "iss": ISSUER,
            "jti": secrets.token_hex(8),
        }
        if kind is TokenKind.REFRESH:
            payload["type"] = TokenKind.REFRESH.value
        return self._encode_jwt(payload)

    def mint_access(self, user_id: str) -> str:
        return self._mint(user_id, TokenKind.ACCESS)

    def mint_refresh(self, user_id: str) -> str:
        return self._mint(user_id, TokenKind.REFRESH)

    def mint_pair(self, user_id: str) -> TokenPair:
        return TokenPair(access=self.mint_access(user_id), refresh=self.mint_refresh(user_id))

    # parsing ---------------------------------------------------------------

    def parse(
        self, token: str, expected: TokenKind, *, verify_exp: bool = True
    ) -> TokenClaims:
        """Verify ``token`` as ``expected`` and return its typed claims.

        Raises:
            InvalidTokenError: bad structure, algorithm, signature, issuer or missing claim
            TokenExpiredError: ``exp`` is at or before the current second
            InvalidClaimsError: the token belongs to the other class
        """
        payload = self._decode_jwt(token)
        claims = self._claims_from_payload(payload) if payload is not None else None
        if claims is None:
            raise InvalidTokenError(token_message(expected, "invalid"))
        if verify_exp and claims.exp <= int(self.clock()):
            raise TokenExpiredError(token_message(expected, "expired"))
        expected_type = TokenKind.REFRESH.value if expected is TokenKind.REFRESH else None
        if claims.type != expected_type:
            raise InvalidClaimsError(token_message(expected, "claims"))
        return claims

    def remaining_ttl(self, token: str) -> int:
        """Seconds until a verified token expires; 0 for invalid or expired tokens."""
        payload = self._decode_jwt(token)
        claims = self._claims_from_payload(payload) if payload is not None else None
        if claims is None:
            return 0
        return max(0, math.ceil(claims.exp - self.clock()))

    # blacklist -------------------------------------------------------------

    async def is_blacklisted(self, token: str) -> bool:
        if self.cache is None:
            return self._local_is_blacklisted(token)
        try:
            return await self.cache.is_blacklisted(token)
        except Exception as exc:
            logger.error("blacklist_check_failed_defaulting_to_revoked", error=str(exc))
            return True

    async def ensure_not_blacklisted(self, token: str, expected: TokenKind) -> None:
        if await self.is_blacklisted(token):
            raise TokenRevokedError(token_message(expected, "revoked"))

    async def authenticate(self, token: str, expected: TokenKind) -> TokenClaims:
        """Blacklist check followed by a full parse."""
        await self.ensure_not_blacklisted(token, expected)
        return self.parse(token, expected)

    async def blacklist_pair(
        self, access: Optional[str], refresh: Optional[str]
    ) -> None:
        """Revoke both tokens for their remaining lifetime; failures are only logged."""
        for kind, token in ((TokenKind.ACCESS, access), (TokenKind.REFRESH, refresh)):
            if not token:
                continue
            ttl = self.remaining_ttl(token)
            if ttl <= 0:
                continue
            if self.cache is None:
                self._local_blacklist_token(kind, token, ttl)
                continue
            try:
                await self.cache.blacklist_token(kind.value, token, ttl)
            except Exception as exc:
                logger.warning("blacklist_write_failed", kind=kind.value, error=str(exc))

    def _local_blacklist_token(self, kind: TokenKind, token: str, ttl: int) -> None:
        with self._state_lock:
            self._local_blacklist[RedisCache.blacklist_key(kind.value, token)] = (
                self.clock() + ttl
            )

    def _local_is_blacklisted(self, token: str) -> bool:
        now = self.clock()
        with self._state_lock:
            for key in list(self._local_blacklist):
                if self._local_blacklist[key] <= now:
                    del self._local_blacklist[key]
            return any(
                RedisCache.blacklist_key(kind.value, token) in self._local_blacklist
                for kind in TokenKind
            )


__all__ = ["ISSUER", "TokenClaims", "TokenKind", "TokenPair", "TokenService", "token_message"]
