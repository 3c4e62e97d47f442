from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Sequence

from tonotes.config import Settings
from tonotes.logging import get_logger
from tonotes.service.deadline import call_store
from tonotes.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PolicyViolationError,
    ProtectedSessionError,
    RateLimitedError,
    ValidationError,
)
from tonotes.service.passwords import PasswordHasher, meets_policy
from tonotes.service.sessions import SessionRegistry
from tonotes.service.tokens import TokenKind, TokenPair, TokenService, token_message
from tonotes.service.two_factor import TwoFactorService
from tonotes.service.validators import normalize_unicode, validate_email, validate_username
from tonotes.storage.errors import ConstraintViolation
from tonotes.storage.models import Session, User, utcnow

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid username or password"
MISSING_TOKEN = "Missing or invalid token"


class AuthStore(Protocol):
    def create_user(self, username: str, email: str, password_hash: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_password(
        self, user_id: str, password_hash: str, changed_at: datetime
    ) -> bool: ...

    def update_user_email(self, user_id: str, email: str, changed_at: datetime) -> bool: ...

    def enable_two_factor(
        self, user_id: str, secret: str, recovery_hashes: Sequence[str]
    ) -> bool: ...

    def disable_two_factor(self, user_id: str) -> bool: ...

    def remove_recovery_code(self, user_id: str, stored_hash: str) -> Optional[int]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def insert_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, at: datetime) -> bool: ...

    def deactivate_session(self, session_id: str) -> bool: ...

    def set_session_protected(self, session_id: str, protected: bool) -> bool: ...

    def list_live_sessions(
        self, user_id: str, now: datetime, idle_cutoff: datetime
    ) -> List[Session]: ...

    def deactivate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    def ping(self) -> bool: ...


@dataclass
class AuthContext:
    user_id: str
    access_token: str
    session_id: Optional[str] = None
    # Set when a session cookie was presented but is no longer live
    clear_session_cookie: bool = False


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair
    session: Session


def cooldown_phrase(days: int) -> str:
    """Human wording for a cooldown: 14 -> "2 weeks", 7 -> "1 week"."""
    if days and days % 7 == 0:
        weeks = days // 7
        return f"{weeks} week" if weeks == 1 else f"{weeks} weeks"
    return f"{days} day" if days == 1 else f"{days} days"


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthService:
    """Account lifecycle: registration, login, token rotation, logout and profile changes."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        tokens: TokenService,
        sessions: SessionRegistry,
        two_factor: TwoFactorService,
        hasher: Optional[PasswordHasher] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.tokens = tokens
        self.sessions = sessions
        self.two_factor = two_factor
        self.hasher = hasher or PasswordHasher()
        self.clock = clock
        self.logger = logger
        self._dummy_hash: Optional[str] = None

    async def _store(self, func, *args):
        return await call_store(func, *args, timeout=self.settings.store_timeout_seconds)

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _verify(self, password: str, encoded: str) -> bool:
        return await asyncio.to_thread(self.hasher.verify, password, encoded)

    async def _burn_verify(self, password: str) -> None:
        """Spend one verification so unknown usernames cost the same as wrong passwords."""
        if self._dummy_hash is None:
            self._dummy_hash = await self._hash("not-a-real-password")
        await self._verify(password, self._dummy_hash)

    async def _require_user(self, user_id: str) -> User:
        user = await self._store(self.store.get_user, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def _check_cooldown(
        self, last_change: Optional[datetime], days: int, label: str
    ) -> None:
        if not last_change or days <= 0:
            return
        next_allowed = last_change + timedelta(days=days)
        now = self.clock()
        if now < next_allowed:
            raise RateLimitedError(
                f"{label} can only be changed every {cooldown_phrase(days)}",
                retry_after=max(1, math.ceil((next_allowed - now).total_seconds())),
                detail={"next_allowed_change": next_allowed.isoformat()},
            )

    # registration and login -------------------------------------------------

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> AuthResult:
        try:
            username = validate_username(username)
        except ValueError as exc:
            raise ValidationError("Invalid username", detail={"reason": str(exc)}) from exc
        try:
            email = validate_email(email)
        except ValueError as exc:
            raise ValidationError("Invalid email format") from exc
        if not meets_policy(password):
            raise PolicyViolationError("Password does not meet requirements")
        if await self._store(self.store.get_user_by_username, username):
            raise ConflictError("username already exists")
        if await self._store(self.store.get_user_by_email, email):
            raise ConflictError("email already exists")
        password_hash = await self._hash(password)
        try:
            user = await self._store(self.store.create_user, username, email, password_hash)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        session = await self.sessions.create(user.id, user_agent, ip)
        tokens = self.tokens.mint_pair(user.id)
        self.logger.info("user_registered", user_id=user.id, session_id=session.id)
        return AuthResult(user=user, tokens=tokens, session=session)

    async def login(
        self,
        username: str,
        password: str,
        two_factor_code: Optional[str] = None,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> AuthResult:
        user = await self._store(
            self.store.get_user_by_username, normalize_unicode(username.strip())
        )
        if user is None:
            await self._burn_verify(password)
            self.logger.warning("login_failed", reason="unknown_user")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not await self._verify(password, user.password_hash) or not user.is_active:
            self.logger.warning("login_failed", user_id=user.id, reason="bad_password")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if user.two_factor_enabled:
            if not two_factor_code:
                raise AuthenticationError("2FA code required")
            if not await self.two_factor.check_login_code(user, two_factor_code):
                self.logger.warning("login_failed", user_id=user.id, reason="bad_2fa_code")
                raise AuthenticationError("Invalid 2FA code")
        session = await self.sessions.create(user.id, user_agent, ip)
        tokens = self.tokens.mint_pair(user.id)
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return AuthResult(user=user, tokens=tokens, session=session)

    # tokens -----------------------------------------------------------------

    async def refresh(
        self, refresh_token: str, access_token: Optional[str] = None
    ) -> TokenPair:
        """Rotate a refresh token into a fresh pair, revoking what was presented."""
        claims = await self.tokens.authenticate(refresh_token, TokenKind.REFRESH)
        if not await self._store(self.store.get_user, claims.user_id):
            raise AuthenticationError(token_message(TokenKind.REFRESH, "invalid"))
        stale_access = None
        if access_token:
            try:
                access_claims = self.tokens.parse(
                    access_token, TokenKind.ACCESS, verify_exp=False
                )
            except AuthenticationError:
                access_claims = None
            if access_claims and access_claims.user_id == claims.user_id:
                stale_access = access_token
        await self.tokens.blacklist_pair(stale_access, refresh_token)
        self.logger.info("tokens_refreshed", user_id=claims.user_id)
        return self.tokens.mint_pair(claims.user_id)

    async def authenticate(
        self, authorization: Optional[str], session_id: Optional[str] = None
    ) -> AuthContext:
        """Validate an access bearer and resolve the session cookie.

        Raises:
            AuthenticationError: missing header, revoked, invalid or expired token
        """
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError(MISSING_TOKEN)
        claims = await self.tokens.authenticate(token, TokenKind.ACCESS)
        ctx = AuthContext(user_id=claims.user_id, access_token=token)
        if session_id:
            session = await self.sessions.resolve(session_id)
            if session is None:
                ctx.clear_session_cookie = True
            elif session.user_id == claims.user_id:
                ctx.session_id = session.id
        return ctx

    # logout -----------------------------------------------------------------

    async def logout(
        self,
        user_id: str,
        access_token: str,
        refresh_token: Optional[str],
        session_id: Optional[str] = None,
    ) -> bool:
        """Revoke the token pair and end the cookie session when it is ours.

        Returns:
            True when a session was ended
        """
        if not refresh_token:
            raise ValidationError("Missing refresh token")
        try:
            claims = self.tokens.parse(refresh_token, TokenKind.REFRESH, verify_exp=False)
        except AuthenticationError as exc:
            raise ValidationError("Invalid refresh token") from exc
        if claims.user_id != user_id:
            raise ValidationError("Invalid refresh token")
        await self.tokens.blacklist_pair(access_token, refresh_token)
        ended = False
        if session_id:
            session = await self.sessions.get(session_id)
            if session is not None and session.user_id == user_id:
                try:
                    ended = await self.sessions.end(session_id)
                except ProtectedSessionError:
                    self.logger.info("logout_kept_protected_session", session_id=session_id)
        self.logger.info("user_logged_out", user_id=user_id, session_ended=ended)
        return ended

    async def logout_all(self, user_id: str) -> int:
        return await self.sessions.end_all(user_id)

    async def _owned_session(self, user_id: str, session_id: str) -> Session:
        session = await self.sessions.get(session_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError("Session not found")
        return session

    async def logout_session(self, user_id: str, session_id: str) -> None:
        await self._owned_session(user_id, session_id)
        await self.sessions.end(session_id)

    # sessions ---------------------------------------------------------------

    async def list_sessions(self, user_id: str) -> List[Session]:
        return await self.sessions.list_live(user_id)

    async def get_session(self, user_id: str, session_id: str) -> Session:
        return await self._owned_session(user_id, session_id)

    async def protect_session(
        self, user_id: str, session_id: str, protected: bool
    ) -> Session:
        await self._owned_session(user_id, session_id)
        session = await self.sessions.set_protected(session_id, protected)
        if session is None:
            raise NotFoundError("Session not found")
        self.logger.info("session_protection_changed", session_id=session_id, protected=protected)
        return session

    # profile ----------------------------------------------------------------

    async def get_profile(self, user_id: str) -> User:
        return await self._require_user(user_id)

    async def change_password(
        self,
        user_id: str,
        old_password: str,
        new_password: str,
        current_session_id: Optional[str] = None,
    ) -> User:
        user = await self._require_user(user_id)
        if not await self._verify(old_password, user.password_hash):
            raise AuthenticationError("Current password is incorrect")
        if not meets_policy(new_password):
            raise PolicyViolationError("New password does not meet requirements")
        self._check_cooldown(
            user.last_password_change,
            self.settings.password_change_cooldown_days,
            "Password",
        )
        if await self._verify(new_password, user.password_hash):
            raise PolicyViolationError(
                "New password cannot be the same as current password"
            )
        new_hash = await self._hash(new_password)
        if not await self._store(
            self.store.update_user_password, user_id, new_hash, self.clock()
        ):
            raise NotFoundError("User not found")
        ended = await self.sessions.end_all(user_id, except_session_id=current_session_id)
        self.logger.info("password_changed", user_id=user_id, sessions_ended=ended)
        return await self._require_user(user_id)

    async def change_email(self, user_id: str, new_email: str) -> User:
        try:
            email = validate_email(new_email)
        except ValueError as exc:
            raise ValidationError("Invalid email format") from exc
        user = await self._require_user(user_id)
        if user.email.lower() == email:
            raise ValidationError("New email is same as current email")
        self._check_cooldown(
            user.last_email_change, self.settings.email_change_cooldown_days, "Email"
        )
        existing = await self._store(self.store.get_user_by_email, email)
        if existing and existing.id != user_id:
            raise ConflictError("email already exists")
        try:
            updated = await self._store(
                self.store.update_user_email, user_id, email, self.clock()
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if not updated:
            raise NotFoundError("User not found")
        self.logger.info("email_changed", user_id=user_id)
        return await self._require_user(user_id)

    async def delete_account(self, user_id: str) -> None:
        await self._require_user(user_id)
        await self.sessions.end_all(user_id)
        if not await self._store(self.store.delete_user, user_id):
            raise NotFoundError("User not found")
        self.logger.info("account_deleted", user_id=user_id)
