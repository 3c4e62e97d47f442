from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Path, Request, Response

from tonotes.api.schemas import (
    ChangeEmailRequest,
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    RecoveryCodeRequest,
    RegisterRequest,
    SessionListResponse,
    SessionUpdateRequest,
    SessionView,
    TwoFactorCodeRequest,
    TwoFactorEnableRequest,
)
from tonotes.logging import get_logger
from tonotes.service.auth import AuthContext, extract_bearer
from tonotes.service.errors import AuthenticationError
from tonotes.service.runtime import Runtime
from tonotes.storage.models import Session

logger = get_logger(__name__)

router = APIRouter()

SESSION_COOKIE = "session_id"
RECOVERY_CODES_WARNING = "Save these recovery codes securely. They will not be shown again."
RECOVERY_USED_WARNING = "Please set up a new authenticator app as soon as possible"


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def get_user(
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    authorization: Optional[str] = Header(None),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
) -> AuthContext:
    """Bearer-token guard for protected routes.

    A session cookie that is no longer live is cleared on the response.
    """
    ctx = await runtime.auth.authenticate(authorization, session_cookie)
    if ctx.clear_session_cookie:
        _clear_session_cookie(response, runtime)
    return ctx


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _set_session_cookie(response: Response, session: Session, runtime: Runtime) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        session.id,
        max_age=runtime.settings.session_ttl_hours * 3600,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def _clear_session_cookie(response: Response, runtime: Runtime) -> None:
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        secure=runtime.settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )


def _session_view(session: Session, current_session_id: Optional[str]) -> SessionView:
    return SessionView(
        session_id=session.id,
        display_name=session.display_name,
        device_info=session.device_info,
        ip_address=session.ip_address,
        location=session.location,
        created_at=session.created_at.isoformat(),
        last_activity_at=session.last_activity_at.isoformat(),
        expires_at=session.expires_at.isoformat(),
        protected=session.protected,
        is_current=session.id == current_session_id,
    )


# authentication ---------------------------------------------------------------


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Create an account, open a session and return a token pair.

    Raises:
        400: If the email is malformed or the password is too weak
        409: If the username or email is taken
    """
    result = await runtime.auth.register(
        body.username,
        body.email,
        body.password,
        user_agent=request.headers.get("user-agent"),
        ip=_client_ip(request),
    )
    _set_session_cookie(response, result.session, runtime)
    return Envelope(
        data={
            "message": "user registered successfully",
            "token": result.tokens.access,
            "refresh": result.tokens.refresh,
            "user": result.user.to_public(),
        }
    )


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Authenticate with username and password, plus a 2FA code when enrolled.

    Raises:
        401: If credentials or the second factor are rejected
    """
    result = await runtime.auth.login(
        body.username,
        body.password,
        body.two_factor_code,
        user_agent=request.headers.get("user-agent"),
        ip=_client_ip(request),
    )
    _set_session_cookie(response, result.session, runtime)
    return Envelope(
        data={
            "message": "Login successful",
            "token": result.tokens.access,
            "refresh": result.tokens.refresh,
        }
    )


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    runtime: Runtime = Depends(get_runtime),
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Header(None, alias="Access-Token"),
):
    """Exchange a refresh token for a new pair; the presented refresh is revoked.

    Raises:
        401: If the refresh token is missing, revoked, invalid or expired
    """
    token = extract_bearer(authorization)
    if not token:
        raise AuthenticationError("Missing or invalid refresh")
    pair = await runtime.auth.refresh(token, extract_bearer(access_token) or access_token)
    return Envelope(data={"access_token": pair.access, "new_refresh_token": pair.refresh})


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
    refresh_token: Optional[str] = Header(None, alias="Refresh-Token"),
):
    """Revoke the token pair and end the current session.

    Raises:
        400: If the Refresh-Token header is missing or not this user's
    """
    await runtime.auth.logout(
        principal.user_id,
        principal.access_token,
        extract_bearer(refresh_token) or refresh_token,
        principal.session_id,
    )
    _clear_session_cookie(response, runtime)
    return Envelope(data={"message": "Successfully logged out"})


# profile -----------------------------------------------------------------------


@router.get("/user", response_model=Envelope, tags=["user"])
async def get_profile(
    principal: AuthContext = Depends(get_user), runtime: Runtime = Depends(get_runtime)
):
    user = await runtime.auth.get_profile(principal.user_id)
    return Envelope(data={"user": user.to_public()})


@router.post("/change-password", response_model=Envelope, tags=["user"])
async def change_password(
    body: ChangePasswordRequest,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Change the password and end every other session.

    Raises:
        400: If the new password is weak or unchanged
        401: If the current password is wrong
        429: If the password changed within the cooldown
    """
    user = await runtime.auth.change_password(
        principal.user_id, body.old_password, body.new_password, principal.session_id
    )
    return Envelope(
        data={"message": "Password changed successfully", "user": user.to_public()}
    )


@router.post("/change-email", response_model=Envelope, tags=["user"])
async def change_email(
    body: ChangeEmailRequest,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Change the account email.

    Raises:
        400: If the address is malformed or unchanged
        409: If another account uses it
        429: If the email changed within the cooldown
    """
    user = await runtime.auth.change_email(principal.user_id, body.new_email)
    return Envelope(data={"message": "Email changed successfully", "user": user.to_public()})


@router.delete("/user", response_model=Envelope, tags=["user"])
async def delete_user(
    response: Response,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.delete_account(principal.user_id)
    await runtime.tokens.blacklist_pair(principal.access_token, None)
    _clear_session_cookie(response, runtime)
    return Envelope(data={"message": "Account deleted successfully"})


# second factor -----------------------------------------------------------------


@router.get("/2fa/generate", response_model=Envelope, tags=["2fa"])
async def generate_two_factor(
    principal: AuthContext = Depends(get_user), runtime: Runtime = Depends(get_runtime)
):
    """Issue a TOTP secret and QR code; nothing is stored until /2fa/enable."""
    enrollment = await runtime.two_factor.generate_enrollment(principal.user_id)
    return Envelope(
        data={
            "secret": enrollment.secret,
            "qr_code": enrollment.qr_code,
            "otpauth_url": enrollment.otpauth_url,
        }
    )


@router.post("/2fa/enable", response_model=Envelope, tags=["2fa"])
async def enable_two_factor(
    body: TwoFactorEnableRequest,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    codes = await runtime.two_factor.enable(principal.user_id, body.secret, body.code)
    return Envelope(
        data={
            "message": "2FA enabled successfully",
            "recovery_codes": codes,
            "warning": RECOVERY_CODES_WARNING,
        }
    )


@router.post("/2fa/verify", response_model=Envelope, tags=["2fa"])
async def verify_two_factor(
    body: TwoFactorCodeRequest,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    if not await runtime.two_factor.verify(principal.user_id, body.code):
        raise AuthenticationError("Invalid 2FA code")
    return Envelope(data={"message": "2FA code valid"})


@router.post("/2fa/disable", response_model=Envelope, tags=["2fa"])
async def disable_two_factor(
    body: TwoFactorCodeRequest,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.two_factor.disable(principal.user_id, body.code)
    return Envelope(data={"message": "2FA disabled successfully"})


@router.post("/2fa/recovery", response_model=Envelope, tags=["2fa"])
async def use_recovery_code(
    body: RecoveryCodeRequest,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Spend a recovery code.

    Raises:
        401: If the code is unknown or already used
    """
    remaining = await runtime.two_factor.consume_recovery(
        principal.user_id, body.recovery_code
    )
    return Envelope(
        data={
            "message": "Recovery code accepted",
            "remaining_codes": remaining,
            "warning": RECOVERY_USED_WARNING,
        }
    )


# sessions ----------------------------------------------------------------------


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(
    principal: AuthContext = Depends(get_user), runtime: Runtime = Depends(get_runtime)
):
    sessions = await runtime.auth.list_sessions(principal.user_id)
    views = [_session_view(s, principal.session_id) for s in sessions]
    return Envelope(data=SessionListResponse(sessions=views, count=len(views)).model_dump())


@router.post("/sessions/logout-all", response_model=Envelope, tags=["sessions"])
async def logout_all_sessions(
    response: Response,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    """End every session of the caller, protected ones included."""
    await runtime.auth.logout_all(principal.user_id)
    _clear_session_cookie(response, runtime)
    return Envelope(data={"message": "Successfully logged out of all sessions"})


@router.get("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def get_session_details(
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    session = await runtime.auth.get_session(principal.user_id, session_id)
    return Envelope(data={"session": _session_view(session, principal.session_id).model_dump()})


@router.patch("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def update_session(
    body: SessionUpdateRequest,
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Toggle the protected flag; protected sessions survive single logouts."""
    session = await runtime.auth.protect_session(
        principal.user_id, session_id, body.protected
    )
    return Envelope(
        data={
            "message": "Session updated successfully",
            "session": _session_view(session, principal.session_id).model_dump(),
        }
    )


@router.post("/sessions/{session_id}/logout", response_model=Envelope, tags=["sessions"])
async def logout_session(
    response: Response,
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    """End one of the caller's sessions.

    Raises:
        403: If the session is protected
        404: If the session does not exist or belongs to someone else
    """
    await runtime.auth.logout_session(principal.user_id, session_id)
    if session_id == principal.session_id:
        _clear_session_cookie(response, runtime)
    return Envelope(data={"message": "Successfully logged out of the session"})
