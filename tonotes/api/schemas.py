from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from tonotes.service.validators import validate_email, validate_username

MAX_PASSWORD_LENGTH = 128
MAX_CODE_LENGTH = 64


class Envelope(BaseModel):
    """Success envelope: ``{"data": {...}}``."""

    data: Optional[Any] = None


class ErrorBody(BaseModel):
    """Failure envelope: ``{"error": "<message>"}``."""

    error: str


class RegisterRequest(BaseModel):
    username: str = Field(..., max_length=64)
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        try:
            return validate_username(value)
        except ValueError as exc:
            raise ValueError("Invalid username") from exc

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        try:
            return validate_email(value)
        except ValueError as exc:
            raise ValueError("Invalid email format") from exc


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    two_factor_code: Optional[str] = Field(default=None, max_length=MAX_CODE_LENGTH)


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class ChangeEmailRequest(BaseModel):
    new_email: str = Field(..., max_length=254)

    @field_validator("new_email")
    @classmethod
    def _validate_new_email(cls, value: str) -> str:
        try:
            return validate_email(value)
        except ValueError as exc:
            raise ValueError("Invalid email format") from exc


class TwoFactorEnableRequest(BaseModel):
    secret: str = Field(..., min_length=16, max_length=128)
    code: str = Field(..., min_length=1, max_length=MAX_CODE_LENGTH)


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=MAX_CODE_LENGTH)


class RecoveryCodeRequest(BaseModel):
    recovery_code: str = Field(..., min_length=1, max_length=MAX_CODE_LENGTH)


class SessionUpdateRequest(BaseModel):
    protected: bool


class SessionView(BaseModel):
    session_id: str
    display_name: str
    device_info: str
    ip_address: str
    location: str
    created_at: str
    last_activity_at: str
    expires_at: str
    protected: bool
    is_current: bool = False


class SessionListResponse(BaseModel):
    sessions: List[SessionView]
    count: int
