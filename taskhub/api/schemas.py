from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlparse
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from taskhub.logging import get_correlation_id
from taskhub.service.security import is_valid_email, sanitize_email
from taskhub.storage.models import User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})

# At least one lowercase, one uppercase and one digit
_PASSWORD_SHAPE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")
_PASSWORD_SHAPE_MESSAGE = (
    "Password must contain at least one uppercase letter, one lowercase letter, and one number"
)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    message: Optional[str] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _validate_email(value: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Email is required")
    normalized = sanitize_email(value)
    if len(normalized) > 254 or not is_valid_email(normalized):
        raise ValueError("Please enter a valid email address")
    return normalized


def _validate_new_password(value: str) -> str:
    if len(value) < 6:
        raise ValueError("Password must be at least 6 characters")
    if len(value) > 128:
        raise ValueError("Password must be at most 128 characters")
    if not _PASSWORD_SHAPE.match(value):
        raise ValueError(_PASSWORD_SHAPE_MESSAGE)
    return value


def _validate_avatar(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return value
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Please provide a valid URL")
    return value


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        if not value:
            raise ValueError("Password is required")
        if len(value) < 6:
            raise ValueError("Password must be at least 6 characters")
        return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    confirm_password: str = Field(..., min_length=1)
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_new_password(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class PasswordChangeRequest(BaseModel):
    """Change a password; OAuth-only accounts omit the current one."""

    current_password: Optional[str] = Field(default=None, max_length=128)
    new_password: str
    confirm_new_password: str = Field(..., min_length=1)

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_new_password(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.new_password != self.confirm_new_password:
            raise ValueError("Passwords do not match")
        return self


class ProfileUpdateRequest(BaseModel):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    bio: Optional[str] = Field(default=None, max_length=500)
    avatar: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("avatar")
    @classmethod
    def _validate_avatar_url(cls, value: Optional[str]) -> Optional[str]:
        return _validate_avatar(value)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class UserResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    avatar: str = ""
    bio: str = ""
    provider: Optional[str] = None
    email_verified: bool = False
    has_password: bool = False
    last_login: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            avatar=user.avatar,
            bio=user.bio,
            provider=user.provider,
            email_verified=user.email_verified,
            has_password=user.has_password,
            last_login=user.last_login,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class AuthResponse(BaseModel):
    user: UserResponse
    token: str


class PrincipalResponse(BaseModel):
    user_id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    avatar: str = ""


class SessionResponse(BaseModel):
    user_id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    avatar: str = ""
    provider: Optional[str] = None
    expires_at: datetime


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str
