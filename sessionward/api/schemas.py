from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from sessionward.storage.models import normalize_unicode

MAX_PASSWORD_LENGTH = 128
MIN_PASSWORD_LENGTH = 6
MAX_TOKEN_LENGTH = 2048

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
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
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_HANDLE_PATTERN = re.compile(r"^[a-z0-9_-]+$")


def _validate_handle(value: str) -> str:
    """Handles are lower-cased; alphanumeric with underscores/hyphens, max 64 chars."""
    normalized = normalize_unicode(value.strip().lower())
    if not normalized:
        raise ValueError("handle is required")
    if len(normalized) > 64:
        raise ValueError("handle must be at most 64 characters")
    if not _HANDLE_PATTERN.match(normalized):
        raise ValueError("handle must contain only alphanumeric characters, underscores, and hyphens")
    return normalized


def _validate_password(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


class RegisterRequest(BaseModel):
    handle: str
    email: str
    password: str
    fullname: str = Field(..., min_length=1, max_length=256)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)
    cover_image_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("handle")
    @classmethod
    def _check_handle(cls, value: str) -> str:
        return _validate_handle(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password(value)

    @field_validator("fullname")
    @classmethod
    def _check_fullname(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("fullname is required")
        return stripped


class LoginRequest(BaseModel):
    """Either ``handle`` or ``email`` identifies the account."""

    handle: Optional[str] = Field(default=None, max_length=254)
    email: Optional[str] = Field(default=None, max_length=254)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @model_validator(mode="after")
    def _require_login_key(self):
        if not (self.handle or "").strip() and not (self.email or "").strip():
            raise ValueError("handle or email is required")
        return self

    @property
    def login_key(self) -> str:
        return (self.handle or "").strip() or (self.email or "").strip()


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _check_new_password(cls, value: str) -> str:
        return _validate_password(value)


class UserResponse(BaseModel):
    id: str
    handle: str
    email: str
    fullname: str
    avatar_url: Optional[str] = None
    cover_image_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class PrincipalResponse(BaseModel):
    user_id: str
    handle: str
    email: str
    fullname: str
    expires_at: datetime
