from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

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


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
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


_HANDLE_PATTERN = re.compile(r"^[a-z0-9_.-]+$")


def _validate_handle(value: str) -> str:
    """Lowercase handle: letters, digits, underscore, dot or hyphen, 3-30 chars."""
    normalized = _normalize_unicode(value.strip().lower())
    if not 3 <= len(normalized) <= 30:
        raise ValueError("handle must be between 3 and 30 characters")
    if not _HANDLE_PATTERN.match(normalized):
        raise ValueError(
            "handle must contain only letters, digits, underscores, dots and hyphens"
        )
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class RegisterRequest(BaseModel):
    handle: str
    email: str
    fullname: str = Field(..., min_length=1, max_length=100)
    password: str
    avatar_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("handle")
    @classmethod
    def _validate_register_handle(cls, value: str) -> str:
        return _validate_handle(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("fullname")
    @classmethod
    def _strip_fullname(cls, value: str) -> str:
        stripped = _normalize_unicode(value).strip()
        if not stripped:
            raise ValueError("fullname is required")
        return stripped

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    """Log in with either ``handle`` or ``email``."""

    handle: Optional[str] = Field(default=None, max_length=64)
    email: Optional[str] = Field(default=None, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @property
    def identifier(self) -> str:
        return (self.email or self.handle or "").strip().lower()

    @model_validator(mode="after")
    def _require_identifier(self):
        if not (self.handle or self.email):
            raise ValueError("handle or email is required")
        return self


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class VideoCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)
    video_url: Optional[str] = Field(default=None, max_length=2048)
    thumbnail_url: Optional[str] = Field(default=None, max_length=2048)
    duration_seconds: float = Field(default=0.0, ge=0)


class CommentCreateRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)


class TweetCreateRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=500)


class UserResponse(BaseModel):
    id: str
    handle: str
    email: str
    fullname: str = ""
    avatar_url: Optional[str] = None
    created_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class VideoResponse(BaseModel):
    id: str
    owner_id: str
    title: str
    description: str = ""
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    duration_seconds: float = 0.0
    views: int = 0
    created_at: datetime
    like_count: Optional[int] = None
    is_liked: Optional[bool] = None


class VideoListResponse(BaseModel):
    items: List[VideoResponse]


class CommentResponse(BaseModel):
    id: str
    video_id: str
    owner_id: str
    content: str
    created_at: datetime


class TweetResponse(BaseModel):
    id: str
    owner_id: str
    content: str
    created_at: datetime


class ToggleResponse(BaseModel):
    target_id: str
    kind: str
    active: bool


class ChannelProfileResponse(BaseModel):
    channel: UserResponse
    subscriber_count: int
    subscribed_to_count: int
    is_subscribed: bool
