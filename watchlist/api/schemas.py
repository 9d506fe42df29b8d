from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from watchlist.logging import get_correlation_id
from watchlist.storage.models import User, WatchlistItem

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


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
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def _validate_username(value: str) -> str:
    normalized = _normalize_unicode(value.strip())
    if len(normalized) < 3:
        raise ValueError("username must be at least 3 characters")
    if len(normalized) > 50:
        raise ValueError("username must be at most 50 characters")
    if not _USERNAME_PATTERN.match(normalized):
        raise ValueError(
            "username must contain only letters, digits, dots, underscores and hyphens"
        )
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 6:
        raise ValueError("password must be at least 6 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class RegisterRequest(BaseModel):
    username: str
    password: str
    display_name: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=100,
        validation_alias=AliasChoices("display_name", "displayName"),
    )

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("username")
    @classmethod
    def _normalize_login_username(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class UserResponse(BaseModel):
    id: int
    username: str
    display_name: Optional[str] = None
    role: str = "user"
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            display_name=user.display_name,
            role=user.role,
            created_at=user.created_at,
        )


class AuthResponse(BaseModel):
    user: UserResponse
    token: str
    token_expires_at: datetime


class TokenResponse(BaseModel):
    token: str
    token_expires_at: datetime


class MeResponse(BaseModel):
    user: UserResponse


class UserListResponse(BaseModel):
    items: List[UserResponse]


WatchStatus = Literal["to_watch", "watching", "watched"]
MediaType = Literal["movie", "tv"]


class WatchlistItemCreate(BaseModel):
    tmdb_id: int = Field(..., ge=1)
    title: str = Field(..., min_length=1, max_length=500)
    media_type: MediaType = "movie"
    status: WatchStatus = "to_watch"
    platform: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=5000)
    watched_date: Optional[date] = None


class WatchlistItemUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    status: Optional[WatchStatus] = None
    platform: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=5000)
    watched_date: Optional[date] = None


class WatchlistItemResponse(BaseModel):
    id: int
    user_id: int
    tmdb_id: int
    title: str
    media_type: str
    status: str
    platform: Optional[str] = None
    notes: Optional[str] = None
    watched_date: Optional[date] = None
    created_at: datetime

    @classmethod
    def from_item(cls, item: WatchlistItem) -> "WatchlistItemResponse":
        return cls(
            id=item.id,
            user_id=item.user_id,
            tmdb_id=item.tmdb_id,
            title=item.title,
            media_type=item.media_type,
            status=item.status,
            platform=item.platform,
            notes=item.notes,
            watched_date=item.watched_date,
            created_at=item.created_at,
        )


class WatchlistItemListResponse(BaseModel):
    items: List[WatchlistItemResponse]
