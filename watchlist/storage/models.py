from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

WATCH_STATUSES = ("to_watch", "watching", "watched")
MEDIA_TYPES = ("movie", "tv")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class User:
    id: int
    username: str
    password_hash: str = field(repr=False)
    display_name: Optional[str] = None
    role: str = "user"
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class IdentitySnapshot:
    """Identity fields copied into a session; enough to answer "who" without a store read."""

    id: int
    username: str
    display_name: Optional[str] = None
    role: str = "user"

    @classmethod
    def from_user(cls, user: User) -> "IdentitySnapshot":
        return cls(
            id=user.id,
            username=user.username,
            display_name=user.display_name,
            role=user.role,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "display_name": self.display_name,
            "role": self.role,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdentitySnapshot":
        return cls(
            id=int(data["id"]),
            username=str(data["username"]),
            display_name=data.get("display_name"),
            role=data.get("role") or "user",
        )


@dataclass
class SessionRecord:
    """One server-side session.

    ``last_checked_at`` is bumped by every use; ``verified_at`` only when the
    identity snapshot was last matched against the credential store.
    """

    id: str
    created_at: datetime
    last_checked_at: datetime
    verified_at: datetime
    authenticated: bool = False
    identity: Optional[IdentitySnapshot] = None
    recovery: Optional[IdentitySnapshot] = None
    invalidated: bool = False

    @classmethod
    def new(
        cls, identity: Optional[IdentitySnapshot] = None, *, now: Optional[datetime] = None
    ) -> "SessionRecord":
        now = now or utcnow()
        return cls(
            id=uuid.uuid4().hex,
            created_at=now,
            last_checked_at=now,
            verified_at=now,
            authenticated=identity is not None,
            identity=identity,
        )

    def to_blob(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "created_at": self.created_at.isoformat(),
                "last_checked_at": self.last_checked_at.isoformat(),
                "verified_at": self.verified_at.isoformat(),
                "authenticated": self.authenticated,
                "identity": self.identity.to_dict() if self.identity else None,
                "recovery": self.recovery.to_dict() if self.recovery else None,
                "invalidated": self.invalidated,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_blob(cls, blob: str) -> "SessionRecord":
        """Parse a stored blob; raises ValueError/KeyError/TypeError on corrupt data."""
        data = json.loads(blob)
        identity = data.get("identity")
        recovery = data.get("recovery")
        return cls(
            id=str(data["id"]),
            created_at=_parse_dt(data["created_at"]),
            last_checked_at=_parse_dt(data.get("last_checked_at")) or _parse_dt(data["created_at"]),
            verified_at=_parse_dt(data.get("verified_at")) or _parse_dt(data["created_at"]),
            authenticated=bool(data.get("authenticated", False)),
            identity=IdentitySnapshot.from_dict(identity) if identity else None,
            recovery=IdentitySnapshot.from_dict(recovery) if recovery else None,
            invalidated=bool(data.get("invalidated", False)),
        )


@dataclass
class WatchlistItem:
    id: int
    user_id: int
    tmdb_id: int
    title: str
    media_type: str = "movie"
    status: str = "to_watch"
    platform: Optional[str] = None
    notes: Optional[str] = None
    watched_date: Optional[date] = None
    created_at: datetime = field(default_factory=utcnow)
