from __future__ import annotations

import json
import threading
import time
from dataclasses import fields
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from watchlist.logging import get_logger
from watchlist.storage.errors import ConstraintViolation
from watchlist.storage.models import User, WatchlistItem, utcnow

_UPDATABLE_ITEM_FIELDS = {"status", "platform", "notes", "watched_date", "title"}


class MemoryStore:
    """In-process store for users, watchlist items and session blobs.

    State is mirrored to ``fs_root/state/memory_store.json`` so a restart keeps
    accounts and sessions.
    """

    def __init__(
        self, fs_root: str = "/tmp/watchlist", *, clock: Callable[[], float] = time.time
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.items: Dict[int, WatchlistItem] = {}
        # session id -> (blob, expires_at epoch seconds)
        self.session_kv: Dict[str, Tuple[str, float]] = {}
        self._user_seq = 1
        self._item_seq = 1
        self._clock = clock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        return None

    # users
    def create_user(
        self,
        username: str,
        password_hash: str,
        display_name: Optional[str] = None,
        *,
        role: str = "user",
    ) -> User:
        with self._data_lock:
            if any(existing.username == username for existing in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = User(
                id=self._user_seq,
                username=username,
                password_hash=password_hash,
                display_name=display_name,
                role=role,
            )
            self._user_seq += 1
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.username == username), None)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.id)[:limit]

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user

    # sessions
    def put_session_blob(self, session_id: str, blob: str, ttl_seconds: int) -> None:
        with self._data_lock:
            now = self._clock()
            self._sweep_expired_sessions(now)
            self.session_kv[session_id] = (blob, now + max(1, ttl_seconds))
            self._persist_state()

    def _sweep_expired_sessions(self, now: float) -> None:
        expired = [sid for sid, (_, expires_at) in self.session_kv.items() if expires_at <= now]
        for sid in expired:
            del self.session_kv[sid]

    def get_session_blob(self, session_id: str) -> Optional[str]:
        with self._data_lock:
            entry = self.session_kv.get(session_id)
            if not entry:
                return None
            blob, expires_at = entry
            if expires_at <= self._clock():
                self.session_kv.pop(session_id, None)
                self._persist_state()
                return None
            return blob

    def delete_session_blob(self, session_id: str) -> None:
        with self._data_lock:
            if self.session_kv.pop(session_id, None) is not None:
                self._persist_state()

    # watchlist
    def create_watchlist_item(
        self,
        user_id: int,
        tmdb_id: int,
        title: str,
        *,
        media_type: str = "movie",
        status: str = "to_watch",
        platform: Optional[str] = None,
        notes: Optional[str] = None,
        watched_date: Optional[date] = None,
    ) -> WatchlistItem:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            item = WatchlistItem(
                id=self._item_seq,
                user_id=user_id,
                tmdb_id=tmdb_id,
                title=title,
                media_type=media_type,
                status=status,
                platform=platform,
                notes=notes,
                watched_date=watched_date,
            )
            self._item_seq += 1
            self.items[item.id] = item
            self._persist_state()
            return item

    def get_watchlist_item(self, item_id: int) -> Optional[WatchlistItem]:
        with self._data_lock:
            return self.items.get(item_id)

    def list_watchlist_items(self, user_id: int) -> List[WatchlistItem]:
        with self._data_lock:
            owned = [item for item in self.items.values() if item.user_id == user_id]
            return sorted(owned, key=lambda item: item.created_at, reverse=True)

    def update_watchlist_item(self, item_id: int, **changes: Any) -> Optional[WatchlistItem]:
        with self._data_lock:
            item = self.items.get(item_id)
            if not item:
                return None
            for key, value in changes.items():
                if key in _UPDATABLE_ITEM_FIELDS:
                    setattr(item, key, value)
            self._persist_state()
            return item

    def delete_watchlist_item(self, item_id: int) -> bool:
        with self._data_lock:
            removed = self.items.pop(item_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "items": [self._serialize_item(i) for i in self.items.values()],
            "sessions": [
                {"id": sid, "blob": blob, "expires_at": expires_at}
                for sid, (blob, expires_at) in self.session_kv.items()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.items = {i["id"]: self._deserialize_item(i) for i in data.get("items", [])}
        self.session_kv = {
            s["id"]: (s["blob"], float(s["expires_at"])) for s in data.get("sessions", [])
        }
        self._user_seq = max(self.users, default=0) + 1
        self._item_seq = max(self.items, default=0) + 1
        return True

    @staticmethod
    def _serialize_user(user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "password_hash": user.password_hash,
            "display_name": user.display_name,
            "role": user.role,
            "created_at": user.created_at.isoformat(),
        }

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        return User(
            id=int(data["id"]),
            username=data["username"],
            password_hash=data["password_hash"],
            display_name=data.get("display_name"),
            role=data.get("role", "user"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )

    @staticmethod
    def _serialize_item(item: WatchlistItem) -> dict:
        payload = {f.name: getattr(item, f.name) for f in fields(item)}
        payload["created_at"] = item.created_at.isoformat()
        payload["watched_date"] = item.watched_date.isoformat() if item.watched_date else None
        return payload

    @staticmethod
    def _deserialize_item(data: dict) -> WatchlistItem:
        watched = data.get("watched_date")
        return WatchlistItem(
            id=int(data["id"]),
            user_id=int(data["user_id"]),
            tmdb_id=int(data["tmdb_id"]),
            title=data["title"],
            media_type=data.get("media_type", "movie"),
            status=data.get("status", "to_watch"),
            platform=data.get("platform"),
            notes=data.get("notes"),
            watched_date=date.fromisoformat(watched) if watched else None,
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else utcnow(),
        )
