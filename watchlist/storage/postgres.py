from __future__ import annotations

import contextlib
from datetime import date
from pathlib import Path
from typing import Any, Iterator, List, Optional

from psycopg import Connection, OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from watchlist.logging import get_logger
from watchlist.storage.errors import ConstraintViolation, TransientStoreError
from watchlist.storage.models import User, WatchlistItem

_UPDATABLE_ITEM_FIELDS = ("status", "platform", "notes", "watched_date", "title")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        display_name TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS watchlist_item (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES app_user(id),
        tmdb_id BIGINT NOT NULL,
        title TEXT NOT NULL,
        media_type TEXT NOT NULL DEFAULT 'movie',
        status TEXT NOT NULL DEFAULT 'to_watch',
        platform TEXT,
        notes TEXT,
        watched_date DATE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS watchlist_item_user_idx ON watchlist_item (user_id)",
    """
    CREATE TABLE IF NOT EXISTS session_kv (
        sid TEXT PRIMARY KEY,
        blob TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS session_kv_expires_idx ON session_kv (expires_at)",
)


class PostgresStore:
    """Postgres-backed users, watchlist items and TTL'd session blobs."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Connection]:
        """Borrow a pooled connection; connection-class failures become TransientStoreError."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.warning("postgres_transient_error", error_type=type(exc).__name__)
            raise TransientStoreError(str(exc), backend="postgres") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=int(row["id"]),
            username=row["username"],
            password_hash=row["password_hash"],
            display_name=row.get("display_name"),
            role=row.get("role") or "user",
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_item(row: dict) -> WatchlistItem:
        return WatchlistItem(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            tmdb_id=int(row["tmdb_id"]),
            title=row["title"],
            media_type=row.get("media_type") or "movie",
            status=row.get("status") or "to_watch",
            platform=row.get("platform"),
            notes=row.get("notes"),
            watched_date=row.get("watched_date"),
            created_at=row["created_at"],
        )

    # users
    def create_user(
        self,
        username: str,
        password_hash: str,
        display_name: Optional[str] = None,
        *,
        role: str = "user",
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (username, password_hash, display_name, role)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (username, password_hash, display_name, role),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", {"field": "username"})
        return self._row_to_user(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY id LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *", (role, user_id)
            ).fetchone()
        return self._row_to_user(row) if row else None

    # sessions
    def put_session_blob(self, session_id: str, blob: str, ttl_seconds: int) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM session_kv WHERE expires_at <= now()")
            conn.execute(
                """
                INSERT INTO session_kv (sid, blob, expires_at)
                VALUES (%s, %s, now() + make_interval(secs => %s))
                ON CONFLICT (sid) DO UPDATE
                SET blob = EXCLUDED.blob, expires_at = EXCLUDED.expires_at
                """,
                (session_id, blob, max(1, ttl_seconds)),
            )

    def get_session_blob(self, session_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT blob FROM session_kv WHERE sid = %s AND expires_at > now()",
                (session_id,),
            ).fetchone()
        return row["blob"] if row else None

    def delete_session_blob(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM session_kv WHERE sid = %s", (session_id,))

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO watchlist_item
                        (user_id, tmdb_id, title, media_type, status, platform, notes, watched_date)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, tmdb_id, title, media_type, status, platform, notes, watched_date),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._row_to_item(row)

    def get_watchlist_item(self, item_id: int) -> Optional[WatchlistItem]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM watchlist_item WHERE id = %s", (item_id,)
            ).fetchone()
        return self._row_to_item(row) if row else None

    def list_watchlist_items(self, user_id: int) -> List[WatchlistItem]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM watchlist_item WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_item(row) for row in rows]

    def update_watchlist_item(self, item_id: int, **changes: Any) -> Optional[WatchlistItem]:
        updates = {k: v for k, v in changes.items() if k in _UPDATABLE_ITEM_FIELDS}
        if not updates:
            return self.get_watchlist_item(item_id)
        assignments = ", ".join(f"{column} = %s" for column in updates)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE watchlist_item SET {assignments} WHERE id = %s RETURNING *",
                (*updates.values(), item_id),
            ).fetchone()
        return self._row_to_item(row) if row else None

    def delete_watchlist_item(self, item_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM watchlist_item WHERE id = %s", (item_id,))
            return bool(cur.rowcount)
