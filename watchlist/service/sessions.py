from __future__ import annotations

import asyncio
import hashlib
import hmac
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

from watchlist.config import Settings
from watchlist.logging import get_logger
from watchlist.service.credentials import CredentialStore
from watchlist.storage.errors import TransientStoreError
from watchlist.storage.models import IdentitySnapshot, SessionRecord

logger = get_logger(__name__)


class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    STALE = "stale"
    INVALIDATED = "invalidated"


@dataclass(frozen=True)
class SessionLoad:
    state: SessionState
    record: Optional[SessionRecord] = None


class SessionBackend(Protocol):
    async def put_session_blob(self, session_id: str, blob: str, ttl_seconds: int) -> None: ...

    async def get_session_blob(self, session_id: str) -> Optional[str]: ...

    async def delete_session_blob(self, session_id: str) -> None: ...


class StoreSessionBackend:
    """Async facade over the primary store's session key-value table."""

    def __init__(self, store) -> None:
        self.store = store

    async def put_session_blob(self, session_id: str, blob: str, ttl_seconds: int) -> None:
        self.store.put_session_blob(session_id, blob, ttl_seconds)

    async def get_session_blob(self, session_id: str) -> Optional[str]:
        return self.store.get_session_blob(session_id)

    async def delete_session_blob(self, session_id: str) -> None:
        self.store.delete_session_blob(session_id)


def _cookie_signature(secret: str, session_id: str) -> str:
    return hmac.new(secret.encode(), session_id.encode(), hashlib.sha256).hexdigest()


def sign_session_id(secret: str, session_id: str) -> str:
    return f"{session_id}.{_cookie_signature(secret, session_id)}"


def unsign_session_cookie(secret: str, value: Optional[str]) -> Optional[str]:
    """Return the session id from a signed cookie value, or None if it does not verify."""
    if not value or "." not in value:
        return None
    session_id, _, signature = value.rpartition(".")
    if not session_id:
        return None
    if not hmac.compare_digest(_cookie_signature(secret, session_id), signature):
        logger.info("session_cookie_rejected", reason="bad_signature")
        return None
    return session_id


def _short(session_id: str) -> str:
    return session_id[:8]


class SessionManager:
    """Server-side session lifecycle.

    Loads retry only on ``TransientStoreError``; when the retries run out the
    session is reported STALE and left in place. A record whose user no longer
    exists is tombstoned and reported INVALIDATED from then on.
    """

    def __init__(
        self,
        backend: SessionBackend,
        credentials: CredentialStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.backend = backend
        self.credentials = credentials
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self.ttl_seconds = settings.session_ttl_minutes * 60
        self.freshness = timedelta(seconds=settings.session_freshness_seconds)

    def _now(self) -> datetime:
        return self._clock()

    async def _save(self, record: SessionRecord) -> None:
        await self.backend.put_session_blob(record.id, record.to_blob(), self.ttl_seconds)

    async def _read(self, session_id: str) -> Optional[str]:
        attempts = self.settings.session_load_retries + 1
        backoff = self.settings.session_retry_backoff_ms / 1000.0
        attempt = 1
        while True:
            try:
                return await self.backend.get_session_blob(session_id)
            except TransientStoreError as exc:
                logger.warning(
                    "session_load_transient",
                    session=_short(session_id),
                    attempt=attempt,
                    backend=exc.backend,
                )
                if attempt >= attempts:
                    raise
            await self._sleep(backoff * attempt)
            attempt += 1

    async def create(self, identity: Optional[IdentitySnapshot] = None) -> SessionRecord:
        record = SessionRecord.new(identity, now=self._now())
        await self._save(record)
        logger.info(
            "session_created",
            session=_short(record.id),
            user_id=identity.id if identity else None,
        )
        return record

    def classify(self, record: Optional[SessionRecord]) -> SessionState:
        if record is None:
            return SessionState.ANONYMOUS
        if record.invalidated:
            return SessionState.INVALIDATED
        if record.authenticated and record.identity is not None:
            return SessionState.AUTHENTICATED
        return SessionState.ANONYMOUS

    def is_fresh(self, record: SessionRecord) -> bool:
        return self._now() - record.verified_at <= self.freshness

    async def load(self, session_id: Optional[str]) -> SessionLoad:
        if not session_id:
            return SessionLoad(SessionState.ANONYMOUS)
        try:
            blob = await self._read(session_id)
        except TransientStoreError:
            logger.warning("session_load_stale", session=_short(session_id))
            return SessionLoad(SessionState.STALE)
        if blob is None:
            return SessionLoad(SessionState.ANONYMOUS)
        try:
            record = SessionRecord.from_blob(blob)
        except (ValueError, KeyError, TypeError):
            logger.warning("session_blob_corrupt", session=_short(session_id))
            await self._tombstone(
                SessionRecord.new(now=self._now()), session_id, advisory=True
            )
            return SessionLoad(SessionState.INVALIDATED)

        state = self.classify(record)
        if state is not SessionState.AUTHENTICATED or self.is_fresh(record):
            return SessionLoad(state, record)
        return await self._recheck(record)

    async def _recheck(self, record: SessionRecord) -> SessionLoad:
        """Re-verify a session identity against the credential store once the freshness window lapses."""
        try:
            user = self.credentials.find_by_id(record.identity.id)
        except TransientStoreError:
            logger.warning("session_recheck_stale", session=_short(record.id))
            return SessionLoad(SessionState.STALE)
        if user is None or user.username != record.identity.username:
            logger.info(
                "session_user_missing",
                session=_short(record.id),
                user_id=record.identity.id,
            )
            await self._tombstone(record, record.id, advisory=True)
            return SessionLoad(SessionState.INVALIDATED)
        now = self._now()
        refreshed = replace(
            record,
            identity=IdentitySnapshot.from_user(user),
            last_checked_at=now,
            verified_at=now,
        )
        await self._save_advisory(refreshed)
        return SessionLoad(SessionState.AUTHENTICATED, refreshed)

    async def _save_advisory(self, record: SessionRecord) -> None:
        try:
            await self._save(record)
        except TransientStoreError as exc:
            logger.warning(
                "session_save_skipped", session=_short(record.id), backend=exc.backend
            )

    async def touch(self, record: SessionRecord) -> SessionRecord:
        """Bump last_checked_at. Concurrent touches are last-write-wins."""
        touched = replace(record, last_checked_at=self._now())
        await self._save_advisory(touched)
        return touched

    async def preserve_identity(
        self, record: SessionRecord, identity: IdentitySnapshot
    ) -> SessionRecord:
        """Keep a verified identity on the session so it can be recovered later."""
        preserved = replace(record, recovery=identity, last_checked_at=self._now())
        await self._save_advisory(preserved)
        if record.recovery != identity:
            logger.info(
                "session_identity_preserved", session=_short(record.id), user_id=identity.id
            )
        return preserved

    async def _tombstone(
        self, record: SessionRecord, session_id: str, *, advisory: bool = False
    ) -> None:
        tombstone = replace(
            record,
            id=session_id,
            authenticated=False,
            identity=None,
            recovery=None,
            invalidated=True,
            last_checked_at=self._now(),
        )
        if advisory:
            await self._save_advisory(tombstone)
        else:
            await self._save(tombstone)

    async def invalidate(self, session_id: Optional[str]) -> None:
        """Mark a session terminally invalid. Safe to call repeatedly or for unknown ids."""
        if not session_id:
            return
        await self._tombstone(SessionRecord.new(now=self._now()), session_id)
        logger.info("session_invalidated", session=_short(session_id))
