from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from watchlist.logging import get_logger
from watchlist.service.credentials import CredentialStore
from watchlist.service.sessions import SessionLoad, SessionManager, SessionState
from watchlist.service.tokens import TokenCheck, TokenService
from watchlist.storage.errors import TransientStoreError
from watchlist.storage.models import IdentitySnapshot, SessionRecord

logger = get_logger(__name__)

RECOVERY_WINDOW_SECONDS = 60

RateLimiter = Callable[[str, int, int], Awaitable[bool]]


@dataclass(frozen=True)
class RequestSignals:
    """Raw authentication inputs lifted off a request.

    The hint fields come from ``X-User-Id``/``X-Username`` and are never proof
    of identity.
    """

    session_id: Optional[str] = None
    bearer: Optional[str] = None
    hint_user_id: Optional[str] = None
    hint_username: Optional[str] = None
    # only routes that hand the cookie back may start a session for a token-only request
    start_session: bool = False


class ResolutionSource(str, Enum):
    SESSION = "session"
    TOKEN = "token"
    RECOVERY = "recovery"


@dataclass(frozen=True)
class Resolved:
    claims: IdentitySnapshot
    source: ResolutionSource
    recovered: bool = False
    session_id: Optional[str] = None
    # set when the resolver started a session the caller should hand back as a cookie
    issued_session_id: Optional[str] = None


@dataclass(frozen=True)
class Unresolved:
    reason: str


Resolution = Union[Resolved, Unresolved]


class AuthenticationResolver:
    """Turns request signals into one identity, most trusted signal first.

    1. an authenticated session snapshot
    2. a verified bearer token
    3. a session's recovery fields, if the user still exists (rate limited)

    Anything else is ``Unresolved``. Failures are returned, never raised.
    """

    def __init__(
        self,
        tokens: TokenService,
        sessions: SessionManager,
        credentials: CredentialStore,
        *,
        rate_limit: RateLimiter,
        recovery_limit_per_minute: int,
    ) -> None:
        self.tokens = tokens
        self.sessions = sessions
        self.credentials = credentials
        self.rate_limit = rate_limit
        self.recovery_limit_per_minute = recovery_limit_per_minute

    async def resolve(self, signals: RequestSignals) -> Resolution:
        if signals.hint_user_id or signals.hint_username:
            logger.info(
                "identity_hint_received",
                hint_user_id=signals.hint_user_id,
                hint_username=signals.hint_username,
            )
        load = await self.sessions.load(signals.session_id)
        check: Optional[TokenCheck] = (
            self.tokens.inspect(signals.bearer) if signals.bearer else None
        )

        resolution = await self._resolve(signals, load, check)
        if isinstance(resolution, Resolved):
            self._compare_hints(signals, resolution)
        else:
            logger.info("identity_unresolved", reason=resolution.reason)
        return resolution

    async def _resolve(
        self, signals: RequestSignals, load: SessionLoad, check: Optional[TokenCheck]
    ) -> Resolution:
        record = load.record
        token_claims = check.claims if check is not None else None

        if load.state is SessionState.AUTHENTICATED and record is not None:
            if token_claims is not None and token_claims.id != record.identity.id:
                logger.warning(
                    "identity_signal_conflict",
                    session_user_id=record.identity.id,
                    token_user_id=token_claims.id,
                    chosen="session",
                )
            await self.sessions.touch(record)
            return Resolved(
                claims=record.identity,
                source=ResolutionSource.SESSION,
                session_id=record.id,
            )

        if token_claims is not None:
            snapshot = token_claims.snapshot()
            session_id, issued = await self._remember(signals, load, snapshot)
            return Resolved(
                claims=snapshot,
                source=ResolutionSource.TOKEN,
                session_id=session_id,
                issued_session_id=session_id if issued else None,
            )

        if (
            load.state is SessionState.ANONYMOUS
            and record is not None
            and record.recovery is not None
        ):
            return await self._recover(record)

        if check is not None and check.reason is not None:
            return Unresolved(check.reason.value)
        if load.state is SessionState.INVALIDATED:
            return Unresolved("session_invalidated")
        if load.state is SessionState.STALE:
            return Unresolved("session_unavailable")
        return Unresolved("no_credentials")

    async def _remember(
        self, signals: RequestSignals, load: SessionLoad, snapshot: IdentitySnapshot
    ) -> tuple[Optional[str], bool]:
        """Copy a token-verified identity into the session's recovery fields.

        Invalidated and unreadable sessions are left alone; a request with no
        session gets a fresh anonymous one when ``signals.start_session`` is set.
        """
        if load.state is SessionState.INVALIDATED or load.state is SessionState.STALE:
            return None, False
        if load.record is None and not signals.start_session:
            return None, False
        try:
            if load.record is None:
                record = await self.sessions.create()
                await self.sessions.preserve_identity(record, snapshot)
                return record.id, True
            await self.sessions.preserve_identity(load.record, snapshot)
            return load.record.id, False
        except TransientStoreError as exc:
            logger.warning("session_preserve_skipped", backend=exc.backend)
            return None, False

    async def _recover(self, record: SessionRecord) -> Resolution:
        try:
            allowed = await self.rate_limit(
                f"recovery:{record.id}", self.recovery_limit_per_minute, RECOVERY_WINDOW_SECONDS
            )
        except TransientStoreError as exc:
            logger.warning("session_recovery_unavailable", backend=exc.backend)
            return Unresolved("session_unavailable")
        if not allowed:
            logger.warning("session_recovery_rate_limited", user_id=record.recovery.id)
            return Unresolved("recovery_rate_limited")
        try:
            user = self.credentials.find_by_id(record.recovery.id)
        except TransientStoreError as exc:
            logger.warning("session_recovery_unavailable", backend=exc.backend)
            return Unresolved("session_unavailable")
        if user is None or user.username != record.recovery.username:
            try:
                await self.sessions.invalidate(record.id)
            except TransientStoreError as exc:
                logger.warning("session_invalidate_deferred", backend=exc.backend)
            return Unresolved("recovery_user_missing")
        snapshot = IdentitySnapshot.from_user(user)
        logger.warning(
            "session_identity_recovered",
            user_id=user.id,
            session=record.id[:8],
        )
        return Resolved(
            claims=snapshot,
            source=ResolutionSource.RECOVERY,
            recovered=True,
            session_id=record.id,
        )

    def _compare_hints(self, signals: RequestSignals, resolved: Resolved) -> None:
        mismatched = []
        if signals.hint_user_id and signals.hint_user_id != str(resolved.claims.id):
            mismatched.append("user_id")
        if signals.hint_username and signals.hint_username != resolved.claims.username:
            mismatched.append("username")
        if mismatched:
            logger.warning(
                "identity_hint_mismatch",
                resolved_user_id=resolved.claims.id,
                source=resolved.source.value,
                fields=mismatched,
            )
