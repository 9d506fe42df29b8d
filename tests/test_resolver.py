"""Tests for turning request signals into a single identity."""

from datetime import datetime, timedelta, timezone

import pytest

from watchlist.config import get_settings
from watchlist.service.credentials import CredentialStore
from watchlist.service.resolver import (
    AuthenticationResolver,
    RequestSignals,
    ResolutionSource,
    Resolved,
    Unresolved,
)
from watchlist.service.sessions import SessionManager, SessionState, StoreSessionBackend
from watchlist.service.tokens import TokenService
from watchlist.storage.errors import TransientStoreError
from watchlist.storage.memory import MemoryStore
from watchlist.storage.models import IdentitySnapshot

START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class CountingLimiter:
    """Allows ``limit`` calls per key, then refuses."""

    def __init__(self, limit: int = 100):
        self.limit = limit
        self.calls = {}

    async def __call__(self, key: str, limit: int, window_seconds: int) -> bool:
        self.calls[key] = self.calls.get(key, 0) + 1
        return self.calls[key] <= self.limit


class DownBackend(StoreSessionBackend):
    async def get_session_blob(self, session_id):
        raise TransientStoreError("timeout", backend="fake")


async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def credentials(store):
    return CredentialStore(store)


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def tokens(credentials, clock):
    return TokenService(get_settings(), credentials, clock=clock)


@pytest.fixture
def sessions(store, credentials, clock):
    return SessionManager(
        StoreSessionBackend(store), credentials, get_settings(), clock=clock, sleep=_no_sleep
    )


@pytest.fixture
def limiter():
    return CountingLimiter()


@pytest.fixture
def resolver(tokens, sessions, credentials, limiter):
    return AuthenticationResolver(
        tokens, sessions, credentials, rate_limit=limiter, recovery_limit_per_minute=5
    )


@pytest.fixture
def alice(credentials):
    return credentials.create("alice", "hash")


@pytest.fixture
def bob(credentials):
    return credentials.create("bob", "hash")


class TestPrecedence:
    async def test_no_signals_is_unresolved(self, resolver):
        result = await resolver.resolve(RequestSignals())
        assert result == Unresolved("no_credentials")

    async def test_authenticated_session_resolves(self, resolver, sessions, alice):
        record = await sessions.create(IdentitySnapshot.from_user(alice))
        result = await resolver.resolve(RequestSignals(session_id=record.id))

        assert isinstance(result, Resolved)
        assert result.source is ResolutionSource.SESSION
        assert result.claims.id == alice.id
        assert result.session_id == record.id
        assert result.issued_session_id is None

    async def test_session_wins_over_conflicting_token(
        self, resolver, sessions, tokens, alice, bob
    ):
        record = await sessions.create(IdentitySnapshot.from_user(alice))
        signals = RequestSignals(session_id=record.id, bearer=tokens.issue(bob).token)

        first = await resolver.resolve(signals)
        second = await resolver.resolve(signals)

        assert first.claims.id == alice.id
        assert second.claims.id == alice.id
        assert first.source is ResolutionSource.SESSION

    async def test_token_alone_resolves_and_issues_session(
        self, resolver, sessions, tokens, alice
    ):
        result = await resolver.resolve(
            RequestSignals(bearer=tokens.issue(alice).token, start_session=True)
        )

        assert isinstance(result, Resolved)
        assert result.source is ResolutionSource.TOKEN
        assert result.claims.username == "alice"
        assert result.issued_session_id is not None
        load = await sessions.load(result.issued_session_id)
        assert load.state is SessionState.ANONYMOUS
        assert load.record.recovery.id == alice.id

    async def test_token_alone_does_not_store_a_session_by_default(
        self, resolver, store, tokens, alice
    ):
        token = tokens.issue(alice).token
        for _ in range(5):
            result = await resolver.resolve(RequestSignals(bearer=token))
            assert result.source is ResolutionSource.TOKEN
            assert result.session_id is None
            assert result.issued_session_id is None
        assert store.session_kv == {}

    async def test_token_preserved_into_existing_anonymous_session(
        self, resolver, sessions, tokens, alice
    ):
        record = await sessions.create()
        result = await resolver.resolve(
            RequestSignals(session_id=record.id, bearer=tokens.issue(alice).token)
        )

        assert result.source is ResolutionSource.TOKEN
        assert result.session_id == record.id
        assert result.issued_session_id is None
        assert (await sessions.load(record.id)).record.recovery.id == alice.id

    async def test_expired_token_reports_reason(self, resolver, tokens, clock, alice):
        token = tokens.issue(alice).token
        clock.advance(days=8)
        assert await resolver.resolve(RequestSignals(bearer=token)) == Unresolved("token_expired")

    async def test_bad_token_reports_reason(self, resolver):
        result = await resolver.resolve(RequestSignals(bearer="nope"))
        assert result == Unresolved("token_invalid")


class TestRecovery:
    async def test_cookie_only_request_recovers_identity(self, resolver, tokens, alice):
        first = await resolver.resolve(
            RequestSignals(bearer=tokens.issue(alice).token, start_session=True)
        )
        result = await resolver.resolve(RequestSignals(session_id=first.issued_session_id))

        assert isinstance(result, Resolved)
        assert result.source is ResolutionSource.RECOVERY
        assert result.recovered is True
        assert result.claims.id == alice.id

    async def test_recovery_is_rate_limited(self, tokens, sessions, credentials, alice):
        limiter = CountingLimiter(limit=1)
        resolver = AuthenticationResolver(
            tokens, sessions, credentials, rate_limit=limiter, recovery_limit_per_minute=1
        )
        first = await resolver.resolve(
            RequestSignals(bearer=tokens.issue(alice).token, start_session=True)
        )
        cookie_only = RequestSignals(session_id=first.issued_session_id)

        assert isinstance(await resolver.resolve(cookie_only), Resolved)
        assert await resolver.resolve(cookie_only) == Unresolved("recovery_rate_limited")
        assert limiter.calls == {f"recovery:{first.issued_session_id}": 2}

    async def test_unreachable_rate_limiter_refuses_recovery(
        self, tokens, sessions, credentials, alice
    ):
        async def down_limiter(key, limit, window_seconds):
            raise TransientStoreError("redis down", backend="redis")

        resolver = AuthenticationResolver(
            tokens, sessions, credentials, rate_limit=down_limiter, recovery_limit_per_minute=5
        )
        first = await resolver.resolve(
            RequestSignals(bearer=tokens.issue(alice).token, start_session=True)
        )

        result = await resolver.resolve(RequestSignals(session_id=first.issued_session_id))

        assert result == Unresolved("session_unavailable")
        load = await sessions.load(first.issued_session_id)
        assert load.record.recovery.id == alice.id

    async def test_recovery_for_deleted_user_invalidates_session(
        self, resolver, sessions, tokens, store, alice
    ):
        first = await resolver.resolve(
            RequestSignals(bearer=tokens.issue(alice).token, start_session=True)
        )
        store.users.pop(alice.id)

        result = await resolver.resolve(RequestSignals(session_id=first.issued_session_id))

        assert result == Unresolved("recovery_user_missing")
        load = await sessions.load(first.issued_session_id)
        assert load.state is SessionState.INVALIDATED

    async def test_invalidated_session_is_not_reused_for_token(
        self, resolver, sessions, tokens, alice
    ):
        record = await sessions.create(IdentitySnapshot.from_user(alice))
        await sessions.invalidate(record.id)

        cookie_only = await resolver.resolve(RequestSignals(session_id=record.id))
        with_token = await resolver.resolve(
            RequestSignals(session_id=record.id, bearer=tokens.issue(alice).token)
        )

        assert cookie_only == Unresolved("session_invalidated")
        assert with_token.source is ResolutionSource.TOKEN
        assert with_token.session_id is None
        assert (await sessions.load(record.id)).state is SessionState.INVALIDATED


class TestActiveSessionRecheck:
    async def test_demotion_applies_while_requests_keep_arriving(
        self, resolver, sessions, store, clock, alice
    ):
        admin = store.update_user_role(alice.id, "admin")
        record = await sessions.create(IdentitySnapshot.from_user(admin))
        store.update_user_role(alice.id, "user")

        roles = []
        for _ in range(6):
            clock.advance(minutes=4)
            result = await resolver.resolve(RequestSignals(session_id=record.id))
            roles.append(result.claims.role)

        assert roles[0] == "admin"
        assert roles[-1] == "user"

    async def test_deleted_user_loses_active_session(
        self, resolver, sessions, store, clock, alice
    ):
        record = await sessions.create(IdentitySnapshot.from_user(alice))
        store.users.pop(alice.id)

        results = []
        for _ in range(3):
            clock.advance(minutes=4)
            results.append(await resolver.resolve(RequestSignals(session_id=record.id)))

        assert isinstance(results[0], Resolved)
        assert results[-1] == Unresolved("session_invalidated")


class TestUnavailableStore:
    async def test_unreachable_session_store_is_not_a_logout(
        self, store, credentials, tokens, limiter, alice
    ):
        sessions = SessionManager(
            DownBackend(store), credentials, get_settings(), sleep=_no_sleep
        )
        resolver = AuthenticationResolver(
            tokens, sessions, credentials, rate_limit=limiter, recovery_limit_per_minute=5
        )

        cookie_only = await resolver.resolve(RequestSignals(session_id="abc"))
        with_token = await resolver.resolve(
            RequestSignals(session_id="abc", bearer=tokens.issue(alice).token)
        )

        assert cookie_only == Unresolved("session_unavailable")
        assert isinstance(with_token, Resolved)
        assert with_token.source is ResolutionSource.TOKEN
        assert with_token.issued_session_id is None


class TestIdentityHints:
    async def test_hints_alone_never_authenticate(self, resolver, alice):
        result = await resolver.resolve(
            RequestSignals(hint_user_id=str(alice.id), hint_username="alice")
        )
        assert result == Unresolved("no_credentials")

    async def test_mismatched_hints_do_not_change_identity(
        self, resolver, sessions, alice, bob
    ):
        record = await sessions.create(IdentitySnapshot.from_user(alice))
        result = await resolver.resolve(
            RequestSignals(session_id=record.id, hint_user_id=str(bob.id), hint_username="bob")
        )
        assert result.claims.id == alice.id
