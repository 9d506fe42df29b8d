"""Tests for identity token issuing, verification and refresh."""

from datetime import datetime, timedelta, timezone

import pytest

from watchlist.config import get_settings
from watchlist.service.credentials import CredentialStore
from watchlist.service.tokens import TokenFailure, TokenService
from watchlist.storage.memory import MemoryStore

ISSUED_AT = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def credentials(store):
    return CredentialStore(store)


@pytest.fixture
def clock():
    return FakeClock(ISSUED_AT)


@pytest.fixture
def tokens(credentials, clock):
    return TokenService(get_settings(), credentials, clock=clock)


@pytest.fixture
def alice(credentials):
    return credentials.create("alice", "hash", display_name="Alice")


class TestIssueAndVerify:
    def test_round_trip_returns_user_claims(self, tokens, alice):
        issued = tokens.issue(alice)
        claims = tokens.verify(issued.token)

        assert claims is not None
        assert claims.id == alice.id
        assert claims.username == "alice"
        assert claims.display_name == "Alice"
        assert claims.role == "user"
        assert claims.issued_at == ISSUED_AT
        assert claims.expires_at == ISSUED_AT + timedelta(days=7)
        assert issued.expires_at == claims.expires_at

    def test_token_does_not_carry_password_hash(self, tokens, alice):
        issued = tokens.issue(alice)
        payload_segment = issued.token.split(".")[1]
        payload = tokens._decode_segment(payload_segment).decode()
        assert "password" not in payload
        assert "hash" not in payload

    def test_snapshot_drops_token_fields(self, tokens, alice):
        snapshot = tokens.verify(tokens.issue(alice).token).snapshot()
        assert snapshot.id == alice.id
        assert snapshot.username == "alice"
        assert not hasattr(snapshot, "expires_at")


class TestExpiryBoundary:
    """A token is valid while now < exp and rejected from exp onwards."""

    def test_valid_just_before_seven_days(self, tokens, alice, clock):
        issued = tokens.issue(alice)
        clock.advance(days=6, hours=23)
        assert tokens.verify(issued.token) is not None

    def test_valid_one_second_before_expiry(self, tokens, alice, clock):
        issued = tokens.issue(alice)
        clock.advance(days=7, seconds=-1)
        assert tokens.verify(issued.token) is not None

    def test_rejected_at_exact_expiry(self, tokens, alice, clock):
        issued = tokens.issue(alice)
        clock.advance(days=7)
        check = tokens.inspect(issued.token)
        assert check.claims is None
        assert check.reason is TokenFailure.EXPIRED

    def test_rejected_after_expiry(self, tokens, alice, clock):
        issued = tokens.issue(alice)
        clock.advance(days=7, hours=1)
        assert tokens.verify(issued.token) is None

    def test_sub_second_issue_time_is_truncated(self, credentials, alice):
        clock = FakeClock(ISSUED_AT + timedelta(milliseconds=900))
        service = TokenService(get_settings(), credentials, clock=clock)
        issued = service.issue(alice)
        assert issued.expires_at == ISSUED_AT + timedelta(days=7)


class TestRejection:
    def test_any_flipped_character_is_rejected(self, tokens, alice):
        token = tokens.issue(alice).token
        for index, char in enumerate(token):
            if char == ".":
                continue
            replacement = "A" if char != "A" else "B"
            tampered = token[:index] + replacement + token[index + 1:]
            assert tokens.verify(tampered) is None, f"accepted tamper at {index}"

    def test_garbage_is_invalid(self, tokens):
        for value in ["", "not-a-token", "a.b", "a.b.c", "....", None]:
            check = tokens.inspect(value)
            assert check.claims is None
            assert check.reason is TokenFailure.INVALID

    def test_other_secret_is_invalid(self, credentials, alice, clock):
        settings = get_settings().model_copy(update={"jwt_secret": "x" * 48})
        foreign = TokenService(settings, credentials, clock=clock).issue(alice)
        local = TokenService(get_settings(), credentials, clock=clock)
        assert local.inspect(foreign.token).reason is TokenFailure.INVALID

    def test_wrong_issuer_is_invalid(self, credentials, alice, clock):
        settings = get_settings().model_copy(update={"jwt_issuer": "elsewhere"})
        foreign = TokenService(settings, credentials, clock=clock).issue(alice)
        local = TokenService(get_settings(), credentials, clock=clock)
        assert local.verify(foreign.token) is None

    def test_alg_none_is_invalid(self, tokens, alice):
        header = tokens._encode_segment(b'{"alg":"none","typ":"JWT"}')
        _, payload, _ = tokens.issue(alice).token.split(".")
        assert tokens.verify(f"{header}.{payload}.") is None

    def test_expired_and_invalid_are_distinguished(self, tokens, alice, clock):
        expired = tokens.issue(alice)
        clock.advance(days=8)
        assert tokens.inspect(expired.token).reason is TokenFailure.EXPIRED
        assert tokens.inspect(expired.token + "x").reason is TokenFailure.INVALID


class TestRefresh:
    def test_refresh_reads_current_role(self, tokens, alice, store, clock):
        issued = tokens.issue(alice)
        store.update_user_role(alice.id, "admin")
        clock.advance(hours=1)

        refreshed = tokens.refresh(issued.token)

        assert refreshed is not None
        claims = tokens.verify(refreshed.token)
        assert claims.role == "admin"
        assert refreshed.expires_at == ISSUED_AT + timedelta(days=7, hours=1)

    def test_refresh_of_expired_token_fails(self, tokens, alice, clock):
        issued = tokens.issue(alice)
        clock.advance(days=7)
        assert tokens.refresh(issued.token) is None

    def test_refresh_for_deleted_user_fails(self, tokens, alice, store):
        issued = tokens.issue(alice)
        store.users.pop(alice.id)
        assert tokens.refresh(issued.token) is None
