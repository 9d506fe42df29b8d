from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from watchlist.config import Settings
from watchlist.logging import get_logger
from watchlist.service.credentials import CredentialStore
from watchlist.service.errors import InvalidCredentials, Unauthenticated
from watchlist.service.sessions import SessionManager
from watchlist.service.tokens import IssuedToken, TokenFailure, TokenService
from watchlist.storage.errors import TransientStoreError
from watchlist.storage.models import IdentitySnapshot, SessionRecord, User


@dataclass
class AuthResult:
    user: User
    token: IssuedToken
    session: SessionRecord


class AuthService:
    """Registration, password login, logout and token refresh.

    Every account goes through the same password check; nothing about the
    username changes how it is verified.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        tokens: TokenService,
        sessions: SessionManager,
        settings: Settings,
    ) -> None:
        self.credentials = credentials
        self.tokens = tokens
        self.sessions = sessions
        self.settings = settings
        self.logger = get_logger(__name__)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # verified against for unknown usernames so both failure paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("watchlist-unknown-user")

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: Optional[User], password: str) -> bool:
        if user is None:
            try:
                self._pwd_hasher.verify(self._dummy_hash, password)
            except VerificationError:
                pass
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user.id)
            return False

    async def _start_session(self, user: User) -> SessionRecord:
        return await self.sessions.create(IdentitySnapshot.from_user(user))

    async def register(
        self, username: str, password: str, display_name: Optional[str] = None
    ) -> AuthResult:
        user = self.credentials.create(
            username, self.hash_password(password), display_name=display_name
        )
        session = await self._start_session(user)
        return AuthResult(user=user, token=self.tokens.issue(user), session=session)

    async def login(self, username: str, password: str) -> AuthResult:
        user = self.credentials.find_by_username(username)
        if not self.verify_password(user, password):
            self.logger.info("login_failed", username=username)
            raise InvalidCredentials()
        session = await self._start_session(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return AuthResult(user=user, token=self.tokens.issue(user), session=session)

    async def logout(self, session_id: Optional[str]) -> None:
        """Invalidate the session if there is one. Never fails the caller."""
        if not session_id:
            self.logger.info("logout_without_session")
            return
        try:
            await self.sessions.invalidate(session_id)
        except TransientStoreError as exc:
            # the cookie is cleared regardless; the record ages out with its TTL
            self.logger.warning("logout_invalidate_failed", backend=exc.backend)

    def current_user(self, claims: IdentitySnapshot) -> User:
        user = self.credentials.find_by_id(claims.id)
        if user is None or user.username != claims.username:
            self.logger.info("current_user_missing", user_id=claims.id)
            raise Unauthenticated()
        return user

    def refresh(self, token: Optional[str]) -> IssuedToken:
        check = self.tokens.inspect(token)
        if not check.ok:
            reason = (check.reason or TokenFailure.INVALID).value
            raise Unauthenticated(detail={"reason": reason})
        issued = self.tokens.refresh(token)
        if issued is None:
            raise Unauthenticated(detail={"reason": TokenFailure.INVALID.value})
        return issued
