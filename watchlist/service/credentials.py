from __future__ import annotations

from typing import List, Optional, Protocol

from watchlist.logging import get_logger
from watchlist.service.errors import DuplicateUsername
from watchlist.storage.errors import ConstraintViolation
from watchlist.storage.models import User

logger = get_logger(__name__)


class UserStore(Protocol):
    def create_user(
        self,
        username: str,
        password_hash: str,
        display_name: Optional[str] = None,
        *,
        role: str = "user",
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...


class CredentialStore:
    """User lookup and creation on top of the primary store."""

    def __init__(self, store: UserStore) -> None:
        self.store = store

    def find_by_username(self, username: str) -> Optional[User]:
        return self.store.get_user_by_username(username)

    def find_by_id(self, user_id: int) -> Optional[User]:
        return self.store.get_user(user_id)

    def create(
        self,
        username: str,
        password_hash: str,
        display_name: Optional[str] = None,
        role: str = "user",
    ) -> User:
        # Checked up front so the conflict message does not depend on the backend's
        # constraint error; the constraint still catches a concurrent insert.
        if self.store.get_user_by_username(username) is not None:
            raise DuplicateUsername(username)
        try:
            user = self.store.create_user(
                username, password_hash, display_name, role=role
            )
        except ConstraintViolation as exc:
            logger.info("user_create_conflict", username=username, detail=exc.detail)
            raise DuplicateUsername(username) from exc
        logger.info("user_created", user_id=user.id, username=user.username, role=user.role)
        return user

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)
