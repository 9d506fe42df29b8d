from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from watchlist.logging import get_logger
from watchlist.service.errors import Forbidden, ServiceError, Unauthenticated
from watchlist.service.resolver import Resolution, Resolved, Unresolved
from watchlist.storage.models import IdentitySnapshot

logger = get_logger(__name__)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Allowed:
    claims: IdentitySnapshot
    as_admin: bool = False


@dataclass(frozen=True)
class Denied:
    reason: str
    status: int

    def to_error(self) -> ServiceError:
        if self.status == 401:
            return Unauthenticated()
        return Forbidden()


Decision = Union[Allowed, Denied]
Subject = Union[Resolution, IdentitySnapshot, None]


def _claims_of(subject: Subject) -> Optional[IdentitySnapshot]:
    if isinstance(subject, Resolved):
        return subject.claims
    if isinstance(subject, Unresolved) or subject is None:
        return None
    return subject


def authorize(
    subject: Subject,
    owner_id: Optional[int],
    operation: str,
    *,
    admin_scoped: bool = False,
) -> Decision:
    """Decide whether an identity may perform ``operation`` on a resource owned by ``owner_id``.

    No identity is 401. A known identity that does not own the resource is 403,
    unless it is an admin acting on an admin-scoped route.
    """
    claims = _claims_of(subject)
    if claims is None:
        return Denied("unauthenticated", 401)
    if owner_id is not None and claims.id == owner_id:
        return Allowed(claims)
    if admin_scoped and claims.role == ADMIN_ROLE:
        logger.info(
            "admin_access_granted",
            user_id=claims.id,
            owner_id=owner_id,
            operation=operation,
        )
        return Allowed(claims, as_admin=True)
    logger.warning(
        "access_denied",
        user_id=claims.id,
        owner_id=owner_id,
        operation=operation,
    )
    return Denied("not_owner", 403)


def require_admin(subject: Subject) -> Decision:
    claims = _claims_of(subject)
    if claims is None:
        return Denied("unauthenticated", 401)
    if claims.role != ADMIN_ROLE:
        logger.warning("admin_required", user_id=claims.id, role=claims.role)
        return Denied("admin_required", 403)
    return Allowed(claims, as_admin=True)
