from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """An expected failure that maps onto one HTTP status and envelope code.

    Route handlers let these propagate; ``api.error_handling`` renders them.
    ``message`` is shown to users as-is, so it must never carry internals.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "Invalid request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"
    default_message = "Please sign in again."


class InvalidCredentials(AuthenticationError):
    """Login failed. Unknown usernames and wrong passwords are indistinguishable."""

    default_message = "Incorrect username or password"


class Unauthenticated(AuthenticationError):
    """No verified identity on the request."""


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"
    default_message = "You do not have access to this resource"


class Forbidden(ForbiddenError):
    """Identity is known but does not own the resource."""


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"
    default_message = "Not found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"
    default_message = "Conflict"


class DuplicateUsername(ConflictError):
    def __init__(self, username: str) -> None:
        super().__init__("Username already exists", detail={"field": "username"})
        self.username = username


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"
    default_message = "internal server error"


class UpstreamError(ServerError):
    """The movie metadata service failed or answered with garbage."""

    status_code = 502
    default_message = "Movie search is unavailable"
