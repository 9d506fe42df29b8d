from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response

from watchlist.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    MeResponse,
    RegisterRequest,
    TokenResponse,
    UserListResponse,
    UserResponse,
    WatchlistItemCreate,
    WatchlistItemListResponse,
    WatchlistItemResponse,
    WatchlistItemUpdate,
)
from watchlist.config import Settings
from watchlist.logging import bind_identity, get_logger
from watchlist.service.auth import AuthResult
from watchlist.service.errors import NotFoundError, Unauthenticated
from watchlist.service.guard import Denied, authorize, require_admin
from watchlist.service.resolver import RequestSignals, Resolution, Resolved, Unresolved
from watchlist.service.runtime import check_rate_limit, get_runtime
from watchlist.service.sessions import sign_session_id, unsign_session_cookie
from watchlist.storage.models import WatchlistItem

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    decision = await check_rate_limit(runtime, key, limit, window_seconds)
    if not decision.allowed:
        raise _http_error(
            "rate_limited",
            "Too many attempts. Please wait and try again.",
            status_code=429,
            details={"retry_after_seconds": decision.retry_after_seconds},
        )


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def _session_from_cookie(request: Request, settings: Settings) -> Optional[str]:
    return unsign_session_cookie(
        settings.session_secret, request.cookies.get(settings.session_cookie_name)
    )


def _set_session_cookie(response: Response, settings: Settings, session_id: str) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        sign_session_id(settings.session_secret, session_id),
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.session_ttl_minutes * 60,
        path="/",
    )


def _clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


async def _resolve_request(
    request: Request, response: Response, *, start_session: bool
) -> Resolution:
    runtime = get_runtime()
    signals = RequestSignals(
        session_id=_session_from_cookie(request, runtime.settings),
        bearer=_extract_bearer(request.headers.get("Authorization")),
        hint_user_id=request.headers.get("X-User-Id"),
        hint_username=request.headers.get("X-Username"),
        start_session=start_session,
    )
    resolution = await runtime.resolver.resolve(signals)
    if isinstance(resolution, Resolved) and resolution.issued_session_id:
        _set_session_cookie(response, runtime.settings, resolution.issued_session_id)
    return resolution


def _require_resolved(resolution: Resolution) -> Resolved:
    if isinstance(resolution, Unresolved):
        raise Unauthenticated()
    bind_identity(
        resolution.claims.id, resolution.source.value, recovered=resolution.recovered
    )
    return resolution


async def get_identity(request: Request, response: Response) -> Resolved:
    return _require_resolved(await _resolve_request(request, response, start_session=False))


async def get_identity_with_session(request: Request, response: Response) -> Resolved:
    """Like ``get_identity``, but a token-only caller is handed a session cookie.

    Used by ``/auth/me``, the check clients make on startup, so a cookie jar
    picks up a session that can later recover the identity.
    """
    return _require_resolved(await _resolve_request(request, response, start_session=True))


def _auth_payload(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_user(result.user),
        token=result.token.token,
        token_expires_at=result.token.expires_at,
    )


# auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create an account, start a session and return the user with a token.

    Raises:
        400: invalid username/password
        409: username already taken
        429: too many attempts for this username
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{body.username.lower()}",
        runtime.settings.register_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.register(body.username, body.password, body.display_name)
    _set_session_cookie(response, runtime.settings, result.session.id)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Password login. Unknown user and wrong password get the same 401."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.username.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.login(body.username, body.password)
    _set_session_cookie(response, runtime.settings, result.session.id)
    return Envelope(status="ok", data=_auth_payload(result))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(identity: Resolved = Depends(get_identity_with_session)):
    runtime = get_runtime()
    user = runtime.auth.current_user(identity.claims)
    return Envelope(status="ok", data=MeResponse(user=UserResponse.from_user(user)))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(authorization: Optional[str] = Header(None)):
    """Exchange a still-valid bearer token for a new one.

    401 details carry ``reason`` (token_expired / token_invalid) so clients
    can choose between a silent retry and a new sign-in.
    """
    runtime = get_runtime()
    issued = runtime.auth.refresh(_extract_bearer(authorization))
    return Envelope(
        status="ok",
        data=TokenResponse(token=issued.token, token_expires_at=issued.expires_at),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    await runtime.auth.logout(_session_from_cookie(request, runtime.settings))
    _clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data={})


# watchlist


def _owned_item(item_id: int, identity: Resolved, operation: str) -> WatchlistItem:
    runtime = get_runtime()
    item = runtime.store.get_watchlist_item(item_id)
    if item is None:
        raise NotFoundError("Watchlist item not found", detail={"id": item_id})
    decision = authorize(identity, item.user_id, operation)
    if isinstance(decision, Denied):
        raise decision.to_error()
    return item


@router.get("/watchlist/items", response_model=Envelope, tags=["watchlist"])
async def list_watchlist_items(identity: Resolved = Depends(get_identity)):
    runtime = get_runtime()
    items = runtime.store.list_watchlist_items(identity.claims.id)
    return Envelope(
        status="ok",
        data=WatchlistItemListResponse(
            items=[WatchlistItemResponse.from_item(i) for i in items]
        ),
    )


@router.post("/watchlist/items", response_model=Envelope, status_code=201, tags=["watchlist"])
async def create_watchlist_item(
    body: WatchlistItemCreate, identity: Resolved = Depends(get_identity)
):
    runtime = get_runtime()
    item = runtime.store.create_watchlist_item(
        identity.claims.id,
        body.tmdb_id,
        body.title,
        media_type=body.media_type,
        status=body.status,
        platform=body.platform,
        notes=body.notes,
        watched_date=body.watched_date,
    )
    logger.info("watchlist_item_created", user_id=identity.claims.id, item_id=item.id)
    return Envelope(status="ok", data=WatchlistItemResponse.from_item(item))


@router.patch("/watchlist/items/{item_id}", response_model=Envelope, tags=["watchlist"])
async def update_watchlist_item(
    body: WatchlistItemUpdate,
    item_id: int = Path(..., ge=1),
    identity: Resolved = Depends(get_identity),
):
    runtime = get_runtime()
    _owned_item(item_id, identity, "update")
    changes = body.model_dump(exclude_unset=True)
    # title and status are required columns; an explicit null leaves them unchanged
    for required in ("title", "status"):
        if changes.get(required, "") is None:
            changes.pop(required)
    updated = runtime.store.update_watchlist_item(item_id, **changes)
    if updated is None:
        raise NotFoundError("Watchlist item not found", detail={"id": item_id})
    return Envelope(status="ok", data=WatchlistItemResponse.from_item(updated))


@router.delete("/watchlist/items/{item_id}", response_model=Envelope, tags=["watchlist"])
async def delete_watchlist_item(
    item_id: int = Path(..., ge=1), identity: Resolved = Depends(get_identity)
):
    runtime = get_runtime()
    _owned_item(item_id, identity, "delete")
    runtime.store.delete_watchlist_item(item_id)
    logger.info("watchlist_item_deleted", user_id=identity.claims.id, item_id=item_id)
    return Envelope(status="ok", data={"id": item_id, "deleted": True})


# movie metadata


@router.get("/movies/search", response_model=Envelope, tags=["movies"])
async def search_movies(
    query: str = Query(..., min_length=1, max_length=200),
    page: int = Query(1, ge=1, le=500),
    identity: Resolved = Depends(get_identity),
):
    runtime = get_runtime()
    body = await runtime.tmdb.search(query, page=page)
    return Envelope(status="ok", data=body)


@router.get("/movies/{media_type}/{tmdb_id}", response_model=Envelope, tags=["movies"])
async def movie_details(
    media_type: Literal["movie", "tv"],
    tmdb_id: int = Path(..., ge=1),
    identity: Resolved = Depends(get_identity),
):
    runtime = get_runtime()
    body = await runtime.tmdb.details(media_type, tmdb_id)
    return Envelope(status="ok", data=body)


# admin


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500),
    identity: Resolved = Depends(get_identity),
):
    decision = require_admin(identity)
    if isinstance(decision, Denied):
        raise decision.to_error()
    runtime = get_runtime()
    users = runtime.credentials.list_users(limit=limit)
    return Envelope(
        status="ok", data=UserListResponse(items=[UserResponse.from_user(u) for u in users])
    )
