from __future__ import annotations

import asyncio
import inspect
import json
import os
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Set, Union

import httpx

from watchlist.logging import get_logger

logger = get_logger(__name__)

REAUTH_MESSAGE = "Please sign in again."
SIGNED_OUT_MESSAGE = "You have been signed out."

DEFAULT_TIMEOUT_SECONDS = 15.0
MAX_RETRIES = 2

# 401s from these are answers about credentials, not about a live session
_CREDENTIAL_PATHS = frozenset({"/api/auth/login", "/api/auth/register", "/api/auth/refresh"})

ReauthCallback = Callable[[str], Union[None, Awaitable[None]]]


class ClientError(Exception):
    """A request the server answered with a non-success envelope."""

    def __init__(
        self,
        status_code: int,
        message: str,
        *,
        code: Optional[str] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code
        self.details = details


class SessionEnded(ClientError):
    """The server no longer recognises this client; local identity has been cleared."""

    def __init__(self) -> None:
        super().__init__(401, REAUTH_MESSAGE, code="unauthorized")


@dataclass
class Identity:
    user: dict
    token: Optional[str] = None


class TokenFile:
    """Fallback copy of the identity on disk, readable only by the owner."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def load(self) -> Optional[Identity]:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("identity_file_unreadable", path=str(self.path), error=str(exc))
            return None
        if not isinstance(data, dict) or not isinstance(data.get("user"), dict):
            logger.warning("identity_file_malformed", path=str(self.path))
            return None
        return Identity(user=data["user"], token=data.get("token"))

    def save(self, identity: Identity) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            os.write(fd, json.dumps(asdict(identity)).encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.replace(tmp_path, self.path)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class IdentityProvider:
    """The client's current identity.

    The in-memory copy is authoritative. The optional file copy is written
    alongside it and read back only by an explicit ``recover()``.
    """

    def __init__(self, fallback: Optional[TokenFile] = None) -> None:
        self.fallback = fallback
        self._current: Optional[Identity] = None
        self._recovery_logged = False

    @property
    def current(self) -> Optional[Identity]:
        return self._current

    @property
    def token(self) -> Optional[str]:
        return self._current.token if self._current else None

    def set(self, identity: Identity) -> None:
        self._current = identity
        if self.fallback is not None:
            self.fallback.save(identity)

    def update_user(self, user: dict) -> None:
        if self._current is None:
            self.set(Identity(user=user))
        else:
            self.set(Identity(user=user, token=self._current.token))

    def drop_token(self) -> None:
        if self._current is not None:
            self.set(Identity(user=self._current.user))

    def clear(self) -> None:
        self._current = None
        if self.fallback is not None:
            self.fallback.clear()

    def recover(self) -> Optional[Identity]:
        if self._current is not None or self.fallback is None:
            return self._current
        restored = self.fallback.load()
        if restored is not None:
            self._current = restored
            if not self._recovery_logged:
                logger.info("client_identity_recovered", user_id=restored.user.get("id"))
                self._recovery_logged = True
        return restored


def _error_from(response: httpx.Response) -> ClientError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        error = {}
    return ClientError(
        response.status_code,
        error.get("message") or "Request failed",
        code=error.get("code"),
        details=error.get("details"),
    )


def _data(response: httpx.Response) -> Any:
    return response.json().get("data")


class SessionMonitor:
    """HTTP client that keeps the local identity in step with the server.

    A 401 on an ordinary request triggers one ``/api/auth/me`` check. If that
    fails too, the identity is cleared and ``on_reauth`` is told to send the
    user back to sign-in. Network errors and 5xx are retried up to twice with
    exponential backoff; other statuses are returned as-is.
    """

    def __init__(
        self,
        base_url: str,
        provider: IdentityProvider,
        *,
        on_reauth: ReauthCallback,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = MAX_RETRIES,
        backoff_scale: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.on_reauth = on_reauth
        self.max_retries = min(max_retries, MAX_RETRIES)
        self.backoff_scale = backoff_scale
        self._sleep = sleep
        self._pending: Set[asyncio.Task] = set()
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def _backoff_seconds(self, attempt: int) -> float:
        return min(1000 * 2 ** attempt, 10000) * self.backoff_scale / 1000.0

    def _headers(self) -> dict[str, str]:
        token = self.provider.token
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        attempt = 0
        while True:
            try:
                response = await self._client.request(
                    method, path, headers=self._headers(), **kwargs
                )
            except httpx.TransportError as exc:
                if attempt >= self.max_retries:
                    logger.warning(
                        "client_request_failed",
                        path=path,
                        attempts=attempt + 1,
                        error_type=type(exc).__name__,
                    )
                    raise
                logger.info(
                    "client_request_retry",
                    path=path,
                    attempt=attempt + 1,
                    error_type=type(exc).__name__,
                )
            else:
                if response.status_code < 500 or attempt >= self.max_retries:
                    return response
                logger.info(
                    "client_request_retry",
                    path=path,
                    attempt=attempt + 1,
                    status_code=response.status_code,
                )
            await self._sleep(self._backoff_seconds(attempt))
            attempt += 1

    async def _track(self, coro: Awaitable[Any]) -> Any:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return await task

    async def _notify_reauth(self, message: str) -> None:
        result = self.on_reauth(message)
        if inspect.isawaitable(result):
            await result

    async def _end_session(self) -> None:
        self.provider.clear()
        self._client.cookies.clear()
        logger.info("client_session_ended")
        await self._notify_reauth(REAUTH_MESSAGE)

    async def _reverify(self) -> bool:
        response = await self._send("GET", "/api/auth/me")
        if response.status_code != 200:
            return False
        self.provider.update_user(_data(response)["user"])
        return True

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = await self._send(method, path, **kwargs)
        if response.status_code != 401 or path in _CREDENTIAL_PATHS:
            return response
        if not await self._track(self._reverify()):
            await self._end_session()
            raise SessionEnded()
        # the session is still good; replay once without another recheck
        return await self._send(method, path, **kwargs)

    async def _auth_call(self, path: str, payload: dict) -> dict:
        response = await self.request("POST", path, json=payload)
        if response.status_code not in (200, 201):
            raise _error_from(response)
        data = _data(response)
        self.provider.set(Identity(user=data["user"], token=data["token"]))
        return data["user"]

    async def login(self, username: str, password: str) -> dict:
        return await self._auth_call(
            "/api/auth/login", {"username": username, "password": password}
        )

    async def register(
        self, username: str, password: str, display_name: Optional[str] = None
    ) -> dict:
        payload: dict[str, Any] = {"username": username, "password": password}
        if display_name is not None:
            payload["display_name"] = display_name
        return await self._auth_call("/api/auth/register", payload)

    async def whoami(self) -> Optional[dict]:
        """Ask the server who we are; None (after reauth) if it no longer knows."""
        try:
            response = await self._track(self.request("GET", "/api/auth/me"))
        except SessionEnded:
            return None
        if response.status_code != 200:
            raise _error_from(response)
        user = _data(response)["user"]
        self.provider.update_user(user)
        return user

    async def refresh_token(self) -> bool:
        """Swap the current token for a fresh one.

        An expired token is dropped and the cookie session is left to carry on;
        an invalid one ends the session.
        """
        if not self.provider.token:
            return False
        response = await self.request("POST", "/api/auth/refresh")
        if response.status_code == 200:
            current = self.provider.current
            self.provider.set(Identity(user=current.user, token=_data(response)["token"]))
            return True
        error = _error_from(response)
        reason = (error.details or {}).get("reason") if isinstance(error.details, dict) else None
        if reason == "token_expired":
            self.provider.drop_token()
            return False
        if response.status_code == 401:
            await self._end_session()
            return False
        raise error

    async def logout(self) -> None:
        """Sign out locally and on the server. Local state is cleared whatever the server says."""
        self.provider.clear()
        try:
            await self._client.post("/api/auth/logout")
        except httpx.HTTPError as exc:
            logger.info("client_logout_unreachable", error_type=type(exc).__name__)
        self._client.cookies.clear()
        await self._notify_reauth(SIGNED_OUT_MESSAGE)

    def cancel_pending(self) -> int:
        pending = [task for task in self._pending if not task.done()]
        for task in pending:
            task.cancel()
        return len(pending)

    async def aclose(self) -> None:
        self.cancel_pending()
        await self._client.aclose()
