from __future__ import annotations

import asyncio
import math
import threading
import time
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from watchlist.config import get_settings, reset_settings_cache
from watchlist.logging import get_logger
from watchlist.service.auth import AuthService
from watchlist.service.credentials import CredentialStore
from watchlist.service.resolver import AuthenticationResolver
from watchlist.service.sessions import SessionManager, StoreSessionBackend
from watchlist.service.tmdb import TMDBClient
from watchlist.service.tokens import TokenService
from watchlist.storage.memory import MemoryStore
from watchlist.storage.postgres import PostgresStore
from watchlist.storage.redis_cache import RateDecision, RedisCache, SyncRedisCache

logger = get_logger(__name__)


class LocalBuckets:
    """Per-process token buckets, used when no Redis is configured."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = asyncio.Lock()

    async def take(self, key: str, limit: int, window_seconds: int) -> RateDecision:
        rate = limit / window_seconds
        async with self._lock:
            now = self._clock()
            tokens, last = self._buckets.get(key, (float(limit), now))
            tokens = min(float(limit), tokens + max(0.0, now - last) * rate)
            allowed = tokens >= 1
            if allowed:
                tokens -= 1
            self._buckets[key] = (tokens, now)
        retry_after = 0 if allowed else math.ceil((1 - tokens) / rate)
        return RateDecision(allowed, int(tokens), retry_after)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode so the connection is not tied to one event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None
            if self.cache is None and not (
                self.settings.test_mode or self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "REDIS_URL is set but Redis is unreachable; start Redis, unset REDIS_URL, "
                    "or set ALLOW_REDIS_FALLBACK_DEV=true to keep sessions in the primary store."
                ) from redis_error

        if self.cache is None:
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    "Sessions are kept in the primary store's session table and rate limits "
                    "are per-process."
                ),
            )

        self.session_backend = self.cache or StoreSessionBackend(self.store)
        self.credentials = CredentialStore(self.store)
        self.tokens = TokenService(self.settings, self.credentials)
        self.sessions = SessionManager(self.session_backend, self.credentials, self.settings)
        self.auth = AuthService(self.credentials, self.tokens, self.sessions, self.settings)
        self.resolver = AuthenticationResolver(
            self.tokens,
            self.sessions,
            self.credentials,
            rate_limit=self.rate_limit,
            recovery_limit_per_minute=self.settings.recovery_rate_limit_per_minute,
        )
        self.tmdb = TMDBClient(
            self.settings.tmdb_base_url,
            self.settings.tmdb_api_key,
            timeout=self.settings.tmdb_timeout_seconds,
        )
        self.local_buckets = LocalBuckets()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            session_backend=type(self.session_backend).__name__,
            tmdb_configured=self.tmdb.is_configured,
        )

    async def rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        return (await check_rate_limit(self, key, limit, window_seconds)).allowed

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int
) -> RateDecision:
    """Take one token from ``key``'s bucket: ``limit`` tokens refilled over ``window_seconds``.

    Buckets live in Redis when configured, otherwise in this process. A
    non-positive limit disables the check.
    """
    if limit <= 0:
        return RateDecision(True, 0, 0)
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache is not None:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds)
    return await runtime.local_buckets.take(key, limit, window_seconds)
