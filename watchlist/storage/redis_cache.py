from __future__ import annotations

import contextlib
import hashlib
import time
from typing import Any, Dict, Iterator, NamedTuple, Optional, Sequence

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from watchlist.storage.errors import TransientStoreError

_SESSION_PREFIX = "watchlist:session:"

# KEYS[1] bucket; ARGV now, tokens per second, capacity. Replies {allowed, tokens, retry_after}.
_TOKEN_BUCKET_SCRIPT = """
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])

local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local tokens = tonumber(state[1]) or capacity
local last = tonumber(state[2]) or now
tokens = math.min(capacity, tokens + math.max(0, now - last) * rate)

local allowed = 0
local retry_after = 0
if tokens >= 1 then
  tokens = tokens - 1
  allowed = 1
else
  retry_after = math.ceil((1 - tokens) / rate)
end

redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'ts', tostring(now))
redis.call('EXPIRE', KEYS[1], math.max(1, math.ceil(capacity / rate)))
return {allowed, math.floor(tokens), retry_after}
"""


class RateDecision(NamedTuple):
    allowed: bool
    remaining: int
    retry_after_seconds: int

    @classmethod
    def from_reply(cls, reply: Sequence[Any]) -> "RateDecision":
        allowed, remaining, retry_after = reply
        return cls(bool(int(allowed)), max(0, int(remaining)), int(retry_after or 0))


def _session_key(session_id: str) -> str:
    return f"{_SESSION_PREFIX}{session_id}"


def _bucket_call(key: str, limit: int, window_seconds: int) -> Dict[str, list]:
    # subjects are hashed so usernames cannot inject key delimiters
    bucket = f"rate:{hashlib.sha256(key.encode()).hexdigest()}"
    return {"keys": [bucket], "args": [time.time(), limit / window_seconds, limit]}


@contextlib.contextmanager
def _transient_errors() -> Iterator[None]:
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        raise TransientStoreError(str(exc), backend="redis") from exc


class RedisCache:
    """Redis-backed session blobs and rate limits."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Ping with a short-lived sync client so the async one stays unbound until first use."""
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    async def put_session_blob(self, session_id: str, blob: str, ttl_seconds: int) -> None:
        with _transient_errors():
            await self.client.set(_session_key(session_id), blob, ex=max(1, ttl_seconds))

    async def get_session_blob(self, session_id: str) -> Optional[str]:
        with _transient_errors():
            return await self.client.get(_session_key(session_id))

    async def delete_session_blob(self, session_id: str) -> None:
        with _transient_errors():
            await self.client.delete(_session_key(session_id))

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> RateDecision:
        with _transient_errors():
            reply = await self._token_bucket(**_bucket_call(key, limit, window_seconds))
        return RateDecision.from_reply(reply)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Same surface as RedisCache over a synchronous client.

    Used in tests so the connection is not bound to a per-test event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def put_session_blob(self, session_id: str, blob: str, ttl_seconds: int) -> None:
        with _transient_errors():
            self.client.set(_session_key(session_id), blob, ex=max(1, ttl_seconds))

    async def get_session_blob(self, session_id: str) -> Optional[str]:
        with _transient_errors():
            return self.client.get(_session_key(session_id))

    async def delete_session_blob(self, session_id: str) -> None:
        with _transient_errors():
            self.client.delete(_session_key(session_id))

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> RateDecision:
        with _transient_errors():
            reply = self._token_bucket(**_bucket_call(key, limit, window_seconds))
        return RateDecision.from_reply(reply)

    async def close(self) -> None:
        self.client.close()
