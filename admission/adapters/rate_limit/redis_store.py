"""Redis-backed shared store for rate limit state.

Values are JSON encoded. Counters and sliding windows use Redis primitives
(INCR inside MULTI, and a Lua script over a sorted set) so those updates are
atomic across limiter instances. Every failure is reported as
``StoreUnavailableAppError`` and never retried here; the limiter decides what
to do next.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError

from admission.adapters.rate_limit.base import AbstractSharedStore
from admission.core.errors import StoreUnavailableAppError


# KEYS[1] sorted set; ARGV: now_ms, cutoff_ms, max_requests, member, ttl_ms.
# Scores strictly below the cutoff are pruned; the hit is added only if allowed.
SLIDING_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local max_requests = tonumber(ARGV[3])

    redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. ARGV[2])
    local count = redis.call('ZCARD', key)

    if count < max_requests then
        redis.call('ZADD', key, now, ARGV[4])
        redis.call('PEXPIRE', key, tonumber(ARGV[5]))
    end

    return count
"""


@contextmanager
def _store_errors(operation: str, key: str) -> Iterator[None]:
    """Translate Redis, socket and codec failures into StoreUnavailableAppError."""
    try:
        yield
    except (RedisError, OSError, TypeError, ValueError) as exc:
        raise StoreUnavailableAppError(
            code="shared_store_unavailable",
            message=f"Redis {operation} failed: {type(exc).__name__}",
            details={"store": "redis", "operation": operation, "context": {"key": key}},
        ) from exc


class RedisSharedStore(AbstractSharedStore):
    """Shared store backed by an async Redis client."""

    def __init__(self, client: redis.Redis, *, prefix: str = "ratelimit:") -> None:
        """Initialize the store.

        Args:
            client: Async Redis client. It must be created with
                ``decode_responses=True``.
            prefix: Prefix for all keys (e.g., "ratelimit:").
        """
        self._client = client
        self.prefix = prefix

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        prefix: str = "ratelimit:",
        socket_timeout_seconds: float = 0.25,
        max_connections: int = 50,
    ) -> RedisSharedStore:
        """Build a store with its own connection pool.

        No connection is opened until the first command.
        """
        pool = ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            decode_responses=True,
            socket_timeout=socket_timeout_seconds,
            socket_connect_timeout=socket_timeout_seconds,
        )
        return cls(redis.Redis(connection_pool=pool), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}" if self.prefix else key

    async def get(self, key: str) -> Any | None:
        full_key = self._key(key)
        with _store_errors("get", full_key):
            raw = await self._client.get(full_key)
            if raw is None:
                return None
            return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        full_key = self._key(key)
        with _store_errors("set", full_key):
            await self._client.set(full_key, json.dumps(value), ex=max(1, int(ttl_seconds)))

    async def increment(self, key: str, ttl_seconds: int) -> int:
        full_key = self._key(key)
        with _store_errors("increment", full_key):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.incr(full_key)
                pipe.expire(full_key, max(1, int(ttl_seconds)))
                results = await pipe.execute()
            return int(results[0])

    async def record_hit(
        self,
        key: str,
        *,
        now_ms: int,
        window_ms: int,
        max_requests: int,
        member: str,
    ) -> int:
        full_key = self._key(key)
        with _store_errors("record_hit", full_key):
            count = await self._client.eval(
                SLIDING_WINDOW_SCRIPT,
                1,
                full_key,
                int(now_ms),
                int(now_ms - window_ms),
                int(max_requests),
                member,
                int(window_ms),
            )
            return int(count)

    async def close(self) -> None:
        await self._client.aclose(close_connection_pool=True)
