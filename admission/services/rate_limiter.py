"""Limiter facade: key resolution, strategy dispatch and store fallback.

``RateLimiter.check_limit`` always returns a ``RateLimitResult``. Shared store
failures and timeouts are absorbed here by re-running the same algorithm
against the process-local fallback store, so a Redis outage degrades limits to
per-instance enforcement instead of failing requests.

Each call touches exactly one store: a call that reached a decision on the
shared store never also counts against the fallback store.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable

from admission.adapters.rate_limit.base import (
    AbstractSharedStore,
    KeyResolver,
    RateLimitConfig,
    RateLimitResult,
    RequestIdentity,
)
from admission.adapters.rate_limit.in_memory import InMemoryFallbackStore
from admission.core.errors import AppError
from admission.services.key_resolver import default_key_resolver, hash_limiter_key
from admission.services.strategies import get_strategy

logger = logging.getLogger(__name__)


def epoch_ms() -> int:
    """Current UNIX time in whole milliseconds."""
    return int(time.time() * 1000)


def _failure_code(exc: Exception) -> str:
    if isinstance(exc, AppError):
        return exc.code
    if isinstance(exc, asyncio.TimeoutError):
        return "timeout"
    return "unexpected_store_error"


class RateLimiter:
    """Decides admission for requests against named policies.

    All mutable state (stores, health tracking, counters) is owned by the
    instance, so tests and applications construct their own limiter rather
    than sharing module globals.
    """

    def __init__(
        self,
        *,
        shared_store: AbstractSharedStore | None,
        fallback_store: InMemoryFallbackStore | None = None,
        key_resolver: KeyResolver = default_key_resolver,
        clock: Callable[[], int] = epoch_ms,
        store_timeout_seconds: float = 0.25,
        retry_shared_after_seconds: float = 5.0,
    ) -> None:
        """Initialize the limiter.

        Args:
            shared_store: Cross-instance store, or None to always decide locally.
            fallback_store: Process-local store used when the shared store fails.
            key_resolver: Resolver used when a policy does not bring its own.
            clock: Time source returning epoch milliseconds.
            store_timeout_seconds: Upper bound on one shared store decision.
            retry_shared_after_seconds: After a failure, how long to decide
                locally before trying the shared store again.

        Raises:
            ValueError: If a timeout or cooldown is invalid.
        """
        if store_timeout_seconds <= 0:
            raise ValueError("store_timeout_seconds must be > 0")
        if retry_shared_after_seconds < 0:
            raise ValueError("retry_shared_after_seconds must be >= 0")

        self._shared_store = shared_store
        self._fallback_store = fallback_store if fallback_store is not None else InMemoryFallbackStore()
        self._key_resolver = key_resolver
        self._clock = clock
        self._store_timeout = store_timeout_seconds
        self._retry_shared_after_ms = retry_shared_after_seconds * 1000

        self._lock = threading.Lock()
        self._shared_retry_at: float | None = None
        self._shared_decisions = 0
        self._fallback_decisions = 0
        self._shared_failures = 0

    @property
    def fallback_store(self) -> InMemoryFallbackStore:
        return self._fallback_store

    @property
    def clock(self) -> Callable[[], int]:
        return self._clock

    def shared_store_available(self, now_ms: float | None = None) -> bool:
        """Whether the next decision will try the shared store."""
        if self._shared_store is None:
            return False
        with self._lock:
            if self._shared_retry_at is None:
                return True
            return (now_ms if now_ms is not None else self._clock()) >= self._shared_retry_at

    def resolve_key(self, identity: RequestIdentity, config: RateLimitConfig) -> str:
        """Return the limiter key for a request under a policy."""
        resolver = config.key_resolver or self._key_resolver
        return resolver(identity)

    async def check_limit(
        self,
        identity: RequestIdentity,
        config: RateLimitConfig,
        *,
        key: str | None = None,
    ) -> RateLimitResult:
        """Decide whether a request may proceed under ``config``.

        Args:
            identity: Request metadata used to derive the limiter key.
            config: Policy to enforce.
            key: Limiter key already resolved for this request; resolved
                from ``identity`` when omitted.

        Returns:
            RateLimitResult describing the decision. Never raises for store
            failures.
        """
        if key is None:
            key = self.resolve_key(identity, config)
        # Policies sized differently never share stored state for one client.
        store_key = f"{key}:{config.scope}"
        strategy = get_strategy(config.strategy)
        now = self._clock()

        if self.shared_store_available(now):
            try:
                result = await asyncio.wait_for(
                    strategy.apply_shared(self._shared_store, store_key, config, now),
                    timeout=self._store_timeout,
                )
            except Exception as exc:
                # Untyped adapter errors count as an outage too.
                self._record_shared_failure(now, exc, key)
            else:
                self._record_shared_success()
                return result

        result = strategy.apply_local(self._fallback_store, store_key, config, now)
        with self._lock:
            self._fallback_decisions += 1
        return result

    def _record_shared_failure(self, now_ms: float, exc: Exception, key: str) -> None:
        with self._lock:
            self._shared_failures += 1
            first_failure = self._shared_retry_at is None
            self._shared_retry_at = now_ms + self._retry_shared_after_ms

        if first_failure:
            logger.warning(
                "rate_limit.shared_store_unavailable",
                extra={
                    "error_type": type(exc).__name__,
                    "error_code": _failure_code(exc),
                    "key_hash": hash_limiter_key(key),
                    "retry_after_ms": self._retry_shared_after_ms,
                },
            )

    def _record_shared_success(self) -> None:
        with self._lock:
            self._shared_decisions += 1
            recovered = self._shared_retry_at is not None
            self._shared_retry_at = None

        if recovered:
            logger.info("rate_limit.shared_store_recovered")

    def stats(self) -> dict[str, int | bool]:
        """Return decision counters and store health without exposing keys."""
        with self._lock:
            degraded = self._shared_retry_at is not None
            return {
                "shared_store_configured": self._shared_store is not None,
                "shared_store_degraded": degraded,
                "shared_decisions": self._shared_decisions,
                "fallback_decisions": self._fallback_decisions,
                "shared_failures": self._shared_failures,
                "fallback_entries": len(self._fallback_store),
            }

    async def close(self) -> None:
        """Release the shared store's connections."""
        if self._shared_store is not None:
            await self._shared_store.close()
