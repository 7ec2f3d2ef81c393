"""Admission algorithms: fixed window, sliding window and token bucket.

Each strategy exposes the same algorithm twice, once against the shared store
(async, fallible) and once against the process-local fallback store (sync,
infallible). The arithmetic lives in small pure helpers so both paths make
identical decisions for identical state.

Cross-instance accuracy is best-effort:
- Fixed window relies on the store's ``increment`` (atomic on Redis).
- Sliding window relies on the store's ``record_hit`` (atomic on Redis).
- Token bucket is a read-modify-write on ``get``/``set``; concurrent instances
  racing on one key may over-admit by a few requests.
"""

from __future__ import annotations

import math
import uuid
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from admission.adapters.rate_limit.base import (
    AbstractSharedStore,
    RateLimitConfig,
    RateLimitResult,
    RateLimitStrategy,
)
from admission.adapters.rate_limit.in_memory import InMemoryFallbackStore
from admission.core.errors import ConfigurationAppError, StoreUnavailableAppError


def _retry_after_seconds(until_ms: float, now_ms: float) -> int:
    return max(1, math.ceil((until_ms - now_ms) / 1000))


def _allowed(limit: int, remaining: int, reset_time: float) -> RateLimitResult:
    return RateLimitResult(
        allowed=True,
        limit=limit,
        remaining=max(0, min(limit, remaining)),
        reset_time=math.ceil(reset_time),
    )


def _denied(limit: int, reset_time: float, retry_after: int) -> RateLimitResult:
    return RateLimitResult(
        allowed=False,
        limit=limit,
        remaining=0,
        reset_time=math.ceil(reset_time),
        retry_after=retry_after,
    )


class BaseStrategy(ABC):
    """One admission algorithm, runnable against either store."""

    name: RateLimitStrategy

    @abstractmethod
    async def apply_shared(
        self,
        store: AbstractSharedStore,
        key: str,
        config: RateLimitConfig,
        now_ms: int,
    ) -> RateLimitResult:
        """Decide using the shared store.

        Raises:
            StoreUnavailableAppError: If the store fails.
        """
        raise NotImplementedError

    @abstractmethod
    def apply_local(
        self,
        store: InMemoryFallbackStore,
        key: str,
        config: RateLimitConfig,
        now_ms: int,
    ) -> RateLimitResult:
        """Decide using the process-local fallback store."""
        raise NotImplementedError


class FixedWindowStrategy(BaseStrategy):
    """Counter per ``(key, window_start)``.

    Up to ``2 * max_requests`` calls can be admitted around a window boundary
    (the end of one window plus the start of the next). That is inherent to
    fixed windows and kept as is.
    """

    name = RateLimitStrategy.FIXED_WINDOW

    @staticmethod
    def window_start(config: RateLimitConfig, now_ms: int) -> int:
        return (now_ms // config.window_ms) * config.window_ms

    @staticmethod
    def evaluate(
        config: RateLimitConfig,
        window_start: int,
        count_before: int,
        now_ms: int,
    ) -> RateLimitResult:
        """Decide given the number of calls already counted in this window."""
        reset_time = window_start + config.window_ms
        if count_before >= config.max_requests:
            return _denied(
                config.max_requests,
                reset_time,
                _retry_after_seconds(reset_time, now_ms),
            )
        return _allowed(config.max_requests, config.max_requests - (count_before + 1), reset_time)

    async def apply_shared(
        self,
        store: AbstractSharedStore,
        key: str,
        config: RateLimitConfig,
        now_ms: int,
    ) -> RateLimitResult:
        window_start = self.window_start(config, now_ms)
        # Denied calls still bump the counter; the count is already past the limit.
        new_count = await store.increment(f"{key}:{window_start}", config.window_seconds)
        return self.evaluate(config, window_start, new_count - 1, now_ms)

    def apply_local(
        self,
        store: InMemoryFallbackStore,
        key: str,
        config: RateLimitConfig,
        now_ms: int,
    ) -> RateLimitResult:
        window_start = self.window_start(config, now_ms)
        reset_time = window_start + config.window_ms

        def update(count: int | None) -> tuple[RateLimitResult, int | None, float]:
            count_before = count or 0
            result = self.evaluate(config, window_start, count_before, now_ms)
            if not result.allowed:
                return result, None, reset_time
            return result, count_before + 1, reset_time

        return store.transact(f"{key}:{window_start}", now_ms, update)


class SlidingWindowStrategy(BaseStrategy):
    """Timestamps of admitted calls within the trailing window."""

    name = RateLimitStrategy.SLIDING_WINDOW

    @staticmethod
    def evaluate(config: RateLimitConfig, count: int, now_ms: int) -> RateLimitResult:
        reset_time = now_ms + config.window_ms
        if count >= config.max_requests:
            # Conservative: the exact wait is oldest_entry + window - now.
            return _denied(config.max_requests, reset_time, config.window_seconds)
        return _allowed(config.max_requests, config.max_requests - count - 1, reset_time)

    async def apply_shared(
        self,
        store: AbstractSharedStore,
        key: str,
        config: RateLimitConfig,
        now_ms: int,
    ) -> RateLimitResult:
        count = await store.record_hit(
            f"sliding:{key}",
            now_ms=now_ms,
            window_ms=config.window_ms,
            max_requests=config.max_requests,
            member=f"{now_ms}-{uuid.uuid4().hex}",
        )
        return self.evaluate(config, count, now_ms)

    def apply_local(
        self,
        store: InMemoryFallbackStore,
        key: str,
        config: RateLimitConfig,
        now_ms: int,
    ) -> RateLimitResult:
        cutoff = now_ms - config.window_ms

        def update(
            entries: deque[int] | None,
        ) -> tuple[RateLimitResult, deque[int] | None, float]:
            entries = entries if entries is not None else deque()
            while entries and entries[0] < cutoff:
                entries.popleft()

            result = self.evaluate(config, len(entries), now_ms)
            if result.allowed:
                entries.append(now_ms)
            if not entries:
                return result, None, now_ms
            return result, entries, entries[-1] + config.window_ms

        return store.transact(f"sliding:{key}", now_ms, update)


@dataclass(frozen=True)
class TokenBucketState:
    """Stored bucket: whole tokens left and the time refill was last credited."""

    tokens: float
    last_refill: float

    def as_dict(self) -> dict[str, float]:
        return {"tokens": self.tokens, "last_refill": self.last_refill}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> TokenBucketState:
        return cls(tokens=float(data["tokens"]), last_refill=float(data["last_refill"]))


class TokenBucketStrategy(BaseStrategy):
    """Bursts up to ``burst_limit``; sustained rate bounded by ``refill_rate``."""

    name = RateLimitStrategy.TOKEN_BUCKET

    @staticmethod
    def take(
        config: RateLimitConfig,
        state: TokenBucketState | None,
        now_ms: int,
    ) -> tuple[RateLimitResult, TokenBucketState | None]:
        """Refill, then try to take one token.

        Returns:
            The decision and the state to persist (None when denied, since a
            denial changes nothing that cannot be recomputed).
        """
        burst = config.effective_burst_limit
        rate = config.effective_refill_rate
        ms_per_token = 1000 / rate

        if state is None:
            tokens = float(burst)
            last_refill = float(now_ms)
        else:
            elapsed_ms = max(0.0, now_ms - state.last_refill)
            tokens_to_add = math.floor(elapsed_ms / 1000 * rate)
            tokens = max(0.0, state.tokens) + tokens_to_add
            if tokens >= burst:
                # A full bucket accrues nothing, so the refill clock restarts now.
                tokens = float(burst)
                last_refill = float(now_ms)
            else:
                # Advance only by whole tokens credited so fractional progress carries over.
                last_refill = state.last_refill + tokens_to_add * ms_per_token

        if tokens < 1:
            next_refill = last_refill + ms_per_token
            return (
                _denied(burst, max(next_refill, now_ms), _retry_after_seconds(next_refill, now_ms)),
                None,
            )

        tokens -= 1
        full_at = last_refill + (burst - tokens) * ms_per_token
        result = _allowed(burst, math.floor(tokens), max(full_at, now_ms))
        return result, TokenBucketState(tokens=tokens, last_refill=last_refill)

    async def apply_shared(
        self,
        store: AbstractSharedStore,
        key: str,
        config: RateLimitConfig,
        now_ms: int,
    ) -> RateLimitResult:
        bucket_key = f"bucket:{key}"
        raw = await store.get(bucket_key)
        try:
            state = TokenBucketState.from_mapping(raw) if raw is not None else None
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreUnavailableAppError(
                code="shared_store_corrupt_value",
                message="Stored token bucket could not be decoded",
                details={"operation": "get", "context": {"key": bucket_key}},
            ) from exc

        result, new_state = self.take(config, state, now_ms)
        if new_state is not None:
            ttl_seconds = max(1, math.ceil((result.reset_time - now_ms) / 1000))
            await store.set(bucket_key, new_state.as_dict(), ttl_seconds)
        return result

    def apply_local(
        self,
        store: InMemoryFallbackStore,
        key: str,
        config: RateLimitConfig,
        now_ms: int,
    ) -> RateLimitResult:
        def update(
            state: TokenBucketState | None,
        ) -> tuple[RateLimitResult, TokenBucketState | None, float]:
            result, new_state = self.take(config, state, now_ms)
            # Once full again, a missing bucket behaves exactly like a stored one.
            return result, new_state, result.reset_time

        return store.transact(f"bucket:{key}", now_ms, update)


STRATEGIES: Mapping[RateLimitStrategy, BaseStrategy] = {
    strategy.name: strategy
    for strategy in (FixedWindowStrategy(), SlidingWindowStrategy(), TokenBucketStrategy())
}


def get_strategy(name: RateLimitStrategy | str) -> BaseStrategy:
    """Return the implementation for a strategy name.

    Raises:
        ConfigurationAppError: If the name is unknown.
    """
    try:
        return STRATEGIES[RateLimitStrategy(name)]
    except (KeyError, ValueError) as exc:
        raise ConfigurationAppError(
            code="invalid_rate_limit_strategy",
            message=f"Unknown rate limit strategy: {name!r}",
            details={"field": "strategy", "value": str(name)},
        ) from exc
