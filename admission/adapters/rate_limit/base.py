"""Rate limiting data model and shared store interface.

The limiter depends on ``AbstractSharedStore`` rather than on Redis directly so
tests (and single-process deployments) can substitute another backend.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from admission.core.errors import ConfigurationAppError, StoreUnavailableAppError


class RateLimitStrategy(str, Enum):
    """Admission algorithms a policy can select."""

    FIXED_WINDOW = "fixed-window"
    SLIDING_WINDOW = "sliding-window"
    TOKEN_BUCKET = "token-bucket"


@dataclass(frozen=True)
class RequestIdentity:
    """Request metadata consumed by key resolvers.

    Attributes:
        path: Target URL path.
        headers: Request headers with lower-cased names.
        client_host: Direct peer address, if known.
        principal: Authenticated principal id, if the auth layer set one.
    """

    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    client_host: str | None = None
    principal: str | None = None


KeyResolver = Callable[[RequestIdentity], str]


@dataclass(frozen=True)
class RateLimitConfig:
    """Immutable admission policy.

    Attributes:
        window_ms: Measurement window in milliseconds.
        max_requests: Requests admitted per window.
        strategy: Admission algorithm.
        burst_limit: Token bucket capacity (defaults to max_requests).
        refill_rate: Token bucket refill in tokens per second
            (defaults to max_requests spread over the window).
        key_resolver: Optional custom resolver; must be pure.

    Raises:
        ConfigurationAppError: On non-positive sizes or an unknown strategy.
    """

    window_ms: int
    max_requests: int
    strategy: RateLimitStrategy = RateLimitStrategy.FIXED_WINDOW
    burst_limit: int | None = None
    refill_rate: float | None = None
    key_resolver: KeyResolver | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        try:
            strategy = RateLimitStrategy(self.strategy)
        except ValueError as exc:
            raise ConfigurationAppError(
                code="invalid_rate_limit_strategy",
                message=f"Unknown rate limit strategy: {self.strategy!r}",
                details={"field": "strategy", "value": str(self.strategy)},
            ) from exc
        object.__setattr__(self, "strategy", strategy)

        _require_positive("window_ms", self.window_ms)
        _require_positive("max_requests", self.max_requests)
        if self.burst_limit is not None:
            _require_positive("burst_limit", self.burst_limit)
        if self.refill_rate is not None:
            _require_positive("refill_rate", self.refill_rate)

    @property
    def window_seconds(self) -> int:
        """Window length rounded up to whole seconds (store TTL granularity)."""
        return max(1, math.ceil(self.window_ms / 1000))

    @property
    def effective_burst_limit(self) -> int:
        return self.burst_limit or self.max_requests

    @property
    def effective_refill_rate(self) -> float:
        """Refill rate in tokens per second."""
        if self.refill_rate is not None:
            return self.refill_rate
        return self.max_requests / (self.window_ms / 1000)

    @property
    def scope(self) -> str:
        """Size fingerprint added to store keys so differently sized policies
        resolving to the same client key keep separate state."""
        parts = [str(self.window_ms), str(self.max_requests)]
        if self.strategy is RateLimitStrategy.TOKEN_BUCKET:
            parts += [str(self.effective_burst_limit), f"{self.effective_refill_rate:g}"]
        return ":".join(parts)


def _require_positive(name: str, value: float) -> None:
    if value <= 0:
        raise ConfigurationAppError(
            code="invalid_rate_limit_config",
            message=f"{name} must be > 0",
            details={"field": name, "value": value},
        )


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a single admission check.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Capacity of the policy (max requests, or burst for buckets).
        remaining: Units left after this call (0 when denied).
        reset_time: Epoch milliseconds when capacity is restored.
        retry_after: Seconds to wait before retrying (denials only).
    """

    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    retry_after: int | None = None


class AbstractSharedStore(ABC):
    """Cross-instance key/value store with per-key TTL.

    Every method may raise ``StoreUnavailableAppError``; callers treat any such
    failure as "shared store unavailable for this request".

    ``increment`` and ``record_hit`` have read-modify-write defaults built on
    ``get``/``set``. Those defaults are NOT atomic: concurrent limiter
    instances hitting the same key can over-admit slightly. Backends with
    native atomic primitives should override them.
    """

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the decoded value for ``key`` or None when absent."""
        raise NotImplementedError

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Store ``value`` under ``key`` expiring after ``ttl_seconds``."""
        raise NotImplementedError

    async def increment(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter and return its new value."""
        current = await self.get(key)
        try:
            new_count = int(current or 0) + 1
        except (TypeError, ValueError) as exc:
            raise _corrupt_value("increment", key) from exc
        await self.set(key, new_count, ttl_seconds)
        return new_count

    async def record_hit(
        self,
        key: str,
        *,
        now_ms: int,
        window_ms: int,
        max_requests: int,
        member: str,
    ) -> int:
        """Prune, count and conditionally record a sliding window hit.

        Entries older than ``now_ms - window_ms`` are dropped. The hit is
        recorded only when fewer than ``max_requests`` entries remain.

        Returns:
            Number of entries in the window before this hit.
        """
        cutoff = now_ms - window_ms
        stored = await self.get(key)
        try:
            entries = [list(entry) for entry in (stored or []) if entry[0] >= cutoff]
        except (IndexError, KeyError, TypeError) as exc:
            raise _corrupt_value("record_hit", key) from exc
        count = len(entries)
        if count < max_requests:
            entries.append([now_ms, member])
            await self.set(key, entries, max(1, math.ceil(window_ms / 1000)))
        return count

    async def close(self) -> None:
        """Release connections held by the store."""


def _corrupt_value(operation: str, key: str) -> StoreUnavailableAppError:
    return StoreUnavailableAppError(
        code="shared_store_corrupt_value",
        message=f"Stored value for {operation} could not be decoded",
        details={"operation": operation, "context": {"key": key}},
    )
