"""Pytest configuration and fixtures shared across all test modules.

Environment variables are set before any ``admission`` import so the settings
singleton is built for tests: no Redis, and logs at WARNING.
"""

import asyncio
import os
from typing import Any

import pytest

# CRITICAL: Set these before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from admission.adapters.rate_limit.base import AbstractSharedStore, RequestIdentity  # noqa: E402
from admission.adapters.rate_limit.in_memory import InMemoryFallbackStore  # noqa: E402
from admission.core.errors import StoreUnavailableAppError  # noqa: E402


class FakeClock:
    """Deterministic epoch-millisecond clock."""

    def __init__(self, start: int = 0) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class InMemorySharedStore(AbstractSharedStore):
    """Shared store double: a dict with TTLs driven by a FakeClock.

    Only ``get``/``set`` are implemented, so strategies exercise the default
    read-modify-write ``increment`` and ``record_hit``.
    """

    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self.data: dict[str, tuple[Any, int]] = {}
        self.calls: list[str] = []

    async def get(self, key: str) -> Any | None:
        self.calls.append(f"get:{key}")
        item = self.data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if self._clock() >= expires_at:
            del self.data[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        self.calls.append(f"set:{key}")
        self.data[key] = (value, self._clock() + ttl_seconds * 1000)


class FailingSharedStore(AbstractSharedStore):
    """Shared store double whose every call fails like an unreachable Redis."""

    def __init__(self) -> None:
        self.attempts = 0

    def _fail(self, operation: str) -> None:
        self.attempts += 1
        raise StoreUnavailableAppError(
            code="shared_store_unavailable",
            message=f"Redis {operation} failed: ConnectionError",
            details={"store": "test", "operation": operation},
        )

    async def get(self, key: str) -> Any | None:
        self._fail("get")

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._fail("set")

    async def increment(self, key: str, ttl_seconds: int) -> int:
        self._fail("increment")
        return 0

    async def record_hit(self, key: str, **kwargs: Any) -> int:
        self._fail("record_hit")
        return 0


class HangingSharedStore(InMemorySharedStore):
    """Shared store double that never answers in time."""

    async def get(self, key: str) -> Any | None:
        await asyncio.sleep(10)
        return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(start=1_700_000_000_000)


@pytest.fixture
def fallback_store() -> InMemoryFallbackStore:
    return InMemoryFallbackStore()


@pytest.fixture
def shared_store(clock: FakeClock) -> InMemorySharedStore:
    return InMemorySharedStore(clock)


@pytest.fixture
def identity() -> RequestIdentity:
    return RequestIdentity(
        path="/api/v1/portfolios",
        headers={"x-forwarded-for": "203.0.113.7, 10.0.0.1"},
        client_host="10.0.0.1",
    )
