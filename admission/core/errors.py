"""Application-level exception types.

Admission decisions themselves are never errors: a denied request is a normal
``RateLimitResult``. The types below cover the two real failure families,
invalid policies (fatal at load time) and shared store outages (recovered by
the limiter through the fallback store).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    code: str
    message: str
    hint: str
    field: str
    value: Any
    policy: str
    store: str
    operation: str
    retry_after: int
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ConfigurationAppError(AppError):
    """Raised when a rate limit policy or setting is invalid."""


class StoreUnavailableAppError(AppError):
    """Raised by shared store adapters on any I/O or serialization failure."""
