"""Pydantic schemas for the policy registry endpoints."""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field

from admission.adapters.rate_limit.base import RateLimitConfig


class PolicyResponse(BaseModel):
    """A named rate limit policy as exposed to clients."""

    name: str = Field(..., description="Registry name other subsystems bind to.")
    window_ms: int = Field(..., description="Measurement window in milliseconds.")
    max_requests: int = Field(..., description="Requests admitted per window.")
    strategy: str = Field(
        ..., description="'fixed-window', 'sliding-window' or 'token-bucket'."
    )
    burst_limit: int | None = Field(
        default=None, description="Token bucket capacity (token-bucket only)."
    )
    refill_rate: float | None = Field(
        default=None, description="Token refill rate in tokens per second."
    )

    @classmethod
    def from_config(cls, name: str, config: RateLimitConfig) -> "PolicyResponse":
        return cls(
            name=name,
            window_ms=config.window_ms,
            max_requests=config.max_requests,
            strategy=config.strategy.value,
            burst_limit=config.burst_limit,
            refill_rate=config.refill_rate,
        )


class PolicyListResponse(BaseModel):
    """All registered policies."""

    policies: List[PolicyResponse] = Field(default_factory=list)
