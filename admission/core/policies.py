"""Named rate limit policies.

Other subsystems bind to these names; the values are part of the public
contract and must not drift.
"""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType

from admission.adapters.rate_limit.base import RateLimitConfig, RateLimitStrategy
from admission.core.errors import ConfigurationAppError

MINUTE_MS = 60 * 1000

POLICIES: Mapping[str, RateLimitConfig] = MappingProxyType(
    {
        "STRICT": RateLimitConfig(
            window_ms=15 * MINUTE_MS,
            max_requests=100,
            strategy=RateLimitStrategy.SLIDING_WINDOW,
        ),
        "MODERATE": RateLimitConfig(
            window_ms=15 * MINUTE_MS,
            max_requests=500,
            strategy=RateLimitStrategy.FIXED_WINDOW,
        ),
        "GENEROUS": RateLimitConfig(
            window_ms=15 * MINUTE_MS,
            max_requests=1000,
            strategy=RateLimitStrategy.TOKEN_BUCKET,
            burst_limit=50,
            refill_rate=10,
        ),
        "AUTH": RateLimitConfig(
            window_ms=15 * MINUTE_MS,
            max_requests=5,
            strategy=RateLimitStrategy.FIXED_WINDOW,
        ),
        "UPLOAD": RateLimitConfig(
            window_ms=60 * MINUTE_MS,
            max_requests=10,
            strategy=RateLimitStrategy.TOKEN_BUCKET,
            burst_limit=3,
            refill_rate=0.003,  # ~10 per hour
        ),
    }
)


def get_policy(name: str) -> RateLimitConfig:
    """Look up a policy by name.

    Raises:
        ConfigurationAppError: If no policy has that name.
    """
    try:
        return POLICIES[name]
    except KeyError as exc:
        raise ConfigurationAppError(
            code="unknown_rate_limit_policy",
            message=f"Unknown rate limit policy: {name!r}",
            details={"policy": name, "hint": f"Known policies: {', '.join(POLICIES)}"},
        ) from exc


def select_policy_name(path: str, default: str = "MODERATE") -> str:
    """Pick the policy guarding a request path.

    Authentication endpoints get the tightest budget, uploads a slow bucket,
    and the rest of the JSON API the sliding window.
    """
    if "/auth/" in path:
        return "AUTH"
    if "/upload" in path or "/documents" in path:
        return "UPLOAD"
    if path.startswith("/api/"):
        return "STRICT"
    return default
