"""Rate limiting wiring for the HTTP layer.

This module builds the limiter from settings and exposes the middleware that
consumes ``RateLimiter.check_limit``:
- Denied requests are answered with 429 and Retry-After / X-RateLimit-*.
- Allowed requests continue and carry the same X-RateLimit-* headers.
- Paths are mapped to named policies; excluded paths are never limited.
"""

from __future__ import annotations

import logging

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse

from admission.adapters.rate_limit.base import RateLimitResult
from admission.adapters.rate_limit.in_memory import InMemoryFallbackStore
from admission.adapters.rate_limit.redis_store import RedisSharedStore
from admission.core.config import Settings, settings
from admission.core.logging import get_request_id
from admission.core.policies import get_policy, select_policy_name
from admission.services.key_resolver import hash_limiter_key, identity_from_request
from admission.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# Used when a denial carries no retry hint.
DEFAULT_RETRY_AFTER_SECONDS = 60


def build_rate_limiter(cfg: Settings | None = None) -> RateLimiter:
    """Construct the application's limiter from settings.

    Validates the default policy name up front so a typo fails at startup
    rather than on the first request.

    Args:
        cfg: Settings to use; defaults to the global settings.

    Returns:
        RateLimiter: Limiter with a Redis shared store (unless backend=memory)
            and a fresh fallback store.

    Raises:
        ConfigurationAppError: If the default policy does not exist.
    """

    cfg = cfg or settings
    get_policy(cfg.rate_limit.default_policy)

    shared_store = None
    if cfg.rate_limit.backend == "redis":
        shared_store = RedisSharedStore.from_url(
            cfg.redis.url,
            prefix=cfg.redis.key_prefix,
            socket_timeout_seconds=cfg.redis.socket_timeout_seconds,
            max_connections=cfg.redis.max_connections,
        )

    logger.info(
        "rate_limit.configured",
        extra={
            "backend": cfg.rate_limit.backend,
            "default_policy": cfg.rate_limit.default_policy,
            "store_timeout_s": cfg.rate_limit.store_timeout_seconds,
        },
    )

    return RateLimiter(
        shared_store=shared_store,
        fallback_store=InMemoryFallbackStore(),
        store_timeout_seconds=cfg.rate_limit.store_timeout_seconds,
        retry_shared_after_seconds=cfg.rate_limit.retry_shared_after_seconds,
    )


def get_rate_limiter(request: Request) -> RateLimiter:
    """Return the limiter owned by the running application."""

    return request.app.state.rate_limiter


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Informational headers for a decision; Retry-After only on denial."""

    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_time),
    }
    if not result.allowed:
        headers["Retry-After"] = str(result.retry_after or DEFAULT_RETRY_AFTER_SECONDS)
    return headers


def is_excluded_path(path: str) -> bool:
    """Whether a path is exempt from rate limiting (exact or sub-path match)."""
    return any(
        path == excluded or path.startswith(excluded.rstrip("/") + "/")
        for excluded in settings.rate_limit.excluded_paths
    )


async def rate_limit_middleware(request: Request, call_next) -> Response:
    """HTTP middleware enforcing the policy selected for each path.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: 429 when the request is denied, otherwise the downstream
            response with X-RateLimit-* headers attached.
    """

    path = request.url.path
    if not settings.rate_limit.enabled or is_excluded_path(path):
        return await call_next(request)

    policy_name = select_policy_name(path, settings.rate_limit.default_policy)
    config = get_policy(policy_name)
    identity = identity_from_request(request)
    limiter = get_rate_limiter(request)

    key = limiter.resolve_key(identity, config)
    result = await limiter.check_limit(identity, config, key=key)
    key_hash = hash_limiter_key(key)
    headers = rate_limit_headers(result) if settings.rate_limit.include_headers else {}

    if not result.allowed:
        retry_after = result.retry_after or DEFAULT_RETRY_AFTER_SECONDS
        logger.warning(
            "rate_limit.exceeded",
            extra={
                "policy": policy_name,
                "strategy": config.strategy.value,
                "key_hash": key_hash,
                "limit": result.limit,
                "retry_after_s": retry_after,
            },
        )
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "error": {
                    "code": "rate_limit_exceeded",
                    "message": "Rate limit exceeded. Try again later.",
                    "request_id": get_request_id(),
                    "details": {"policy": policy_name, "retry_after": retry_after},
                }
            },
            headers=headers or None,
        )

    logger.debug(
        "rate_limit.allowed",
        extra={
            "policy": policy_name,
            "key_hash": key_hash,
            "limit": result.limit,
            "remaining": result.remaining,
        },
    )

    response = await call_next(request)
    for name, value in headers.items():
        response.headers[name] = value
    return response
