from __future__ import annotations

from fastapi import APIRouter, Request

from admission.core.rate_limit import get_rate_limiter

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check(request: Request) -> dict:
    """Health check endpoint.

    The service stays "ok" while Redis is down: admission keeps working on
    the fallback store, which the ``rate_limit`` block reports as degraded.

    Returns:
        dict: ``status`` plus limiter counters and shared store health.
    """

    return {"status": "ok", "rate_limit": get_rate_limiter(request).stats()}
