"""Application factory for the admission control service.

Centralizes app construction (limiter, lifespan, middleware, handlers,
routers) so tests can build isolated apps with their own limiter state.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from admission.adapters.rate_limit.in_memory import FallbackSweeper
from admission.api.routes import health_router, policies_router
from admission.core.config import settings
from admission.core.exception_handlers import setup_exception_handlers
from admission.core.logging import configure_logging
from admission.core.middleware import request_id_middleware
from admission.core.openapi import apply_openapi_customizations
from admission.core.rate_limit import build_rate_limiter, rate_limit_middleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Run the fallback sweeper for the app's lifetime and close Redis after."""

    limiter = app.state.rate_limiter
    sweeper = FallbackSweeper(
        limiter.fallback_store,
        interval_seconds=settings.rate_limit.sweep_interval_seconds,
        clock=limiter.clock,
    )
    app.state.fallback_sweeper = sweeper
    sweeper.start()
    try:
        yield
    finally:
        await sweeper.stop()
        await app.state.rate_limiter.close()
        logger.info("app.shutdown")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with limiter, middleware, handlers and routers.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Admission Control API",
        description=(
            "Request admission control: fixed window, sliding window and token "
            "bucket rate limiting shared across instances through Redis, with "
            "per-process enforcement while Redis is unreachable."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    # No I/O happens here; Redis connects lazily on the first decision.
    app.state.rate_limiter = build_rate_limiter(settings)

    # Last registered runs first: request_id wraps rate limiting so 429s are correlated.
    app.middleware("http")(rate_limit_middleware)
    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(policies_router, prefix="/v1")
    app.include_router(health_router)

    apply_openapi_customizations(app)

    return app
