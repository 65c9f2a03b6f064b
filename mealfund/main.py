"""
FastAPI application factory.
Run with: uvicorn mealfund.main:app
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from mealfund.api.errors import register_exception_handlers
from mealfund.api.router import api_router
from mealfund.config import settings
from mealfund.observability.logging import clear_request_context, setup_logging

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    # Startup
    setup_logging()

    # Sentry init if configured
    if settings.SENTRY_DSN:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            integrations=[FastApiIntegration()],
            traces_sample_rate=0.1,
        )

    if settings.LEDGER_BACKEND == "sql":
        from mealfund.models.database import init_db
        await init_db()

    logger.info(
        "app_started",
        version=settings.APP_VERSION,
        ledger_backend=settings.LEDGER_BACKEND,
        settlement_rail="http" if settings.SETTLEMENT_RAIL_URL else "stub",
        ai_advisor=settings.AI_ADVISOR_ENABLED and bool(settings.AI_API_KEY),
    )

    yield

    # Shutdown
    if settings.LEDGER_BACKEND == "sql":
        from mealfund.models.database import close_db
        await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Meal Fund Escrow",
        description="Per-delivery escrow, receipt verification, disputes and school urgency scoring.",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS.split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_log_context(request: Request, call_next):
        clear_request_context()
        try:
            return await call_next(request)
        finally:
            clear_request_context()

    # Prometheus metrics endpoint
    if settings.PROMETHEUS_ENABLED:
        from prometheus_client import make_asgi_app
        metrics_app = make_asgi_app()
        app.mount("/metrics", metrics_app)

    register_exception_handlers(app)
    app.include_router(api_router)

    return app


# Application instance
app = create_app()
