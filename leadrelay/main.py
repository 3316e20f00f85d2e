"""
LeadRelay - outbound message delivery and response caching for the lead CRM.
Main FastAPI application entry point.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from leadrelay.api.router import api_router
from leadrelay.config import get_settings
from leadrelay.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("leadrelay")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    from leadrelay.database import create_tables, dispose_engine, get_session_factory
    from leadrelay.services.container import ServiceContainer
    from leadrelay.utils.redis import close_redis, get_redis

    settings = get_settings()
    logger.info("LeadRelay starting up (env=%s, tier=%s)", settings.app_env, settings.deployment_tier)

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    # Local SQLite runs have no migration step
    if settings.database_url.startswith("sqlite"):
        await create_tables()

    container = ServiceContainer.build(settings, await get_redis(), get_session_factory())
    app.state.container = container

    if settings.workers_enabled:
        container.start_workers()
    else:
        logger.info("Delivery workers disabled (WORKERS_ENABLED=false)")

    yield

    # Graceful shutdown - give in-flight jobs time to finish
    logger.info("LeadRelay shutting down - stopping %d worker pools...", len(container.pools))
    await container.shutdown(timeout=10.0)
    await close_redis()
    await dispose_engine()
    logger.info("LeadRelay shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="LeadRelay",
        description="Outbound message delivery pipeline and response cache",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://localhost:5173",
            settings.app_base_url,
        ],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID", "X-User-Id",
            "If-None-Match", "Accept", "Origin", "X-Requested-With",
        ],
        expose_headers=["ETag", "X-Cache", "X-Correlation-ID"],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    application.include_router(api_router)

    return application


app = create_app()
