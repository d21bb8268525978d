"""
EventRelay - event ingestion and signed webhook delivery.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from eventrelay.config import get_settings
from eventrelay.api.router import api_router
from eventrelay.api.ingest import PUBLIC_CORS_HEADERS, is_public_path
from eventrelay.errors import ConfigurationError, EventRelayError, RateLimitError
from eventrelay.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)
from eventrelay.utils.rate_limiter import rate_limit_headers

logger = logging.getLogger("eventrelay")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


class PublicCorsMiddleware(BaseHTTPMiddleware):
    """
    Permissive CORS for the public ingestion paths, which are called from any
    site. Answers preflights before the dashboard CORS policy sees them.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        if not is_public_path(request.url.path):
            return await call_next(request)
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=PUBLIC_CORS_HEADERS)
        response = await call_next(request)
        response.headers.update(PUBLIC_CORS_HEADERS)
        return response


async def eventrelay_error_handler(request: Request, exc: EventRelayError) -> JSONResponse:
    """Render operational errors as {"error": ...}; 500s add details."""
    message = exc.message
    if isinstance(exc, ConfigurationError):
        message = exc.public_message

    content = {"error": message}
    if exc.status_code >= 500 or exc.status_code == 400:
        if exc.details is not None:
            content["details"] = exc.details

    headers = None
    if isinstance(exc, RateLimitError) and exc.result is not None:
        headers = rate_limit_headers(exc.result)

    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "details": exc.errors()},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("EventRelay starting up (env=%s)", settings.app_env)

    # Security warnings
    if not settings.encryption_key:
        logger.warning(
            "ENCRYPTION_KEY not set - signing secrets will be stored unencrypted. "
            "Generate a Fernet key for production."
        )
    if not settings.internal_api_key:
        logger.warning("INTERNAL_API_KEY not set - internal and management routes will reject all calls.")

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

    worker_tasks: list[asyncio.Task] = []

    from eventrelay.workers.rate_limit_sweeper import run_rate_limit_sweeper
    worker_tasks.append(asyncio.create_task(run_rate_limit_sweeper()))
    logger.info("Rate limit sweeper started")

    if settings.webhook_worker_enabled:
        from eventrelay.workers.webhook_worker import run_webhook_worker
        from eventrelay.workers.delivery_cleanup import run_delivery_cleanup
        worker_tasks.append(asyncio.create_task(run_webhook_worker()))
        worker_tasks.append(asyncio.create_task(run_delivery_cleanup()))
        logger.info("Webhook worker and delivery cleanup started")
    else:
        logger.info("Webhook workers disabled (WEBHOOK_WORKER_ENABLED=false)")

    yield

    # Graceful shutdown - give workers time to finish current work
    logger.info("EventRelay shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        # Wait up to 10 seconds for workers to finish
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    from eventrelay.services.enrichment import get_enrichment_dispatcher
    from eventrelay.utils.redis_client import close_redis
    from eventrelay.database import dispose_engine
    await get_enrichment_dispatcher().drain(timeout=10.0)
    await close_redis()
    await dispose_engine()
    logger.info("EventRelay shutdown complete - all %d workers stopped", len(worker_tasks))


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="EventRelay",
        description="Event ingestion and signed webhook delivery",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS - management routes; public ingestion paths are handled by PublicCorsMiddleware
    extra_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://localhost:5173",
            settings.app_base_url,
            *extra_origins,
        ],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID",
            "X-Internal-Key", "X-Tenant-ID", "Accept", "Origin",
        ],
    )
    application.add_middleware(PublicCorsMiddleware)

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    application.add_exception_handler(EventRelayError, eventrelay_error_handler)
    application.add_exception_handler(RequestValidationError, request_validation_handler)

    # Include all routes
    application.include_router(api_router)

    return application


app = create_app()
