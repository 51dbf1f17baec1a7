"""
Main Application - FastAPI application setup.
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from argon2 import PasswordHasher
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from ava_api.api.auth_routes import router as auth_router
from ava_api.api.rate_limit import limiter, rate_limit_exceeded_handler
from ava_api.api.status_routes import router as status_router
from ava_api.api.subscription_routes import router as subscription_router
from ava_api.api.webhook_routes import router as webhook_router
from ava_api.config import settings
from ava_api.db.migration_runner import run_migrations
from ava_api.db.session import Database
from ava_api.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from ava_api.observability.tracing import instrument_fastapi, instrument_sqlalchemy
from ava_api.services.auth_cleanup import AuthCleanupService
from ava_api.services.stripe_provider import StripeProvider
from ava_api.services.token_codec import TokenCodec
from ava_api.services.token_revocation import RevocationCache

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Builds the process-wide collaborators on app.state, starts the auth
    sweep, and tears everything down on shutdown.
    """
    # Startup
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        environment=settings.environment,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )
    for warning in settings.configuration_warnings():
        logger.warning("optional_integration_disabled", detail=warning)

    database = Database.from_settings(settings)
    instrument_sqlalchemy(database.engine)
    if settings.run_migrations_on_startup:
        await run_migrations(database, settings.database_url)
    revocation_cache = RevocationCache()

    app.state.database = database
    app.state.token_codec = TokenCodec.from_settings(settings)
    app.state.password_hasher = PasswordHasher()
    app.state.revocation_cache = revocation_cache
    app.state.payment_provider = (
        StripeProvider.from_settings(settings) if settings.stripe_enabled else None
    )

    cleanup = AuthCleanupService.from_settings(database, revocation_cache, settings)
    app.state.auth_cleanup = cleanup
    if settings.sweep_enabled:
        cleanup.start()

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await cleanup.stop()
    await database.dispose()
    logger.info("database_engine_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Reject malformed input with 400 and field-level detail."""
    errors = exc.errors()

    # Sanitize errors for JSON serialization (ctx may contain non-serializable objects)
    sanitized_errors = []
    for error in errors:
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    # Request bodies carry passwords; only field locations are logged
    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        fields=[".".join(str(part) for part in e.get("loc", ())) for e in errors],
    )
    return JSONResponse(
        status_code=400,
        content={"detail": sanitized_errors},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort: log with traceback, answer with a generic 500."""
    metrics.record_error(type(exc).__name__, "http_request")
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=exc,
    )
    content: dict[str, str] = {"detail": "Internal server error"}
    if not settings.is_production:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# Setup tracing
setup_tracing()
instrument_fastapi(app)

# Rate limiting sits inside CORS so 429 answers still carry CORS headers
app.add_middleware(SlowAPIMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.perf_counter()
    request_id = request.headers.get("X-Request-ID") or str(uuid4())
    method = request.method

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=request.url.path)
        metrics.http_requests_in_progress.labels(endpoint=request.url.path, method=method).inc()

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            metrics.record_http_request(_endpoint_label(request), method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")
            logger.error(
                "request_failed",
                method=method,
                path=request.url.path,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise
        finally:
            metrics.http_requests_in_progress.labels(
                endpoint=request.url.path, method=method
            ).dec()

        duration = time.perf_counter() - start_time
        metrics.record_http_request(_endpoint_label(request), method, response.status_code, duration)
        logger.info(
            "request_completed",
            method=method,
            path=request.url.path,
            status_code=response.status_code,
            duration_seconds=duration,
        )

    response.headers["X-Request-ID"] = request_id
    return response


def _endpoint_label(request: Request) -> str:
    """Matched route template, or the raw path when no route matched."""
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path if isinstance(path, str) else request.url.path


# Register routes
app.include_router(auth_router)
app.include_router(subscription_router)
app.include_router(webhook_router)
app.include_router(status_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
@limiter.exempt
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ava_api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
    )
