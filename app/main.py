"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from asgi_correlation_id import CorrelationIdMiddleware, correlation_id
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from starlette.middleware.base import BaseHTTPMiddleware

from app.api.admin_routes import router as admin_router
from app.api.routes import router
from app.config import settings
from app.db.migration_runner import run_migrations
from app.db.session import close_engines, get_write_session_factory
from app.exceptions import (
    AccountNotFoundError,
    EntitlementError,
    EntityNotFoundError,
    ExternalFetchFailure,
    FeatureNotAllowedError,
    InsufficientCreditsError,
    MisconfiguredIntegrationError,
    PaymentProviderError,
    UnknownPlanError,
    WebhookVerificationError,
)
from app.models.api import ErrorResponse
from app.observability import get_logger, metrics, setup_logging, setup_tracing
from app.observability.tracing import instrument_fastapi
from app.services.metrics_fetcher import HttpMetricsFetcher
from app.services.policies import PolicyService
from app.services.refresh_scheduler import RefreshScheduler

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


async def _start_refresh_worker(app: FastAPI) -> None:
    fetcher = HttpMetricsFetcher(
        settings.metrics_service_url,
        settings.metrics_service_token,
        settings.refresh_fetch_timeout_seconds,
    )
    scheduler = RefreshScheduler(
        get_write_session_factory(),
        fetcher,
        interval_seconds=settings.refresh_interval_seconds,
        batch_size=settings.refresh_batch_size,
        fetch_timeout_seconds=settings.refresh_fetch_timeout_seconds,
    )
    scheduler.start()
    app.state.refresh_scheduler = scheduler
    app.state.metrics_fetcher = fetcher


async def _stop_refresh_worker(app: FastAPI) -> None:
    scheduler: RefreshScheduler | None = getattr(app.state, "refresh_scheduler", None)
    if scheduler is not None:
        await scheduler.stop()
        app.state.refresh_scheduler = None

    fetcher: HttpMetricsFetcher | None = getattr(app.state, "metrics_fetcher", None)
    if fetcher is not None:
        await fetcher.close()
        app.state.metrics_fetcher = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Startup: migrations, default plan policies, refresh worker.
    Shutdown: worker first, then database engines.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        refresh_worker_enabled=settings.refresh_worker_enabled,
    )

    if settings.run_migrations_on_startup and not settings.is_sqlite:
        await asyncio.to_thread(run_migrations)

    async with get_write_session_factory()() as session:
        await PolicyService(session).ensure_default_policies()

    if settings.refresh_worker_enabled:
        await _start_refresh_worker(app)

    yield

    logger.info("application_shutting_down")
    await _stop_refresh_worker(app)
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


# ============================================================================
# Exception Handlers
# ============================================================================


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Log detailed validation errors for debugging."""
    sanitized_errors = []
    for error in exc.errors():
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": error.get("input"),
        }
        # ctx may contain non-serializable objects
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
        body_preview=str(exc.body)[:500] if exc.body else None,
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": sanitized_errors},
    )


def _error_response(status_code: int, error: str, message: str | None = None) -> JSONResponse:
    body = ErrorResponse(error=error, message=message, correlation_id=correlation_id.get())
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(EntitlementError)
async def entitlement_exception_handler(request: Request, exc: EntitlementError) -> JSONResponse:
    """Map domain errors to HTTP responses. Unmapped ones are internal errors."""
    if isinstance(exc, AccountNotFoundError | EntityNotFoundError):
        return _error_response(status.HTTP_404_NOT_FOUND, "not_found", str(exc))
    if isinstance(exc, InsufficientCreditsError):
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={
                "error": "insufficient_credits",
                "balance": exc.balance,
                "required": exc.required,
            },
        )
    if isinstance(exc, FeatureNotAllowedError):
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={"error": "plan_upgrade_required", "feature": exc.feature, "plan": exc.plan},
        )
    if isinstance(exc, WebhookVerificationError):
        return _error_response(status.HTTP_400_BAD_REQUEST, "invalid_signature")
    if isinstance(exc, MisconfiguredIntegrationError):
        logger.error(
            "integration_not_configured",
            integration=exc.integration,
            missing=exc.missing,
            path=request.url.path,
        )
        return _error_response(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "integration_not_configured",
            f"{exc.integration} is not configured",
        )
    if isinstance(exc, PaymentProviderError | ExternalFetchFailure):
        logger.error("upstream_error", error=str(exc), path=request.url.path)
        return _error_response(status.HTTP_502_BAD_GATEWAY, "upstream_error")
    if isinstance(exc, UnknownPlanError):
        logger.error("unknown_plan", plan=exc.plan, path=request.url.path)

    metrics.record_error(type(exc).__name__, "http_request")
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Generic 500. Internals go to the log, never to the client."""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    metrics.record_error(type(exc).__name__, "http_request")
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error")


# Setup tracing
setup_tracing()
instrument_fastapi(app)


# ============================================================================
# Middleware
# ============================================================================


# Proxy headers middleware - trust X-Forwarded-* headers from the reverse proxy
class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to handle X-Forwarded-* headers from reverse proxy."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto

        return await call_next(request)


app.add_middleware(ProxyHeadersMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.perf_counter()
    method = request.method

    logger.info("request_started", method=method, path=request.url.path)

    try:
        response = await call_next(request)
    except Exception as e:
        duration = time.perf_counter() - start_time
        metrics.record_http_request(_endpoint(request), method, 500, duration)
        logger.error(
            "request_failed",
            method=method,
            path=request.url.path,
            error=str(e),
            duration_seconds=duration,
        )
        raise

    duration = time.perf_counter() - start_time
    metrics.record_http_request(_endpoint(request), method, response.status_code, duration)
    logger.info(
        "request_completed",
        method=method,
        path=request.url.path,
        status_code=response.status_code,
        duration_seconds=duration,
    )
    return response


def _endpoint(request: Request) -> str:
    # Route template keeps metric label cardinality bounded
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


# Outermost, so every log line of the request carries the id
app.add_middleware(CorrelationIdMiddleware, header_name="X-Request-ID")


# Register routes
app.include_router(router)
app.include_router(admin_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
