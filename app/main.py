"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.admin_routes import router as admin_router
from app.api.auth_routes import router as auth_router
from app.api.routes import router
from app.api.status_routes import router as status_router
from app.config import settings
from app.db.migration_runner import run_migrations
from app.db.session import close_engines, create_schema, get_engine, get_session_factory
from app.exceptions import (
    APIError,
    EmailAlreadyRegisteredError,
    EntitlementError,
    ErrorCode,
    STATUS_BY_CODE,
)
from app.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from app.observability.tracing import instrument_fastapi, instrument_sqlalchemy
from app.services.rate_limiter import close_rate_limiter, get_rate_limiter
from app.services.scheduler import AutoConfirmationScheduler

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Startup: schema, rate limiter, auto-confirmation scheduler.
    Shutdown: in reverse.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        auto_confirm_enabled=settings.pix_auto_confirm_enabled,
    )

    if settings.is_sqlite:
        await create_schema()
        logger.info("sqlite_schema_ready")
    elif settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations)

    instrument_sqlalchemy(get_engine())

    limiter = get_rate_limiter()
    logger.info("rate_limiter_ready", backend=limiter.backend_name)

    scheduler = AutoConfirmationScheduler(get_session_factory())
    scheduler.start()
    app.state.scheduler = scheduler

    yield

    logger.info("application_shutting_down")
    scheduler.shutdown()
    await close_rate_limiter()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


# ============================================================================
# Exception Handlers - every error body is {error, message, ...}
# ============================================================================


def _error_response(
    code: ErrorCode,
    message: str,
    extra: dict[str, object] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_CODE[code],
        content={"error": code.value, "message": message, **(extra or {})},
        headers=headers,
    )


@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    if exc.code == ErrorCode.INTERNAL:
        metrics.record_error(exc.code.value, request.url.path)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed input is 400 invalid_request, with sanitized details."""
    sanitized_errors = []
    for error in exc.errors():
        sanitized: dict[str, object] = {
            "type": error.get("type"),
            "loc": list(error.get("loc", ())),
            "msg": error.get("msg"),
        }
        # ctx may hold non-serializable objects
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return _error_response(
        ErrorCode.INVALID_REQUEST,
        "Request validation failed",
        extra={"details": sanitized_errors},
    )


_CODE_BY_HTTP_STATUS = {
    400: ErrorCode.INVALID_REQUEST,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    429: ErrorCode.RATE_LIMITED,
}


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _CODE_BY_HTTP_STATUS.get(exc.status_code)
    if code is None:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "http_error", "message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": code.value, "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(EntitlementError)
async def entitlement_error_handler(request: Request, exc: EntitlementError) -> JSONResponse:
    """Typed service exceptions that escaped a route."""
    if isinstance(exc, EmailAlreadyRegisteredError):
        return _error_response(ErrorCode.EMAIL_TAKEN, "E-mail already registered")

    # Infrastructure: store unavailable, integrity
    metrics.record_error(type(exc).__name__, request.url.path)
    logger.error("service_error", path=request.url.path, error=str(exc))
    return _error_response(ErrorCode.INTERNAL, "Internal error")


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    metrics.record_error(type(exc).__name__, request.url.path)
    logger.error("database_error", path=request.url.path, error=str(exc))
    return _error_response(ErrorCode.INTERNAL, "Internal error")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    metrics.record_error(type(exc).__name__, request.url.path)
    logger.error("unhandled_exception", path=request.url.path, error=str(exc), exc_info=exc)
    return _error_response(ErrorCode.INTERNAL, "Internal error")


# Setup tracing
setup_tracing()
instrument_fastapi(app)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")

    # Label by route template so payment ids don't explode cardinality
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    method = request.method
    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

    try:
        with log_context(request_id=request_id):
            response = await call_next(request)
        duration = time.time() - start_time
        route = request.scope.get("route")
        endpoint_label = getattr(route, "path", endpoint)
        metrics.record_http_request(endpoint_label, method, response.status_code, duration)

        logger.info(
            "request_completed",
            method=method,
            path=request.url.path,
            status_code=response.status_code,
            duration_seconds=duration,
            request_id=request_id,
        )
        return response
    except Exception as e:
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, 500, duration)
        metrics.record_error(type(e).__name__, "http_request")

        logger.error(
            "request_failed",
            method=method,
            path=request.url.path,
            error=str(e),
            duration_seconds=duration,
            request_id=request_id,
            exc_info=True,
        )
        raise
    finally:
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


# Register routes
app.include_router(auth_router)
app.include_router(router)
app.include_router(admin_router)
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
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled\n", status_code=404)
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
