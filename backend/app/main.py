"""Prototype Studio Backend: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# CRITICAL ORDER: configure_structlog MUST be called before all other app imports
# to avoid the structlog cache pitfall (structlog caches the processor chain on first use).
from app.core.logging import configure_structlog
from app.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import httpx
import structlog

from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import api_router
from app.core.config import get_settings
from app.core.exceptions import (
    ConfigError,
    ConflictError,
    JobCancelledError,
    JobFailedError,
    JobTimeoutError,
    NotFoundError,
    PrototypeStudioError,
    ProviderError,
    StorageError,
    ValidationError,
)
from app.db import init_db, close_db, init_redis, close_redis
from app.middleware.correlation import (
    setup_correlation_middleware,
    get_correlation_id,
)

logger = structlog.get_logger(__name__)

# First match wins, so subclasses come before their bases
ERROR_RESPONSES: tuple[tuple[type[PrototypeStudioError], int, str], ...] = (
    (ValidationError, 400, "Validation failed"),
    (ConflictError, 400, "Conflict"),
    (NotFoundError, 404, "Not found"),
    (JobFailedError, 500, "Generation failed"),
    (ProviderError, 500, "Image provider error"),
    (JobTimeoutError, 500, "Generation timed out"),
    (JobCancelledError, 500, "Generation cancelled"),
    (StorageError, 500, "Failed to save prototype"),
    (ConfigError, 500, "Service not configured"),
)


def error_response_for(exc: PrototypeStudioError) -> tuple[int, str]:
    for error_type, status_code, label in ERROR_RESPONSES:
        if isinstance(exc, error_type):
            return status_code, label
    return 500, "Internal server error"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Graceful shutdown flag: the SIGTERM handler flips this so the health check returns 503
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    # Startup
    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    await init_db()
    logger.info("db_initialized")

    # Job tracking only; the service starts without it
    redis_ok = await init_redis()
    logger.info("redis_initialized", reachable=redis_ok)

    # One connection pool for every provider call
    app.state.http_client = httpx.AsyncClient()
    logger.info("http_client_initialized", provider_url=settings.midjourney_api_url)

    yield

    # Shutdown
    logger.info("shutdown_begin")
    await app.state.http_client.aclose()
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


async def studio_exception_handler(request: Request, exc: PrototypeStudioError) -> JSONResponse:
    """Map domain errors to HTTP status codes with debug_id tracking.

    The body carries a short message only; provider bodies and stack traces
    stay in the server log.
    """
    debug_id = str(uuid.uuid4())
    status_code, label = error_response_for(exc)

    log = logger.warning if status_code < 500 else logger.error
    log(
        "request_failed",
        status_code=status_code,
        error_type=type(exc).__name__,
        error=str(exc),
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
    )

    content = {"error": label, "details": str(exc), "debug_id": debug_id}
    if isinstance(exc, ValidationError) and exc.fields:
        content["fields"] = exc.fields
    if isinstance(exc, ConflictError):
        content["childrenCount"] = exc.children_count
    if isinstance(exc, StorageError) and exc.image_url:
        content["imageUrl"] = exc.image_url

    return JSONResponse(status_code=status_code, content=content)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies and parameters are validation failures (400), not 422s."""
    debug_id = str(uuid.uuid4())
    fields = [".".join(str(part) for part in error["loc"][1:]) for error in exc.errors()]

    logger.warning(
        "request_validation_failed",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        fields=fields,
    )
    return JSONResponse(
        status_code=400,
        content={
            "error": "Validation failed",
            "details": f"Invalid field(s): {', '.join(fields)}",
            "fields": fields,
            "debug_id": debug_id,
        },
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Global exception handler for HTTPException with debug_id tracking."""
    debug_id = str(uuid.uuid4())

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "debug_id": debug_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors with debug_id tracking.

    Logs full exception with traceback, returns generic 500 to client.
    """
    debug_id = str(uuid.uuid4())

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    # Return generic 500 (no internal details leaked)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Prototype image generation with version lineage",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    # Exception handlers
    app.exception_handler(PrototypeStudioError)(studio_exception_handler)
    app.exception_handler(RequestValidationError)(request_validation_handler)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
