"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST

from app.api.admin_routes import router as admin_router
from app.api.routes import router
from app.api.status_routes import router as status_router
from app.config import settings
from app.db.migration_runner import run_migrations
from app.db.session import close_engines
from app.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from app.observability.metrics import get_metrics_handler
from app.observability.tracing import instrument_fastapi

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        environment=settings.environment,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        auto_refund_on_failure=settings.auto_refund_on_failure,
    )

    if settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations)

    yield

    logger.info("application_shutting_down")
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


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
    return JSONResponse(status_code=422, content={"detail": sanitized_errors})


# Setup tracing
setup_tracing()
instrument_fastapi(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["*"],
)


@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing and a request id bound to every log line."""
    start_time = time.perf_counter()
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    endpoint = request.url.path
    method = request.method

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=endpoint)
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            metrics.record_http_request(endpoint, method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")
            logger.error(
                "request_failed",
                method=method,
                path=endpoint,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise
        finally:
            metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()

        duration = time.perf_counter() - start_time
        metrics.record_http_request(endpoint, method, response.status_code, duration)
        logger.info(
            "request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
            duration_seconds=duration,
        )
        response.headers["X-Request-ID"] = request_id
        return response


# Register routes
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
        return PlainTextResponse("metrics disabled", status_code=404)
    return Response(content=get_metrics_handler()(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
