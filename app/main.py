"""
Main Application - FastAPI application for the credit ledger.

Wires the billing, auth, webhook and admin routers, the exception handlers
that render ledger errors, request logging with a bound request id, and the
Prometheus endpoint.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.api.admin_routes import router as admin_router
from app.api.dependencies import get_client_ip
from app.api.routes import router
from app.config import settings
from app.db.session import close_engines
from app.exceptions import RateLimitedError
from app.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from app.observability.tracing import instrument_fastapi

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Apply pending migrations (when enabled) on startup; close pools on shutdown."""
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        admin_count=len(settings.admin_email_list),
    )
    if not settings.admin_email_list:
        logger.warning("admin_allow_list_empty")

    if settings.run_migrations_on_startup:
        from app.db.migration_runner import run_migrations

        await asyncio.to_thread(run_migrations)

    yield

    await close_engines()
    logger.info("application_stopped")


def _json_safe_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    errors = []
    for error in exc.errors():
        item = {key: error.get(key) for key in ("type", "loc", "msg", "input")}
        # ctx can hold exception instances
        if "ctx" in error:
            item["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        errors.append(item)
    return errors


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """422 with a JSON-serializable error list, logged with the request path."""
    errors = _json_safe_errors(exc)
    logger.warning("validation_error", path=request.url.path, method=request.method, errors=errors)
    return JSONResponse(status_code=422, content={"detail": errors})


async def rate_limited_exception_handler(request: Request, exc: RateLimitedError) -> JSONResponse:
    """429 with Retry-After in both the header and the body."""
    logger.info("rate_limited", path=request.url.path, identifier=exc.identifier)
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many requests", "retry_after": exc.retry_after_seconds},
        headers={"Retry-After": str(exc.retry_after_seconds)},
    )


async def request_logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log and time every request under a bound request id."""
    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    method = request.method
    started = time.perf_counter()

    with log_context(request_id=request_id, client_ip=get_client_ip(request)):
        with metrics.track_in_progress(method):
            try:
                response = await call_next(request)
            except Exception as e:
                duration = time.perf_counter() - started
                metrics.record_http_request(_route_label(request), method, 500, duration)
                metrics.record_error(type(e).__name__, "http_request")
                logger.error(
                    "request_failed",
                    method=method,
                    path=request.url.path,
                    duration_seconds=duration,
                    exc_info=True,
                )
                raise

        duration = time.perf_counter() - started
        metrics.record_http_request(_route_label(request), method, response.status_code, duration)
        logger.info(
            "request_completed",
            method=method,
            path=request.url.path,
            status_code=response.status_code,
            duration_seconds=duration,
        )

    response.headers["X-Request-ID"] = request_id
    return response


def _route_label(request: Request) -> str:
    # Route templates keep label cardinality bounded
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


def create_app() -> FastAPI:
    """Build the FastAPI application."""
    application = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description=settings.api_description,
        lifespan=lifespan,
    )

    application.add_exception_handler(RequestValidationError, validation_exception_handler)
    application.add_exception_handler(RateLimitedError, rate_limited_exception_handler)

    setup_tracing()
    instrument_fastapi(application)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.middleware("http")(request_logging_middleware)

    application.include_router(router)
    application.include_router(admin_router)

    @application.get("/")
    async def root() -> dict[str, str]:
        """Service banner."""
        return {
            "service": settings.api_title,
            "version": settings.api_version,
            "status": "running",
        }

    @application.get("/metrics")
    async def metrics_endpoint() -> Response:
        """Prometheus text exposition."""
        if not settings.metrics_enabled:
            return PlainTextResponse("metrics disabled\n", status_code=404)
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
