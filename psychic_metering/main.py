"""
Main Application - HTTP API, Socket.IO endpoint and the session sweeps.

Serve `asgi_app`, not `app`: it wraps the FastAPI app with the Socket.IO
server on the same port.

    uvicorn psychic_metering.main:asgi_app
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from starlette.routing import Match

from psychic_metering.api.dependencies import close_reply_generator
from psychic_metering.api.routes import router
from psychic_metering.config import settings
from psychic_metering.db.migration_runner import run_migrations
from psychic_metering.db.session import close_engines
from psychic_metering.observability import get_logger, metrics, setup_logging, setup_tracing
from psychic_metering.observability.tracing import instrument_fastapi
from psychic_metering.services.broadcaster import broadcaster, socket_handler
from psychic_metering.services.scheduler import SessionScheduler

setup_logging()
logger = get_logger(__name__)

UNMATCHED = "unmatched"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Migrate, start the sweeps, and release pools on shutdown."""
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        scheduler_enabled=settings.scheduler_enabled,
        run_migrations=settings.run_migrations_on_startup,
    )
    if settings.run_migrations_on_startup:
        run_migrations()

    app.state.scheduler = SessionScheduler(broadcaster=broadcaster)
    if settings.scheduler_enabled:
        app.state.scheduler.start()

    try:
        yield
    finally:
        logger.info("application_shutting_down")
        await app.state.scheduler.stop()
        await close_reply_generator()
        await close_engines()
        logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)
setup_tracing()
instrument_fastapi(app)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def describe_validation_error(error: dict[str, Any]) -> dict[str, Any]:
    """JSON-safe copy of a pydantic error; `ctx` may hold exception instances."""
    described = {key: error.get(key) for key in ("type", "loc", "msg")}
    if "ctx" in error:
        described["ctx"] = {key: str(value) for key, value in error["ctx"].items()}
    return described


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """422 with the failing fields, logged without echoing the request body."""
    errors = [describe_validation_error(error) for error in exc.errors()]
    logger.warning(
        "validation_error", method=request.method, path=request.url.path, errors=errors
    )
    return JSONResponse(status_code=422, content={"detail": errors})


def endpoint_label(request: Request) -> str:
    """
    Metrics label for a request: the matched route template.

    Paths carry advisor ids, so raw paths would make one label value per advisor.
    """
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", UNMATCHED)
    return UNMATCHED


@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Time each request, count it under its route template and log the outcome."""
    started = time.perf_counter()
    endpoint = endpoint_label(request)
    method = request.method
    fields = {
        "method": method,
        "path": request.url.path,
        "endpoint": endpoint,
        "request_id": request.headers.get("X-Request-ID", "unknown"),
    }
    logger.info("request_started", **fields)

    in_progress = metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method)
    in_progress.inc()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        logger.info(
            "request_completed",
            status_code=status_code,
            duration_seconds=time.perf_counter() - started,
            **fields,
        )
        return response
    except Exception as exc:
        metrics.record_error(type(exc).__name__, "http_request")
        logger.error(
            "request_failed",
            error=str(exc),
            duration_seconds=time.perf_counter() - started,
            exc_info=True,
            **fields,
        )
        raise
    finally:
        metrics.record_http_request(
            endpoint, method, status_code, time.perf_counter() - started
        )
        in_progress.dec()


app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """Prometheus text exposition."""
    return PlainTextResponse(generate_latest())


asgi_app = socket_handler.get_asgi_app(app)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "psychic_metering.main:asgi_app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
