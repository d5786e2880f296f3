"""
Main Application - FastAPI wiring for the access reconciler.

Public routes (checkout completion, Stripe webhooks, access checks) and the
operator routes (sync, product gating) share one app, one request-logging
middleware and one Prometheus registry.
"""

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.api.admin_routes import router as admin_router
from app.api.routes import router
from app.config import settings
from app.db.migration_runner import run_migrations
from app.db.session import close_engines
from app.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from app.observability.tracing import instrument_fastapi

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(
        "reconciler_starting",
        version=settings.api_version,
        stripe_accounts=len(settings.stripe_api_key_list),
        webhook_secrets=len(settings.stripe_webhook_secret_list),
        mail_policy=settings.access_mail_policy,
        tracing_enabled=settings.tracing_enabled,
    )
    if not settings.stripe_api_key_list:
        logger.warning("no_stripe_keys_configured")
    if not settings.stripe_webhook_secret_list:
        logger.warning("no_webhook_secrets_configured")

    if settings.migrate_on_startup:
        # Alembic runs synchronously; keep it off the event loop.
        await asyncio.to_thread(run_migrations)

    yield

    await close_engines()
    logger.info("reconciler_stopped")


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
    allow_origins=settings.cors_origin_list,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


def _jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    """Validation errors with ``ctx`` values stringified (they may hold exceptions)."""
    errors: list[dict[str, Any]] = []
    for error in exc.errors():
        item = {key: error.get(key) for key in ("type", "loc", "msg", "input")}
        if "ctx" in error:
            item["ctx"] = {key: str(value) for key, value in error["ctx"].items()}
        errors.append(item)
    return errors


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = _jsonable_errors(exc)
    logger.warning(
        "request_validation_failed",
        path=request.url.path,
        method=request.method,
        errors=errors,
    )
    return JSONResponse(status_code=422, content={"detail": errors})


def endpoint_label(request: Request) -> str:
    """Route template (``/v1/users/{user_id}/...``) so user ids never become labels."""
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path if isinstance(path, str) else "unmatched"


@app.middleware("http")
async def request_logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Time, count and log every request under a request id."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    method = request.method
    started = time.monotonic()

    with log_context(request_id=request_id):
        metrics.http_requests_in_progress.labels(method=method).inc()
        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed = time.monotonic() - started
            metrics.record_http_request(endpoint_label(request), method, 500, elapsed)
            metrics.record_error(type(exc).__name__, "http_request")
            logger.exception("request_failed", method=method, path=request.url.path)
            raise
        finally:
            metrics.http_requests_in_progress.labels(method=method).dec()

        elapsed = time.monotonic() - started
        metrics.record_http_request(endpoint_label(request), method, response.status_code, elapsed)
        logger.info(
            "request_completed",
            method=method,
            path=request.url.path,
            status_code=response.status_code,
            duration_seconds=round(elapsed, 4),
        )
        response.headers["X-Request-ID"] = request_id
        return response


app.include_router(router)
app.include_router(admin_router)


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


if settings.metrics_enabled:

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint() -> Response:
        """Prometheus text exposition."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        proxy_headers=True,
        log_level=settings.log_level.lower(),
    )
