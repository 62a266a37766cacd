"""HTTP middleware: request context, body size limit, timing and metrics."""

import time
import uuid

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from delegation import __version__
from delegation.config import Settings
from delegation.routers import metrics

logger = structlog.get_logger(__name__)


def _endpoint_label(request: Request) -> str:
    """Route template for metric labels, so job ids don't explode cardinality."""
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path or "unmatched"


async def security_headers_middleware(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "no-referrer"
    return response


def create_request_middleware(settings: Settings):
    """Create request middleware with settings closure."""

    async def request_middleware(request: Request, call_next):
        """Add request ID, timing and size limits to all requests."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        content_length = request.headers.get("content-length")
        if (
            content_length
            and content_length.isdigit()
            and int(content_length) > settings.max_request_body_size
        ):
            logger.warning(
                "request_body_too_large",
                content_length=int(content_length),
                max_size=settings.max_request_body_size,
            )
            return JSONResponse(
                status_code=413,
                content={
                    "detail": "Request body too large. Maximum size is "
                    f"{settings.max_request_body_size // (1024 * 1024)}MB",
                    "error_code": "payload_too_large",
                },
                headers={"X-Request-ID": request_id, "X-API-Version": __version__},
            )

        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception("request_failed", error=str(e))
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal server error", "error_code": "internal_error"},
                headers={"X-Request-ID": request_id, "X-API-Version": __version__},
            )

        duration_ms = (time.perf_counter() - start_time) * 1000

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time-Ms"] = f"{duration_ms:.2f}"
        response.headers["X-API-Version"] = __version__

        # Skip /metrics to avoid counting scrapes
        if request.url.path != "/metrics":
            metrics.record_request(
                method=request.method,
                endpoint=_endpoint_label(request),
                status_code=response.status_code,
                duration=duration_ms / 1000,
            )

        # Runner heartbeats are frequent; keep them out of info logs
        log = logger.debug if request.url.path.endswith("/heartbeat") else logger.info
        log(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )

        return response

    return request_middleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register HTTP middleware on the app.

    Starlette runs the last-registered middleware first, so the request
    middleware wraps the security headers middleware.
    """
    app.middleware("http")(security_headers_middleware)
    app.middleware("http")(create_request_middleware(settings))
