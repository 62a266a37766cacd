"""Delegation Orchestrator - FastAPI Application."""

import logging
import sys
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from delegation import __version__
from delegation.config import Settings, get_settings
from delegation.core.lifespan import lifespan
from delegation.core.middleware import setup_middleware
from delegation.core.sentry import init_sentry
from delegation.jobs.errors import (
    InvalidRequestError,
    ManifestValidationError,
    OrchestratorError,
)
from delegation.jobs.store import JobStore
from delegation.routers import callbacks, health, jobs, metrics
from delegation.services.orchestrator import Orchestrator
from delegation.services.provisioner import Provisioner, ProvisionerClient
from delegation.services.reconciler import Reconciler

logger = structlog.get_logger(__name__)


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured JSON logging over the stdlib logging module."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


async def orchestrator_error_handler(
    request: Request, exc: OrchestratorError
) -> JSONResponse:
    """Map domain errors onto their HTTP status."""
    if exc.status_code >= 500:
        logger.error("request_error", error_code=exc.error_code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render request validation failures in the domain error shape."""
    errors = jsonable_encoder(exc.errors())
    if any(err.get("loc", ("",))[0] == "body" for err in errors):
        error: InvalidRequestError = ManifestValidationError(
            f"Invalid manifest: {len(errors)} validation error(s)", errors=errors
        )
    else:
        error = InvalidRequestError(
            f"Invalid request: {len(errors)} validation error(s)", errors=errors
        )
    return await orchestrator_error_handler(request, error)


def create_app(
    settings: Optional[Settings] = None,
    provisioner: Optional[Provisioner] = None,
) -> FastAPI:
    """Build the application and the components it owns.

    Args:
        settings: Settings to use (defaults to environment)
        provisioner: Provisioner to use (defaults to the HTTP client)
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    init_sentry(settings)

    store = JobStore()
    if provisioner is None:
        provisioner = ProvisionerClient(
            settings.provisioner_url, settings.callback_base_url, settings
        )
    orchestrator = Orchestrator(store, provisioner)
    reconciler = Reconciler(store, orchestrator, settings)

    # Conditionally disable docs in production (set DOCS_ENABLED=false)
    app = FastAPI(
        title="Delegation Orchestrator",
        description="Runs agent jobs in disposable VMs and tracks them to completion",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.docs_enabled else None,
        redoc_url="/redoc" if settings.docs_enabled else None,
        openapi_url="/openapi.json" if settings.docs_enabled else None,
    )
    if not settings.docs_enabled:
        logger.info("API docs disabled (DOCS_ENABLED=false)")

    app.state.settings = settings
    app.state.store = store
    app.state.provisioner = provisioner
    app.state.orchestrator = orchestrator
    app.state.reconciler = reconciler

    app.add_exception_handler(OrchestratorError, orchestrator_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    setup_middleware(app, settings)

    app.include_router(health.router, tags=["Health"])
    app.include_router(metrics.router)  # Metrics endpoint (excluded from OpenAPI)
    app.include_router(callbacks.router)
    app.include_router(jobs.router)

    return app
