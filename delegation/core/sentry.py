"""Optional Sentry error reporting for the orchestrator.

Only failures the orchestrator itself owns are reported: caller mistakes
(unknown jobs, bad manifests, conflicting job state) and runner callbacks with
bad payloads surface as 4xx and never reach Sentry. Events are tagged with the
request id bound by the request middleware so they can be matched to logs.
"""

import os
from typing import Optional

import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from delegation import __version__
from delegation.config import Settings
from delegation.jobs.errors import OrchestratorError

logger = structlog.get_logger(__name__)


def _is_client_error(status_code: object) -> bool:
    return isinstance(status_code, int) and 400 <= status_code < 500


def _before_send(event: dict, hint: dict) -> Optional[dict]:
    """Drop 4xx events and tag the rest with the current request id."""
    if "exc_info" in hint:
        _, exc_value, _ = hint["exc_info"]
        if isinstance(exc_value, OrchestratorError) and exc_value.status_code < 500:
            return None
        if _is_client_error(getattr(exc_value, "status_code", None)):
            return None

    response = event.get("contexts", {}).get("response", {})
    if _is_client_error(response.get("status_code")):
        return None

    request_id = structlog.contextvars.get_contextvars().get("request_id")
    if request_id:
        event.setdefault("tags", {})["request_id"] = request_id
    return event


def init_sentry(settings: Settings) -> bool:
    """
    Initialize Sentry when ``SENTRY_DSN`` is set.

    Provisioning and reconciliation failures are logged at ERROR, so the
    logging integration turns them into events even though they happen
    outside a request.

    Returns True if Sentry was initialized, False otherwise.
    """
    if not settings.sentry_dsn:
        return False

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        release=os.environ.get("GIT_SHA", f"delegation@{__version__}"),
        integrations=[
            LoggingIntegration(level=None, event_level="ERROR"),
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
        traces_sample_rate=settings.sentry_traces_sample_rate,
        send_default_pii=False,
        attach_stacktrace=True,
        before_send=_before_send,
    )
    sentry_sdk.set_tag("service", "delegation")
    sentry_sdk.set_tag("provisioner", settings.provisioner_url)

    logger.info(
        "sentry_initialized",
        environment=settings.sentry_environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
    )
    return True
