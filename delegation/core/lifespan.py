"""Application lifespan management - startup and shutdown logic."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI

from delegation import __version__

logger = structlog.get_logger(__name__)

SHUTDOWN_TIMEOUT_SECONDS = 30.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Connect the provisioner and run the reconciler for the app's lifetime.

    Components are built by ``create_app`` and live on ``app.state``.
    """
    state = app.state
    settings = state.settings
    logger.info(
        "Starting delegation orchestrator",
        version=__version__,
        host=settings.callback_host,
        port=settings.callback_port,
        callback_url=settings.callback_base_url,
        provisioner_url=settings.provisioner_url,
    )

    await state.provisioner.connect()
    await state.reconciler.start()

    yield

    logger.info("Shutting down delegation orchestrator")
    await state.reconciler.stop(timeout=SHUTDOWN_TIMEOUT_SECONDS)
    await state.orchestrator.drain(timeout=SHUTDOWN_TIMEOUT_SECONDS)
    await state.provisioner.disconnect()

    active = [job.id for job in state.store.list() if not job.status.is_terminal]
    if active:
        # The store is in-memory; these jobs' VMs outlive the process
        logger.warning("Unfinished jobs at shutdown", count=len(active), job_ids=active)
