"""Health check endpoint."""

import structlog
from fastapi import APIRouter, Request

from delegation import __version__
from delegation.schemas import HealthResponse

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """
    Liveness probe.

    Always 200 while the process serves requests. The body summarizes job
    counts, the reconciler and the provisioner connection for operators.
    """
    state = request.app.state
    reconciler = state.reconciler
    last_run = reconciler.last_run_result

    provisioner_health = {}
    health_fn = getattr(state.provisioner, "health", None)
    if callable(health_fn):
        provisioner_health = health_fn()

    return HealthResponse(
        version=__version__,
        jobs=state.store.count_by_status(),
        provisioning_inflight=state.orchestrator.provisioning_inflight,
        reconciler={
            "running": reconciler.is_running,
            "last_run_at": (
                reconciler.last_run_at.isoformat() if reconciler.last_run_at else None
            ),
            "last_run_errors": len(last_run.errors) if last_run else 0,
        },
        provisioner=provisioner_health,
    )
