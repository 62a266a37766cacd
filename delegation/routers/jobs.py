"""Job control endpoints: submit, status, result, cancel, list."""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, status

from delegation.deps import get_orchestrator
from delegation.jobs.manifest import JobManifest
from delegation.jobs.types import JobStatus
from delegation.schemas import (
    CancelJobResponse,
    ErrorResponse,
    JobResultResponse,
    JobStatusResponse,
    JobSummaryResponse,
    SubmitJobResponse,
)
from delegation.services.orchestrator import Orchestrator

router = APIRouter(prefix="/jobs", tags=["Jobs"])
logger = structlog.get_logger(__name__)

_NOT_FOUND = {404: {"model": ErrorResponse, "description": "Job not found"}}


@router.post(
    "",
    response_model=SubmitJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={422: {"description": "Invalid manifest"}},
)
async def submit_job(
    manifest: JobManifest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> SubmitJobResponse:
    """
    Submit a job for execution in an isolated VM.

    Returns immediately with the job id; provisioning continues in the
    background. Poll ``GET /jobs/{job_id}`` for progress.
    """
    job_id = await orchestrator.submit(manifest)
    return SubmitJobResponse(job_id=job_id)


@router.get("", response_model=list[JobSummaryResponse])
async def list_jobs(
    job_status: Optional[JobStatus] = Query(
        None, alias="status", description="Filter by status"
    ),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> list[JobSummaryResponse]:
    """List all jobs, optionally filtered by status."""
    return [
        JobSummaryResponse(
            job_id=s.job_id, status=s.status, task=s.task, created_at=s.created_at
        )
        for s in orchestrator.list_jobs(job_status)
    ]


@router.get("/{job_id}", response_model=JobStatusResponse, responses=_NOT_FOUND)
async def get_job_status(
    job_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JobStatusResponse:
    """
    Get the current status of a job.

    Job statuses:
    - pending: Job accepted, provisioning not started
    - provisioning: VM is being created and booted
    - running: Agent is executing inside the VM
    - success / failed: Agent finished (or provisioning/cancellation failed it)
    - timeout: Job exceeded its timeout or stopped sending heartbeats
    """
    snapshot = orchestrator.get_status(job_id)
    return JobStatusResponse(
        job_id=snapshot.job_id,
        status=snapshot.status,
        progress=snapshot.progress,
        error=snapshot.error,
        created_at=snapshot.created_at,
        started_at=snapshot.started_at,
        completed_at=snapshot.completed_at,
    )


@router.get(
    "/{job_id}/result",
    response_model=JobResultResponse,
    responses={
        **_NOT_FOUND,
        409: {"model": ErrorResponse, "description": "Job not complete"},
    },
)
async def get_job_result(
    job_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JobResultResponse:
    """Get the result of a job that finished with success or failure."""
    result = orchestrator.get_result(job_id)
    return JobResultResponse(
        job_id=result.job_id,
        status=result.status,
        output=result.output,
        error=result.error,
        artifacts=result.artifacts,
        duration_seconds=result.duration_seconds,
    )


@router.post(
    "/{job_id}/cancel",
    response_model=CancelJobResponse,
    responses={
        **_NOT_FOUND,
        409: {"model": ErrorResponse, "description": "Job already completed"},
    },
)
async def cancel_job(
    job_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> CancelJobResponse:
    """Cancel a pending, provisioning or running job and destroy its VM."""
    snapshot = await orchestrator.cancel(job_id)
    return CancelJobResponse(job_id=snapshot.job_id, status=snapshot.status)
