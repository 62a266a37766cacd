"""Callback endpoints the in-VM job runner reports to.

Reports for unknown jobs get 404, malformed bodies get 400. Reports for jobs
that are not running are acknowledged but change nothing, so a late or
repeated report can never move a finished job to another status.
"""

import json
from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from prometheus_client import Counter
from pydantic import BaseModel, ValidationError

from delegation.deps import get_store
from delegation.jobs.models import Job, utcnow
from delegation.jobs.store import JobStore
from delegation.jobs.types import JobStatus
from delegation.schemas import CallbackAck, CallbackPayload, StatusUpdate

router = APIRouter(prefix="/callback", tags=["Callbacks"])
logger = structlog.get_logger(__name__)

CALLBACKS_TOTAL = Counter(
    "delegation_callbacks_total",
    "Runner callbacks received",
    ["kind", "outcome"],  # applied, ignored, not_found, invalid
)

_CALLBACK_RESPONSES: dict[int | str, dict[str, Any]] = {
    200: {"description": "Report received"},
    400: {"description": "Invalid payload"},
    404: {"description": "Job not found"},
}


def _not_found(kind: str, job_id: str) -> JSONResponse:
    CALLBACKS_TOTAL.labels(kind=kind, outcome="not_found").inc()
    logger.warning("callback_unknown_job", kind=kind, job_id=job_id)
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": "Job not found", "error_code": "job_not_found"},
    )


def _bad_request(kind: str, job_id: str, details: Any) -> JSONResponse:
    CALLBACKS_TOTAL.labels(kind=kind, outcome="invalid").inc()
    logger.warning("callback_invalid_payload", kind=kind, job_id=job_id)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": "Invalid payload",
            "error_code": "invalid_payload",
            "errors": details,
        },
    )


async def _parse(
    request: Request, model: type[BaseModel], job_id: str
) -> tuple[Optional[BaseModel], Any]:
    """Parse a JSON body into ``model``.

    Returns:
        (parsed, None) on success, (None, error details) otherwise
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None, [{"msg": "Body is not valid JSON"}]
    try:
        parsed = model.model_validate(body)
    except ValidationError as e:
        return None, e.errors(include_url=False, include_context=False, include_input=False)
    if str(getattr(parsed, "job_id")) != job_id:
        return None, [{"loc": ["job_id"], "msg": "job_id does not match path"}]
    return parsed, None


def _ack(kind: str, job: Job, applied: bool) -> CallbackAck:
    CALLBACKS_TOTAL.labels(kind=kind, outcome="applied" if applied else "ignored").inc()
    if not applied:
        logger.info("callback_ignored", kind=kind, job_id=job.id, status=job.status.value)
    return CallbackAck()


@router.post(
    "/{job_id}/complete", response_model=CallbackAck, responses=_CALLBACK_RESPONSES
)
async def complete(
    job_id: str, request: Request, store: JobStore = Depends(get_store)
):
    """Record the final outcome reported by the job runner."""
    job = store.get(job_id)
    if job is None:
        return _not_found("complete", job_id)

    payload, errors = await _parse(request, CallbackPayload, job_id)
    if payload is None:
        return _bad_request("complete", job_id, errors)
    assert isinstance(payload, CallbackPayload)

    now = utcnow()
    # The runner can report before the provisioning task marks the job running
    if store.transition(
        job_id,
        JobStatus.RUNNING,
        expected_status={JobStatus.PROVISIONING},
        started_at=now,
    ):
        logger.info("job_promoted_by_callback", job_id=job_id)

    final = JobStatus.SUCCESS if payload.status == "success" else JobStatus.FAILED
    applied = store.transition(
        job_id,
        final,
        expected_status={JobStatus.RUNNING},
        output=payload.output,
        error=payload.error or None,
        artifacts=payload.artifacts,
        completed_at=now,
    )
    if applied:
        logger.info(
            "job_completed",
            job_id=job_id,
            status=final.value,
            exit_code=payload.exit_code,
            duration_seconds=payload.duration_seconds,
        )
    return _ack("complete", store.get(job_id) or job, applied)


@router.post(
    "/{job_id}/status", response_model=CallbackAck, responses=_CALLBACK_RESPONSES
)
async def status_update(
    job_id: str, request: Request, store: JobStore = Depends(get_store)
):
    """Record progress (and partial output) reported by the job runner."""
    job = store.get(job_id)
    if job is None:
        return _not_found("status", job_id)

    update, errors = await _parse(request, StatusUpdate, job_id)
    if update is None:
        return _bad_request("status", job_id, errors)
    assert isinstance(update, StatusUpdate)

    fields: dict[str, Any] = {"progress": update.progress, "last_heartbeat": utcnow()}
    if update.output is not None:
        fields["output"] = update.output
    applied = store.update(job_id, expected_status={JobStatus.RUNNING}, **fields)
    return _ack("status", job, applied)


@router.post(
    "/{job_id}/heartbeat",
    response_model=CallbackAck,
    responses={200: {"description": "Heartbeat received"}, 404: {"description": "Job not found"}},
)
async def heartbeat(job_id: str, store: JobStore = Depends(get_store)):
    """Refresh a job's liveness timestamp."""
    job = store.get(job_id)
    if job is None:
        return _not_found("heartbeat", job_id)

    applied = store.update(
        job_id, expected_status={JobStatus.RUNNING}, last_heartbeat=utcnow()
    )
    return _ack("heartbeat", job, applied)
