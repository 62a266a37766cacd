"""Job orchestrator - submission, provisioning and control operations.

Submission returns immediately; provisioning runs as a background task per
job whose outcome is always written back to the store. Status changes that can
race with callbacks or the reconciler are compare-and-set through
``JobStore.transition``.
"""

import asyncio
import traceback
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

import structlog
from prometheus_client import Counter, Gauge
from pydantic import ValidationError

from delegation.jobs.errors import (
    JobAlreadyCompletedError,
    JobNotCompleteError,
    JobNotFoundError,
    ManifestValidationError,
)
from delegation.jobs.manifest import JobManifest
from delegation.jobs.models import EnvironmentHandle, Job, utcnow
from delegation.jobs.store import JobStore
from delegation.jobs.types import ACTIVE_STATUSES, JobStatus
from delegation.services.provisioner import Provisioner

logger = structlog.get_logger(__name__)

TASK_PREVIEW_CHARS = 100
CANCELLED_ERROR = "cancelled by user"


# =============================================================================
# Prometheus Metrics
# =============================================================================

JOBS_SUBMITTED_TOTAL = Counter(
    "delegation_jobs_submitted_total",
    "Jobs accepted for execution",
    ["agent_type"],
)
JOBS_PROVISIONED_TOTAL = Counter(
    "delegation_jobs_provisioned_total",
    "Provisioning outcomes",
    ["status"],  # running, failed, abandoned
)
JOBS_CANCELLED_TOTAL = Counter(
    "delegation_jobs_cancelled_total",
    "Jobs cancelled by callers",
)
PROVISIONING_INFLIGHT = Gauge(
    "delegation_provisioning_inflight",
    "Provisioning tasks currently running",
)


# =============================================================================
# Snapshots
# =============================================================================


@dataclass
class JobStatusSnapshot:
    """Point-in-time view of a job's progress."""

    job_id: str
    status: JobStatus
    progress: Optional[str]
    error: Optional[str]
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]


@dataclass
class JobResult:
    """Final outcome of a finished job."""

    job_id: str
    status: JobStatus
    output: Optional[str]
    error: Optional[str]
    artifacts: Optional[list[Any]]
    duration_seconds: Optional[float]


@dataclass
class JobSummary:
    """Compact listing entry."""

    job_id: str
    status: JobStatus
    task: str
    created_at: datetime


# =============================================================================
# Orchestrator
# =============================================================================


class Orchestrator:
    """Drives jobs from submission to a running VM and exposes job control."""

    def __init__(self, store: JobStore, provisioner: Provisioner):
        self._store = store
        self._provisioner = provisioner
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def provisioning_inflight(self) -> int:
        return len(self._tasks)

    async def submit(self, manifest: Union[JobManifest, dict[str, Any]]) -> str:
        """Create a job and start provisioning it in the background.

        Args:
            manifest: Validated manifest, or a raw wire-format dict

        Returns:
            The new job id

        Raises:
            ManifestValidationError: If a raw manifest is invalid
        """
        if not isinstance(manifest, JobManifest):
            try:
                manifest = JobManifest.model_validate(manifest)
            except ValidationError as e:
                raise ManifestValidationError(
                    f"Invalid manifest: {e.error_count()} validation error(s)",
                    errors=e.errors(include_url=False, include_context=False),
                ) from e

        job_id = self._store.create(manifest)
        JOBS_SUBMITTED_TOTAL.labels(agent_type=manifest.agent_type.value).inc()
        logger.info(
            "job_submitted",
            job_id=job_id,
            agent_type=manifest.agent_type.value,
            timeout=manifest.timeout,
            lifecycle=manifest.lifecycle.value if manifest.lifecycle else None,
        )

        task = asyncio.create_task(self._provision(job_id), name=f"provision-{job_id}")
        self._tasks[job_id] = task
        PROVISIONING_INFLIGHT.inc()
        task.add_done_callback(lambda t, jid=job_id: self._on_provision_done(jid, t))
        return job_id

    def get_status(self, job_id: str) -> JobStatusSnapshot:
        job = self._require(job_id)
        return JobStatusSnapshot(
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            error=job.error,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )

    def get_result(self, job_id: str) -> JobResult:
        """Get the outcome of a job that finished with success or failure.

        Raises:
            JobNotFoundError: If the job is unknown
            JobNotCompleteError: If the job has no result yet
        """
        job = self._require(job_id)
        if not job.status.has_result:
            raise JobNotCompleteError(job_id, job.status)
        return JobResult(
            job_id=job.id,
            status=job.status,
            output=job.output,
            error=job.error,
            artifacts=job.artifacts,
            duration_seconds=job.duration_seconds,
        )

    async def cancel(self, job_id: str) -> JobStatusSnapshot:
        """Cancel a job that has not finished yet.

        The VM, if any, is destroyed once on a best-effort basis; a failed
        destroy leaves the handle in place for the reconciler to retry.

        Raises:
            JobNotFoundError: If the job is unknown
            JobAlreadyCompletedError: If the job already finished
        """
        job = self._require(job_id)
        if job.status.is_terminal:
            raise JobAlreadyCompletedError(job_id, job.status)

        log = logger.bind(job_id=job_id)
        fields: dict[str, Any] = {"error": CANCELLED_ERROR, "completed_at": utcnow()}
        if job.environment_handle is not None:
            if await self.destroy_environment(job.environment_handle, job_id=job_id):
                fields["environment_handle"] = None

        if not self._store.transition(
            job_id, JobStatus.FAILED, expected_status=ACTIVE_STATUSES, **fields
        ):
            current = self._require(job_id)
            raise JobAlreadyCompletedError(job_id, current.status)

        JOBS_CANCELLED_TOTAL.inc()
        log.info("job_cancelled", previous_status=job.status.value)
        return self.get_status(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None) -> list[JobSummary]:
        return [
            JobSummary(
                job_id=job.id,
                status=job.status,
                task=job.manifest.task[:TASK_PREVIEW_CHARS],
                created_at=job.created_at,
            )
            for job in self._store.list(status)
        ]

    async def destroy_environment(
        self, handle: EnvironmentHandle, job_id: Optional[str] = None
    ) -> bool:
        """Destroy a VM, logging instead of raising on failure.

        Returns:
            True if the VM is gone
        """
        try:
            await self._provisioner.destroy_environment(handle)
            return True
        except Exception as e:
            logger.warning(
                "environment_destroy_failed",
                job_id=job_id,
                environment=str(handle),
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight provisioning tasks to finish."""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            logger.warning("provisioning_drain_timeout", pending=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _require(self, job_id: str) -> Job:
        job = self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def _provision(self, job_id: str) -> None:
        """Provision and boot a job's VM, recording the outcome."""
        log = logger.bind(job_id=job_id)
        if not self._store.transition(
            job_id, JobStatus.PROVISIONING, expected_status={JobStatus.PENDING}
        ):
            log.info("provisioning_skipped")
            return

        job = self._require(job_id)
        try:
            handle = await self._provisioner.create_environment(job_id, job.manifest)
            # Record the handle first so a VM is never orphaned
            recorded = self._store.update(job_id, environment_handle=handle)

            current = self._store.get(job_id)
            if current is None or current.status != JobStatus.PROVISIONING:
                log.info(
                    "provisioning_abandoned",
                    status=current.status.value if current else None,
                    environment=str(handle),
                )
                JOBS_PROVISIONED_TOTAL.labels(status="abandoned").inc()
                # Cancelled (or evicted) while creating: nobody else owns this VM
                if await self.destroy_environment(handle, job_id=job_id) and recorded:
                    self._store.update(job_id, environment_handle=None)
                return

            await self._provisioner.start_environment(handle)
        except asyncio.CancelledError:
            self._fail_provisioning(job_id, "provisioning interrupted by shutdown")
            raise
        except Exception as e:
            log.error(
                "provisioning_failed",
                error=str(e),
                error_type=type(e).__name__,
                traceback=traceback.format_exc(),
            )
            self._fail_provisioning(job_id, str(e) or type(e).__name__)
            return

        now = utcnow()
        if self._store.transition(
            job_id,
            JobStatus.RUNNING,
            expected_status={JobStatus.PROVISIONING},
            started_at=now,
        ):
            JOBS_PROVISIONED_TOTAL.labels(status="running").inc()
            log.info("job_running", environment=str(handle))
        else:
            JOBS_PROVISIONED_TOTAL.labels(status="abandoned").inc()
            log.info("provisioning_superseded", environment=str(handle))

    def _fail_provisioning(self, job_id: str, reason: str) -> None:
        if self._store.transition(
            job_id,
            JobStatus.FAILED,
            expected_status={JobStatus.PENDING, JobStatus.PROVISIONING},
            error=f"Provisioning failed: {reason}",
            completed_at=utcnow(),
        ):
            JOBS_PROVISIONED_TOTAL.labels(status="failed").inc()

    def _on_provision_done(self, job_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(job_id, None)
        PROVISIONING_INFLIGHT.dec()
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # _provision records its own failures; this is a last resort
            logger.error("provisioning_task_crashed", job_id=job_id, error=str(exc))
            self._fail_provisioning(job_id, str(exc))
