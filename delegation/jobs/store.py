"""In-memory job store.

The authoritative table of jobs for the lifetime of the process. All reads
return copies and every mutation runs under one re-entrant lock, so callers
can check-and-set a job's status atomically via ``expected_status``.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Collection, Optional

import structlog
from prometheus_client import Counter

from delegation.jobs import detection
from delegation.jobs.errors import InvalidTransitionError
from delegation.jobs.manifest import JobManifest
from delegation.jobs.models import IMMUTABLE_FIELDS, MUTABLE_FIELDS, Job, utcnow
from delegation.jobs.types import JobStatus

logger = structlog.get_logger(__name__)

JOB_TRANSITIONS_TOTAL = Counter(
    "delegation_job_transitions_total",
    "Job status transitions",
    ["from_status", "to_status"],
)


class JobStore:
    """Thread-safe mapping of job id to job state."""

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._lock = threading.RLock()

    def create(self, manifest: JobManifest) -> str:
        """Insert a new pending job and return its id."""
        job_id = str(uuid.uuid4())
        job = Job(id=job_id, manifest=manifest, status=JobStatus.PENDING)
        with self._lock:
            self._jobs[job_id] = job
        logger.debug("job_created", job_id=job_id)
        return job_id

    def get(self, job_id: str) -> Optional[Job]:
        """Get a copy of a job, or None if unknown."""
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def update(
        self,
        job_id: str,
        *,
        expected_status: Optional[Collection[JobStatus]] = None,
        **fields: Any,
    ) -> bool:
        """Merge fields into a job.

        Args:
            job_id: Job to update
            expected_status: If given, only update while the job is in one of
                these statuses
            **fields: Job fields to set

        Returns:
            False if the job is unknown or not in an expected status

        Raises:
            ValueError: If an immutable or unknown field is given
            InvalidTransitionError: If ``status`` would break the state machine
        """
        self._check_fields(fields)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if expected_status is not None and job.status not in expected_status:
                return False
            from_status = job.status
            if "status" in fields:
                new_status = fields["status"] = JobStatus(fields["status"])
                if new_status == from_status:
                    fields.pop("status")
                elif not from_status.can_transition_to(new_status):
                    raise InvalidTransitionError(job_id, from_status, new_status)
            for name, value in fields.items():
                setattr(job, name, value)
        if "status" in fields:
            JOB_TRANSITIONS_TOTAL.labels(
                from_status=from_status.value, to_status=fields["status"].value
            ).inc()
        return True

    def transition(
        self,
        job_id: str,
        status: JobStatus,
        *,
        expected_status: Optional[Collection[JobStatus]] = None,
        **fields: Any,
    ) -> bool:
        """Move a job to ``status`` and set fields in one atomic step.

        Unlike ``update``, a transition the state machine forbids (for example
        out of a terminal status) returns False instead of raising.
        """
        self._check_fields(fields)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if expected_status is not None and job.status not in expected_status:
                return False
            if not job.status.can_transition_to(status):
                logger.debug(
                    "job_transition_rejected",
                    job_id=job_id,
                    from_status=job.status.value,
                    to_status=status.value,
                )
                return False
            from_status = job.status
            job.status = status
            for name, value in fields.items():
                setattr(job, name, value)
        JOB_TRANSITIONS_TOTAL.labels(
            from_status=from_status.value, to_status=status.value
        ).inc()
        logger.info(
            "job_transition",
            job_id=job_id,
            from_status=from_status.value,
            to_status=status.value,
        )
        return True

    def list(self, status: Optional[JobStatus] = None) -> list[Job]:
        """List jobs (copies), optionally filtered by status."""
        with self._lock:
            jobs = [replace(j) for j in self._jobs.values()]
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        return jobs

    def delete(self, job_id: str) -> bool:
        """Remove a job. Returns False if unknown."""
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def count(self) -> int:
        with self._lock:
            return len(self._jobs)

    def count_by_status(self) -> dict[str, int]:
        """Number of jobs per status (all statuses present)."""
        counts = {s.value: 0 for s in JobStatus}
        with self._lock:
            for job in self._jobs.values():
                counts[job.status.value] += 1
        return counts

    # =========================================================================
    # Queries
    # =========================================================================

    def find_timed_out(self, now: Optional[datetime] = None) -> list[Job]:
        return detection.find_timed_out(self.list(), now or utcnow())

    def find_stale(
        self, heartbeat_threshold_seconds: float, now: Optional[datetime] = None
    ) -> list[Job]:
        return detection.find_stale(
            self.list(), heartbeat_threshold_seconds, now or utcnow()
        )

    def find_pending_cleanup(self) -> list[Job]:
        return detection.find_pending_cleanup(self.list())

    def find_expired(
        self, retention_seconds: Optional[float], now: Optional[datetime] = None
    ) -> list[Job]:
        return detection.find_expired(self.list(), retention_seconds, now or utcnow())

    @staticmethod
    def _check_fields(fields: dict[str, Any]) -> None:
        immutable = IMMUTABLE_FIELDS.intersection(fields)
        if immutable:
            raise ValueError(f"Cannot modify immutable job fields: {sorted(immutable)}")
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")
