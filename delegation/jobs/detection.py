"""Detection passes over a snapshot of jobs.

Pure functions of ``(jobs, now)`` used by the store queries and the
reconciler. None of them mutate the jobs they are given.
"""

from datetime import datetime
from typing import Iterable, Optional

from delegation.jobs.models import Job
from delegation.jobs.types import JobStatus


def _elapsed(since: datetime, now: datetime) -> float:
    return (now - since).total_seconds()


def find_timed_out(jobs: Iterable[Job], now: datetime) -> list[Job]:
    """Running jobs whose manifest timeout has elapsed since start."""
    return [
        job
        for job in jobs
        if job.status == JobStatus.RUNNING
        and job.started_at is not None
        and job.manifest.timeout
        and _elapsed(job.started_at, now) > job.manifest.timeout
    ]


def find_stale(
    jobs: Iterable[Job], threshold_seconds: float, now: datetime
) -> list[Job]:
    """Running jobs that have not sent a heartbeat within the threshold.

    Jobs that never sent a heartbeat are not considered stale.
    """
    return [
        job
        for job in jobs
        if job.status == JobStatus.RUNNING
        and job.last_heartbeat is not None
        and _elapsed(job.last_heartbeat, now) > threshold_seconds
    ]


def find_pending_cleanup(jobs: Iterable[Job]) -> list[Job]:
    """Finished jobs still holding a VM that should not be kept."""
    return [
        job
        for job in jobs
        if job.status.is_terminal
        and job.environment_handle is not None
        and not job.manifest.is_persistent
    ]


def find_expired(
    jobs: Iterable[Job], retention_seconds: Optional[float], now: datetime
) -> list[Job]:
    """Finished, cleaned-up jobs older than the retention window."""
    if retention_seconds is None:
        return []
    return [
        job
        for job in jobs
        if job.status.is_terminal
        and job.environment_handle is None
        and job.completed_at is not None
        and _elapsed(job.completed_at, now) > retention_seconds
    ]
