"""Job reconciler - periodic timeout detection and VM cleanup.

Every tick:
1. Times out running jobs past their manifest timeout or silent for longer
   than the heartbeat threshold, destroying their VMs
2. Destroys VMs still held by finished, non-persistent jobs
3. Evicts finished jobs past the retention window (if configured)

Destroy failures are logged and retried on the next tick. Ticks never
overlap: a tick requested while one is running is skipped.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import structlog
from prometheus_client import Counter, Gauge

from delegation.config import Settings
from delegation.jobs.models import Job, utcnow
from delegation.jobs.store import JobStore
from delegation.jobs.types import JobStatus
from delegation.services.orchestrator import Orchestrator

logger = structlog.get_logger(__name__)

TIMEOUT_ERROR = "Job exceeded timeout"


# =============================================================================
# Prometheus Metrics
# =============================================================================

RECONCILE_RUNS_TOTAL = Counter(
    "delegation_reconcile_runs_total",
    "Reconciliation ticks",
    ["status"],  # completed, partial, skipped, failure
)
RECONCILE_LAST_RUN_TIMESTAMP = Gauge(
    "delegation_reconcile_last_run_timestamp",
    "Unix timestamp of last reconciliation tick",
)
JOBS_EXPIRED_TOTAL = Counter(
    "delegation_jobs_expired_total",
    "Running jobs moved to timeout",
    ["reason"],  # timeout, stale
)
ENVIRONMENT_DESTROYS_TOTAL = Counter(
    "delegation_environment_destroys_total",
    "Environment destroy attempts by the reconciler",
    ["status"],  # success, failure
)
JOBS_EVICTED_TOTAL = Counter(
    "delegation_jobs_evicted_total",
    "Finished jobs removed after the retention window",
)


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class ReconcileResult:
    """Result of a single reconciliation tick."""

    timed_out: int = 0
    stale: int = 0
    cleaned: int = 0
    cleanup_failed: int = 0
    evicted: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0


def stale_error(threshold_seconds: int) -> str:
    return f"Job heartbeat stale (no heartbeat for {threshold_seconds}s)"


# =============================================================================
# Reconciler Service
# =============================================================================


class Reconciler:
    """Background service reconciling job state with provisioned VMs."""

    def __init__(
        self,
        store: JobStore,
        orchestrator: Orchestrator,
        settings: Settings,
    ):
        self._store = store
        self._orchestrator = orchestrator
        self._interval = settings.cleanup_interval_seconds
        self._heartbeat_threshold = settings.heartbeat_threshold_seconds
        self._retention = settings.job_retention_seconds
        self._semaphore = asyncio.Semaphore(settings.cleanup_concurrency)

        self._tick_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._running = False

        self._last_run_at: Optional[datetime] = None
        self._last_run_result: Optional[ReconcileResult] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_run_at(self) -> Optional[datetime]:
        return self._last_run_at

    @property
    def last_run_result(self) -> Optional[ReconcileResult]:
        return self._last_run_result

    async def start(self) -> None:
        """Start the reconciliation background task."""
        if self._running:
            logger.warning("Reconciler already running")
            return

        logger.info(
            "Starting reconciler",
            interval_seconds=self._interval,
            heartbeat_threshold_seconds=self._heartbeat_threshold,
            retention_seconds=self._retention,
        )
        self._stop_event.clear()
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop the background task, letting a running tick finish."""
        if not self._running:
            return

        logger.info("Stopping reconciler")
        self._stop_event.set()

        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Reconciler stop timeout, cancelling task")
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass

        self._running = False
        logger.info("Reconciler stopped")

    async def run_once(self, now: Optional[datetime] = None) -> Optional[ReconcileResult]:
        """Run a single tick.

        Returns:
            The tick result, or None if another tick was already running
        """
        if self._tick_lock.locked():
            logger.info("reconcile_tick_skipped")
            RECONCILE_RUNS_TOTAL.labels(status="skipped").inc()
            return None

        async with self._tick_lock:
            result = await self._do_tick(now or utcnow())

        self._last_run_result = result
        self._last_run_at = datetime.now(timezone.utc)
        RECONCILE_LAST_RUN_TIMESTAMP.set(self._last_run_at.timestamp())
        RECONCILE_RUNS_TOTAL.labels(
            status="partial" if result.errors else "completed"
        ).inc()
        return result

    # =========================================================================
    # Internal Methods
    # =========================================================================

    async def _loop(self) -> None:
        """Main loop - runs until stop_event is set."""
        while not self._stop_event.is_set():
            # Wait for next tick (interruptible)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.run_once()
            except Exception as e:
                logger.exception("Reconcile tick failed", error=str(e))
                RECONCILE_RUNS_TOTAL.labels(status="failure").inc()

    async def _do_tick(self, now: datetime) -> ReconcileResult:
        start_time = time.time()
        result = ReconcileResult()

        timed_out = self._store.find_timed_out(now)
        timed_out_ids = {job.id for job in timed_out}
        stale = [
            job
            for job in self._store.find_stale(self._heartbeat_threshold, now)
            if job.id not in timed_out_ids
        ]

        expiries = [(job, TIMEOUT_ERROR, "timeout") for job in timed_out]
        expiries += [
            (job, stale_error(self._heartbeat_threshold), "stale") for job in stale
        ]
        outcomes = await asyncio.gather(
            *(self._expire(job, error, now) for job, error, _ in expiries),
            return_exceptions=True,
        )
        for (job, _, reason), outcome in zip(expiries, outcomes):
            if isinstance(outcome, Exception):
                result.errors.append(f"{job.id}: {outcome}")
            elif outcome:
                JOBS_EXPIRED_TOTAL.labels(reason=reason).inc()
                if reason == "timeout":
                    result.timed_out += 1
                else:
                    result.stale += 1

        pending = self._store.find_pending_cleanup()
        cleanups = await asyncio.gather(
            *(self._cleanup(job) for job in pending), return_exceptions=True
        )
        for job, outcome in zip(pending, cleanups):
            if isinstance(outcome, Exception):
                result.errors.append(f"{job.id}: {outcome}")
                result.cleanup_failed += 1
            elif outcome:
                result.cleaned += 1
            else:
                result.cleanup_failed += 1

        for job in self._store.find_expired(self._retention, now):
            if self._store.delete(job.id):
                result.evicted += 1
                JOBS_EVICTED_TOTAL.inc()

        result.duration_ms = int((time.time() - start_time) * 1000)
        if expiries or pending or result.evicted:
            logger.info(
                "reconcile_tick_complete",
                timed_out=result.timed_out,
                stale=result.stale,
                cleaned=result.cleaned,
                cleanup_failed=result.cleanup_failed,
                evicted=result.evicted,
                duration_ms=result.duration_ms,
            )
        return result

    async def _destroy(self, job: Job) -> bool:
        assert job.environment_handle is not None
        async with self._semaphore:
            ok = await self._orchestrator.destroy_environment(
                job.environment_handle, job_id=job.id
            )
        ENVIRONMENT_DESTROYS_TOTAL.labels(status="success" if ok else "failure").inc()
        return ok

    async def _expire(self, job: Job, error: str, now: datetime) -> bool:
        """Destroy a running job's VM and move it to timeout.

        Returns:
            False if the job left ``running`` before the status update
        """
        fields: dict = {"error": error, "completed_at": now}
        if job.environment_handle is not None and await self._destroy(job):
            fields["environment_handle"] = None

        if not self._store.transition(
            job.id,
            JobStatus.TIMEOUT,
            expected_status={JobStatus.RUNNING},
            **fields,
        ):
            if "environment_handle" in fields:
                self._store.update(job.id, environment_handle=None)
            logger.info("job_expiry_skipped", job_id=job.id)
            return False

        logger.warning("job_expired", job_id=job.id, error=error)
        return True

    async def _cleanup(self, job: Job) -> bool:
        handle = job.environment_handle
        if not await self._destroy(job):
            return False
        # Only clear the handle we destroyed
        current = self._store.get(job.id)
        if current is not None and current.environment_handle == handle:
            self._store.update(job.id, environment_handle=None)
        logger.info("environment_reclaimed", job_id=job.id, environment=str(handle))
        return True
