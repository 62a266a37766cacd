"""Unit tests for the job orchestrator."""

import asyncio
from datetime import timedelta

import pytest

from delegation.jobs.errors import (
    JobAlreadyCompletedError,
    JobNotCompleteError,
    JobNotFoundError,
    ManifestValidationError,
)
from delegation.jobs.manifest import JobManifest
from delegation.jobs.models import EnvironmentHandle, utcnow
from delegation.jobs.store import JobStore
from delegation.jobs.types import JobStatus
from delegation.services.orchestrator import CANCELLED_ERROR, Orchestrator
from delegation.services.provisioner import ProvisionerError

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def store():
    return JobStore()


@pytest.fixture
def orchestrator(store, fake_provisioner):
    return Orchestrator(store, fake_provisioner)


async def _submit_running(orchestrator, manifest) -> str:
    job_id = await orchestrator.submit(manifest)
    await orchestrator.drain()
    assert orchestrator.store.get(job_id).status == JobStatus.RUNNING
    return job_id


# =============================================================================
# Submit / Provisioning
# =============================================================================


class TestSubmit:
    @pytest.mark.asyncio
    async def test_returns_pending_job_immediately(self, orchestrator, manifest):
        job_id = await orchestrator.submit(manifest)
        # Provisioning has not had a chance to run yet
        assert orchestrator.get_status(job_id).status == JobStatus.PENDING
        assert orchestrator.provisioning_inflight == 1
        await orchestrator.drain()
        assert orchestrator.provisioning_inflight == 0

    @pytest.mark.asyncio
    async def test_provisions_to_running(self, orchestrator, store, manifest, fake_provisioner):
        job_id = await _submit_running(orchestrator, manifest)
        job = store.get(job_id)
        assert job.environment_handle == EnvironmentHandle("100", "pve")
        assert job.started_at is not None
        assert job.last_heartbeat is None
        fake_provisioner.create_environment.assert_awaited_once_with(job_id, manifest)
        fake_provisioner.start_environment.assert_awaited_once_with(
            EnvironmentHandle("100", "pve")
        )

    @pytest.mark.asyncio
    async def test_accepts_wire_dict(self, orchestrator):
        job_id = await orchestrator.submit({"task": "x", "agentType": "script"})
        await orchestrator.drain()
        assert orchestrator.get_status(job_id).status == JobStatus.RUNNING

    @pytest.mark.asyncio
    async def test_invalid_dict_rejected_without_creating_job(self, orchestrator, store):
        with pytest.raises(ManifestValidationError) as exc_info:
            await orchestrator.submit({"task": "", "agentType": "robot"})
        assert exc_info.value.errors
        assert store.count() == 0

    @pytest.mark.asyncio
    async def test_concurrent_submissions_provision_in_parallel(
        self, orchestrator, store, manifest, fake_provisioner
    ):
        gate = asyncio.Event()
        entered = 0

        async def slow_create(job_id, manifest):
            nonlocal entered
            entered += 1
            await gate.wait()
            return EnvironmentHandle(job_id[:8], "pve")

        fake_provisioner.create_environment.side_effect = slow_create
        ids = [await orchestrator.submit(manifest) for _ in range(3)]
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert entered == 3
        assert all(store.get(i).status == JobStatus.PROVISIONING for i in ids)

        gate.set()
        await orchestrator.drain()
        assert all(store.get(i).status == JobStatus.RUNNING for i in ids)


class TestProvisioningFailure:
    @pytest.mark.asyncio
    async def test_create_failure_fails_job(self, orchestrator, store, manifest, fake_provisioner):
        fake_provisioner.create_environment.side_effect = ProvisionerError("no capacity")
        job_id = await orchestrator.submit(manifest)
        await orchestrator.drain()

        job = store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == "Provisioning failed: no capacity"
        assert job.completed_at is not None
        assert job.environment_handle is None

    @pytest.mark.asyncio
    async def test_start_failure_keeps_handle_for_cleanup(
        self, orchestrator, store, manifest, fake_provisioner
    ):
        fake_provisioner.start_environment.side_effect = ProvisionerError("boot failed")
        job_id = await orchestrator.submit(manifest)
        await orchestrator.drain()

        job = store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error.startswith("Provisioning failed: boot failed")
        assert job.environment_handle is not None
        assert [j.id for j in store.find_pending_cleanup()] == [job_id]

    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_job(
        self, orchestrator, store, manifest, fake_provisioner
    ):
        fake_provisioner.create_environment.side_effect = RuntimeError("kaboom")
        job_id = await orchestrator.submit(manifest)
        await orchestrator.drain()
        assert store.get(job_id).status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_drain_timeout_cancels_and_fails(
        self, orchestrator, store, manifest, fake_provisioner
    ):
        async def hang(job_id, manifest):
            await asyncio.Event().wait()

        fake_provisioner.create_environment.side_effect = hang
        job_id = await orchestrator.submit(manifest)
        await asyncio.sleep(0)
        await orchestrator.drain(timeout=0.01)

        job = store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert "interrupted" in job.error


# =============================================================================
# Status / Result / List
# =============================================================================


class TestQueries:
    def test_status_unknown(self, orchestrator):
        with pytest.raises(JobNotFoundError):
            orchestrator.get_status("nope")

    def test_result_unknown(self, orchestrator):
        with pytest.raises(JobNotFoundError):
            orchestrator.get_result("nope")

    @pytest.mark.asyncio
    async def test_result_not_complete(self, orchestrator, manifest):
        job_id = await _submit_running(orchestrator, manifest)
        with pytest.raises(JobNotCompleteError) as exc_info:
            orchestrator.get_result(job_id)
        assert exc_info.value.message == "Job not complete. Status: running"

    @pytest.mark.asyncio
    async def test_result_not_available_for_timeout(self, orchestrator, store, manifest):
        job_id = await _submit_running(orchestrator, manifest)
        store.transition(job_id, JobStatus.TIMEOUT, completed_at=utcnow())
        with pytest.raises(JobNotCompleteError):
            orchestrator.get_result(job_id)

    @pytest.mark.asyncio
    async def test_result_after_success(self, orchestrator, store, manifest):
        job_id = await _submit_running(orchestrator, manifest)
        started = store.get(job_id).started_at
        store.transition(
            job_id,
            JobStatus.SUCCESS,
            output="done",
            artifacts=["report.md"],
            completed_at=started + timedelta(seconds=42),
        )
        result = orchestrator.get_result(job_id)
        assert result.status == JobStatus.SUCCESS
        assert result.output == "done"
        assert result.artifacts == ["report.md"]
        assert result.duration_seconds == pytest.approx(42)

    @pytest.mark.asyncio
    async def test_list_jobs_truncates_task(self, orchestrator, store):
        long_task = "x" * 250
        job_id = await orchestrator.submit({"task": long_task, "agentType": "script"})
        await orchestrator.drain()
        summaries = orchestrator.list_jobs()
        assert [s.job_id for s in summaries] == [job_id]
        assert summaries[0].task == "x" * 100
        assert orchestrator.list_jobs(JobStatus.PENDING) == []
        assert len(orchestrator.list_jobs(JobStatus.RUNNING)) == 1


# =============================================================================
# Cancel
# =============================================================================


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_running_destroys_vm(
        self, orchestrator, store, manifest, fake_provisioner
    ):
        job_id = await _submit_running(orchestrator, manifest)
        snapshot = await orchestrator.cancel(job_id)

        assert snapshot.status == JobStatus.FAILED
        assert snapshot.error == CANCELLED_ERROR
        fake_provisioner.destroy_environment.assert_awaited_once_with(
            EnvironmentHandle("100", "pve")
        )
        job = store.get(job_id)
        assert job.environment_handle is None
        assert job.completed_at is not None

    @pytest.mark.asyncio
    async def test_cancel_pending_without_vm(self, orchestrator, store, manifest, fake_provisioner):
        job_id = store.create(manifest)
        snapshot = await orchestrator.cancel(job_id)
        assert snapshot.status == JobStatus.FAILED
        fake_provisioner.destroy_environment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_destroy_failure_leaves_handle(
        self, orchestrator, store, manifest, fake_provisioner
    ):
        fake_provisioner.destroy_environment.side_effect = ProvisionerError("down")
        job_id = await _submit_running(orchestrator, manifest)
        snapshot = await orchestrator.cancel(job_id)

        assert snapshot.status == JobStatus.FAILED
        assert store.get(job_id).environment_handle is not None
        fake_provisioner.destroy_environment.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancel_terminal_rejected(self, orchestrator, store, manifest, fake_provisioner):
        job_id = await _submit_running(orchestrator, manifest)
        store.transition(job_id, JobStatus.SUCCESS, output="done")
        with pytest.raises(JobAlreadyCompletedError) as exc_info:
            await orchestrator.cancel(job_id)
        assert exc_info.value.message == "Job already completed. Status: success"
        assert store.get(job_id).output == "done"
        fake_provisioner.destroy_environment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, orchestrator):
        with pytest.raises(JobNotFoundError):
            await orchestrator.cancel("nope")

    @pytest.fixture
    def held_create(self, fake_provisioner):
        """Block create_environment until the returned event is set."""
        gate = asyncio.Event()

        async def slow_create(job_id, manifest):
            await gate.wait()
            return EnvironmentHandle("200", "pve")

        fake_provisioner.create_environment.side_effect = slow_create
        return gate

    async def _cancel_mid_create(self, orchestrator, store, manifest) -> str:
        job_id = await orchestrator.submit(manifest)
        await asyncio.sleep(0)
        assert store.get(job_id).status == JobStatus.PROVISIONING
        await orchestrator.cancel(job_id)
        return job_id

    @pytest.mark.asyncio
    async def test_cancel_during_provisioning_destroys_late_vm(
        self, orchestrator, store, manifest, fake_provisioner, held_create
    ):
        job_id = await self._cancel_mid_create(orchestrator, store, manifest)
        held_create.set()
        await orchestrator.drain()

        job = store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == CANCELLED_ERROR
        assert job.environment_handle is None
        fake_provisioner.start_environment.assert_not_awaited()
        fake_provisioner.destroy_environment.assert_awaited_once_with(
            EnvironmentHandle("200", "pve")
        )

    @pytest.mark.asyncio
    async def test_cancel_during_provisioning_persistent_job(
        self, orchestrator, store, fake_provisioner, held_create
    ):
        manifest = JobManifest(task="serve docs", agent_type="claude", lifecycle="persistent")
        job_id = await self._cancel_mid_create(orchestrator, store, manifest)
        held_create.set()
        await orchestrator.drain()

        fake_provisioner.destroy_environment.assert_awaited_once_with(
            EnvironmentHandle("200", "pve")
        )
        assert store.get(job_id).environment_handle is None

    @pytest.mark.asyncio
    async def test_cancelled_job_evicted_before_create_returns(
        self, orchestrator, store, manifest, fake_provisioner, held_create
    ):
        job_id = await self._cancel_mid_create(orchestrator, store, manifest)
        store.delete(job_id)
        held_create.set()
        await orchestrator.drain()

        assert store.get(job_id) is None
        fake_provisioner.destroy_environment.assert_awaited_once_with(
            EnvironmentHandle("200", "pve")
        )

    @pytest.mark.asyncio
    async def test_late_vm_destroy_failure_keeps_handle(
        self, orchestrator, store, manifest, fake_provisioner, held_create
    ):
        fake_provisioner.destroy_environment.side_effect = ProvisionerError("down")
        job_id = await self._cancel_mid_create(orchestrator, store, manifest)
        held_create.set()
        await orchestrator.drain()

        assert store.get(job_id).environment_handle == EnvironmentHandle("200", "pve")
        assert [j.id for j in store.find_pending_cleanup()] == [job_id]

    @pytest.mark.asyncio
    async def test_callback_race_wins(self, orchestrator, store, manifest, fake_provisioner):
        job_id = await _submit_running(orchestrator, manifest)

        async def complete_during_destroy(handle):
            store.transition(job_id, JobStatus.SUCCESS, output="raced")

        fake_provisioner.destroy_environment.side_effect = complete_during_destroy
        with pytest.raises(JobAlreadyCompletedError):
            await orchestrator.cancel(job_id)
        assert store.get(job_id).status == JobStatus.SUCCESS


class TestDestroyEnvironment:
    @pytest.mark.asyncio
    async def test_swallows_failures(self, orchestrator, fake_provisioner):
        fake_provisioner.destroy_environment.side_effect = ProvisionerError("x")
        assert not await orchestrator.destroy_environment(EnvironmentHandle("1"))

    @pytest.mark.asyncio
    async def test_success(self, orchestrator):
        assert await orchestrator.destroy_environment(EnvironmentHandle("1"))
