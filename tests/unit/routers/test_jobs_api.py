"""Tests for the job control endpoints."""

import uuid

from delegation.jobs.models import EnvironmentHandle, utcnow
from delegation.jobs.types import JobStatus
from delegation.services.provisioner import ProvisionerError


MANIFEST = {"task": "Write a haiku about VMs", "agentType": "claude", "timeout": 600}


class TestSubmit:
    def test_accepted(self, client, store, wait_for_status):
        response = client.post("/jobs", json=MANIFEST)

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "pending"
        uuid.UUID(body["job_id"])

        job = wait_for_status(body["job_id"], JobStatus.RUNNING)
        assert job.environment_handle == EnvironmentHandle("100", "pve")
        assert job.manifest.timeout == 600

    def test_invalid_manifest(self, client, store):
        response = client.post("/jobs", json={"task": "", "agentType": "claude"})
        assert response.status_code == 422
        body = response.json()
        assert body["error_code"] == "invalid_manifest"
        assert body["detail"] == "Invalid manifest: 1 validation error(s)"
        assert body["errors"][0]["loc"] == ["body", "task"]
        assert store.count() == 0

    def test_unknown_agent_type(self, client):
        response = client.post("/jobs", json={"task": "x", "agentType": "robot"})
        assert response.status_code == 422
        assert response.json()["error_code"] == "invalid_manifest"

    def test_provisioning_failure_visible_in_status(
        self, client, fake_provisioner, wait_for_status
    ):
        fake_provisioner.create_environment.side_effect = ProvisionerError("no nodes")
        job_id = client.post("/jobs", json=MANIFEST).json()["job_id"]

        wait_for_status(job_id, JobStatus.FAILED)
        body = client.get(f"/jobs/{job_id}").json()
        assert body["status"] == "failed"
        assert body["error"] == "Provisioning failed: no nodes"


class TestStatus:
    def test_status(self, client, running_job):
        response = client.get(f"/jobs/{running_job}")
        assert response.status_code == 200
        body = response.json()
        assert body["job_id"] == running_job
        assert body["status"] == "running"
        assert body["started_at"] is not None
        assert body["completed_at"] is None

    def test_status_includes_progress(self, client, store, running_job):
        store.update(running_job, progress="compiling")
        assert client.get(f"/jobs/{running_job}").json()["progress"] == "compiling"

    def test_unknown(self, client):
        response = client.get(f"/jobs/{uuid.uuid4()}")
        assert response.status_code == 404
        assert response.json()["error_code"] == "job_not_found"


class TestResult:
    def test_not_complete(self, client, running_job):
        response = client.get(f"/jobs/{running_job}/result")
        assert response.status_code == 409
        body = response.json()
        assert body["detail"] == "Job not complete. Status: running"
        assert body["status"] == "running"

    def test_complete(self, client, store, running_job):
        client.post(
            f"/callback/{running_job}/complete",
            json={
                "job_id": running_job,
                "status": "success",
                "exit_code": 0,
                "output": "haiku",
                "duration_seconds": 3,
                "artifacts": [{"path": "poem.txt"}],
            },
        )
        response = client.get(f"/jobs/{running_job}/result")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["output"] == "haiku"
        assert body["artifacts"] == [{"path": "poem.txt"}]
        assert body["duration_seconds"] >= 0

    def test_timeout_has_no_result(self, client, store, running_job):
        store.transition(running_job, JobStatus.TIMEOUT, completed_at=utcnow())
        assert client.get(f"/jobs/{running_job}/result").status_code == 409

    def test_unknown(self, client):
        assert client.get(f"/jobs/{uuid.uuid4()}/result").status_code == 404


class TestCancel:
    def test_cancel_running(self, client, store, running_job, fake_provisioner):
        response = client.post(f"/jobs/{running_job}/cancel")

        assert response.status_code == 200
        assert response.json() == {
            "cancelled": True,
            "job_id": running_job,
            "status": "failed",
        }
        job = store.get(running_job)
        assert job.error == "cancelled by user"
        assert job.environment_handle is None
        fake_provisioner.destroy_environment.assert_awaited_once_with(
            EnvironmentHandle("101", "pve")
        )

    def test_cancel_completed(self, client, store, running_job):
        store.transition(running_job, JobStatus.SUCCESS)
        response = client.post(f"/jobs/{running_job}/cancel")
        assert response.status_code == 409
        assert response.json()["detail"] == "Job already completed. Status: success"

    def test_cancel_unknown(self, client):
        assert client.post(f"/jobs/{uuid.uuid4()}/cancel").status_code == 404


class TestList:
    def test_list_and_filter(self, client, store, running_job, manifest):
        pending = store.create(manifest)

        all_jobs = client.get("/jobs").json()
        assert {j["job_id"] for j in all_jobs} == {running_job, pending}

        running = client.get("/jobs", params={"status": "running"}).json()
        assert [j["job_id"] for j in running] == [running_job]
        assert running[0]["task"] == manifest.task

    def test_invalid_status_filter(self, client):
        response = client.get("/jobs", params={"status": "sleeping"})
        assert response.status_code == 422
        assert response.json()["error_code"] == "invalid_request"

    def test_empty(self, client):
        assert client.get("/jobs").json() == []
