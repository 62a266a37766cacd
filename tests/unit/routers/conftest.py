"""Fixtures for router tests: the full app over a fake provisioner."""

import time

import pytest
from fastapi.testclient import TestClient

from delegation.jobs.models import EnvironmentHandle, utcnow
from delegation.jobs.types import JobStatus
from delegation.main import create_app


@pytest.fixture
def app(settings, fake_provisioner):
    return create_app(settings=settings, provisioner=fake_provisioner)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def store(app):
    return app.state.store


@pytest.fixture
def running_job(store, manifest):
    """A job in ``running`` with a VM attached, bypassing provisioning."""
    job_id = store.create(manifest)
    store.transition(job_id, JobStatus.PROVISIONING)
    store.transition(
        job_id,
        JobStatus.RUNNING,
        started_at=utcnow(),
        environment_handle=EnvironmentHandle("101", "pve"),
    )
    return job_id


@pytest.fixture
def wait_for_status(store):
    """Poll the store until a job reaches a status.

    Provisioning runs on the client's event loop thread, so tests wait for it.
    """

    def wait(job_id, status, timeout=2.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            job = store.get(job_id)
            if job is not None and job.status == status:
                return job
            time.sleep(0.01)
        current = store.get(job_id)
        raise AssertionError(
            f"job {job_id} did not reach {status.value}: "
            f"{current.status.value if current else 'missing'}"
        )

    return wait
