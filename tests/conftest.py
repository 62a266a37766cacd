"""Root conftest for test suite.

Shared fixtures for settings, manifests and a fake provisioner. Slow tests
are skipped unless requested with ``-m slow``.
"""

import itertools
from unittest.mock import AsyncMock

import pytest

from delegation.config import Settings
from delegation.jobs.manifest import JobManifest
from delegation.jobs.models import EnvironmentHandle


def pytest_collection_modifyitems(config, items):
    """Skip slow tests unless explicitly requested."""
    markexpr = config.getoption("-m", default="")
    if "slow" in markexpr:
        return

    skip_slow = pytest.mark.skip(
        reason="slow tests skipped by default. Run with: pytest -m slow"
    )
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


class FakeProvisioner:
    """In-memory provisioner whose calls are AsyncMocks.

    ``create_environment`` hands out sequential env ids on node ``pve``.
    Set ``side_effect`` on any method to simulate failures.
    """

    def __init__(self):
        self._ids = itertools.count(100)
        self.connect = AsyncMock()
        self.disconnect = AsyncMock()
        self.create_environment = AsyncMock(side_effect=self._create)
        self.start_environment = AsyncMock()
        self.destroy_environment = AsyncMock()

    async def _create(self, job_id, manifest):
        return EnvironmentHandle(env_id=str(next(self._ids)), node="pve")

    def health(self):
        return {"connected": True}


@pytest.fixture
def settings():
    """Settings isolated from the environment and any .env file."""
    return Settings(provisioner_url="http://provisioner.test", _env_file=None)


@pytest.fixture
def manifest():
    return JobManifest(task="Summarize the repository", agent_type="claude")


@pytest.fixture
def fake_provisioner():
    return FakeProvisioner()
