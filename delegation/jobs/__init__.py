"""Job system package."""

from delegation.jobs.types import AgentType, JobStatus, Lifecycle, StatusMode
from delegation.jobs.manifest import JobManifest
from delegation.jobs.models import EnvironmentHandle, Job
from delegation.jobs.store import JobStore

__all__ = [
    "AgentType",
    "JobStatus",
    "Lifecycle",
    "StatusMode",
    "JobManifest",
    "EnvironmentHandle",
    "Job",
    "JobStore",
]
