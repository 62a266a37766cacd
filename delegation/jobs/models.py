"""Job system data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from delegation.jobs.manifest import JobManifest
from delegation.jobs.types import JobStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EnvironmentHandle:
    """Opaque reference to a provisioned VM."""

    env_id: str
    node: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.node}/{self.env_id}" if self.node else self.env_id


@dataclass
class Job:
    """A job tracked by the orchestrator."""

    id: str
    manifest: JobManifest
    status: JobStatus = JobStatus.PENDING

    environment_handle: Optional[EnvironmentHandle] = None

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None

    # Populated by runner callbacks
    output: Optional[str] = None
    error: Optional[str] = None
    artifacts: Optional[list[Any]] = None
    progress: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        """Wall time between start and completion, if both are known."""
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


# Fields callers may never change after creation
IMMUTABLE_FIELDS = frozenset({"id", "manifest", "created_at"})
MUTABLE_FIELDS = frozenset(Job.__dataclass_fields__) - IMMUTABLE_FIELDS
