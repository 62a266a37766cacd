"""Job system type definitions."""

from enum import Enum


class AgentType(str, Enum):
    """Agent kinds the in-VM runner knows how to launch."""

    CLAUDE = "claude"
    SCRIPT = "script"
    CUSTOM = "custom"


class Lifecycle(str, Enum):
    """What happens to a job's VM once the job finishes."""

    EPHEMERAL = "ephemeral"
    PERSISTENT = "persistent"


class StatusMode(str, Enum):
    """How chatty the runner is while the job executes."""

    SIMPLE = "simple"
    DETAILED = "detailed"
    STREAMING = "streaming"


class JobStatus(str, Enum):
    """Job lifecycle statuses.

    State machine:
    - pending -> provisioning -> running -> success | failed | timeout
    - pending | provisioning -> failed (provisioning error or cancellation)
    """

    PENDING = "pending"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (job won't change)."""
        return self in (JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.TIMEOUT)

    @property
    def has_result(self) -> bool:
        """Check if a result can be reported for this status."""
        return self in (JobStatus.SUCCESS, JobStatus.FAILED)

    def can_transition_to(self, target: "JobStatus") -> bool:
        """Check whether moving from this status to ``target`` is allowed."""
        return target in ALLOWED_TRANSITIONS[self]


ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROVISIONING, JobStatus.FAILED}),
    JobStatus.PROVISIONING: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.TIMEOUT}
    ),
    JobStatus.SUCCESS: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.TIMEOUT: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s in JobStatus if s.is_terminal)
ACTIVE_STATUSES = frozenset(s for s in JobStatus if not s.is_terminal)
