"""Pydantic models for request/response validation."""

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from delegation.jobs.types import JobStatus


# Callback Models (job runner -> orchestrator)
class CallbackPayload(BaseModel):
    """Completion report sent by the job runner when the agent exits."""

    job_id: UUID = Field(..., description="Job the report belongs to")
    status: Literal["success", "failed"] = Field(..., description="Final status")
    exit_code: int = Field(..., description="Agent process exit code")
    output: str = Field(..., description="Captured stdout")
    artifacts: Optional[list[Any]] = Field(default=None, description="Produced artifacts")
    duration_seconds: float = Field(..., description="Runner wall time")
    error: Optional[str] = Field(default=None, description="Captured stderr / error")


class StatusUpdate(BaseModel):
    """Progress report sent by the job runner while the agent runs."""

    job_id: UUID = Field(..., description="Job the report belongs to")
    progress: str = Field(..., description="Progress description")
    output: Optional[str] = Field(default=None, description="Partial output")


class CallbackAck(BaseModel):
    """Acknowledgement returned to the job runner."""

    received: bool = True


# Control Models (caller -> orchestrator)
class SubmitJobResponse(BaseModel):
    """Response for an accepted job."""

    job_id: str = Field(..., description="Job identifier")
    status: JobStatus = Field(default=JobStatus.PENDING)


class JobStatusResponse(BaseModel):
    """Current status of a job."""

    job_id: str
    status: JobStatus
    progress: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobResultResponse(BaseModel):
    """Result of a finished job."""

    job_id: str
    status: JobStatus
    output: Optional[str] = None
    error: Optional[str] = None
    artifacts: Optional[list[Any]] = None
    duration_seconds: Optional[float] = Field(
        default=None, description="Seconds between start and completion"
    )


class JobSummaryResponse(BaseModel):
    """Compact job listing entry."""

    job_id: str
    status: JobStatus
    task: str = Field(..., description="Task text, truncated")
    created_at: datetime


class CancelJobResponse(BaseModel):
    """Response for a cancelled job."""

    cancelled: bool = True
    job_id: str
    status: JobStatus


class ErrorResponse(BaseModel):
    """Structured error body."""

    detail: str
    error_code: str
    status: Optional[JobStatus] = None


# Health Models
class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["ok"] = "ok"
    version: str
    jobs: dict[str, int] = Field(default_factory=dict, description="Jobs per status")
    provisioning_inflight: int = 0
    reconciler: dict[str, Any] = Field(default_factory=dict)
    provisioner: dict[str, Any] = Field(default_factory=dict)
