"""Job orchestration errors.

Every error carries an ``error_code`` so the HTTP layer can render it without
knowing the concrete class.
"""

from typing import Any, Optional

from delegation.jobs.types import JobStatus


class OrchestratorError(Exception):
    """Base class for errors reported to orchestrator callers."""

    error_code = "orchestrator_error"
    status_code = 500

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "error_code": self.error_code}


class InvalidRequestError(OrchestratorError):
    """Raised when request parameters fail validation."""

    error_code = "invalid_request"
    status_code = 422

    def __init__(self, message: str, errors: Optional[list[dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class ManifestValidationError(InvalidRequestError):
    """Raised when a submitted manifest fails validation."""

    error_code = "invalid_manifest"


class JobNotFoundError(OrchestratorError):
    """Raised when a job id is unknown."""

    error_code = "job_not_found"
    status_code = 404

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class JobStateError(OrchestratorError):
    """Raised when an operation is invalid for the job's current status."""

    error_code = "invalid_state"
    status_code = 409

    def __init__(self, job_id: str, status: JobStatus, message: str):
        self.job_id = job_id
        self.status = status
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["status"] = self.status.value
        return data


class JobNotCompleteError(JobStateError):
    """Raised when a result is requested before the job finished."""

    error_code = "job_not_complete"

    def __init__(self, job_id: str, status: JobStatus):
        super().__init__(job_id, status, f"Job not complete. Status: {status.value}")


class JobAlreadyCompletedError(JobStateError):
    """Raised when cancelling a job that already reached a terminal status."""

    error_code = "job_already_completed"

    def __init__(self, job_id: str, status: JobStatus):
        super().__init__(job_id, status, f"Job already completed. Status: {status.value}")


class InvalidTransitionError(JobStateError):
    """Raised when a status change would violate the job state machine."""

    error_code = "invalid_transition"

    def __init__(self, job_id: str, from_status: JobStatus, to_status: JobStatus):
        self.to_status = to_status
        super().__init__(
            job_id,
            from_status,
            f"transition_{from_status.value}_to_{to_status.value}_not_allowed",
        )
