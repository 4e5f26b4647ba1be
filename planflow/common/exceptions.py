# planflow/common/exceptions.py
from typing import Optional


class PlanFlowException(Exception):
    """Base exception for the PlanFlow library."""

    pass


class ConfigurationError(PlanFlowException):
    """Raised at start-up when the process cannot be configured."""

    pass


class JobLoadError(PlanFlowException):
    """Raised when no processor is registered for a job type."""

    pass


class DuplicateJobError(PlanFlowException):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} already exists")
        self.job_id = job_id


class JobCancelledError(PlanFlowException):
    def __init__(self, job_id: str, reason: str = "Job was cancelled"):
        super().__init__(f"{reason}: {job_id}")
        self.job_id = job_id
        self.reason = reason


class JobFailedError(PlanFlowException):
    def __init__(self, job_id: str, reason: Optional[str]):
        super().__init__(f"Job {job_id} failed: {reason}")
        self.job_id = job_id
        self.reason = reason


class JobTimeoutError(PlanFlowException):
    def __init__(self, job_id: str, timeout_ms: int):
        super().__init__(f"Job {job_id} timed out after {timeout_ms}ms")
        self.job_id = job_id
        self.timeout_ms = timeout_ms


class InvalidStateTransition(PlanFlowException):
    def __init__(self, job_id: str, old_state: str, new_state: str):
        super().__init__(f"Job {job_id} cannot move from {old_state} to {new_state}")
        self.job_id = job_id
        self.old_state = old_state
        self.new_state = new_state


class QueueOverloadedError(PlanFlowException):
    """Admission rejected the submission; the caller may retry after ``retry_after`` seconds."""

    def __init__(self, in_flight: int, retry_after: int):
        super().__init__(
            f"Queue overloaded ({in_flight} jobs in flight), retry after {retry_after}s"
        )
        self.in_flight = in_flight
        self.retry_after = retry_after

