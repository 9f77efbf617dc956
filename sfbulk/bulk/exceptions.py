"""
Bulk job lifecycle exceptions.
"""

from typing import Optional

from sfbulk.integrations.salesforce.exceptions import ErrorKind, SalesforceError


class BulkJobStateError(SalesforceError):
    """Raised when an operation is not legal for the job's current state."""

    kind = ErrorKind.JOB_STATE

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        state: Optional[str] = None,
    ):
        super().__init__(message)
        self.job_id = job_id
        self.state = state

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(message={self.message!r}, "
            f"job_id={self.job_id!r}, state={self.state!r})"
        )


class JobWaitTimeoutError(SalesforceError):
    """Raised when a job is still running after the caller's max wait."""

    kind = ErrorKind.WAIT_TIMEOUT

    def __init__(
        self,
        job_id: str,
        max_wait: float,
        last_state: Optional[str] = None,
        message: Optional[str] = None,
    ):
        super().__init__(
            message
            or f"Job {job_id} did not finish within {max_wait:g}s (last state: {last_state})"
        )
        self.job_id = job_id
        self.max_wait = max_wait
        self.last_state = last_state
