from __future__ import annotations


class JobPermanentError(RuntimeError):
    """Raised from helper code when retrying cannot help (bad input, missing credentials)."""


class NoHandlerError(JobPermanentError):
    def __init__(self, job_type: str) -> None:
        super().__init__(f"no handler registered for job type {job_type or '<missing>'}")
        self.job_type = job_type


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job {job_id} not found")
        self.job_id = job_id


class JobStateConflictError(RuntimeError):
    def __init__(self, job_id: str, state: str, message: str) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.state = state
