class JobEngineError(Exception):
    """Base exception for all job-engine errors."""


class RunAlreadyActiveError(JobEngineError):
    """Raised when a run is triggered while another run of the same family is active."""

    def __init__(self, family: str) -> None:
        super().__init__(f"A '{family}' run is already in progress")
        self.family = family


class LlmApiError(JobEngineError):
    """Raised when the LLM provider answers with a non-success HTTP status."""

    def __init__(self, status_code: int, operation: str) -> None:
        super().__init__(f"{operation}_{status_code}")
        self.status_code = status_code
        self.operation = operation


class UnknownSourceError(JobEngineError):
    """Raised when a source task names an adapter that is not registered."""


class JobNotFoundError(JobEngineError):
    """Raised when a status change targets a job id that does not exist."""

    def __init__(self, job_id: int) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id
