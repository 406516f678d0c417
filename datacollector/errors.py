"""
Job orchestration error types.

Every error raised by the engine inherits from JobError so callers at the
orchestration boundary can catch the whole family at once.
"""


class JobError(Exception):
    """Base exception for all job-related failures."""
    pass


class ValidationError(JobError):
    """Malformed job input, reported to the submitter before anything is queued."""

    def __init__(self, message, field=None):
        self.field = field
        super().__init__(message)


class InvalidTransitionError(JobError):
    """Raised when a status change is not in the transition table."""

    def __init__(self, job_id, current_status, target_status):
        self.job_id = job_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Invalid state transition for job {job_id}: "
            f"{getattr(current_status, 'value', current_status)} -> "
            f"{getattr(target_status, 'value', target_status)}"
        )


class JobNotFoundError(JobError):
    """Raised when a job id has no persisted record."""

    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class ServiceUnavailableError(JobError):
    """An optional collaborator is not registered."""

    def __init__(self, name):
        self.name = name
        super().__init__(f"Service '{name}' is not available")


class ExecutionError(JobError):
    """A job's validate() or execute() failed."""
    pass


class JobTimeoutError(JobError):
    """A job ran past its wall-clock time limit."""

    def __init__(self, job_id, timeout_seconds):
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Job {job_id} exceeded timeout of {timeout_seconds:g}s")


class StepNotFoundError(JobError):
    """A step plan was referenced with a name it does not contain."""

    def __init__(self, step_name):
        self.step_name = step_name
        super().__init__(f"Step '{step_name}' not found")


class ProcessorStateError(JobError):
    """The processor was driven out of order (double initialize, late registration)."""
    pass


class ConfigError(JobError):
    """A required configuration key is missing."""

    def __init__(self, key):
        self.key = key
        super().__init__(f"Configuration key '{key}' not found")
