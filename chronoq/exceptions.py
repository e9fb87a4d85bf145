"""
Error taxonomy.

Infrastructure errors (`TransportError`) are retried by the calling loop with
backoff. Job errors (`HandlerError`) feed the retry policy. `ConflictError`
means the caller lost an optimistic-concurrency race and must re-read.
"""
from typing import Optional


class ChronoqError(Exception):
    """Base class for all chronoq errors."""


class ConfigurationError(ChronoqError):
    """Invalid static configuration (unknown handler, bad settings)."""


class UnknownJobTypeError(ConfigurationError):
    def __init__(self, job_type: str) -> None:
        super().__init__(f"No handler registered for job type '{job_type}'")
        self.job_type = job_type


class InvalidScheduleError(ConfigurationError, ValueError):
    def __init__(self, schedule: str, reason: str = "") -> None:
        message = f"Invalid schedule '{schedule}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.schedule = schedule


class JobNotFoundError(ChronoqError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class ConflictError(ChronoqError):
    """Stale version: someone else already advanced the job."""

    def __init__(
        self,
        job_id: str,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
        message: Optional[str] = None,
    ) -> None:
        if message is None:
            message = f"Version conflict on job {job_id}"
            if expected_version is not None:
                message += f" (expected {expected_version}, found {actual_version})"
        super().__init__(message)
        self.job_id = job_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class LeaseExpiredError(ConflictError):
    """The caller's lease was reclaimed and the job handed to someone else."""


class InvalidTransitionError(ChronoqError):
    def __init__(self, job_id: Optional[str], source: str, target: str) -> None:
        super().__init__(f"Job {job_id}: transition {source} -> {target} is not allowed")
        self.job_id = job_id
        self.source = source
        self.target = target


class HandlerError(ChronoqError):
    """Job-specific execution failure. Retried according to the job type's policy."""


class TerminalError(HandlerError):
    """Failure that must not be retried; the job is dead-lettered."""


class TransportError(ChronoqError):
    """Store or queue unreachable."""


class StoreUnavailableError(TransportError):
    pass


class QueueUnavailableError(TransportError):
    pass
