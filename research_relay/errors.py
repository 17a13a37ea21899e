"""
Typed errors raised by the research workflow components.
"""
from typing import Any, Optional


class ResearchRelayError(Exception):
    """Base class for all research workflow errors."""


class ValidationError(ResearchRelayError):
    """Bad input. Never retried, surfaced to the caller verbatim."""


class NotFoundError(ResearchRelayError):
    """Unknown job id."""

    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' not found.")
        self.job_id = job_id


class InvalidTransitionError(ResearchRelayError):
    """A job status change that the job state machine does not allow."""

    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(f"Job '{job_id}' cannot move from '{current}' to '{requested}'.")
        self.job_id = job_id
        self.current = current
        self.requested = requested


class PollTimeoutError(ResearchRelayError):
    """The poller ran out of attempts. The job itself may still complete."""

    def __init__(self, job_id: str, attempts: int):
        super().__init__(f"Job '{job_id}' did not finish after {attempts} status checks. Try again later.")
        self.job_id = job_id
        self.attempts = attempts


class JobFailedError(ResearchRelayError):
    """A polled job reached the 'failed' state."""

    def __init__(self, job_id: str, error: Optional[str]):
        super().__init__(error or f"Job '{job_id}' failed.")
        self.job_id = job_id
        self.error = error


class ProviderError(ResearchRelayError):
    """
    Failure reported by an external LLM provider.

    `status` carries the vendor HTTP status code when there was one and
    `data` the vendor error payload.
    """

    def __init__(self, message: str, status: Optional[int] = None, data: Any = None, service: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.data = data
        self.service = service

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429


class SessionNotFoundError(ResearchRelayError):
    """Unknown or expired research session id."""

    def __init__(self, session_id: str):
        super().__init__(f"Research session '{session_id}' not found.")
        self.session_id = session_id


class ResearchNotReadyError(ResearchRelayError):
    """A follow-up was asked before the session's research job completed."""

    def __init__(self, session_id: str, reason: str):
        super().__init__(f"Research for session '{session_id}' is not available: {reason}.")
        self.session_id = session_id
        self.reason = reason
