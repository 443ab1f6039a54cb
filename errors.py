"""
errors.py — Failure classes for the EOL check pipeline.
Each class maps to one retry policy; callers branch on the type, not the message.
"""

from typing import Optional


class EolCheckerError(Exception):
    """Base class for all pipeline errors."""


class TransientNetworkError(EolCheckerError):
    """Network failure or non-2xx answer worth retrying with exponential backoff."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ServiceRestartingError(TransientNetworkError):
    """The scraping service answered 503 while restarting; retried on the longer tier."""


class RateLimitError(EolCheckerError):
    """Per-window LLM rate limit. Retry after the provider's reset time."""

    def __init__(self, message: str, reset_seconds: Optional[float] = None):
        super().__init__(message)
        self.reset_seconds = reset_seconds


class DailyQuotaExhaustedError(EolCheckerError):
    """Per-day LLM quota is gone. Terminal: never retried."""

    def __init__(self, message: str, retry_seconds: Optional[float] = None):
        super().__init__(message)
        self.retry_seconds = retry_seconds


class ResponseValidationError(EolCheckerError):
    """The model's answer could not be parsed or lacks required fields."""


class RecordNotFoundError(EolCheckerError):
    """A record is missing. May be store lag right after creation."""

    def __init__(self, key: str):
        super().__init__(f"Record {key} not found")
        self.key = key


class UnknownUrlIndexError(EolCheckerError):
    """A result arrived for a URL index the job does not have."""


class StorageTransientError(EolCheckerError):
    """The record store failed in a way that is expected to clear up (e.g. locked)."""


class InvalidTransitionError(EolCheckerError):
    """A job status change that the state machine does not allow."""

    def __init__(self, job_id: str, old_status: str, new_status: str):
        super().__init__(f"Job {job_id}: illegal transition {old_status} → {new_status}")
        self.old_status = old_status
        self.new_status = new_status


class SearchError(EolCheckerError):
    """Candidate URLs could not be produced for a subject."""


class CleanupError(EolCheckerError):
    """A sweep failed. Logged and swallowed by callers."""


class DispatchConfigError(EolCheckerError):
    """A dispatch strategy is missing configuration it needs (e.g. proxy URLs)."""
