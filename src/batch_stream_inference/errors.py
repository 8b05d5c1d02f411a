"""Error types and transient/permanent classification.

Remote-service failures never escape the coordinator as exceptions; they are
classified here and recorded as data in the batch result.  Only argument
validation, unknown job ids and interrupted waits are raised to the caller.
"""

import asyncio
from enum import Enum

import openai

# HTTP statuses worth retrying besides 5xx.
_RETRYABLE_STATUS = (408, 409, 429)


class BatchStreamError(Exception):
    """Base class for all errors raised by this package."""


class InvalidArgumentError(BatchStreamError, ValueError):
    """Malformed submission parameters."""


class JobNotFoundError(BatchStreamError, LookupError):
    """Raised when a job id is not known to the coordinator."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Unknown batch job: {job_id}")


class TransientError(BatchStreamError):
    """A failure that is expected to go away on retry."""


class PermanentFailureError(BatchStreamError):
    """A failure that retrying cannot fix (bad payload, malformed response)."""


class WaitCancelledError(BatchStreamError):
    """The wait ended before the job did.  The job itself keeps running."""

    def __init__(self, job_id: str, reason: str):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Wait for batch job {job_id} cancelled: {reason}")


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CANCELLED = "cancelled"


def is_transient(exc: BaseException) -> bool:
    """Return True if *exc* should be retried.

    Everything is retryable unless it is explicitly classified otherwise:
    our own ``PermanentFailureError``, a missing optional dependency
    (``ImportError``), or an HTTP status error outside the 408/409/429/5xx
    range.
    """
    if isinstance(exc, (PermanentFailureError, ImportError)):
        return False
    if isinstance(exc, TransientError):
        return True
    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        return status in _RETRYABLE_STATUS or status >= 500
    return True


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, asyncio.CancelledError):
        return ErrorKind.CANCELLED
    if is_transient(exc):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT
