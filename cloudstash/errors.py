"""Exception types raised by cloudstash."""
from typing import Optional, Sequence, Tuple


class CloudStashError(Exception):
    """Base exception for cloudstash operations."""


class ApiError(CloudStashError):
    """The storage API rejected a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429


class AuthExpiredError(ApiError):
    """
    Access denied by an encrypted folder.

    `path` is the encryption boundary named by the server, when it names one.
    """

    def __init__(self, message: str, path: Optional[str] = None, status_code: int = 403):
        super().__init__(message, status_code=status_code)
        self.path = path


class ValidationError(CloudStashError):
    """Input rejected locally, before any request was made."""


class CancelledOperation(CloudStashError):
    """An operation stopped because the user cancelled it."""

    def __init__(self, reason: str = "cancelled"):
        super().__init__(reason)
        self.reason = reason


class ServerJobFailure(CloudStashError):
    """A background job reported `failed`."""

    def __init__(self, job_key: str, reason: Optional[str] = None):
        super().__init__(reason or f"Job failed: {job_key}")
        self.job_key = job_key
        self.reason = reason


class PartialBulkFailure(CloudStashError):
    """
    Part of a bulk operation was applied before the rest got blocked.

    The applied part is not rolled back.
    """

    def __init__(self, completed_keys: Sequence[str], blocked_path: str):
        self.completed_keys: Tuple[str, ...] = tuple(completed_keys)
        self.blocked_path = blocked_path
        super().__init__(
            f"{len(self.completed_keys)} item(s) were deleted but "
            f"'{blocked_path}' stayed locked"
        )


def describe_exception(exc: Exception) -> str:
    """Readable one-line reason for a failed operation."""
    if isinstance(exc, ApiError):
        return exc.message
    message = str(exc).strip()
    if message:
        return message
    return f"{type(exc).__name__}: {repr(exc)}"
