"""
WorkOS-specific exceptions for error handling.

`transient` marks failures worth one retry (timeouts, connection errors,
429 and 5xx). Everything else is final.
"""

from typing import Optional, Dict, Any


class WorkOSError(Exception):
    """Base exception for WorkOS API errors."""

    transient = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        response: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.response = response or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, status_code={self.status_code})"


class WorkOSAuthenticationError(WorkOSError):
    """API key rejected (401/403)."""

    def __init__(self, message: str = "WorkOS rejected the API key", status_code: int = 401, **kwargs):
        super().__init__(message, status_code=status_code, **kwargs)


class WorkOSNotFoundError(WorkOSError):
    def __init__(self, message: str = "Resource not found", **kwargs):
        super().__init__(message, status_code=404, **kwargs)


class WorkOSConflictError(WorkOSError):
    """The resource already exists (e.g. a user with this email)."""

    def __init__(self, message: str = "Resource already exists", status_code: int = 409, **kwargs):
        super().__init__(message, status_code=status_code, **kwargs)


class WorkOSRateLimitError(WorkOSError):
    transient = True

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, status_code=429, **kwargs)
        self.retry_after = retry_after


class WorkOSServerError(WorkOSError):
    transient = True


class WorkOSConnectionError(WorkOSError):
    """Network failure or timeout reaching WorkOS."""

    transient = True

    def __init__(self, message: str = "Unable to reach WorkOS", **kwargs):
        super().__init__(message, **kwargs)
