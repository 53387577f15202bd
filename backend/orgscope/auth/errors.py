"""
Authorization error taxonomy.

Every error carries a human-readable message and a stable error_code.
HTTP mapping lives in orgscope.main:

- Unauthenticated            -> 401
- ProviderUnavailable        -> 503
- AuthorizationDenied        -> 404 (indistinguishable from "not found")
- GuestUserCreationError     -> 502, code GUEST_USER_CREATION_ERROR
- OrganizationCreationFailed -> never surfaced by resolve_authorization;
                                the session degrades to no organization
"""

from typing import Optional


class AuthorizationError(Exception):
    """Base class for authentication and authorization failures."""

    error_code = "authorization_error"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, error_code={self.error_code!r})"


class Unauthenticated(AuthorizationError):
    """Missing, malformed, expired or badly signed session token."""

    error_code = "unauthenticated"


class ProviderUnavailable(AuthorizationError):
    """Identity provider (or its key set) could not be reached."""

    error_code = "provider_unavailable"


class OrganizationCreationFailed(AuthorizationError):
    """Personal organization could not be provisioned. Safe to retry."""

    error_code = "organization_creation_failed"


class GuestUserCreationError(AuthorizationError):
    """Guest identity could not be provisioned during booking."""

    error_code = "GUEST_USER_CREATION_ERROR"

    def __init__(self, message: str = "Failed to create guest user", cause: Optional[Exception] = None):
        super().__init__(message)
        self.cause = cause


class AuthorizationDenied(AuthorizationError):
    """
    Caller may not access the target.

    Surfaced as "not found" so that existence is never disclosed.
    """

    error_code = "not_found"

    def __init__(self, message: str = "Not found", error_code: Optional[str] = None):
        super().__init__(message, error_code)
