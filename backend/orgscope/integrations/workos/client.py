"""
WorkOS User Management API client.

This client handles:
- User creation and lookup by email
- Organization creation (and deletion, for compensation)
- Organization membership creation
- Magic auth (passwordless) code dispatch
- Authorization code exchange at login

Every call carries a bounded timeout. Transient failures (timeouts,
connection errors, 429, 5xx) are retried once with backoff.

Documentation: https://workos.com/docs/reference/user-management

SECURITY: The API key is never logged.
"""

import logging
import time
from threading import Lock
from typing import Any, Callable, Dict, Optional

import httpx

from orgscope.config.settings import get_settings
from orgscope.integrations.workos.exceptions import (
    WorkOSError,
    WorkOSAuthenticationError,
    WorkOSConflictError,
    WorkOSConnectionError,
    WorkOSNotFoundError,
    WorkOSRateLimitError,
    WorkOSServerError,
)
from orgscope.integrations.workos.models import (
    WorkOSAuthentication,
    WorkOSMembership,
    WorkOSOrganization,
    WorkOSUser,
)

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_BASE_URL = "https://api.workos.com"
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 5.0
DEFAULT_MAX_RETRIES = 1
DEFAULT_BACKOFF_SECONDS = 0.5

# 422 error codes WorkOS uses for "already exists"
_CONFLICT_CODES = frozenset({"email_not_available", "user_already_exists", "organization_membership_already_exists"})


class WorkOSClient:
    """
    Synchronous client for the WorkOS REST API.

    Usage:
        with WorkOSClient() as client:
            user = client.create_user("alice@example.com", first_name="Alice")
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        client_id: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            api_key: WorkOS API key (default: WORKOS_API_KEY)
            client_id: WorkOS client id (default: WORKOS_CLIENT_ID)
            base_url: API base URL (default: WORKOS_API_BASE_URL or the public API)
            timeout: Request timeout in seconds
            connect_timeout: Connection timeout in seconds
            max_retries: Retries after the first attempt for transient failures
            backoff_seconds: Base delay, doubled per retry
            http_client: Pre-built httpx client (tests pass a MockTransport)
        """
        settings = get_settings()
        self.api_key = api_key or settings.workos_api_key
        self.client_id = client_id or settings.workos_client_id
        self.base_url = (base_url or settings.workos_api_base_url or DEFAULT_BASE_URL).rstrip("/")
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

        if not self.api_key:
            raise ValueError(
                "WorkOS API key is required. Set WORKOS_API_KEY environment variable "
                "or pass api_key parameter."
            )

        self._client = http_client or httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
        )
        self._headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "WorkOSClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # =========================================================================
    # Transport
    # =========================================================================

    def _request(
        self,
        method: str,
        endpoint: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        attempt = 0
        while True:
            try:
                return self._request_once(method, endpoint, json=json, params=params)
            except WorkOSError as e:
                if not e.transient or attempt >= self.max_retries:
                    raise
                delay = self.backoff_seconds * (2 ** attempt)
                if isinstance(e, WorkOSRateLimitError) and e.retry_after:
                    delay = max(delay, e.retry_after)
                attempt += 1
                logger.warning(
                    "Retrying WorkOS request after transient failure",
                    extra={
                        "endpoint": endpoint,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "error": repr(e),
                    },
                )
                self._sleep(delay)

    def _request_once(
        self,
        method: str,
        endpoint: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        try:
            response = self._client.request(
                method=method,
                url=url,
                json=json,
                params=params,
                headers=self._headers,
            )
        except httpx.TimeoutException as e:
            logger.error("WorkOS API timeout", extra={"endpoint": endpoint, "error": str(e)})
            raise WorkOSConnectionError(f"Request timeout: {e}")
        except httpx.RequestError as e:
            logger.error("WorkOS API connection error", extra={"endpoint": endpoint, "error": str(e)})
            raise WorkOSConnectionError(f"Connection error: {e}")

        if response.status_code < 400:
            if response.status_code == 204 or not response.content:
                return {}
            return response.json()

        body: Dict[str, Any] = {}
        try:
            parsed = response.json()
            if isinstance(parsed, dict):
                body = parsed
        except ValueError:
            body = {}
        code = body.get("code") or body.get("error")
        message = body.get("message") or f"WorkOS API error: {response.status_code}"

        if response.status_code in (401, 403):
            logger.error(
                "WorkOS API authentication failed",
                extra={"status_code": response.status_code, "endpoint": endpoint},
            )
            raise WorkOSAuthenticationError(status_code=response.status_code, code=code, response=body)

        if response.status_code == 404:
            raise WorkOSNotFoundError(message=f"Resource not found: {endpoint}", code=code, response=body)

        if response.status_code == 409 or (response.status_code == 422 and code in _CONFLICT_CODES):
            raise WorkOSConflictError(message=message, status_code=response.status_code, code=code, response=body)

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            logger.warning(
                "WorkOS API rate limited",
                extra={"endpoint": endpoint, "retry_after": retry_after},
            )
            try:
                retry_after_seconds = float(retry_after) if retry_after else None
            except ValueError:
                retry_after_seconds = None
            raise WorkOSRateLimitError(retry_after=retry_after_seconds, code=code, response=body)

        logger.error(
            "WorkOS API error",
            extra={
                "status_code": response.status_code,
                "endpoint": endpoint,
                "response": str(body)[:500],
            },
        )
        if response.status_code >= 500:
            raise WorkOSServerError(message=message, status_code=response.status_code, code=code, response=body)
        raise WorkOSError(message=message, status_code=response.status_code, code=code, response=body)

    # =========================================================================
    # Users
    # =========================================================================

    def create_user(
        self,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email_verified: bool = False,
    ) -> WorkOSUser:
        """
        Create a user.

        Raises:
            WorkOSConflictError: a user with this email already exists
        """
        payload: Dict[str, Any] = {"email": email, "email_verified": email_verified}
        if first_name:
            payload["first_name"] = first_name
        if last_name:
            payload["last_name"] = last_name
        data = self._request("POST", "/user_management/users", json=payload)
        return WorkOSUser.model_validate(data)

    def get_user(self, user_id: str) -> WorkOSUser:
        data = self._request("GET", f"/user_management/users/{user_id}")
        return WorkOSUser.model_validate(data)

    def get_user_by_email(self, email: str) -> Optional[WorkOSUser]:
        data = self._request("GET", "/user_management/users", params={"email": email})
        users = data.get("data") or []
        if not users:
            return None
        return WorkOSUser.model_validate(users[0])

    def send_magic_auth_code(self, email: str) -> None:
        """Send a one-time passwordless sign-in code."""
        self._request("POST", "/user_management/magic_auth", json={"email": email})

    def authenticate_with_code(self, code: str) -> WorkOSAuthentication:
        """Exchange an OAuth authorization code for a session."""
        data = self._request(
            "POST",
            "/user_management/authenticate",
            json={
                "client_id": self.client_id,
                "client_secret": self.api_key,
                "grant_type": "authorization_code",
                "code": code,
            },
        )
        return WorkOSAuthentication.model_validate(data)

    # =========================================================================
    # Organizations
    # =========================================================================

    def create_organization(self, name: str, external_id: Optional[str] = None) -> WorkOSOrganization:
        payload: Dict[str, Any] = {"name": name}
        if external_id:
            payload["external_id"] = external_id
        data = self._request("POST", "/organizations", json=payload)
        return WorkOSOrganization.model_validate(data)

    def delete_organization(self, organization_id: str) -> None:
        self._request("DELETE", f"/organizations/{organization_id}")

    def create_organization_membership(
        self,
        user_id: str,
        organization_id: str,
        role_slug: str,
    ) -> WorkOSMembership:
        data = self._request(
            "POST",
            "/user_management/organization_memberships",
            json={
                "user_id": user_id,
                "organization_id": organization_id,
                "role_slug": role_slug,
            },
        )
        return WorkOSMembership.model_validate(data)


# Singleton client instance (lazy initialization)
_client_instance: Optional[WorkOSClient] = None
_client_lock = Lock()


def get_workos_client() -> WorkOSClient:
    """
    Process-wide client configured from settings.

    Raises:
        ValueError: WORKOS_API_KEY is not set
    """
    global _client_instance

    with _client_lock:
        if _client_instance is None:
            settings = get_settings()
            _client_instance = WorkOSClient(timeout=float(settings.idp_timeout_seconds))
        return _client_instance


def reset_workos_client() -> None:
    """Close and drop the singleton (for tests and shutdown)."""
    global _client_instance
    with _client_lock:
        if _client_instance is not None:
            _client_instance.close()
        _client_instance = None
