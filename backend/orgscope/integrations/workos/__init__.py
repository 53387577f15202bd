"""
WorkOS integration for identity, organization and membership provisioning.
"""

from orgscope.integrations.workos.client import WorkOSClient, get_workos_client, reset_workos_client
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

__all__ = [
    # Client
    "WorkOSClient",
    "get_workos_client",
    "reset_workos_client",
    # Exceptions
    "WorkOSError",
    "WorkOSAuthenticationError",
    "WorkOSConflictError",
    "WorkOSConnectionError",
    "WorkOSNotFoundError",
    "WorkOSRateLimitError",
    "WorkOSServerError",
    # Models
    "WorkOSAuthentication",
    "WorkOSMembership",
    "WorkOSOrganization",
    "WorkOSUser",
]
