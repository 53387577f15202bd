"""
Canonical membership roles and permissions matrix.

IMPORTANT: This is the single source of truth for all permissions.
All permission checks MUST reference these constants.

Roles are a closed set. A role string that is not a MembershipRole member is
rejected at parse time, and every role MUST have an entry in ROLE_PERMISSIONS
(checked at import time).
"""

from enum import Enum
from typing import FrozenSet, Optional


class MembershipRole(str, Enum):
    """Role an identity holds inside one organization."""
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    BILLING_ADMIN = "billing_admin"


class Permission(str, Enum):
    """
    Granular permissions checked server-side.
    """
    # Organization
    ORGANIZATION_VIEW = "organization:view"
    ORGANIZATION_MANAGE = "organization:manage"

    # Team
    MEMBERS_VIEW = "members:view"
    MEMBERS_MANAGE = "members:manage"

    # Scheduling
    BOOKINGS_VIEW = "bookings:view"
    BOOKINGS_MANAGE = "bookings:manage"

    # Regulated data
    RECORDS_VIEW = "records:view"
    RECORDS_WRITE = "records:write"

    # Billing
    BILLING_VIEW = "billing:view"
    BILLING_MANAGE = "billing:manage"

    # Audit
    AUDIT_VIEW = "audit:view"


ROLE_PERMISSIONS: dict[MembershipRole, FrozenSet[Permission]] = {
    MembershipRole.OWNER: frozenset(Permission),
    MembershipRole.ADMIN: frozenset([
        Permission.ORGANIZATION_VIEW,
        Permission.ORGANIZATION_MANAGE,
        Permission.MEMBERS_VIEW,
        Permission.MEMBERS_MANAGE,
        Permission.BOOKINGS_VIEW,
        Permission.BOOKINGS_MANAGE,
        Permission.RECORDS_VIEW,
        Permission.RECORDS_WRITE,
        Permission.BILLING_VIEW,
        Permission.AUDIT_VIEW,
    ]),
    MembershipRole.MEMBER: frozenset([
        Permission.ORGANIZATION_VIEW,
        Permission.BOOKINGS_VIEW,
        Permission.BOOKINGS_MANAGE,
        Permission.RECORDS_VIEW,
    ]),
    MembershipRole.BILLING_ADMIN: frozenset([
        Permission.ORGANIZATION_VIEW,
        Permission.BILLING_VIEW,
        Permission.BILLING_MANAGE,
    ]),
}


def _check_matrix_complete() -> None:
    missing = [role.value for role in MembershipRole if role not in ROLE_PERMISSIONS]
    if missing:
        raise RuntimeError(f"ROLE_PERMISSIONS is missing roles: {missing}")


_check_matrix_complete()


def parse_role(value: Optional[str]) -> Optional[MembershipRole]:
    """
    Parse a stored or provider role string into a MembershipRole.

    Accepts provider-prefixed values such as "org:admin". Returns None for
    anything outside the closed set.
    """
    if not value:
        return None
    normalized = value.strip().lower()
    if normalized.startswith("org:"):
        normalized = normalized[4:]
    try:
        return MembershipRole(normalized)
    except ValueError:
        return None


def get_permissions_for_role(role: MembershipRole) -> FrozenSet[Permission]:
    """Get all permissions for a role."""
    return ROLE_PERMISSIONS[role]


def role_has_permission(role: MembershipRole, permission: Permission) -> bool:
    """Check if a role has a specific permission."""
    return permission in ROLE_PERMISSIONS[role]


def is_owner_role(role: MembershipRole) -> bool:
    return role == MembershipRole.OWNER
