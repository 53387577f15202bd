"""
Database models.

Importing this package registers the identity and resource tables on
Base.metadata. The audit table lives in orgscope.platform.audit.
"""

from orgscope.models.identity import Identity
from orgscope.models.organization import Organization, OrganizationType
from orgscope.models.membership import Membership, MembershipStatus
from orgscope.models.resources import ClinicalRecord, SchedulingPreference

__all__ = [
    "Identity",
    "Organization",
    "OrganizationType",
    "Membership",
    "MembershipStatus",
    "ClinicalRecord",
    "SchedulingPreference",
]
