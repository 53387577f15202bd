"""
Membership model.

Membership links an identity to an organization with a role. It is the
relation row-security policies consult on every query: a row is visible only
if an ACTIVE membership ties app.current_identity_id() to the row's
organization.

SECURITY:
- Unique (identity_id, organization_id): one membership per pair
- Role values come from orgscope.constants.permissions.MembershipRole
"""

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, String, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship

from orgscope.constants.permissions import MembershipRole, parse_role
from orgscope.db_base import Base
from orgscope.models.base import TimestampMixin, generate_uuid


class MembershipStatus(str, enum.Enum):
    ACTIVE = "active"
    INVITED = "invited"
    SUSPENDED = "suspended"


class Membership(Base, TimestampMixin):
    """Identity-to-organization link with role and status."""

    __tablename__ = "memberships"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key"
    )

    identity_id = Column(
        String(255),
        ForeignKey("identities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    organization_id = Column(
        String(255),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    role = Column(
        String(50),
        nullable=False,
        default=MembershipRole.MEMBER.value,
        comment="MembershipRole value"
    )

    status = Column(
        String(20),
        nullable=False,
        default=MembershipStatus.ACTIVE.value,
        index=True,
        comment="MembershipStatus value"
    )

    external_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Identity provider membership id"
    )

    last_active_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last time this membership was the resolved organization"
    )

    identity = relationship("Identity", back_populates="memberships", foreign_keys=[identity_id])
    organization = relationship("Organization")

    __table_args__ = (
        UniqueConstraint("identity_id", "organization_id", name="uq_membership_identity_org"),
        Index("ix_memberships_identity_status", "identity_id", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == MembershipStatus.ACTIVE.value

    @property
    def membership_role(self) -> Optional[MembershipRole]:
        return parse_role(self.role)

    def touch(self) -> None:
        self.last_active_at = datetime.now(timezone.utc)

    def __repr__(self) -> str:
        return (
            f"<Membership(identity_id={self.identity_id}, "
            f"organization_id={self.organization_id}, role={self.role})>"
        )
