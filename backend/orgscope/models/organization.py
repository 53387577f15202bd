"""
Organization model.

Organization is the unit of data ownership. Every organization-scoped row
carries organization_id and is visible only inside an authorization context
for that organization.

Personal organizations are provisioned lazily, one per identity. The unique
personal_owner_id column is what makes concurrent provisioning converge on a
single row: the second insert fails and the caller re-reads the winner.
"""

import enum

from sqlalchemy import Column, String, Boolean, ForeignKey

from orgscope.db_base import Base
from orgscope.models.base import TimestampMixin, generate_uuid


class OrganizationType(str, enum.Enum):
    """Kind of organization. Drives default naming and landing route."""
    PATIENT_PERSONAL = "patient_personal"
    EXPERT_INDIVIDUAL = "expert_individual"
    CLINIC = "clinic"
    EDUCATIONAL_INSTITUTION = "educational_institution"


class Organization(Base, TimestampMixin):
    """
    Organization record.

    Key concepts:
    - id is the internal surrogate used by every foreign key
    - external_id is the identity-provider organization id; NULL only while
      provisioning is in flight inside the creating transaction
    - personal_owner_id is set for personal organizations (one per identity)
    """

    __tablename__ = "organizations"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key"
    )

    external_id = Column(
        String(255),
        nullable=True,
        unique=True,
        index=True,
        comment="Identity provider organization id"
    )

    slug = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="URL-safe unique slug"
    )

    name = Column(
        String(255),
        nullable=False,
        comment="Display name"
    )

    type = Column(
        String(50),
        nullable=False,
        default=OrganizationType.PATIENT_PERSONAL.value,
        comment="OrganizationType value"
    )

    personal_owner_id = Column(
        String(255),
        ForeignKey("identities.id", ondelete="RESTRICT"),
        nullable=True,
        unique=True,
        comment="Identity owning this personal organization (at most one each)"
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
    )

    @property
    def organization_type(self) -> OrganizationType:
        return OrganizationType(self.type)

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, slug={self.slug}, type={self.type})>"
