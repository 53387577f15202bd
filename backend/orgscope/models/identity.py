"""
Identity model.

Identity is the local mirror of a user held by the hosted identity provider
(WorkOS). It stores the provider user id, email and display name, and links
to organizations through Membership.

CRITICAL SECURITY:
- NO PASSWORDS are stored locally - the identity provider authenticates
- external_id is the provider user id and the link back to the provider
- email is stored lower-cased and is unique; it is the idempotency key for
  guest registration
- Identities are never deleted, only deactivated
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from orgscope.db_base import Base
from orgscope.models.base import TimestampMixin, generate_uuid

if TYPE_CHECKING:
    from orgscope.models.membership import Membership


class Identity(Base, TimestampMixin):
    """
    Local identity record mirrored from the identity provider.

    Key concepts:
    - id is the internal UUID used by every foreign key and by
      app.current_identity_id() in row-security policies
    - external_id may be NULL only while a guest row is being provisioned
    - current_organization_id records which organization is "current"
      for identities with several memberships
    - is_platform_admin grants cross-organization audit read
    """

    __tablename__ = "identities"

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
        comment="Identity provider user id"
    )

    email = Column(
        String(320),
        nullable=False,
        unique=True,
        index=True,
        comment="Lower-cased email address"
    )

    display_name = Column(
        String(255),
        nullable=True,
        comment="Name shown to other members"
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="False once deactivated"
    )

    is_platform_admin = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Platform staff with cross-organization audit read"
    )

    current_organization_id = Column(
        String(255),
        ForeignKey("organizations.id", ondelete="SET NULL", use_alter=True),
        nullable=True,
        comment="Organization selected as current for multi-org identities"
    )

    last_synced_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the row was last refreshed from the identity provider"
    )

    memberships = relationship(
        "Membership",
        back_populates="identity",
        lazy="dynamic",
        foreign_keys="Membership.identity_id",
    )

    @staticmethod
    def normalize_email(email: Optional[str]) -> str:
        return (email or "").strip().lower()

    @property
    def name_for_display(self) -> str:
        """Display name, falling back to the email local part."""
        if self.display_name and self.display_name.strip():
            return self.display_name.strip()
        return (self.email or "").split("@")[0]

    def mark_synced(self) -> None:
        self.last_synced_at = datetime.now(timezone.utc)

    def __repr__(self) -> str:
        return f"<Identity(id={self.id}, external_id={self.external_id})>"
