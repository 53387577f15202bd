"""
Base mixins for database models.

Provides common functionality:
- TimestampMixin: created_at, updated_at timestamps
- OrganizationScopedMixin: organization_id for row-security isolation
- IdentityOwnedMixin: owner_id for per-identity rows with no organization
- generate_uuid: UUID generation for primary keys
"""

import uuid

from sqlalchemy import Column, String, DateTime, ForeignKey, func
from sqlalchemy.orm import declared_attr


def generate_uuid() -> str:
    """Generate a UUID4 string for use as a primary key default."""
    return str(uuid.uuid4())


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Timestamp when record was last updated"
    )


class OrganizationScopedMixin:
    """
    Mixin that adds organization_id column for row-security isolation.

    SECURITY: organization_id is NEVER accepted from client input.
    Rows are filtered by the active AuthorizationContext (ORM guard) and by
    PostgreSQL row-level security policies keyed on app.current_org_id().
    """

    @declared_attr
    def organization_id(cls):
        return Column(
            String(255),
            ForeignKey("organizations.id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
            comment="Owning organization. Set from the authorization context only."
        )


class IdentityOwnedMixin:
    """
    Mixin for rows owned by a single identity rather than an organization.

    Visible only while app.current_identity_id() matches owner_id.
    """

    @declared_attr
    def owner_id(cls):
        return Column(
            String(255),
            ForeignKey("identities.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
            comment="Owning identity. Set from the authorization context only."
        )
