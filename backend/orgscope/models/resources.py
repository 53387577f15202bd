"""
Sample protected resources.

ClinicalRecord is organization-scoped and regulated: reads are audited with
a blocking policy. SchedulingPreference is identity-owned and has no
organization. Together they exercise both row-security policy shapes.
"""

from sqlalchemy import Column, String, Text, Integer, JSON

from orgscope.db_base import Base
from orgscope.models.base import (
    IdentityOwnedMixin,
    OrganizationScopedMixin,
    TimestampMixin,
    generate_uuid,
)


class ClinicalRecord(Base, OrganizationScopedMixin, TimestampMixin):
    __tablename__ = "clinical_records"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    subject_identity_id = Column(String(255), nullable=True, index=True)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=True)
    created_by = Column(String(255), nullable=True)


class SchedulingPreference(Base, IdentityOwnedMixin, TimestampMixin):
    __tablename__ = "scheduling_preferences"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    timezone = Column(String(64), nullable=False, default="UTC")
    buffer_minutes = Column(Integer, nullable=False, default=0)
    settings = Column(JSON, nullable=False, default=dict)
