"""
Audit trail for organization-scoped actions.

CRITICAL SECURITY REQUIREMENTS:
- Audit rows are append-only (no UPDATE/DELETE outside bypass sessions)
- Every row belongs to exactly one organization (organization_id NOT NULL)
- PII fields are redacted before persistence
- A failed write is ALWAYS reported on the audit.fallback logger
- Regulated events (policy "block") fail the audited action when their
  row cannot be written; other events continue

Immutability is enforced three times:
1. ORM mapper events reject flushes that update or delete an AuditLog
2. ORM-enabled bulk UPDATE/DELETE statements on AuditLog are rejected
3. Database policies grant INSERT and SELECT only, plus a trigger
   (see orgscope.platform.row_security)
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, FrozenSet, TypeVar

from fastapi import Request
from sqlalchemy import Column, String, DateTime, Text, Index, JSON, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, object_session

from orgscope.auth.errors import AuthorizationError
from orgscope.config.audit_policies import AuditFailurePolicy, get_audit_policies_loader
from orgscope.db_base import Base
from orgscope.models.base import OrganizationScopedMixin

# Use JSON with PostgreSQL variant for JSONB - allows SQLite in tests
JSONType = JSON().with_variant(JSONB(), "postgresql")

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("audit.fallback")

T = TypeVar("T")

BYPASS_INFO_KEY = "row_security_bypass"


class AuditAction(str, Enum):
    """Domain vocabulary of audited events."""

    # Session
    AUTH_SESSION_ESTABLISHED = "auth.session_established"
    AUTH_SESSION_DEGRADED = "auth.session_degraded"

    # Identity and organization lifecycle
    IDENTITY_FIRST_SEEN = "identity.first_seen"
    IDENTITY_GUEST_REGISTERED = "identity.guest_registered"
    ORGANIZATION_CREATED = "organization.created"
    ORGANIZATION_SWITCHED = "organization.switched"
    MEMBERSHIP_CREATED = "membership.created"

    # Regulated data
    RECORD_VIEWED = "record.viewed"
    RECORD_CREATED = "record.created"
    RECORD_UPDATED = "record.updated"
    HEALTH_DATA_ACCESSED = "health_data.accessed"

    # Agreements and money movement
    AGREEMENT_ACCEPTED = "agreement.accepted"
    PAYMENT_FAILED = "payment.failed"
    PAYOUT_FAILED = "payout.failed"

    # Security
    SECURITY_ACCESS_DENIED = "security.access_denied"


class AuditOutcome(str, Enum):
    """Outcome of the audited action."""
    SUCCESS = "success"
    FAILURE = "failure"
    DENIED = "denied"


class AuditLogImmutableError(Exception):
    """Raised on any attempt to modify or delete an audit row."""

    error_code = "audit_log_immutable"

    def __init__(self, message: str = "Audit log entries are append-only"):
        super().__init__(message)
        self.message = message


class AuditWriteFailed(Exception):
    """Raised when a blocking audit event could not be persisted."""

    error_code = "audit_write_failed"

    def __init__(self, message: str, action: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.action = action


# =============================================================================
# PII redaction
# =============================================================================


class PIIRedactor:
    """
    Strips personal and clinical identifiers from audit metadata.

    Emails keep their domain and phone numbers keep their last four digits
    so that investigators can still correlate events. Everything else in
    SENSITIVE_KEYS becomes REDACTION_MARKER. Geolocation and device
    fingerprints are kept; they are part of the security record.
    """

    SENSITIVE_KEYS: FrozenSet[str] = frozenset({
        "email",
        "phone",
        "phone_number",
        "password",
        "token",
        "access_token",
        "refresh_token",
        "id_token",
        "code",
        "magic_auth_code",
        "api_key",
        "secret",
        "date_of_birth",
        "dob",
        "ssn",
        "medical_record_number",
        "insurance_member_id",
        "diagnosis",
        "notes",
        "card_number",
        "bank_account",
        "street_address",
    })

    REDACTION_MARKER = "[REDACTED]"

    @classmethod
    def redact(cls, data: Any) -> Any:
        """Return a redacted deep copy of dicts and lists; other values unchanged."""
        if isinstance(data, dict):
            return {
                key: (
                    cls._mask(key.lower(), value)
                    if isinstance(key, str) and key.lower() in cls.SENSITIVE_KEYS
                    else cls.redact(value)
                )
                for key, value in data.items()
            }
        if isinstance(data, list):
            return [cls.redact(item) for item in data]
        return data

    @classmethod
    def _mask(cls, key: str, value: Any) -> str:
        if key == "email" and isinstance(value, str) and "@" in value:
            return f"***@{value.rsplit('@', 1)[1]}"
        if key in ("phone", "phone_number") and value:
            digits = str(value)
            if len(digits) >= 4:
                return f"***{digits[-4:]}"
        return cls.REDACTION_MARKER


# =============================================================================
# Model
# =============================================================================


class AuditLog(Base, OrganizationScopedMixin):
    """
    Append-only audit row.

    actor_id is NULL for system events (e.g. provisioning with no actor).
    """
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    actor_id = Column(String(255), nullable=True, index=True)
    action = Column(String(100), nullable=False, index=True)
    resource_type = Column(String(100), nullable=True)
    resource_id = Column(String(255), nullable=True)
    event_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    correlation_id = Column(String(36), nullable=False, index=True)
    source = Column(String(50), nullable=False, default="api")
    outcome = Column(String(20), nullable=False, default=AuditOutcome.SUCCESS.value)
    error_code = Column(String(64), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_audit_logs_org_created", "organization_id", "created_at"),
        Index("ix_audit_logs_org_action", "organization_id", "action"),
    )


def _bypass_active(session: Optional[Session]) -> bool:
    return bool(session is not None and session.info.get(BYPASS_INFO_KEY))


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target):
    if not _bypass_active(object_session(target)):
        raise AuditLogImmutableError("Audit log entries cannot be updated")


@event.listens_for(AuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    if not _bypass_active(object_session(target)):
        raise AuditLogImmutableError("Audit log entries cannot be deleted")


@event.listens_for(Session, "do_orm_execute")
def _reject_bulk_audit_changes(orm_execute_state):
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    if _bypass_active(orm_execute_state.session):
        return
    if any(m.class_ is AuditLog for m in orm_execute_state.all_mappers):
        raise AuditLogImmutableError("Bulk changes to audit log entries are not allowed")


# =============================================================================
# Events and registry
# =============================================================================


@dataclass
class AuditEvent:
    """
    Audit event prior to persistence.

    PII in metadata is redacted by to_dict().
    """
    organization_id: str
    action: AuditAction
    actor_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    source: str = "api"
    outcome: AuditOutcome = AuditOutcome.SUCCESS
    error_code: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def action_value(self) -> str:
        return self.action.value if isinstance(self.action, AuditAction) else str(self.action)

    @property
    def outcome_value(self) -> str:
        return self.outcome.value if isinstance(self.outcome, AuditOutcome) else str(self.outcome)

    def to_dict(self) -> dict[str, Any]:
        return {
            "organization_id": self.organization_id,
            "actor_id": self.actor_id,
            "action": self.action_value,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "event_metadata": PIIRedactor.redact(self.metadata),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "correlation_id": self.correlation_id,
            "source": self.source,
            "outcome": self.outcome_value,
            "error_code": self.error_code,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class AuditableEventMetadata:
    """Requirements and failure policy for one event type."""
    description: str
    required_fields: tuple[str, ...] = ()
    risk_level: str = "medium"
    compliance_tags: tuple[str, ...] = ()
    failure_policy: AuditFailurePolicy = AuditFailurePolicy.CONTINUE


AUDITABLE_EVENTS: dict[AuditAction, AuditableEventMetadata] = {
    AuditAction.AUTH_SESSION_ESTABLISHED: AuditableEventMetadata(
        description="Authenticated session mapped to an organization",
        required_fields=("is_new_organization",),
        risk_level="low",
        compliance_tags=("HIPAA",),
    ),
    AuditAction.AUTH_SESSION_DEGRADED: AuditableEventMetadata(
        description="Session established without an organization after provisioning failed",
        required_fields=("reason",),
        risk_level="medium",
    ),
    AuditAction.IDENTITY_FIRST_SEEN: AuditableEventMetadata(
        description="Identity mirrored locally for the first time",
        required_fields=("source",),
        risk_level="low",
        compliance_tags=("HIPAA",),
    ),
    AuditAction.IDENTITY_GUEST_REGISTERED: AuditableEventMetadata(
        description="Guest identity created during booking",
        required_fields=("registration_source",),
        risk_level="medium",
        compliance_tags=("HIPAA", "GDPR"),
    ),
    AuditAction.ORGANIZATION_CREATED: AuditableEventMetadata(
        description="Personal organization provisioned",
        required_fields=("organization_type",),
        risk_level="medium",
        compliance_tags=("HIPAA",),
    ),
    AuditAction.ORGANIZATION_SWITCHED: AuditableEventMetadata(
        description="Current organization changed for a multi-org identity",
        required_fields=("previous_organization_id",),
        risk_level="low",
    ),
    AuditAction.MEMBERSHIP_CREATED: AuditableEventMetadata(
        description="Membership granted",
        required_fields=("role",),
        risk_level="medium",
        compliance_tags=("HIPAA",),
    ),
    AuditAction.RECORD_VIEWED: AuditableEventMetadata(
        description="Clinical record read",
        risk_level="high",
        compliance_tags=("HIPAA",),
        failure_policy=AuditFailurePolicy.BLOCK,
    ),
    AuditAction.RECORD_CREATED: AuditableEventMetadata(
        description="Clinical record written",
        risk_level="high",
        compliance_tags=("HIPAA",),
        failure_policy=AuditFailurePolicy.BLOCK,
    ),
    AuditAction.RECORD_UPDATED: AuditableEventMetadata(
        description="Clinical record changed",
        required_fields=("changed_fields",),
        risk_level="high",
        compliance_tags=("HIPAA",),
        failure_policy=AuditFailurePolicy.BLOCK,
    ),
    AuditAction.HEALTH_DATA_ACCESSED: AuditableEventMetadata(
        description="Health data read outside the record view",
        required_fields=("data_category",),
        risk_level="high",
        compliance_tags=("HIPAA",),
        failure_policy=AuditFailurePolicy.BLOCK,
    ),
    AuditAction.AGREEMENT_ACCEPTED: AuditableEventMetadata(
        description="Legal agreement accepted",
        required_fields=("agreement_type", "agreement_version"),
        risk_level="high",
        compliance_tags=("HIPAA", "GDPR"),
        failure_policy=AuditFailurePolicy.BLOCK,
    ),
    AuditAction.PAYMENT_FAILED: AuditableEventMetadata(
        description="Customer payment failed",
        required_fields=("reason",),
        risk_level="medium",
        compliance_tags=("PCI",),
    ),
    AuditAction.PAYOUT_FAILED: AuditableEventMetadata(
        description="Expert payout failed",
        required_fields=("reason",),
        risk_level="medium",
    ),
    AuditAction.SECURITY_ACCESS_DENIED: AuditableEventMetadata(
        description="Access to a resource was denied",
        required_fields=("resource_type",),
        risk_level="high",
        compliance_tags=("HIPAA", "SOC2"),
    ),
}


def get_failure_policy(action: AuditAction) -> AuditFailurePolicy:
    """Registry default, overridden by config/audit_policies.yml."""
    meta = AUDITABLE_EVENTS.get(action)
    default = meta.failure_policy if meta else AuditFailurePolicy.CONTINUE
    return get_audit_policies_loader().get_policy(action.value, default=default)


def validate_audit_metadata(
    action: AuditAction,
    metadata: dict[str, Any],
    strict: bool = False,
) -> list[str]:
    """
    Check metadata against the registry.

    Returns a list of warnings, or raises ValueError when strict.
    """
    warnings = []

    event_meta = AUDITABLE_EVENTS.get(action)
    if not event_meta:
        warnings.append(f"Action {action.value} not in AUDITABLE_EVENTS registry")
    else:
        for required_field in event_meta.required_fields:
            if required_field not in metadata:
                warnings.append(
                    f"Missing required field '{required_field}' for action {action.value}"
                )

    if strict and warnings:
        raise ValueError("; ".join(warnings))

    return warnings


def extract_client_info(request: Request) -> tuple[Optional[str], Optional[str]]:
    """Client IP (first X-Forwarded-For hop) and user agent."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        ip_address = forwarded_for.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None
    return ip_address, request.headers.get("User-Agent")


# =============================================================================
# Writer
# =============================================================================


class AuditTrailWriter:
    """
    Writes audit events inside the caller's transaction.

    Each record() runs in a SAVEPOINT, so a failed audit insert never
    poisons the surrounding unit of work. The row commits or rolls back
    with the caller.

    Usage:
        writer = AuditTrailWriter(session)
        writer.record(AuditEvent(organization_id=org_id, action=AuditAction.RECORD_VIEWED, ...))
    """

    def __init__(self, session: Session):
        self.session = session

    def _persist(self, row: AuditLog) -> None:
        self.session.add(row)
        self.session.flush()

    def record(self, audit_event: AuditEvent) -> Optional[AuditLog]:
        """
        Append exactly one audit row.

        Returns:
            The new AuditLog, or None if the write failed under a
            "continue" policy

        Raises:
            AuditWriteFailed: the write failed under a "block" policy
        """
        warnings = validate_audit_metadata(audit_event.action, audit_event.metadata)
        for warning in warnings:
            logger.warning(
                "Audit metadata validation: %s", warning,
                extra={"action": audit_event.action_value},
            )

        audit_id = str(uuid.uuid4())
        try:
            with self.session.begin_nested():
                row = AuditLog(id=audit_id, **audit_event.to_dict())
                self._persist(row)
        except (SQLAlchemyError, AuthorizationError) as e:
            policy = get_failure_policy(audit_event.action)
            _write_fallback_log(audit_event, audit_id, f"{type(e).__name__}: {e}", policy)
            if policy == AuditFailurePolicy.BLOCK:
                raise AuditWriteFailed(
                    f"Audit write failed for blocking event {audit_event.action_value}",
                    action=audit_event.action_value,
                ) from e
            return None

        logger.info(
            "Audit event recorded",
            extra={
                "audit_id": audit_id,
                "organization_id": audit_event.organization_id,
                "actor_id": audit_event.actor_id,
                "action": audit_event.action_value,
                "correlation_id": audit_event.correlation_id,
                "outcome": audit_event.outcome_value,
            },
        )
        return row

    def audited_access(self, audit_event: AuditEvent, action: Callable[[], T]) -> T:
        """
        Run an action together with its audit event.

        For "block" events the row is written first, so the action never runs
        unaudited. For "continue" events the action runs first.
        """
        if get_failure_policy(audit_event.action) == AuditFailurePolicy.BLOCK:
            self.record(audit_event)
            return action()
        result = action()
        self.record(audit_event)
        return result


def _write_fallback_log(
    audit_event: AuditEvent,
    audit_id: str,
    error_reason: str,
    policy: AuditFailurePolicy,
) -> None:
    """Report a failed audit write on the fallback logger."""
    fallback_entry = {
        "event_id": audit_id,
        "organization_id": audit_event.organization_id,
        "actor_id": audit_event.actor_id,
        "action": audit_event.action_value,
        "created_at": audit_event.created_at.isoformat(),
        "correlation_id": audit_event.correlation_id,
        "outcome": audit_event.outcome_value,
        "resource_type": audit_event.resource_type,
        "resource_id": audit_event.resource_id,
        "metadata": PIIRedactor.redact(audit_event.metadata),
        "failure_policy": policy.value,
        "fallback_reason": error_reason,
    }
    fallback_logger.error(
        "Audit log fallback",
        extra={"audit_entry": json.dumps(fallback_entry, default=str)},
    )
