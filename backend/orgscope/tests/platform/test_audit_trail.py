"""
Tests for the audit trail.

Covers append-only enforcement, failure policies, PII redaction and the
ordering guarantee of audited_access.
"""

import json
import logging
from unittest.mock import patch

import pytest
from sqlalchemy import delete, update
from sqlalchemy.exc import OperationalError

from orgscope.constants.permissions import MembershipRole
from orgscope.platform.audit import (
    AuditAction,
    AuditEvent,
    AuditLog,
    AuditLogImmutableError,
    AuditTrailWriter,
    AuditWriteFailed,
    PIIRedactor,
    validate_audit_metadata,
)
from orgscope.platform.authorization_context import AuthorizationContext, bind_transaction_context


@pytest.fixture
def bound_org(db_session, make_identity, make_membership):
    """An organization with the session bound to its owner's context."""
    identity = make_identity()
    org, _ = make_membership(identity, role="owner")
    bind_transaction_context(db_session, AuthorizationContext(
        identity_id=identity.id,
        organization_id=org.id,
        role=MembershipRole.OWNER,
    ))
    return org


def _event(org, action=AuditAction.SECURITY_ACCESS_DENIED, **kwargs):
    kwargs.setdefault("metadata", {"resource_type": "record"})
    return AuditEvent(organization_id=org.id, action=action, **kwargs)


def _persist_fails(self, row):
    raise OperationalError("INSERT INTO audit_logs", {}, Exception("disk full"))


@pytest.mark.security
class TestAppendOnly:

    def test_record_appends_one_row(self, db_session, bound_org):
        row = AuditTrailWriter(db_session).record(_event(bound_org))

        assert row is not None
        assert db_session.query(AuditLog).count() == 1
        assert row.organization_id == bound_org.id
        assert row.outcome == "success"

    def test_update_through_flush_rejected(self, db_session, bound_org):
        row = AuditTrailWriter(db_session).record(_event(bound_org))
        row.action = "tampered"

        with pytest.raises(AuditLogImmutableError):
            db_session.flush()
        db_session.rollback()

    def test_delete_through_flush_rejected(self, db_session, bound_org):
        row = AuditTrailWriter(db_session).record(_event(bound_org))
        db_session.delete(row)

        with pytest.raises(AuditLogImmutableError):
            db_session.flush()
        db_session.rollback()

    def test_bulk_update_rejected(self, db_session, bound_org):
        AuditTrailWriter(db_session).record(_event(bound_org))

        with pytest.raises(AuditLogImmutableError):
            db_session.execute(update(AuditLog).values(action="tampered"))

    def test_bulk_delete_rejected(self, db_session, bound_org):
        AuditTrailWriter(db_session).record(_event(bound_org))

        with pytest.raises(AuditLogImmutableError):
            db_session.execute(delete(AuditLog))

    def test_write_for_other_organization_fails(self, db_session, bound_org, make_identity, make_membership):
        other_org, _ = make_membership(make_identity())
        # make_membership committed, which ended the bound context
        bind_transaction_context(db_session, AuthorizationContext(
            identity_id="someone",
            organization_id=bound_org.id,
            role=MembershipRole.OWNER,
        ))

        with pytest.raises(AuditWriteFailed):
            AuditTrailWriter(db_session).record(AuditEvent(
                organization_id=other_org.id,
                action=AuditAction.RECORD_VIEWED,
            ))


class TestFailurePolicy:

    def test_blocking_event_raises(self, db_session, bound_org):
        with patch.object(AuditTrailWriter, "_persist", _persist_fails):
            with pytest.raises(AuditWriteFailed) as exc_info:
                AuditTrailWriter(db_session).record(_event(bound_org, action=AuditAction.RECORD_VIEWED))
        assert exc_info.value.action == AuditAction.RECORD_VIEWED.value

    def test_continue_event_logs_fallback(self, db_session, bound_org, caplog):
        with caplog.at_level(logging.ERROR, logger="audit.fallback"):
            with patch.object(AuditTrailWriter, "_persist", _persist_fails):
                result = AuditTrailWriter(db_session).record(_event(
                    bound_org,
                    metadata={"resource_type": "record", "email": "eve@example.com"},
                ))

        assert result is None
        fallback = [r for r in caplog.records if r.name == "audit.fallback"]
        assert len(fallback) == 1
        entry = json.loads(fallback[0].audit_entry)
        assert entry["action"] == AuditAction.SECURITY_ACCESS_DENIED.value
        assert entry["failure_policy"] == "continue"
        assert entry["metadata"]["email"] == "***@example.com"
        assert "OperationalError" in entry["fallback_reason"]

    def test_failed_write_does_not_poison_transaction(self, db_session, bound_org):
        writer = AuditTrailWriter(db_session)
        with patch.object(AuditTrailWriter, "_persist", _persist_fails):
            writer.record(_event(bound_org))

        assert writer.record(_event(bound_org)) is not None
        assert db_session.query(AuditLog).count() == 1

    def test_yaml_override_changes_policy(self, db_session, bound_org, make_yaml_config):
        from orgscope.config.audit_policies import get_audit_policies_loader

        path = make_yaml_config("audit_policies.yml", {"events": {"record.viewed": "continue"}})
        get_audit_policies_loader(str(path))

        with patch.object(AuditTrailWriter, "_persist", _persist_fails):
            assert AuditTrailWriter(db_session).record(
                _event(bound_org, action=AuditAction.RECORD_VIEWED)
            ) is None


class TestAuditedAccess:

    def test_blocking_event_written_before_action(self, db_session, bound_org):
        order = []
        writer = AuditTrailWriter(db_session)
        real_record = writer.record

        def tracking_record(audit_event):
            order.append("audit")
            return real_record(audit_event)

        with patch.object(writer, "record", side_effect=tracking_record):
            writer.audited_access(
                _event(bound_org, action=AuditAction.RECORD_VIEWED),
                lambda: order.append("action"),
            )

        assert order == ["audit", "action"]

    def test_action_never_runs_unaudited(self, db_session, bound_org):
        ran = []
        with patch.object(AuditTrailWriter, "_persist", _persist_fails):
            with pytest.raises(AuditWriteFailed):
                AuditTrailWriter(db_session).audited_access(
                    _event(bound_org, action=AuditAction.RECORD_VIEWED),
                    lambda: ran.append(True),
                )
        assert ran == []

    def test_continue_event_runs_action_first(self, db_session, bound_org):
        result = AuditTrailWriter(db_session).audited_access(_event(bound_org), lambda: "value")
        assert result == "value"
        assert db_session.query(AuditLog).count() == 1


class TestRedaction:

    def test_nested_values_redacted(self):
        redacted = PIIRedactor.redact({
            "email": "ann@clinic.org",
            "phone": "+1 555 123 9876",
            "patient": {"diagnosis": "flu", "date_of_birth": "1990-01-01", "age_band": "30-39"},
            "tokens": [{"access_token": "abc"}],
            "geo": {"country": "FR"},
        })

        assert redacted["email"] == "***@clinic.org"
        assert redacted["phone"] == "***9876"
        assert redacted["patient"]["diagnosis"] == PIIRedactor.REDACTION_MARKER
        assert redacted["patient"]["date_of_birth"] == PIIRedactor.REDACTION_MARKER
        assert redacted["patient"]["age_band"] == "30-39"
        assert redacted["tokens"][0]["access_token"] == PIIRedactor.REDACTION_MARKER
        assert redacted["geo"] == {"country": "FR"}

    def test_keys_are_case_insensitive(self):
        assert PIIRedactor.redact({"SSN": "123"})["SSN"] == PIIRedactor.REDACTION_MARKER

    def test_persisted_metadata_redacted(self, db_session, bound_org):
        row = AuditTrailWriter(db_session).record(_event(
            bound_org,
            metadata={"resource_type": "record", "notes": "private"},
        ))
        assert row.event_metadata["notes"] == PIIRedactor.REDACTION_MARKER


class TestValidateMetadata:

    def test_missing_required_field_warns(self):
        warnings = validate_audit_metadata(AuditAction.ORGANIZATION_CREATED, {})
        assert any("organization_type" in w for w in warnings)

    def test_strict_raises(self):
        with pytest.raises(ValueError):
            validate_audit_metadata(AuditAction.AGREEMENT_ACCEPTED, {"agreement_type": "tos"}, strict=True)

    def test_complete_metadata_passes(self):
        assert validate_audit_metadata(AuditAction.ORGANIZATION_SWITCHED, {"previous_organization_id": "x"}) == []
