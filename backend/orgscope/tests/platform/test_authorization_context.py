"""
Security tests for organization isolation.

CRITICAL: These tests verify that:
1. With no authorization context, scoped queries return zero rows
2. A context for organization A never sees organization B's rows, even when
   the query names B's id literally
3. The context disappears when its transaction ends
4. Writes outside the bound context are rejected
"""

import pytest

from orgscope.auth.errors import AuthorizationDenied
from orgscope.constants.permissions import MembershipRole, Permission
from orgscope.database.session import privileged_maintenance_session
from orgscope.models.resources import ClinicalRecord, SchedulingPreference
from orgscope.platform.audit import AuditAction, AuditEvent, AuditLog, AuditTrailWriter, BYPASS_INFO_KEY
from orgscope.platform.authorization_context import (
    AuthorizationContext,
    bind_transaction_context,
    current_context,
    with_authorization,
)


def _context(identity, organization, role=MembershipRole.OWNER, **kwargs):
    return AuthorizationContext(
        identity_id=identity.id,
        organization_id=organization.id if organization is not None else None,
        role=role,
        **kwargs,
    )


@pytest.fixture
def two_tenants(db_session, make_identity, make_membership):
    """Two identities, each owning one organization with one record."""
    alice = make_identity("alice@example.com")
    bob = make_identity("bob@example.com")
    org_a, _ = make_membership(alice, role="owner")
    org_b, _ = make_membership(bob, role="owner")

    db_session.info[BYPASS_INFO_KEY] = "test seed"
    db_session.add_all([
        ClinicalRecord(organization_id=org_a.id, title="A record"),
        ClinicalRecord(organization_id=org_b.id, title="B record"),
        SchedulingPreference(owner_id=alice.id, timezone="Europe/Paris"),
        SchedulingPreference(owner_id=bob.id, timezone="America/Denver"),
    ])
    db_session.commit()
    db_session.info.pop(BYPASS_INFO_KEY)

    return {"alice": alice, "bob": bob, "org_a": org_a, "org_b": org_b}


@pytest.mark.security
class TestFailClosed:

    def test_no_context_returns_no_rows(self, db_session, two_tenants):
        assert db_session.query(ClinicalRecord).all() == []
        assert db_session.query(SchedulingPreference).all() == []
        assert db_session.query(AuditLog).count() == 0

    def test_degraded_context_sees_no_organization_rows(self, db_session, two_tenants):
        ctx = _context(two_tenants["alice"], None, role=None)
        with with_authorization(db_session, ctx) as db:
            assert db.query(ClinicalRecord).all() == []
            # Identity-owned rows are still reachable
            assert [p.timezone for p in db.query(SchedulingPreference).all()] == ["Europe/Paris"]


@pytest.mark.security
class TestCrossTenantIsolation:

    def test_context_sees_only_own_rows(self, db_session, two_tenants):
        ctx = _context(two_tenants["alice"], two_tenants["org_a"])
        with with_authorization(db_session, ctx) as db:
            titles = [r.title for r in db.query(ClinicalRecord).all()]
        assert titles == ["A record"]

    def test_literal_foreign_filter_returns_nothing(self, db_session, two_tenants):
        ctx = _context(two_tenants["alice"], two_tenants["org_a"])
        with with_authorization(db_session, ctx) as db:
            rows = db.query(ClinicalRecord).filter(
                ClinicalRecord.organization_id == two_tenants["org_b"].id
            ).all()
        assert rows == []

    def test_get_by_primary_key_of_foreign_row(self, db_session, two_tenants):
        db_session.info[BYPASS_INFO_KEY] = "test lookup"
        foreign_id = db_session.query(ClinicalRecord.id).filter(
            ClinicalRecord.organization_id == two_tenants["org_b"].id
        ).scalar()
        alice_id = two_tenants["alice"].id
        org_a_id = two_tenants["org_a"].id
        db_session.info.pop(BYPASS_INFO_KEY)
        db_session.expunge_all()

        # Fixture instances are detached from here on
        ctx = AuthorizationContext(identity_id=alice_id, organization_id=org_a_id, role=MembershipRole.OWNER)
        with with_authorization(db_session, ctx) as db:
            assert db.query(ClinicalRecord).filter(ClinicalRecord.id == foreign_id).first() is None

    def test_identity_owned_rows_isolated(self, db_session, two_tenants):
        ctx = _context(two_tenants["bob"], two_tenants["org_b"])
        with with_authorization(db_session, ctx) as db:
            zones = [p.timezone for p in db.query(SchedulingPreference).all()]
        assert zones == ["America/Denver"]

    def test_bulk_update_cannot_reach_foreign_rows(self, db_session, two_tenants):
        ctx = _context(two_tenants["alice"], two_tenants["org_a"])
        with with_authorization(db_session, ctx) as db:
            db.query(ClinicalRecord).filter(
                ClinicalRecord.organization_id == two_tenants["org_b"].id
            ).update({"title": "tampered"}, synchronize_session=False)

        db_session.info[BYPASS_INFO_KEY] = "test inspection"
        titles = sorted(r.title for r in db_session.query(ClinicalRecord).all())
        db_session.info.pop(BYPASS_INFO_KEY)
        assert titles == ["A record", "B record"]


@pytest.mark.security
class TestContextLifetime:

    def test_context_cleared_after_commit(self, db_session, two_tenants):
        bind_transaction_context(db_session, _context(two_tenants["alice"], two_tenants["org_a"]))
        assert db_session.query(ClinicalRecord).count() == 1

        db_session.commit()

        assert current_context(db_session) is None
        assert db_session.query(ClinicalRecord).count() == 0

    def test_context_cleared_after_rollback(self, db_session, two_tenants):
        bind_transaction_context(db_session, _context(two_tenants["alice"], two_tenants["org_a"]))
        db_session.rollback()
        assert current_context(db_session) is None

    def test_with_authorization_clears_on_error(self, db_session, two_tenants):
        ctx = _context(two_tenants["alice"], two_tenants["org_a"])
        with pytest.raises(RuntimeError):
            with with_authorization(db_session, ctx):
                raise RuntimeError("boom")
        assert current_context(db_session) is None

    def test_savepoint_keeps_context(self, db_session, two_tenants):
        bind_transaction_context(db_session, _context(two_tenants["alice"], two_tenants["org_a"]))
        with db_session.begin_nested():
            pass
        assert current_context(db_session) is not None
        db_session.rollback()


@pytest.mark.security
class TestWriteGuard:

    def test_write_into_own_org_allowed(self, db_session, two_tenants):
        ctx = _context(two_tenants["alice"], two_tenants["org_a"])
        with with_authorization(db_session, ctx) as db:
            db.add(ClinicalRecord(organization_id=two_tenants["org_a"].id, title="New"))
            db.flush()
            assert db.query(ClinicalRecord).count() == 2

    def test_write_into_foreign_org_rejected(self, db_session, two_tenants):
        ctx = _context(two_tenants["alice"], two_tenants["org_a"])
        with pytest.raises(AuthorizationDenied):
            with with_authorization(db_session, ctx) as db:
                db.add(ClinicalRecord(organization_id=two_tenants["org_b"].id, title="Planted"))
                db.flush()

    def test_write_without_context_rejected(self, db_session, two_tenants):
        db_session.add(ClinicalRecord(organization_id=two_tenants["org_a"].id, title="Orphan"))
        with pytest.raises(AuthorizationDenied):
            db_session.flush()
        db_session.rollback()

    def test_identity_owned_write_for_other_identity_rejected(self, db_session, two_tenants):
        ctx = _context(two_tenants["alice"], two_tenants["org_a"])
        with pytest.raises(AuthorizationDenied):
            with with_authorization(db_session, ctx) as db:
                db.add(SchedulingPreference(owner_id=two_tenants["bob"].id))
                db.flush()


@pytest.mark.security
class TestAuditVisibility:

    def test_platform_admin_reads_audit_across_organizations(self, db_session, two_tenants):
        for tenant, org in (("alice", "org_a"), ("bob", "org_b")):
            ctx = _context(two_tenants[tenant], two_tenants[org])
            with with_authorization(db_session, ctx) as db:
                AuditTrailWriter(db).record(AuditEvent(
                    organization_id=two_tenants[org].id,
                    action=AuditAction.SECURITY_ACCESS_DENIED,
                    metadata={"resource_type": "record"},
                ))

        member_ctx = _context(two_tenants["alice"], two_tenants["org_a"])
        with with_authorization(db_session, member_ctx) as db:
            assert db.query(AuditLog).count() == 1

        admin_ctx = _context(two_tenants["alice"], two_tenants["org_a"], is_platform_admin=True)
        with with_authorization(db_session, admin_ctx) as db:
            assert db.query(AuditLog).count() == 2
            # Admin status does not widen clinical data
            assert db.query(ClinicalRecord).count() == 1


class TestPermissions:

    def test_require_permission_allows_role(self, db_session, two_tenants):
        ctx = _context(two_tenants["alice"], two_tenants["org_a"], role=MembershipRole.MEMBER)
        ctx.require_permission(Permission.RECORDS_VIEW)

    def test_require_permission_denies_as_not_found(self, db_session, two_tenants):
        ctx = _context(two_tenants["alice"], two_tenants["org_a"], role=MembershipRole.MEMBER)
        with pytest.raises(AuthorizationDenied) as exc_info:
            ctx.require_permission(Permission.RECORDS_WRITE)
        assert exc_info.value.error_code == "not_found"

    def test_degraded_context_has_no_permissions(self, db_session, two_tenants):
        ctx = _context(two_tenants["alice"], None, role=None)
        assert not ctx.has_permission(Permission.ORGANIZATION_VIEW)


class TestMaintenanceSession:

    def test_reason_required(self, db_engine):
        with pytest.raises(ValueError):
            with privileged_maintenance_session("  ", engine=db_engine):
                pass

    def test_bypass_session_skips_guard(self, db_engine):
        with privileged_maintenance_session("row count check", engine=db_engine) as session:
            assert session.info[BYPASS_INFO_KEY] == "row count check"
            assert current_context(session) is None
            assert session.query(ClinicalRecord).count() == 0
