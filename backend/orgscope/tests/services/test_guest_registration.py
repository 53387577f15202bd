"""
Tests for GuestRegistrationService (booking-time auto-registration).
"""

import pytest

from orgscope.auth.errors import GuestUserCreationError
from orgscope.models.identity import Identity
from orgscope.models.membership import Membership
from orgscope.models.organization import Organization, OrganizationType
from orgscope.platform.audit import AuditAction, AuditLog, BYPASS_INFO_KEY
from orgscope.services.guest_registration import (
    REGISTRATION_SOURCE,
    GuestRegistrationService,
    split_name,
)


def _totals(session, email):
    identities = session.query(Identity).filter(Identity.email == email).all()
    ids = [i.id for i in identities]
    orgs = session.query(Organization).filter(Organization.personal_owner_id.in_(ids)).count() if ids else 0
    memberships = session.query(Membership).filter(Membership.identity_id.in_(ids)).count() if ids else 0
    return len(identities), orgs, memberships


class TestFindOrCreateGuest:

    def test_new_guest_gets_identity_org_and_code(self, db_session, fake_workos):
        guest = GuestRegistrationService(db_session, fake_workos).find_or_create_guest(
            "Alice@Example.com", "Alice Smith"
        )

        assert guest.is_new is True
        assert guest.identity.email == "alice@example.com"
        assert guest.identity.external_id in fake_workos.users
        assert guest.organization.type == OrganizationType.PATIENT_PERSONAL.value
        assert guest.organization.name == "Alice Smith's Account"
        assert fake_workos.users[guest.identity.external_id].first_name == "Alice"
        assert fake_workos.magic_auth_sent == ["alice@example.com"]

    def test_booking_twice_is_idempotent(self, db_session, fake_workos):
        service = GuestRegistrationService(db_session, fake_workos)

        first = service.find_or_create_guest("alice@example.com", "Alice")
        second = service.find_or_create_guest("alice@example.com", "Alice")

        assert second.is_new is False
        assert second.identity.id == first.identity.id
        assert second.organization.id == first.organization.id
        assert _totals(db_session, "alice@example.com") == (1, 1, 1)
        assert fake_workos.count("create_user") == 1
        assert fake_workos.count("create_organization") == 1
        assert len(fake_workos.magic_auth_sent) == 1

    def test_existing_provider_user_is_reused_without_code(self, db_session, fake_workos):
        existing = fake_workos.add_user("bob@example.com", first_name="Bob")

        guest = GuestRegistrationService(db_session, fake_workos).find_or_create_guest("bob@example.com", "Bob")

        assert guest.identity.external_id == existing.id
        assert fake_workos.count("get_user_by_email") == 1
        assert fake_workos.magic_auth_sent == []
        # The organization is still new
        assert guest.is_new is True

    def test_registration_is_audited_without_raw_email(self, db_session, fake_workos):
        guest = GuestRegistrationService(db_session, fake_workos).find_or_create_guest(
            "carol@example.com", metadata={"event_id": "evt_1"}
        )

        db_session.info[BYPASS_INFO_KEY] = "test inspection"
        row = db_session.query(AuditLog).filter(
            AuditLog.organization_id == guest.organization.id,
            AuditLog.action == AuditAction.IDENTITY_GUEST_REGISTERED.value,
        ).one()
        db_session.info.pop(BYPASS_INFO_KEY)

        assert row.event_metadata["registration_source"] == REGISTRATION_SOURCE
        assert row.event_metadata["email"] == "***@example.com"
        assert row.event_metadata["event_id"] == "evt_1"
        assert row.source == "system"

    def test_identity_without_org_is_completed(self, db_session, fake_workos, make_identity):
        user = fake_workos.add_user("dana@example.com")
        identity = make_identity("dana@example.com", external_id=user.id)

        guest = GuestRegistrationService(db_session, fake_workos).find_or_create_guest("dana@example.com")

        assert guest.identity.id == identity.id
        assert guest.organization.personal_owner_id == identity.id
        assert fake_workos.count("create_user") == 0
        assert fake_workos.magic_auth_sent == []


class TestFailures:

    @pytest.mark.parametrize("email", ["", "not-an-email", "a@b", "two words@example.com"])
    def test_invalid_email_rejected(self, db_session, fake_workos, email):
        with pytest.raises(GuestUserCreationError):
            GuestRegistrationService(db_session, fake_workos).find_or_create_guest(email)
        assert fake_workos.calls == []

    def test_provider_org_failure_aborts_and_keeps_nothing(self, db_session, fake_workos):
        fake_workos.fail_create_organization = True

        with pytest.raises(GuestUserCreationError) as exc_info:
            GuestRegistrationService(db_session, fake_workos).find_or_create_guest("erin@example.com")

        assert exc_info.value.error_code == "GUEST_USER_CREATION_ERROR"
        assert exc_info.value.cause is not None
        assert _totals(db_session, "erin@example.com") == (0, 0, 0)
        assert fake_workos.magic_auth_sent == []

    def test_retry_after_failure_converges(self, db_session, fake_workos):
        service = GuestRegistrationService(db_session, fake_workos)
        fake_workos.fail_create_organization = True
        with pytest.raises(GuestUserCreationError):
            service.find_or_create_guest("fay@example.com")

        fake_workos.fail_create_organization = False
        guest = service.find_or_create_guest("fay@example.com")

        assert _totals(db_session, "fay@example.com") == (1, 1, 1)
        assert fake_workos.count("create_user") == 2
        assert len(fake_workos.users) == 1
        assert guest.identity.external_id in fake_workos.users

    def test_provider_user_failure_aborts(self, db_session, fake_workos):
        fake_workos.fail_create_user = True

        with pytest.raises(GuestUserCreationError):
            GuestRegistrationService(db_session, fake_workos).find_or_create_guest("gus@example.com")

        assert _totals(db_session, "gus@example.com") == (0, 0, 0)

    def test_sign_in_code_failure_is_not_fatal(self, db_session, fake_workos, caplog):
        fake_workos.fail_magic_auth = True

        guest = GuestRegistrationService(db_session, fake_workos).find_or_create_guest("hal@example.com")

        assert guest.is_new is True
        assert _totals(db_session, "hal@example.com") == (1, 1, 1)
        assert "Failed to send guest sign-in code" in caplog.text


class TestSplitName:

    @pytest.mark.parametrize("raw,expected", [
        ("Jane van Doe", ("Jane", "van Doe")),
        ("Prince", ("Prince", None)),
        ("  ", (None, None)),
        (None, (None, None)),
    ])
    def test_split(self, raw, expected):
        assert split_name(raw) == expected
