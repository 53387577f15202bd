"""
Guest auto-registration at booking time.

A guest books a meeting with only an email and a name. Before the booking
row is written the guest gets:
- a provider user (email uniqueness at the provider is the idempotency key)
- a local Identity mirror
- a personal patient organization with an owner membership
- one passwordless sign-in code, sent only when this call created the
  provider user

Booking the same email twice therefore yields one identity, one
organization, one membership and one code.

Any failure other than the sign-in code dispatch rolls back the caller's
transaction and raises GuestUserCreationError so the booking aborts.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from orgscope.auth.errors import AuthorizationError, GuestUserCreationError
from orgscope.integrations.workos.client import WorkOSClient
from orgscope.integrations.workos.exceptions import WorkOSConflictError, WorkOSError
from orgscope.integrations.workos.models import WorkOSUser
from orgscope.models.identity import Identity
from orgscope.models.organization import Organization, OrganizationType
from orgscope.platform.audit import AuditAction, AuditEvent, AuditTrailWriter, AuditWriteFailed
from orgscope.services.identity_sync import IdentitySyncService
from orgscope.services.organization_resolver import OrganizationResolver

logger = logging.getLogger(__name__)

REGISTRATION_SOURCE = "meeting_booking"

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class GuestRegistration:
    identity: Identity
    organization: Organization
    is_new: bool


def split_name(display_name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """"Jane van Doe" -> ("Jane", "van Doe")."""
    if not display_name or not display_name.strip():
        return None, None
    first, _, rest = display_name.strip().partition(" ")
    return first, (rest.strip() or None)


class GuestRegistrationService:
    """
    Find-or-create for booking guests.

    Usage:
        service = GuestRegistrationService(session, workos_client)
        guest = service.find_or_create_guest("alice@example.com", "Alice Smith")
    """

    def __init__(
        self,
        session: Session,
        workos_client: WorkOSClient,
        correlation_id: Optional[str] = None,
    ):
        self.session = session
        self.workos = workos_client
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.identities = IdentitySyncService(session, workos_client)
        self.resolver = OrganizationResolver(session, workos_client, correlation_id=self.correlation_id)

    def find_or_create_guest(
        self,
        email: str,
        display_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GuestRegistration:
        """
        Ensure a guest identity and personal organization exist for an email.

        Commits on success.

        Raises:
            GuestUserCreationError: registration failed; nothing was kept
        """
        normalized = Identity.normalize_email(email)
        if not _EMAIL_PATTERN.match(normalized):
            raise GuestUserCreationError("Invalid guest email address")

        existing = self.identities.get_by_email(normalized)
        if existing is not None and existing.current_organization_id:
            organization = self.session.get(Organization, existing.current_organization_id)
            if organization is not None:
                logger.debug(
                    "Existing guest identity found",
                    extra={"identity_id": existing.id, "organization_id": organization.id},
                )
                return GuestRegistration(identity=existing, organization=organization, is_new=False)

        created_provider_user = False
        try:
            if existing is not None and existing.external_id:
                provider_user_id = existing.external_id
                identity = existing
            else:
                user, created_provider_user = self._create_or_get_provider_user(normalized, display_name)
                provider_user_id = user.id
                identity = self.identities.upsert_from_provider(user, source=REGISTRATION_SOURCE).identity

            resolved = self.resolver.ensure_organization(
                identity,
                OrganizationType.PATIENT_PERSONAL,
                source=REGISTRATION_SOURCE,
            )

            AuditTrailWriter(self.session).record(AuditEvent(
                organization_id=resolved.organization.id,
                action=AuditAction.IDENTITY_GUEST_REGISTERED,
                actor_id=identity.id,
                resource_type="identity",
                resource_id=identity.id,
                metadata={
                    "registration_source": REGISTRATION_SOURCE,
                    "email": normalized,
                    "provider_user_created": created_provider_user,
                    **(metadata or {}),
                },
                correlation_id=self.correlation_id,
                source="system",
            ))
            self.session.commit()
        except (WorkOSError, SQLAlchemyError, AuthorizationError, AuditWriteFailed) as e:
            self.session.rollback()
            logger.error(
                "Guest registration failed",
                extra={"email_domain": normalized.split("@")[-1], "error": repr(e)},
            )
            raise GuestUserCreationError(cause=e) from e

        logger.info(
            "Guest registered",
            extra={
                "identity_id": identity.id,
                "organization_id": resolved.organization.id,
                "external_id": provider_user_id,
                "is_new_organization": resolved.is_new,
            },
        )

        if created_provider_user:
            self._send_sign_in_code(normalized, identity.id)

        return GuestRegistration(
            identity=identity,
            organization=resolved.organization,
            is_new=created_provider_user or resolved.is_new,
        )

    def _create_or_get_provider_user(
        self,
        email: str,
        display_name: Optional[str],
    ) -> Tuple[WorkOSUser, bool]:
        """Returns (user, created_by_this_call)."""
        first_name, last_name = split_name(display_name)
        try:
            user = self.workos.create_user(
                email=email,
                first_name=first_name,
                last_name=last_name,
                email_verified=False,
            )
            return user, True
        except WorkOSConflictError:
            user = self.workos.get_user_by_email(email)
            if user is None:
                raise
            logger.info("Provider user already exists for guest", extra={"external_id": user.id})
            return user, False

    def _send_sign_in_code(self, email: str, identity_id: str) -> None:
        # The booking is already committed; the guest can request another code
        try:
            self.workos.send_magic_auth_code(email)
        except WorkOSError as e:
            logger.warning(
                "Failed to send guest sign-in code",
                extra={"identity_id": identity_id, "error": repr(e)},
            )
