"""
Organization resolver.

Maps an identity to exactly one current organization, provisioning a
personal organization the first time an identity is seen.

Selection order for identities with active memberships:
1. the token's org hint, if the identity is an active member of it
2. Identity.current_organization_id, if still an active membership
3. the membership with the most recent last_active_at

Provisioning (ensure_organization) is the ONLY path that creates personal
organizations; login and guest booking both go through it. It is
compare-and-create:

1. INSERT the local organization with personal_owner_id = identity.id inside
   a SAVEPOINT. The unique index makes concurrent inserts for the same
   identity converge: the loser gets IntegrityError, rolls back its
   savepoint and re-reads the winner. The loser never calls the provider.
2. Only the winner calls the provider: create organization, then create the
   owner membership.
3. The local owner membership is inserted and the savepoint released.

A provider failure rolls the claim back, so the next resolution retries from
scratch, and raises OrganizationCreationFailed.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orgscope.auth.claims import RegistrationIntent
from orgscope.auth.errors import OrganizationCreationFailed
from orgscope.constants.permissions import MembershipRole
from orgscope.integrations.workos.client import WorkOSClient
from orgscope.integrations.workos.exceptions import WorkOSError
from orgscope.models.identity import Identity
from orgscope.models.membership import Membership, MembershipStatus
from orgscope.models.organization import Organization, OrganizationType
from orgscope.platform.audit import AuditAction, AuditEvent, AuditTrailWriter
from orgscope.platform.authorization_context import (
    AuthorizationContext,
    bind_transaction_context,
)

logger = logging.getLogger(__name__)

SETUP_ROUTE = "/setup"
DASHBOARD_ROUTE = "/dashboard"

_EPOCH = datetime(1970, 1, 1)


def _last_active(membership: Membership) -> datetime:
    # SQLite hands back naive datetimes; compare everything as naive UTC
    value = membership.last_active_at
    if value is None:
        return _EPOCH
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@dataclass
class ResolvedOrganization:
    organization: Organization
    membership: Membership
    is_new: bool

    @property
    def role(self) -> Optional[MembershipRole]:
        return self.membership.membership_role


def default_organization_name(identity: Identity, organization_type: OrganizationType) -> str:
    """"{name}'s Practice" for experts, "{name}'s Account" otherwise."""
    suffix = "Practice" if organization_type == OrganizationType.EXPERT_INDIVIDUAL else "Account"
    return f"{identity.name_for_display}'s {suffix}"


def landing_route_for(
    organization_type: Optional[str],
    is_new: bool,
    intent: Optional[RegistrationIntent] = None,
) -> str:
    """Where the client goes after sign-in."""
    if is_new and organization_type == OrganizationType.EXPERT_INDIVIDUAL.value:
        return SETUP_ROUTE
    if intent is not None and intent.return_to:
        return intent.return_to
    return DASHBOARD_ROUTE


class OrganizationResolver:
    """
    Resolves and provisions organizations for identities.

    Usage:
        resolver = OrganizationResolver(session, workos_client)
        resolved = resolver.resolve(identity, intent=intent, org_hint=claims.org_hint)
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

    # =========================================================================
    # Lookups
    # =========================================================================

    def active_memberships(self, identity_id: str) -> List[Membership]:
        return (
            self.session.query(Membership)
            .join(Organization, Organization.id == Membership.organization_id)
            .filter(
                Membership.identity_id == identity_id,
                Membership.status == MembershipStatus.ACTIVE.value,
                Organization.is_active.is_(True),
            )
            .all()
        )

    def get_personal_organization(self, identity_id: str) -> Optional[Organization]:
        return self.session.query(Organization).filter(
            Organization.personal_owner_id == identity_id
        ).first()

    def get_membership(self, identity_id: str, organization_id: str) -> Optional[Membership]:
        return self.session.query(Membership).filter(
            Membership.identity_id == identity_id,
            Membership.organization_id == organization_id,
        ).first()

    # =========================================================================
    # Resolution
    # =========================================================================

    def resolve(
        self,
        identity: Identity,
        intent: Optional[RegistrationIntent] = None,
        org_hint: Optional[str] = None,
    ) -> ResolvedOrganization:
        """
        Resolve the identity's current organization, provisioning if needed.

        Commits the unit of work.

        Raises:
            OrganizationCreationFailed: provisioning failed; nothing was kept
        """
        intent = intent or RegistrationIntent()
        memberships = self.active_memberships(identity.id)

        if not memberships:
            try:
                resolved = self.ensure_organization(
                    identity,
                    intent.organization_type,
                    source="login",
                )
                self.session.commit()
            except OrganizationCreationFailed:
                self.session.rollback()
                raise
            return resolved

        membership = self._select(identity, memberships, org_hint)
        previous = identity.current_organization_id
        membership.touch()
        if previous != membership.organization_id:
            identity.current_organization_id = membership.organization_id
            if previous is not None:
                self._record_switch(identity, membership, previous)
        self.session.commit()

        logger.debug(
            "Resolved organization",
            extra={
                "identity_id": identity.id,
                "organization_id": membership.organization_id,
                "membership_count": len(memberships),
            },
        )
        return ResolvedOrganization(
            organization=membership.organization,
            membership=membership,
            is_new=False,
        )

    def _select(
        self,
        identity: Identity,
        memberships: List[Membership],
        org_hint: Optional[str],
    ) -> Membership:
        if len(memberships) == 1:
            return memberships[0]

        if org_hint:
            for membership in memberships:
                org = membership.organization
                if org_hint in (org.external_id, org.id):
                    return membership

        if identity.current_organization_id:
            for membership in memberships:
                if membership.organization_id == identity.current_organization_id:
                    return membership

        return max(memberships, key=_last_active)

    # =========================================================================
    # Provisioning
    # =========================================================================

    def ensure_organization(
        self,
        identity: Identity,
        organization_type: OrganizationType,
        source: str,
    ) -> ResolvedOrganization:
        """
        Return the identity's personal organization, creating it if absent.

        Does NOT commit: the caller owns the transaction. On return the
        transaction is bound to an AuthorizationContext for the organization
        so that follow-up audit rows pass row security.

        Raises:
            OrganizationCreationFailed: the provider could not create the
                organization or membership; the local claim is rolled back
        """
        existing = self.get_personal_organization(identity.id)
        if existing is not None:
            return self._existing(identity, existing)

        name = default_organization_name(identity, organization_type)
        slug = f"user-{identity.external_id}" if identity.external_id else f"user-{uuid.uuid4().hex[:16]}"

        savepoint = self.session.begin_nested()
        organization = Organization(
            name=name,
            slug=slug,
            type=organization_type.value,
            personal_owner_id=identity.id,
            is_active=True,
        )
        try:
            self.session.add(organization)
            self.session.flush()
        except IntegrityError:
            savepoint.rollback()
            winner = self.get_personal_organization(identity.id)
            if winner is None:
                raise OrganizationCreationFailed(
                    "Organization claim conflicted but no organization exists",
                    error_code="organization_claim_conflict",
                )
            logger.info(
                "Organization provisioned concurrently, using existing",
                extra={"identity_id": identity.id, "organization_id": winner.id},
            )
            return self._existing(identity, winner)

        try:
            external_org = self.workos.create_organization(name, external_id=organization.id)
        except WorkOSError as e:
            savepoint.rollback()
            logger.error(
                "Provider organization creation failed",
                extra={"identity_id": identity.id, "error": repr(e)},
            )
            raise OrganizationCreationFailed(f"Failed to create organization: {e.message}")

        try:
            external_membership = self.workos.create_organization_membership(
                user_id=identity.external_id,
                organization_id=external_org.id,
                role_slug=MembershipRole.OWNER.value,
            )
        except WorkOSError as e:
            savepoint.rollback()
            logger.error(
                "Provider membership creation failed",
                extra={
                    "identity_id": identity.id,
                    "external_organization_id": external_org.id,
                    "error": repr(e),
                },
            )
            self._compensate(external_org.id)
            raise OrganizationCreationFailed(f"Failed to create membership: {e.message}")

        organization.external_id = external_org.id
        membership = Membership(
            identity_id=identity.id,
            organization_id=organization.id,
            role=MembershipRole.OWNER.value,
            status=MembershipStatus.ACTIVE.value,
            external_id=external_membership.id,
            last_active_at=datetime.now(timezone.utc),
        )
        self.session.add(membership)
        identity.current_organization_id = organization.id
        self.session.flush()
        savepoint.commit()

        logger.info(
            "Provisioned organization",
            extra={
                "identity_id": identity.id,
                "organization_id": organization.id,
                "external_organization_id": external_org.id,
                "organization_type": organization.type,
                "source": source,
            },
        )

        self._bind(identity, organization, MembershipRole.OWNER)
        writer = AuditTrailWriter(self.session)
        writer.record(AuditEvent(
            organization_id=organization.id,
            action=AuditAction.ORGANIZATION_CREATED,
            actor_id=identity.id,
            resource_type="organization",
            resource_id=organization.id,
            metadata={"organization_type": organization.type, "source": source},
            correlation_id=self.correlation_id,
            source="system",
        ))
        writer.record(AuditEvent(
            organization_id=organization.id,
            action=AuditAction.MEMBERSHIP_CREATED,
            actor_id=identity.id,
            resource_type="membership",
            resource_id=membership.id,
            metadata={"role": membership.role, "source": source},
            correlation_id=self.correlation_id,
            source="system",
        ))

        return ResolvedOrganization(organization=organization, membership=membership, is_new=True)

    def _record_switch(self, identity: Identity, membership: Membership, previous: str) -> None:
        self._bind(identity, membership.organization, membership.membership_role)
        AuditTrailWriter(self.session).record(AuditEvent(
            organization_id=membership.organization_id,
            action=AuditAction.ORGANIZATION_SWITCHED,
            actor_id=identity.id,
            resource_type="organization",
            resource_id=membership.organization_id,
            metadata={"previous_organization_id": previous},
            correlation_id=self.correlation_id,
        ))

    def _existing(self, identity: Identity, organization: Organization) -> ResolvedOrganization:
        membership = self.get_membership(identity.id, organization.id)
        if membership is None:
            raise OrganizationCreationFailed(
                "Personal organization has no owner membership",
                error_code="organization_incomplete",
            )
        # SECURITY: a suspended owner or a deactivated organization yields no context
        if not organization.is_active:
            logger.warning(
                "Personal organization is deactivated",
                extra={"identity_id": identity.id, "organization_id": organization.id},
            )
            raise OrganizationCreationFailed(
                "Personal organization is deactivated",
                error_code="organization_inactive",
            )
        if not membership.is_active:
            logger.warning(
                "Personal organization owner membership is not active",
                extra={
                    "identity_id": identity.id,
                    "organization_id": organization.id,
                    "status": membership.status,
                },
            )
            raise OrganizationCreationFailed(
                "Owner membership is not active",
                error_code="membership_not_active",
            )
        self._bind(identity, organization, membership.membership_role)
        return ResolvedOrganization(organization=organization, membership=membership, is_new=False)

    def _bind(self, identity: Identity, organization: Organization, role: Optional[MembershipRole]) -> None:
        bind_transaction_context(self.session, AuthorizationContext(
            identity_id=identity.id,
            organization_id=organization.id,
            role=role,
            external_identity_id=identity.external_id,
            external_organization_id=organization.external_id,
            organization_type=organization.type,
            is_platform_admin=bool(identity.is_platform_admin),
        ))

    def _compensate(self, external_organization_id: str) -> None:
        try:
            self.workos.delete_organization(external_organization_id)
        except WorkOSError as e:
            logger.warning(
                "Could not delete orphaned provider organization",
                extra={"external_organization_id": external_organization_id, "error": repr(e)},
            )
