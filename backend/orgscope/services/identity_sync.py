"""
Identity sync service.

Keeps the local Identity mirror in step with the identity provider.

Data flows:
1. Authenticated request -> resolve_authorization -> get_or_create_from_token
2. Guest booking -> GuestRegistrationService -> upsert_from_provider

Creation is race-safe: the insert runs in a SAVEPOINT and a unique
violation (external_id or email) re-reads the row another request created.

SECURITY:
- The identity provider is the source of truth for authentication
- NO passwords stored locally
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orgscope.auth.claims import VerifiedIdentity
from orgscope.auth.errors import ProviderUnavailable, Unauthenticated
from orgscope.integrations.workos.client import WorkOSClient
from orgscope.integrations.workos.exceptions import WorkOSError, WorkOSNotFoundError
from orgscope.integrations.workos.models import WorkOSUser
from orgscope.models.identity import Identity

logger = logging.getLogger(__name__)


@dataclass
class IdentitySyncResult:
    identity: Identity
    is_new: bool


class IdentitySyncService:
    """Find-or-create for local Identity rows."""

    def __init__(self, session: Session, workos_client: Optional[WorkOSClient] = None):
        self.session = session
        self.workos = workos_client

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_by_external_id(self, external_id: str) -> Optional[Identity]:
        return self.session.query(Identity).filter(
            Identity.external_id == external_id
        ).first()

    def get_by_email(self, email: str) -> Optional[Identity]:
        return self.session.query(Identity).filter(
            Identity.email == Identity.normalize_email(email)
        ).first()

    def _find(self, external_id: Optional[str], email: str) -> Optional[Identity]:
        clauses = [Identity.email == email]
        if external_id:
            clauses.append(Identity.external_id == external_id)
        # Prefer the row already linked to the provider id
        rows = self.session.query(Identity).filter(or_(*clauses)).all()
        for row in rows:
            if external_id and row.external_id == external_id:
                return row
        return rows[0] if rows else None

    def _check_link(self, identity: Identity, external_id: str) -> None:
        # SECURITY: an email match never hands one provider subject another's row
        if identity.external_id is None or identity.external_id == external_id:
            return
        logger.warning(
            "Email already linked to a different provider user",
            extra={
                "identity_id": identity.id,
                "external_id": external_id,
                "linked_external_id": identity.external_id,
            },
        )
        raise Unauthenticated(
            "Email is linked to another identity",
            error_code="identity_email_conflict",
        )

    # =========================================================================
    # Sync
    # =========================================================================

    def get_or_create_from_token(self, verified: VerifiedIdentity) -> IdentitySyncResult:
        """
        Mirror the identity behind a verified token.

        Tokens may omit email; the provider is then asked for the user.

        Raises:
            Unauthenticated: the provider no longer knows the subject
            ProviderUnavailable: the provider could not be reached
        """
        existing = self.get_by_external_id(verified.subject_id)
        if existing:
            if not existing.is_active:
                raise Unauthenticated("Identity is deactivated", error_code="identity_inactive")
            return IdentitySyncResult(identity=existing, is_new=False)

        email = verified.email
        display_name = verified.display_name
        if not email:
            user = self._fetch_provider_user(verified.subject_id)
            email = user.email
            display_name = display_name or user.display_name

        return self.upsert(
            external_id=verified.subject_id,
            email=email,
            display_name=display_name,
            source="lazy_sync",
        )

    def upsert_from_provider(self, user: WorkOSUser, source: str) -> IdentitySyncResult:
        return self.upsert(
            external_id=user.id,
            email=user.email,
            display_name=user.display_name,
            source=source,
        )

    def upsert(
        self,
        external_id: str,
        email: str,
        display_name: Optional[str] = None,
        source: str = "lazy_sync",
    ) -> IdentitySyncResult:
        """
        Create or link the identity for (external_id, email).

        An unlinked row with the same email is claimed by setting its
        external_id.

        Raises:
            Unauthenticated: the email belongs to a row linked to a
                different provider user (identity_email_conflict)
        """
        normalized = Identity.normalize_email(email)
        if not normalized:
            raise ValueError("Identity email is required")

        identity = self._find(external_id, normalized)
        if identity is not None:
            self._check_link(identity, external_id)
            if identity.external_id is None:
                identity.external_id = external_id
                identity.mark_synced()
                self.session.flush()
                logger.info(
                    "Linked identity to provider user",
                    extra={"identity_id": identity.id, "external_id": external_id},
                )
            return IdentitySyncResult(identity=identity, is_new=False)

        identity = Identity(
            external_id=external_id,
            email=normalized,
            display_name=display_name,
            is_active=True,
        )
        identity.mark_synced()
        savepoint = self.session.begin_nested()
        try:
            self.session.add(identity)
            self.session.flush()
        except IntegrityError:
            savepoint.rollback()
            winner = self._find(external_id, normalized)
            if winner is None:
                raise
            self._check_link(winner, external_id)
            logger.info(
                "Identity created concurrently, using existing row",
                extra={"identity_id": winner.id, "external_id": external_id},
            )
            return IdentitySyncResult(identity=winner, is_new=False)
        savepoint.commit()

        logger.info(
            "Created identity",
            extra={"identity_id": identity.id, "external_id": external_id, "source": source},
        )
        return IdentitySyncResult(identity=identity, is_new=True)

    def _fetch_provider_user(self, external_id: str) -> WorkOSUser:
        if self.workos is None:
            raise ProviderUnavailable(
                "Identity provider client not configured",
                error_code="provider_not_configured",
            )
        try:
            return self.workos.get_user(external_id)
        except WorkOSNotFoundError:
            raise Unauthenticated("Unknown identity", error_code="unknown_identity")
        except WorkOSError as e:
            raise ProviderUnavailable(f"Unable to load identity: {e.message}")
