"""
Request-level authorization.

resolve_authorization is the single entry point that turns an HTTP request
into an AuthorizationContext:

1. extract and verify the session token (Unauthenticated on failure)
2. mirror the identity locally (lazy sync)
3. resolve, or provision, the current organization
4. build the context and record the session in the audit trail

Provisioning failures never block sign-in: the caller receives a degraded
context with no organization, which sees no organization-scoped rows, and
the next request retries provisioning.

Usage:

    @router.get("/records")
    def list_records(db: Session = Depends(get_authorized_session)):
        return db.query(ClinicalRecord).all()
"""

import logging
import uuid
from typing import Iterator, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from starlette.requests import Request

from orgscope.auth.claims import RegistrationIntent
from orgscope.auth.errors import OrganizationCreationFailed, ProviderUnavailable, Unauthenticated
from orgscope.auth.verifier import IdentityTokenVerifier, extract_session_token, get_verifier
from orgscope.database.session import get_db_session
from orgscope.integrations.workos.client import WorkOSClient, get_workos_client
from orgscope.models.identity import Identity
from orgscope.platform.audit import AuditAction, AuditEvent, AuditTrailWriter, extract_client_info
from orgscope.platform.authorization_context import (
    AuthorizationContext,
    bind_transaction_context,
    with_authorization,
)
from orgscope.services.identity_sync import IdentitySyncService
from orgscope.services.organization_resolver import (
    OrganizationResolver,
    ResolvedOrganization,
    landing_route_for,
)

logger = logging.getLogger(__name__)

# Documents the bearer scheme in OpenAPI; the token is read by extract_session_token
security = HTTPBearer(auto_error=False)

CONTEXT_STATE_KEY = "authorization_context"


def get_provider_client() -> WorkOSClient:
    """Provider client, or ProviderUnavailable when not configured."""
    try:
        return get_workos_client()
    except ValueError as e:
        raise ProviderUnavailable(str(e), error_code="provider_not_configured")


def build_context(
    identity: Identity,
    resolved: Optional[ResolvedOrganization],
    session_id: Optional[str] = None,
    intent: Optional[RegistrationIntent] = None,
) -> AuthorizationContext:
    """Context for a resolved organization, or a degraded one when None."""
    if resolved is None:
        return AuthorizationContext(
            identity_id=identity.id,
            organization_id=None,
            role=None,
            external_identity_id=identity.external_id,
            session_id=session_id,
            is_platform_admin=bool(identity.is_platform_admin),
            landing_route=landing_route_for(None, False, intent),
        )

    organization = resolved.organization
    return AuthorizationContext(
        identity_id=identity.id,
        organization_id=organization.id,
        role=resolved.role,
        external_identity_id=identity.external_id,
        external_organization_id=organization.external_id,
        organization_type=organization.type,
        session_id=session_id,
        is_platform_admin=bool(identity.is_platform_admin),
        is_new_organization=resolved.is_new,
        landing_route=landing_route_for(organization.type, resolved.is_new, intent),
    )


def resolve_authorization(
    request: Request,
    session: Session,
    verifier: Optional[IdentityTokenVerifier] = None,
    workos_client: Optional[WorkOSClient] = None,
    intent: Optional[RegistrationIntent] = None,
    token: Optional[str] = None,
    establish_session: bool = False,
) -> AuthorizationContext:
    """
    Resolve the AuthorizationContext for a request.

    Args:
        request: Incoming request (token source and client info)
        session: Database session; committed by the resolver
        verifier: Token verifier (default: configured singleton)
        workos_client: Provider client (default: configured from settings)
        intent: Registration intent, present only on the sign-in callback
        token: Explicit token, used by the sign-in callback before the
            session cookie exists
        establish_session: True on the sign-in callback only; records
            auth.session_established once per sign-in instead of per request

    Raises:
        Unauthenticated: no valid session token
        ProviderUnavailable: the provider or its keys could not be reached
    """
    token = token or extract_session_token(request)
    if not token:
        raise Unauthenticated("Authentication required", error_code="missing_token")

    verifier = verifier or get_verifier()
    verified = verifier.verify(token)

    workos = workos_client or get_provider_client()
    correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())

    sync = IdentitySyncService(session, workos).get_or_create_from_token(verified)
    identity = sync.identity
    session.commit()

    resolver = OrganizationResolver(session, workos, correlation_id=correlation_id)
    try:
        resolved: Optional[ResolvedOrganization] = resolver.resolve(
            identity,
            intent=intent,
            org_hint=verified.org_hint,
        )
    except OrganizationCreationFailed as e:
        logger.error(
            "Organization provisioning failed, continuing with degraded session",
            extra={
                "identity_id": identity.id,
                "external_id": identity.external_id,
                "error_code": e.error_code,
                "error": e.message,
            },
        )
        resolved = None

    context = build_context(identity, resolved, session_id=verified.session_id, intent=intent)
    _record_session(
        request,
        session,
        context,
        first_seen=sync.is_new,
        establish_session=establish_session,
        correlation_id=correlation_id,
    )

    request.state.authorization_context = context
    logger.info(
        "Authorization resolved",
        extra={
            "identity_id": context.identity_id,
            "organization_id": context.organization_id,
            "role": context.role.value if context.role else None,
            "degraded": not context.has_organization,
        },
    )
    return context


def _record_session(
    request: Request,
    session: Session,
    context: AuthorizationContext,
    first_seen: bool,
    establish_session: bool,
    correlation_id: str,
) -> None:
    if not (first_seen or establish_session):
        return

    # Audit rows belong to an organization; degraded sessions have none
    if not context.has_organization:
        logger.warning(
            "Session established without organization",
            extra={"identity_id": context.identity_id, "action": AuditAction.AUTH_SESSION_DEGRADED.value},
        )
        return

    ip_address, user_agent = extract_client_info(request)
    bind_transaction_context(session, context)
    writer = AuditTrailWriter(session)
    if first_seen:
        writer.record(AuditEvent(
            organization_id=context.organization_id,
            action=AuditAction.IDENTITY_FIRST_SEEN,
            actor_id=context.identity_id,
            resource_type="identity",
            resource_id=context.identity_id,
            metadata={"source": "lazy_sync"},
            ip_address=ip_address,
            user_agent=user_agent,
            correlation_id=correlation_id,
        ))
    if establish_session:
        writer.record(AuditEvent(
            organization_id=context.organization_id,
            action=AuditAction.AUTH_SESSION_ESTABLISHED,
            actor_id=context.identity_id,
            metadata={"session_id": context.session_id, "is_new_organization": context.is_new_organization},
            ip_address=ip_address,
            user_agent=user_agent,
            correlation_id=correlation_id,
        ))
    session.commit()


# =============================================================================
# FastAPI dependencies
# =============================================================================


def get_authorization_context(
    request: Request,
    session: Session = Depends(get_db_session),
    _credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthorizationContext:
    """Dependency returning the resolved context (401/503 on failure)."""
    existing = getattr(request.state, CONTEXT_STATE_KEY, None)
    if existing is not None:
        return existing
    return resolve_authorization(request, session)


def get_authorized_session(
    context: AuthorizationContext = Depends(get_authorization_context),
    session: Session = Depends(get_db_session),
) -> Iterator[Session]:
    """
    Dependency yielding a session bound to the request's context.

    The unit of work commits when the route returns and rolls back if it
    raises.
    """
    with with_authorization(session, context) as db:
        yield db
