"""
Request-scoped authorization context.

An AuthorizationContext is the resolved (identity, organization, role)
triple for one request. It is bound to exactly one database transaction:

- On PostgreSQL the ids are written with set_config(..., true), i.e.
  transaction-local. Row-security policies read them back through
  app.current_identity_id() and app.current_org_id(). A pooled connection
  never carries them past COMMIT/ROLLBACK.
- On every dialect the context is stored in Session.info and an ORM guard
  adds the same predicates to every query on organization-scoped and
  identity-owned models. No context means no rows, never an error.

SECURITY:
- organization_id comes only from the resolver, NEVER from client input
- A query naming a foreign organization_id literally still returns nothing
- Bypass is only available through
  orgscope.database.session.privileged_maintenance_session
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from sqlalchemy import event, false, text
from sqlalchemy.orm import Session, with_loader_criteria

from orgscope.auth.errors import AuthorizationDenied
from orgscope.constants.permissions import MembershipRole, Permission, role_has_permission
from orgscope.db_base import Base
from orgscope.models.base import IdentityOwnedMixin, OrganizationScopedMixin
from orgscope.platform.audit import AuditLog, BYPASS_INFO_KEY

logger = logging.getLogger(__name__)

CONTEXT_INFO_KEY = "authorization_context"

IDENTITY_SETTING = "app.identity_id"
ORGANIZATION_SETTING = "app.org_id"


@dataclass(frozen=True)
class AuthorizationContext:
    """
    Resolved authorization for one request. Never persisted.

    organization_id is None for a degraded session (provisioning failed);
    such a context sees no organization-scoped rows.
    """
    identity_id: str
    organization_id: Optional[str]
    role: Optional[MembershipRole]
    external_identity_id: Optional[str] = None
    external_organization_id: Optional[str] = None
    organization_type: Optional[str] = None
    session_id: Optional[str] = None
    is_platform_admin: bool = False
    is_new_organization: bool = False
    landing_route: str = "/dashboard"

    @property
    def has_organization(self) -> bool:
        return self.organization_id is not None

    def has_permission(self, permission: Permission) -> bool:
        if self.role is None or self.organization_id is None:
            return False
        return role_has_permission(self.role, permission)

    def require_permission(self, permission: Permission) -> None:
        """Raise AuthorizationDenied (surfaced as 404) when not permitted."""
        if not self.has_permission(permission):
            logger.warning(
                "Permission denied",
                extra={
                    "identity_id": self.identity_id,
                    "organization_id": self.organization_id,
                    "permission": permission.value,
                },
            )
            raise AuthorizationDenied()


def current_context(session: Session) -> Optional[AuthorizationContext]:
    """Context bound to the session's current transaction, if any."""
    return session.info.get(CONTEXT_INFO_KEY)


def bind_transaction_context(session: Session, context: AuthorizationContext) -> None:
    """
    Attach a context to the session's current transaction, beginning one
    if needed. Cleared automatically when the transaction ends.
    """
    session.info[CONTEXT_INFO_KEY] = context
    bind = session.get_bind()
    if bind.dialect.name == "postgresql":
        session.execute(
            text(
                "SELECT set_config(:identity_key, :identity_id, true), "
                "set_config(:org_key, :org_id, true)"
            ),
            {
                "identity_key": IDENTITY_SETTING,
                "identity_id": context.identity_id,
                "org_key": ORGANIZATION_SETTING,
                # Empty string reads back as NULL through the helper functions
                "org_id": context.organization_id or "",
            },
        )
    else:
        # Ensure a transaction exists so the context has one to belong to
        session.connection()

    logger.debug(
        "Authorization context bound",
        extra={
            "identity_id": context.identity_id,
            "organization_id": context.organization_id,
        },
    )


@contextmanager
def with_authorization(session: Session, context: AuthorizationContext) -> Iterator[Session]:
    """
    Run a block of work under an authorization context.

    Commits on success and rolls back on error. The context is gone once the
    block exits, whichever way it exits.

    Usage:
        with with_authorization(session, ctx) as db:
            records = db.query(ClinicalRecord).all()
    """
    bind_transaction_context(session, context)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.info.pop(CONTEXT_INFO_KEY, None)


# =============================================================================
# ORM guard
# =============================================================================


def _scoped_classes(mixin) -> list:
    return [
        mapper.class_
        for mapper in Base.registry.mappers
        if issubclass(mapper.class_, mixin)
    ]


def _criteria_options(context: Optional[AuthorizationContext]) -> list:
    org_id = context.organization_id if context else None
    identity_id = context.identity_id if context else None
    options = []

    for cls in _scoped_classes(OrganizationScopedMixin):
        if org_id is None:
            criteria = false()
        elif cls is AuditLog and context.is_platform_admin:
            # Platform admins read audit rows across organizations
            continue
        else:
            criteria = cls.organization_id == org_id
        options.append(with_loader_criteria(cls, criteria, include_aliases=True))

    for cls in _scoped_classes(IdentityOwnedMixin):
        criteria = false() if identity_id is None else cls.owner_id == identity_id
        options.append(with_loader_criteria(cls, criteria, include_aliases=True))

    return options


@event.listens_for(Session, "after_transaction_end")
def _clear_context_at_transaction_end(session, transaction):
    if transaction.parent is None:
        session.info.pop(CONTEXT_INFO_KEY, None)


@event.listens_for(Session, "do_orm_execute")
def _apply_authorization_criteria(orm_execute_state):
    if not (
        orm_execute_state.is_select
        or orm_execute_state.is_update
        or orm_execute_state.is_delete
    ):
        return
    if orm_execute_state.is_column_load or not orm_execute_state.is_orm_statement:
        return
    session = orm_execute_state.session
    if session.info.get(BYPASS_INFO_KEY):
        return

    options = _criteria_options(session.info.get(CONTEXT_INFO_KEY))
    if options:
        orm_execute_state.statement = orm_execute_state.statement.options(*options)


@event.listens_for(Session, "before_flush")
def _check_scoped_writes(session, flush_context, instances):
    """Reject new or changed rows outside the bound context."""
    if session.info.get(BYPASS_INFO_KEY):
        return
    context = session.info.get(CONTEXT_INFO_KEY)
    for obj in list(session.new) + list(session.dirty):
        if isinstance(obj, OrganizationScopedMixin):
            if context is None or context.organization_id is None or obj.organization_id != context.organization_id:
                logger.warning(
                    "Rejected write outside authorization context",
                    extra={
                        "model": type(obj).__name__,
                        "organization_id": getattr(obj, "organization_id", None),
                        "context_organization_id": context.organization_id if context else None,
                    },
                )
                raise AuthorizationDenied()
        elif isinstance(obj, IdentityOwnedMixin):
            if context is None or obj.owner_id != context.identity_id:
                raise AuthorizationDenied()
