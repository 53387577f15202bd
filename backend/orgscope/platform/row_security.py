"""
PostgreSQL row-level security policies.

Generates, applies and verifies the policies that make the database, not
the application, the enforcement point for organization isolation.

Policy shapes:
- Organization-scoped tables: a row is visible and writable only when
  organization_id = app.current_org_id() AND an ACTIVE membership links
  app.current_identity_id() to that organization. Membership is re-checked
  on every statement; the session setting alone is never trusted.
- Identity-owned tables: owner_id = app.current_identity_id().
- audit_logs: SELECT for members (or platform admins), INSERT for members,
  no UPDATE/DELETE policy, plus a trigger rejecting UPDATE/DELETE for any
  role without BYPASSRLS.

Helper functions return NULL when the setting is unset or empty, so a
connection with no context matches nothing (fail closed).

identities, organizations and memberships are the mapping tables consulted
by the policies themselves; they are not row-secured and are written only by
the resolver and guest registration services.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.engine import Connection

from orgscope.db_base import Base
from orgscope.models.base import IdentityOwnedMixin, OrganizationScopedMixin

logger = logging.getLogger(__name__)

AUDIT_TABLE = "audit_logs"
MEMBERSHIP_TABLE = "memberships"
IDENTITY_TABLE = "identities"

HELPER_FUNCTIONS_SQL = [
    "CREATE SCHEMA IF NOT EXISTS app",
    """
    CREATE OR REPLACE FUNCTION app.current_identity_id() RETURNS text
    LANGUAGE sql STABLE AS $$
        SELECT NULLIF(current_setting('app.identity_id', true), '')
    $$
    """,
    """
    CREATE OR REPLACE FUNCTION app.current_org_id() RETURNS text
    LANGUAGE sql STABLE AS $$
        SELECT NULLIF(current_setting('app.org_id', true), '')
    $$
    """,
    f"""
    CREATE OR REPLACE FUNCTION app.is_active_member(target_org_id text) RETURNS boolean
    LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public AS $$
        SELECT EXISTS (
            SELECT 1 FROM {MEMBERSHIP_TABLE} m
            WHERE m.organization_id = target_org_id
              AND m.identity_id = app.current_identity_id()
              AND m.status = 'active'
        )
    $$
    """,
    f"""
    CREATE OR REPLACE FUNCTION app.is_platform_admin() RETURNS boolean
    LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public AS $$
        SELECT EXISTS (
            SELECT 1 FROM {IDENTITY_TABLE} i
            WHERE i.id = app.current_identity_id()
              AND i.is_platform_admin
              AND i.is_active
        )
    $$
    """,
    """
    CREATE OR REPLACE FUNCTION app.reject_audit_mutation() RETURNS trigger
    LANGUAGE plpgsql AS $$
    BEGIN
        IF EXISTS (SELECT 1 FROM pg_roles WHERE rolname = current_user AND rolbypassrls) THEN
            IF TG_OP = 'DELETE' THEN
                RETURN OLD;
            END IF;
            RETURN NEW;
        END IF;
        RAISE EXCEPTION 'audit_logs is append-only (% rejected)', TG_OP
            USING ERRCODE = 'insufficient_privilege';
    END
    $$
    """,
]

_MEMBER_PREDICATE = "organization_id = app.current_org_id() AND app.is_active_member(organization_id)"


@dataclass(frozen=True)
class TablePolicy:
    table: str
    name: str
    command: str
    using: str = ""
    with_check: str = ""

    def create_sql(self) -> str:
        sql = f"CREATE POLICY {self.name} ON {self.table} FOR {self.command}"
        if self.using:
            sql += f" USING ({self.using})"
        if self.with_check:
            sql += f" WITH CHECK ({self.with_check})"
        return sql


def organization_scoped_tables() -> List[str]:
    return sorted(
        mapper.local_table.name
        for mapper in Base.registry.mappers
        if issubclass(mapper.class_, OrganizationScopedMixin)
        and mapper.local_table.name != AUDIT_TABLE
    )


def identity_owned_tables() -> List[str]:
    return sorted(
        mapper.local_table.name
        for mapper in Base.registry.mappers
        if issubclass(mapper.class_, IdentityOwnedMixin)
    )


class RowSecurityPolicyBuilder:
    """
    Builds the DDL for every managed table.

    Usage:
        builder = RowSecurityPolicyBuilder()
        for statement in builder.statements():
            connection.execute(text(statement))
    """

    def __init__(
        self,
        organization_tables: Optional[Sequence[str]] = None,
        identity_tables: Optional[Sequence[str]] = None,
        audit_table: str = AUDIT_TABLE,
    ):
        self.organization_tables = list(
            organization_tables if organization_tables is not None else organization_scoped_tables()
        )
        self.identity_tables = list(
            identity_tables if identity_tables is not None else identity_owned_tables()
        )
        self.audit_table = audit_table

    @property
    def managed_tables(self) -> List[str]:
        return self.organization_tables + self.identity_tables + [self.audit_table]

    def policies(self) -> List[TablePolicy]:
        policies = []
        for table in self.organization_tables:
            policies.append(TablePolicy(
                table=table,
                name=f"{table}_org_isolation",
                command="ALL",
                using=_MEMBER_PREDICATE,
                with_check=_MEMBER_PREDICATE,
            ))
        for table in self.identity_tables:
            predicate = "owner_id = app.current_identity_id()"
            policies.append(TablePolicy(
                table=table,
                name=f"{table}_owner_isolation",
                command="ALL",
                using=predicate,
                with_check=predicate,
            ))
        policies.append(TablePolicy(
            table=self.audit_table,
            name=f"{self.audit_table}_select",
            command="SELECT",
            using=f"({_MEMBER_PREDICATE}) OR app.is_platform_admin()",
        ))
        policies.append(TablePolicy(
            table=self.audit_table,
            name=f"{self.audit_table}_insert",
            command="INSERT",
            with_check=_MEMBER_PREDICATE,
        ))
        return policies

    def statements(self) -> List[str]:
        statements = [sql.strip() for sql in HELPER_FUNCTIONS_SQL]
        for table in self.managed_tables:
            statements.append(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
            statements.append(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
        for policy in self.policies():
            statements.append(f"DROP POLICY IF EXISTS {policy.name} ON {policy.table}")
            statements.append(policy.create_sql())
        trigger = f"{self.audit_table}_append_only"
        statements.append(f"DROP TRIGGER IF EXISTS {trigger} ON {self.audit_table}")
        statements.append(
            f"CREATE TRIGGER {trigger} BEFORE UPDATE OR DELETE ON {self.audit_table} "
            "FOR EACH ROW EXECUTE FUNCTION app.reject_audit_mutation()"
        )
        return statements

    def downgrade_statements(self) -> List[str]:
        statements = [f"DROP TRIGGER IF EXISTS {self.audit_table}_append_only ON {self.audit_table}"]
        for policy in self.policies():
            statements.append(f"DROP POLICY IF EXISTS {policy.name} ON {policy.table}")
        for table in self.managed_tables:
            statements.append(f"ALTER TABLE {table} NO FORCE ROW LEVEL SECURITY")
            statements.append(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")
        statements.append("DROP SCHEMA IF EXISTS app CASCADE")
        return statements


def apply_row_security(connection: Connection, builder: Optional[RowSecurityPolicyBuilder] = None) -> None:
    """Execute the policy DDL on a PostgreSQL connection."""
    if connection.dialect.name != "postgresql":
        raise RuntimeError("Row-level security requires PostgreSQL")
    builder = builder or RowSecurityPolicyBuilder()
    for statement in builder.statements():
        connection.execute(text(statement))
    logger.info(
        "Row-level security applied",
        extra={"tables": builder.managed_tables},
    )


# =============================================================================
# Verification
# =============================================================================


@dataclass
class RowSecurityReport:
    """Result of verify_row_security."""
    checked_tables: List[str] = field(default_factory=list)
    missing_tables: List[str] = field(default_factory=list)
    rls_disabled: List[str] = field(default_factory=list)
    rls_not_forced: List[str] = field(default_factory=list)
    missing_policies: List[str] = field(default_factory=list)
    forbidden_policies: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (
            self.missing_tables
            or self.rls_disabled
            or self.rls_not_forced
            or self.missing_policies
            or self.forbidden_policies
        )

    def problems(self) -> List[str]:
        problems = []
        problems += [f"{t}: table missing" for t in self.missing_tables]
        problems += [f"{t}: row level security disabled" for t in self.rls_disabled]
        problems += [f"{t}: row level security not forced" for t in self.rls_not_forced]
        problems += [f"missing policy {p}" for p in self.missing_policies]
        problems += [f"forbidden policy {p}" for p in self.forbidden_policies]
        return problems


def verify_row_security(
    connection: Connection,
    builder: Optional[RowSecurityPolicyBuilder] = None,
) -> RowSecurityReport:
    """
    Inspect pg_class and pg_policies for every managed table.

    audit_logs must expose no UPDATE, DELETE or ALL policy.
    """
    builder = builder or RowSecurityPolicyBuilder()
    tables = builder.managed_tables
    report = RowSecurityReport(checked_tables=list(tables))

    rows = connection.execute(
        text(
            "SELECT c.relname, c.relrowsecurity, c.relforcerowsecurity "
            "FROM pg_class c JOIN pg_namespace n ON n.oid = c.relnamespace "
            "WHERE n.nspname = current_schema() AND c.relkind = 'r' "
            "AND c.relname = ANY(:tables)"
        ),
        {"tables": list(tables)},
    ).fetchall()
    found = {row[0]: (row[1], row[2]) for row in rows}

    for table in tables:
        if table not in found:
            report.missing_tables.append(table)
            continue
        enabled, forced = found[table]
        if not enabled:
            report.rls_disabled.append(table)
        if not forced:
            report.rls_not_forced.append(table)

    policy_rows = connection.execute(
        text(
            "SELECT tablename, policyname, cmd FROM pg_policies "
            "WHERE schemaname = current_schema() AND tablename = ANY(:tables)"
        ),
        {"tables": list(tables)},
    ).fetchall()
    existing = {(row[0], row[1]) for row in policy_rows}

    for policy in builder.policies():
        if (policy.table, policy.name) not in existing:
            report.missing_policies.append(f"{policy.table}.{policy.name}")

    for table, name, cmd in policy_rows:
        if table == builder.audit_table and cmd in ("UPDATE", "DELETE", "ALL"):
            report.forbidden_policies.append(f"{table}.{name}")

    if report.ok:
        logger.info("Row-level security verified", extra={"tables": tables})
    else:
        logger.error(
            "Row-level security verification failed",
            extra={"problems": report.problems()},
        )
    return report
