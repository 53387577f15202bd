"""row_level_security

Enables and forces row-level security on every organization-scoped and
identity-owned table, installs the app.* helper functions and makes
audit_logs append-only. PostgreSQL only; a no-op elsewhere.

Revision ID: 9d3f52a6e8b4
Revises: 4b1e7d0c9a21
Create Date: 2026-10-17 09:31:05.664190

"""
from typing import Sequence, Union

from alembic import op

import orgscope.models  # noqa: F401
import orgscope.platform.audit  # noqa: F401
from orgscope.platform.row_security import RowSecurityPolicyBuilder


# revision identifiers, used by Alembic.
revision: str = '9d3f52a6e8b4'
down_revision: Union[str, None] = '4b1e7d0c9a21'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name != "postgresql":
        return
    for statement in RowSecurityPolicyBuilder().statements():
        op.execute(statement)


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name != "postgresql":
        return
    for statement in RowSecurityPolicyBuilder().downgrade_statements():
        op.execute(statement)
