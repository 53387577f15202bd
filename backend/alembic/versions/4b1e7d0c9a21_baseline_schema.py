"""baseline_schema

Revision ID: 4b1e7d0c9a21
Revises: 
Create Date: 2026-10-17 09:12:40.118302

"""
from typing import Sequence, Union

from alembic import op

from orgscope.db_base import Base
import orgscope.models  # noqa: F401 - required to register all model metadata
import orgscope.platform.audit  # noqa: F401 - registers audit_logs


# revision identifiers, used by Alembic.
revision: str = '4b1e7d0c9a21'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind)


def downgrade() -> None:
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind)
