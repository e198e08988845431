"""readiness facilitators and issue reports

Revision ID: 0002_facilitators_and_issues
Revises: 0001_initial_schema
Create Date: 2026-10-19 15:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from app.yiba.models import Base


# revision identifiers, used by Alembic.
revision: str = "0002_facilitators_and_issues"
down_revision: Union[str, Sequence[str], None] = "0001_initial_schema"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TABLES = ("readiness_facilitators", "issue_reports")


def upgrade() -> None:
    conn = op.get_bind()
    existing_tables = set(sa.inspect(conn).get_table_names())
    missing = [Base.metadata.tables[name] for name in TABLES if name not in existing_tables]
    Base.metadata.create_all(bind=conn, tables=missing)


def downgrade() -> None:
    for name in reversed(TABLES):
        op.drop_table(name)
