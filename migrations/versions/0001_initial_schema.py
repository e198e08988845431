"""initial schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from app.yiba.models import Base


# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create every table registered on the model metadata (idempotent)."""
    conn = op.get_bind()
    existing_tables = set(sa.inspect(conn).get_table_names())
    missing = [t for t in Base.metadata.sorted_tables if t.name not in existing_tables]
    Base.metadata.create_all(bind=conn, tables=missing)


def downgrade() -> None:
    Base.metadata.drop_all(bind=op.get_bind())
