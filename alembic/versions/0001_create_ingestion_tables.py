"""create events and ingestion_state tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "events",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("raw", postgresql.JSONB(), nullable=False),
        sa.Column("ingested_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_events_ingested_at", "events", ["ingested_at"])

    state = op.create_table(
        "ingestion_state",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("cursor", sa.Text(), nullable=True),
        sa.Column("page", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ingested_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_ts_ms", sa.BigInteger(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.bulk_insert(state, [{"id": 1, "cursor": None, "page": 0, "ingested_count": 0}])


def downgrade():
    op.drop_table("ingestion_state")
    op.drop_index("idx_events_ingested_at", table_name="events")
    op.drop_table("events")
