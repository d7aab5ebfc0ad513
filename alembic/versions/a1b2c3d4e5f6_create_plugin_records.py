"""create_plugin_records

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19 00:00:00.000000

Plugin runtime persistence:
  - Creates the `plugin_records` table (activation flag, installed schema
    version of plugin-private tables, setting values, last lifecycle error).
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic
revision: str = "a1b2c3d4e5f6"
down_revision: str | None = None
branch_labels: str | None = None
depends_on: str | None = None


def upgrade() -> None:
    op.create_table(
        "plugin_records",
        sa.Column("identifier", sa.String(100), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("schema_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("settings", sa.JSON(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("identifier"),
    )
    op.create_index("idx_plugin_record_active", "plugin_records", ["active"])
    op.create_index("idx_plugin_record_tenant", "plugin_records", ["tenant_id"])


def downgrade() -> None:
    op.drop_index("idx_plugin_record_tenant", table_name="plugin_records")
    op.drop_index("idx_plugin_record_active", table_name="plugin_records")
    op.drop_table("plugin_records")
