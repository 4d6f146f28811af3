"""add version counter to expenses

Revision ID: 202503011000
Revises: 202502101200
Create Date: 2025-03-01 10:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202503011000"
down_revision = "202502101200"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("expenses") as batch_op:
        batch_op.add_column(
            sa.Column(
                "version_id", sa.Integer(), nullable=False, server_default="1"
            )
        )


def downgrade() -> None:
    with op.batch_alter_table("expenses") as batch_op:
        batch_op.drop_column("version_id")
