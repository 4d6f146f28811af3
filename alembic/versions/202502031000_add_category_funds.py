"""add category funds association

Revision ID: 202502031000
Revises: 202501150900
Create Date: 2025-02-03 10:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202502031000"
down_revision = "202501150900"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "category_funds",
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id"),
            primary_key=True,
        ),
        sa.Column(
            "fund_id", sa.Integer(), sa.ForeignKey("funds.id"), primary_key=True
        ),
    )
    # carry every single-fund category over to the association table
    op.execute(
        "INSERT INTO category_funds (category_id, fund_id) "
        "SELECT id, fund_id FROM categories WHERE fund_id IS NOT NULL"
    )


def downgrade() -> None:
    op.drop_table("category_funds")
