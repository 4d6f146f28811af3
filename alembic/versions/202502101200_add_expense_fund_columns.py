"""add source and destination funds to expenses

Revision ID: 202502101200
Revises: 202502031000
Create Date: 2025-02-10 12:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202502101200"
down_revision = "202502031000"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("expenses") as batch_op:
        batch_op.add_column(sa.Column("source_fund_id", sa.Integer(), nullable=True))
        batch_op.add_column(
            sa.Column("destination_fund_id", sa.Integer(), nullable=True)
        )
        batch_op.create_foreign_key(
            "fk_expenses_source_fund", "funds", ["source_fund_id"], ["id"]
        )
        batch_op.create_foreign_key(
            "fk_expenses_destination_fund", "funds", ["destination_fund_id"], ["id"]
        )
        batch_op.create_check_constraint(
            "ck_expenses_distinct_funds",
            "destination_fund_id IS NULL OR destination_fund_id != source_fund_id",
        )
    op.create_index("ix_expenses_source_fund", "expenses", ["source_fund_id"])
    op.create_index(
        "ix_expenses_destination_fund", "expenses", ["destination_fund_id"]
    )

    # existing expenses were charged to their category's fund: the lowest
    # associated fund, else the legacy categories.fund_id
    op.execute(
        "UPDATE expenses SET source_fund_id = COALESCE("
        "(SELECT MIN(cf.fund_id) FROM category_funds cf "
        "WHERE cf.category_id = expenses.category_id), "
        "(SELECT c.fund_id FROM categories c WHERE c.id = expenses.category_id)"
        ") WHERE source_fund_id IS NULL"
    )


def downgrade() -> None:
    op.drop_index("ix_expenses_destination_fund", table_name="expenses")
    op.drop_index("ix_expenses_source_fund", table_name="expenses")
    with op.batch_alter_table("expenses") as batch_op:
        batch_op.drop_constraint("ck_expenses_distinct_funds", type_="check")
        batch_op.drop_constraint("fk_expenses_destination_fund", type_="foreignkey")
        batch_op.drop_constraint("fk_expenses_source_fund", type_="foreignkey")
        batch_op.drop_column("destination_fund_id")
        batch_op.drop_column("source_fund_id")
