"""initial schema

Revision ID: 202501150900
Revises:
Create Date: 2025-01-15 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202501150900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "funds",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column(
            "initial_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "current_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("name", name="uq_funds_name"),
        sa.CheckConstraint(
            "initial_balance_cents >= 0", name="ck_funds_initial_balance_positive"
        ),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("fund_id", sa.Integer(), sa.ForeignKey("funds.id")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("name", name="uq_categories_name"),
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column(
            "payment_method",
            sa.Enum("cash", "credit", "debit", name="paymentmethod"),
            nullable=False,
            server_default="cash",
        ),
        sa.Column("event", sa.String(length=255)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
    )
    op.create_index(
        "ix_expenses_category_date", "expenses", ["category_id", "date"]
    )


def downgrade():
    op.drop_index("ix_expenses_category_date", table_name="expenses")
    op.drop_table("expenses")
    op.drop_table("categories")
    op.drop_table("funds")
