from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class PaymentMethod(str, Enum):
    cash = "cash"
    credit = "credit"
    debit = "debit"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


category_funds = Table(
    "category_funds",
    Base.metadata,
    Column("category_id", Integer, ForeignKey("categories.id"), primary_key=True),
    Column("fund_id", Integer, ForeignKey("funds.id"), primary_key=True),
)


class Fund(Base, TimestampMixin):
    __tablename__ = "funds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    initial_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)

    categories: Mapped[list["Category"]] = relationship(
        "Category", secondary="category_funds", back_populates="funds"
    )

    __table_args__ = (
        CheckConstraint(
            "initial_balance_cents >= 0", name="ck_funds_initial_balance_positive"
        ),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    # single-fund link kept from before category_funds existed
    fund_id: Mapped[Optional[int]] = mapped_column(ForeignKey("funds.id"))

    fund: Mapped[Optional["Fund"]] = relationship("Fund", foreign_keys=[fund_id])
    funds: Mapped[list["Fund"]] = relationship(
        "Fund",
        secondary="category_funds",
        back_populates="categories",
        order_by="Fund.name",
    )
    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="category"
    )


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    source_fund_id: Mapped[Optional[int]] = mapped_column(ForeignKey("funds.id"))
    destination_fund_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("funds.id")
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        SAEnum(PaymentMethod), nullable=False, default=PaymentMethod.cash
    )
    event: Mapped[Optional[str]] = mapped_column(String(255))
    # bumped on every UPDATE; a write from a stale copy matches no row
    version_id: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default="1"
    )

    category: Mapped["Category"] = relationship(
        "Category", back_populates="expenses"
    )
    source_fund: Mapped[Optional["Fund"]] = relationship(
        "Fund", foreign_keys=[source_fund_id]
    )
    destination_fund: Mapped[Optional["Fund"]] = relationship(
        "Fund", foreign_keys=[destination_fund_id]
    )

    __table_args__ = (
        Index("ix_expenses_category_date", "category_id", "date"),
        Index("ix_expenses_source_fund", "source_fund_id"),
        Index("ix_expenses_destination_fund", "destination_fund_id"),
        CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
        CheckConstraint(
            "destination_fund_id IS NULL OR destination_fund_id != source_fund_id",
            name="ck_expenses_distinct_funds",
        ),
    )
    __mapper_args__ = {"version_id_col": version_id}
