import datetime as dt
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import PaymentMethod


class FundIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=500)
    initial_balance_cents: int = Field(default=0, ge=0)
    start_date: date = Field(default_factory=date.today)


class FundUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=500)
    initial_balance_cents: Optional[int] = Field(default=None, ge=0)
    start_date: Optional[date] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    fund_id: Optional[int] = None
    fund_ids: list[int] = Field(default_factory=list)


class CategoryFundsIn(BaseModel):
    fund_ids: list[int] = Field(default_factory=list)


class ExpenseIn(BaseModel):
    category_id: int
    date: date
    # positivity is checked by SourceFundValidator so it is reported with
    # the other fund errors instead of as a schema error
    amount_cents: int
    description: str = Field(..., min_length=1, max_length=500)
    payment_method: PaymentMethod = PaymentMethod.cash
    source_fund_id: Optional[int] = None
    destination_fund_id: Optional[int] = None
    event: Optional[str] = Field(default=None, max_length=255)


class ExpenseUpdateIn(BaseModel):
    """Partial update; only fields present in ``model_fields_set`` change."""

    model_config = ConfigDict(extra="forbid")

    category_id: Optional[int] = None
    date: Optional[dt.date] = None
    amount_cents: Optional[int] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=500)
    payment_method: Optional[PaymentMethod] = None
    source_fund_id: Optional[int] = None
    destination_fund_id: Optional[int] = None
    event: Optional[str] = Field(default=None, max_length=255)


class SourceFundCheckIn(BaseModel):
    category_id: int
    source_fund_id: Optional[int] = None
    destination_fund_id: Optional[int] = None
    amount_cents: Optional[int] = None
    expense_id: Optional[int] = None


class CategoryRenameIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
