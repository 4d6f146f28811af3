from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from balances import (
    BalanceEffect,
    BalanceEngine,
    SourceFundResolver,
    build_source_fund_resolver,
)
from config import get_settings
from models import Category, Expense, Fund, category_funds
from schemas import (
    CategoryIn,
    ExpenseIn,
    ExpenseUpdateIn,
    FundIn,
    FundUpdateIn,
)
from validation import SourceFundValidator, ValidationResult


logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


class ExpenseNotFound(NotFoundError):
    pass


class FundNotFound(NotFoundError):
    pass


class CategoryNotFound(NotFoundError):
    pass


class FundInUse(ValueError):
    pass


class DuplicateName(ValueError):
    pass


class ExpenseConflict(ValueError):
    pass


class ExpenseValidationError(ValueError):
    def __init__(self, result: ValidationResult) -> None:
        super().__init__("; ".join(result.errors) or "Invalid expense")
        self.result = result


@dataclass
class BalanceDrift:
    fund_id: int
    fund_name: str
    cached_balance_cents: int
    ledger_balance_cents: int

    @property
    def drift_cents(self) -> int:
        return self.cached_balance_cents - self.ledger_balance_cents


@dataclass
class RecalculationResult:
    fund_id: int
    fund_name: str
    old_balance_cents: int
    new_balance_cents: int
    initial_balance_cents: int
    total_out_cents: int
    total_in_cents: int
    transfers_out_cents: int


@dataclass
class SourceFundOptions:
    category: Category
    funds: list[Fund]
    has_restrictions: bool


@dataclass
class ExpenseResult:
    expense: Expense
    warnings: list[str] = field(default_factory=list)


class FundService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Fund]:
        return self.session.scalars(select(Fund).order_by(Fund.name)).all()

    def find(self, fund_id: int) -> Optional[Fund]:
        return self.session.get(Fund, fund_id)

    def get(self, fund_id: int) -> Fund:
        fund = self.find(fund_id)
        if not fund:
            raise FundNotFound("Fund not found")
        return fund

    def exists(self, fund_id: int) -> bool:
        return (
            self.session.scalar(select(Fund.id).where(Fund.id == fund_id)) is not None
        )

    def names(self, fund_ids: Iterable[int]) -> dict[int, str]:
        ids = set(fund_ids)
        if not ids:
            return {}
        rows = self.session.execute(
            select(Fund.id, Fund.name).where(Fund.id.in_(ids))
        ).all()
        return {row.id: row.name for row in rows}

    def adjust_balance(self, fund_id: int, delta_cents: int) -> bool:
        """Shift the cached balance by ``delta_cents`` in one relative UPDATE."""
        stmt = (
            update(Fund)
            .where(Fund.id == fund_id)
            .values(
                current_balance_cents=Fund.current_balance_cents + delta_cents,
                updated_at=datetime.utcnow(),
            )
            .returning(Fund.current_balance_cents)
            .execution_options(synchronize_session="fetch")
        )
        balance = self.session.execute(stmt).scalar_one_or_none()
        if balance is None:
            logger.error(
                f"fund_balance_adjust_missed: fund_id={fund_id} delta_cents={delta_cents}"
            )
            return False
        logger.info(
            f"fund_balance_adjusted: fund_id={fund_id} delta_cents={delta_cents} "
            f"balance_cents={balance}"
        )
        return True

    def create(self, data: FundIn) -> Fund:
        name = data.name.strip()
        self._ensure_unique_name(name)
        fund = Fund(
            name=name,
            description=data.description,
            initial_balance_cents=data.initial_balance_cents,
            current_balance_cents=data.initial_balance_cents,
            start_date=data.start_date,
        )
        self.session.add(fund)
        self.session.commit()
        self.session.refresh(fund)
        logger.info(
            f"fund_created: id={fund.id} initial_balance_cents={fund.initial_balance_cents}"
        )
        return fund

    def update(self, fund_id: int, data: FundUpdateIn) -> Fund:
        fund = self.get(fund_id)
        supplied = {f for f in data.model_fields_set if getattr(data, f) is not None}
        try:
            if "name" in supplied:
                name = data.name.strip()
                self._ensure_unique_name(name, exclude_id=fund.id)
                fund.name = name
            if "description" in data.model_fields_set:
                fund.description = data.description
            if "start_date" in supplied:
                fund.start_date = data.start_date
            if "initial_balance_cents" in supplied:
                shift = data.initial_balance_cents - fund.initial_balance_cents
                fund.initial_balance_cents = data.initial_balance_cents
                self.session.flush()
                # the baseline moved, so the cache moves with it
                if shift and not self.adjust_balance(fund.id, shift):
                    raise FundNotFound("Fund not found")
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(fund)
        return fund

    def delete(self, fund_id: int) -> None:
        fund = self.get(fund_id)
        referencing = self.session.execute(
            select(func.count(Expense.id)).where(
                (Expense.source_fund_id == fund.id)
                | (Expense.destination_fund_id == fund.id)
            )
        ).scalar_one()
        if referencing:
            raise FundInUse(
                f'Fund "{fund.name}" is used by {referencing} expense(s) and cannot be deleted'
            )
        legacy = self.session.execute(
            select(func.count(Category.id)).where(Category.fund_id == fund.id)
        ).scalar_one()
        if legacy:
            raise FundInUse(
                f'Fund "{fund.name}" is the fund of {legacy} category(ies) and cannot be deleted'
            )
        self.session.execute(
            delete(category_funds).where(category_funds.c.fund_id == fund.id)
        )
        self.session.delete(fund)
        self.session.commit()
        logger.info(f"fund_deleted: id={fund_id}")

    def _ensure_unique_name(self, name: str, exclude_id: Optional[int] = None) -> None:
        if not name:
            raise ValueError("Fund name cannot be empty")
        stmt = select(Fund.id).where(func.lower(Fund.name) == name.lower())
        if exclude_id is not None:
            stmt = stmt.where(Fund.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise DuplicateName("Fund with this name already exists")

    @staticmethod
    def _ledger_sum(column, fund_id: int):
        return (
            select(func.coalesce(func.sum(Expense.amount_cents), 0))
            .where(column == fund_id)
            .scalar_subquery()
        )

    def _ledger_totals(self, fund_id: int) -> tuple[int, int, int]:
        total_out = self.session.execute(
            select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
                Expense.source_fund_id == fund_id
            )
        ).scalar_one()
        total_in = self.session.execute(
            select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
                Expense.destination_fund_id == fund_id
            )
        ).scalar_one()
        transfers_out = self.session.execute(
            select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
                Expense.source_fund_id == fund_id,
                Expense.destination_fund_id.is_not(None),
            )
        ).scalar_one()
        return int(total_out or 0), int(total_in or 0), int(transfers_out or 0)

    def ledger_balance(self, fund_id: int) -> int:
        """Balance implied by the initial balance and every referencing expense."""
        fund = self.get(fund_id)
        total_out, total_in, _ = self._ledger_totals(fund.id)
        return fund.initial_balance_cents - total_out + total_in

    def recalculate(self, fund_id: int) -> RecalculationResult:
        """Reset the cached balance to the ledger balance.

        The ledger sums are subqueries of the UPDATE itself, so an expense
        committed by another session is either fully counted or not yet
        written. The totals reported back are read while the write lock is
        held.
        """
        fund = self.get(fund_id)
        old_balance = fund.current_balance_cents
        spent = self._ledger_sum(Expense.source_fund_id, fund.id)
        received = self._ledger_sum(Expense.destination_fund_id, fund.id)
        stmt = (
            update(Fund)
            .where(Fund.id == fund.id)
            .values(
                current_balance_cents=Fund.initial_balance_cents - spent + received,
                updated_at=datetime.utcnow(),
            )
            .returning(Fund.current_balance_cents)
            .execution_options(synchronize_session="fetch")
        )
        try:
            new_balance = self.session.execute(stmt).scalar_one_or_none()
            if new_balance is None:
                raise FundNotFound("Fund not found")
            total_out, total_in, transfers_out = self._ledger_totals(fund.id)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        if old_balance != new_balance:
            logger.warning(
                f"fund_recalculated: id={fund.id} old_balance_cents={old_balance} "
                f"new_balance_cents={new_balance}"
            )
        else:
            logger.info(f"fund_recalculated: id={fund.id} unchanged=1")
        return RecalculationResult(
            fund_id=fund.id,
            fund_name=fund.name,
            old_balance_cents=old_balance,
            new_balance_cents=new_balance,
            initial_balance_cents=fund.initial_balance_cents,
            total_out_cents=total_out,
            total_in_cents=total_in,
            transfers_out_cents=transfers_out,
        )

    def audit(self) -> list[BalanceDrift]:
        """Compare every cached balance with its ledger balance."""
        outflows = dict(
            self.session.execute(
                select(Expense.source_fund_id, func.sum(Expense.amount_cents))
                .where(Expense.source_fund_id.is_not(None))
                .group_by(Expense.source_fund_id)
            ).all()
        )
        inflows = dict(
            self.session.execute(
                select(Expense.destination_fund_id, func.sum(Expense.amount_cents))
                .where(Expense.destination_fund_id.is_not(None))
                .group_by(Expense.destination_fund_id)
            ).all()
        )
        drifts: list[BalanceDrift] = []
        for fund in self.list_all():
            ledger = (
                fund.initial_balance_cents
                - int(outflows.get(fund.id) or 0)
                + int(inflows.get(fund.id) or 0)
            )
            if ledger != fund.current_balance_cents:
                drifts.append(
                    BalanceDrift(
                        fund_id=fund.id,
                        fund_name=fund.name,
                        cached_balance_cents=fund.current_balance_cents,
                        ledger_balance_cents=ledger,
                    )
                )
        return drifts


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        return self.session.scalars(select(Category).order_by(Category.name)).all()

    def find(self, category_id: int) -> Optional[Category]:
        return self.session.get(Category, category_id)

    def get(self, category_id: int) -> Category:
        category = self.find(category_id)
        if not category:
            raise CategoryNotFound("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        self._ensure_unique_name(name)
        fund_ids = list(dict.fromkeys(data.fund_ids))
        if data.fund_id is not None and data.fund_id not in fund_ids:
            fund_ids.insert(0, data.fund_id)
        self._ensure_funds_exist(fund_ids)
        category = Category(name=name, fund_id=data.fund_id)
        self.session.add(category)
        self.session.flush()
        self._insert_links(category.id, fund_ids)
        self.session.commit()
        self.session.refresh(category)
        logger.info(f"category_created: id={category.id} fund_ids={fund_ids}")
        return category

    def rename(self, category_id: int, name: str) -> Category:
        category = self.get(category_id)
        clean_name = name.strip()
        self._ensure_unique_name(clean_name, exclude_id=category.id)
        category.name = clean_name
        self.session.commit()
        return category

    def set_funds(self, category_id: int, fund_ids: list[int]) -> list[Fund]:
        category = self.get(category_id)
        fund_ids = list(dict.fromkeys(fund_ids))
        self._ensure_funds_exist(fund_ids)
        self.session.execute(
            delete(category_funds).where(category_funds.c.category_id == category.id)
        )
        self._insert_links(category.id, fund_ids)
        if category.fund_id not in fund_ids:
            category.fund_id = fund_ids[0] if len(fund_ids) == 1 else None
        self.session.commit()
        self.session.expire(category)
        logger.info(f"category_funds_set: id={category.id} fund_ids={fund_ids}")
        return self.associated_funds(category.id)

    def add_fund(self, category_id: int, fund_id: int) -> list[Fund]:
        category = self.get(category_id)
        self._ensure_funds_exist([fund_id])
        linked = self._linked_ids(category.id)
        if fund_id not in linked:
            self._insert_links(category.id, [fund_id])
            self.session.commit()
            self.session.expire(category)
        return self.associated_funds(category.id)

    def remove_fund(self, category_id: int, fund_id: int) -> list[Fund]:
        category = self.get(category_id)
        self.session.execute(
            delete(category_funds).where(
                category_funds.c.category_id == category.id,
                category_funds.c.fund_id == fund_id,
            )
        )
        if category.fund_id == fund_id:
            category.fund_id = None
        self.session.commit()
        self.session.expire(category)
        return self.associated_funds(category.id)

    def funds_for(self, category_id: int) -> set[int]:
        """Funds an expense of this category may be paid from; empty means any."""
        linked = self._linked_ids(category_id)
        if linked:
            return linked
        legacy = self.session.scalar(
            select(Category.fund_id).where(Category.id == category_id)
        )
        return {legacy} if legacy is not None else set()

    def associated_funds(self, category_id: int) -> list[Fund]:
        ids = self.funds_for(category_id)
        if not ids:
            return []
        return self.session.scalars(
            select(Fund).where(Fund.id.in_(ids)).order_by(Fund.name)
        ).all()

    def primary_fund_id(self, category_id: int) -> Optional[int]:
        category = self.get(category_id)
        linked = self._linked_ids(category.id)
        if category.fund_id is not None and (
            not linked or category.fund_id in linked
        ):
            return category.fund_id
        if len(linked) == 1:
            return next(iter(linked))
        return None

    def fund_label(self, category_id: int) -> str:
        funds = self.associated_funds(category_id)
        if not funds:
            return "Unrestricted"
        return ", ".join(f.name for f in funds)

    def available_source_funds(self, category_id: int) -> SourceFundOptions:
        category = self.get(category_id)
        restricted = self.associated_funds(category.id)
        if restricted:
            return SourceFundOptions(category, restricted, has_restrictions=True)
        funds = self.session.scalars(select(Fund).order_by(Fund.name)).all()
        return SourceFundOptions(category, funds, has_restrictions=False)

    def _linked_ids(self, category_id: int) -> set[int]:
        return set(
            self.session.scalars(
                select(category_funds.c.fund_id).where(
                    category_funds.c.category_id == category_id
                )
            ).all()
        )

    def _insert_links(self, category_id: int, fund_ids: list[int]) -> None:
        if fund_ids:
            self.session.execute(
                insert(category_funds),
                [{"category_id": category_id, "fund_id": fid} for fid in fund_ids],
            )

    def _ensure_funds_exist(self, fund_ids: list[int]) -> None:
        if not fund_ids:
            return
        found = set(
            self.session.scalars(select(Fund.id).where(Fund.id.in_(fund_ids))).all()
        )
        missing = [fid for fid in fund_ids if fid not in found]
        if missing:
            raise FundNotFound(f"Fund not found: {', '.join(map(str, missing))}")

    def _ensure_unique_name(self, name: str, exclude_id: Optional[int] = None) -> None:
        if not name:
            raise ValueError("Category name cannot be empty")
        stmt = select(Category.id).where(func.lower(Category.name) == name.lower())
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise DuplicateName("Category with this name already exists")


class ExpenseStore:
    """Persistence of expense rows; never touches fund balances."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, expense_id: int, refresh: bool = False) -> Optional[Expense]:
        return self.session.get(Expense, expense_id, populate_existing=refresh)

    def insert(self, expense: Expense) -> Expense:
        self.session.add(expense)
        self.session.flush()
        return expense

    def update(self, expense: Expense, fields: dict[str, object]) -> Expense:
        """Write ``fields`` onto the row the caller read.

        The flush is versioned: if another session changed or deleted the
        row since it was read, ``StaleDataError`` is raised.
        """
        for name, value in fields.items():
            setattr(expense, name, value)
        # always emit the UPDATE so the version check runs
        expense.updated_at = datetime.utcnow()
        self.session.flush()
        return expense

    def delete(self, expense_id: int) -> Optional[BalanceEffect]:
        """Delete the row; returns the effect it carried, or None if it was gone."""
        row = self.session.execute(
            delete(Expense)
            .where(Expense.id == expense_id)
            .returning(
                Expense.amount_cents,
                Expense.source_fund_id,
                Expense.destination_fund_id,
            )
        ).one_or_none()
        if row is None:
            return None
        return BalanceEffect(
            row.amount_cents, row.source_fund_id, row.destination_fund_id
        )

    def list_for_fund(self, fund_id: int, limit: int = 200) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(
                (Expense.source_fund_id == fund_id)
                | (Expense.destination_fund_id == fund_id)
            )
            .order_by(Expense.date.desc(), Expense.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()


EXPENSE_FIELDS = (
    "category_id",
    "date",
    "amount_cents",
    "description",
    "payment_method",
    "source_fund_id",
    "destination_fund_id",
    "event",
)

# an explicit null for these is treated as "not supplied"
_REQUIRED_EXPENSE_FIELDS = {"category_id", "date", "description", "payment_method"}


class ExpenseService:
    """Creates, edits and deletes expenses while keeping fund balances exact.

    Every mutating call is one unit of work: the record write and all of its
    balance deltas are committed together, and any failure rolls the whole
    session back before the exception propagates.
    """

    def __init__(
        self,
        session: Session,
        *,
        funds: Optional[FundService] = None,
        categories: Optional[CategoryService] = None,
        store: Optional[ExpenseStore] = None,
        resolver: Optional[SourceFundResolver] = None,
    ) -> None:
        self.session = session
        self.funds = funds or FundService(session)
        self.categories = categories or CategoryService(session)
        self.store = store or ExpenseStore(session)
        self.resolver = resolver or build_source_fund_resolver(
            get_settings().source_fund_mode, self.categories
        )
        self.validator = SourceFundValidator(self.funds, self.categories)
        self.engine = BalanceEngine(self.funds)

    def get(self, expense_id: int, refresh: bool = False) -> Expense:
        expense = self.store.get(expense_id, refresh=refresh)
        if not expense:
            raise ExpenseNotFound("Expense not found")
        return expense

    def list_for_fund(self, fund_id: int, limit: int = 200) -> list[Expense]:
        fund = self.funds.get(fund_id)
        return self.store.list_for_fund(fund.id, limit=limit)

    def check(
        self,
        category_id: int,
        source_fund_id: Optional[int],
        destination_fund_id: Optional[int] = None,
        amount_cents: Optional[int] = None,
    ) -> ValidationResult:
        """Dry run of the create-time rules; nothing is written."""
        self.categories.get(category_id)
        source_fund_id = self.resolver.resolve(category_id, source_fund_id)
        supplied = None
        if amount_cents is None:
            supplied = {"category_id", "source_fund_id", "destination_fund_id"}
        return self.validator.validate(
            category_id,
            source_fund_id,
            destination_fund_id,
            amount_cents,
            supplied=supplied,
        )

    def check_update(self, expense_id: int, data: ExpenseUpdateIn) -> ValidationResult:
        expense = self.get(expense_id)
        _, result = self._prepare_update(expense, data)
        return result

    def create(self, data: ExpenseIn) -> ExpenseResult:
        self.categories.get(data.category_id)
        source_fund_id = self.resolver.resolve(data.category_id, data.source_fund_id)
        result = self.validator.validate(
            data.category_id,
            source_fund_id,
            data.destination_fund_id,
            data.amount_cents,
        )
        self._raise_if_invalid(result, "create", None)

        expense = Expense(
            category_id=data.category_id,
            date=data.date,
            amount_cents=data.amount_cents,
            description=data.description,
            payment_method=data.payment_method,
            source_fund_id=source_fund_id,
            destination_fund_id=data.destination_fund_id,
            event=data.event,
        )
        try:
            self.store.insert(expense)
            self.engine.apply(BalanceEffect.of(expense))
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.error(f"expense_create_failed: category_id={data.category_id}")
            raise
        logger.info(
            f"expense_created: id={expense.id} amount_cents={expense.amount_cents} "
            f"source_fund_id={expense.source_fund_id} "
            f"destination_fund_id={expense.destination_fund_id}"
        )
        self._log_warnings(expense.id, result)
        return ExpenseResult(expense, list(result.warnings))

    def update(self, expense_id: int, data: ExpenseUpdateIn) -> ExpenseResult:
        expense = self.get(expense_id)
        changes, result = self._prepare_update(expense, data)
        self._raise_if_invalid(result, "update", expense.id)

        old_effect = BalanceEffect.of(expense)
        try:
            self.engine.revert(old_effect)
            self.store.update(expense, changes)
            self.engine.apply(BalanceEffect.of(expense))
            self.session.commit()
        except StaleDataError as exc:
            self.session.rollback()
            logger.warning(f"expense_update_conflict: id={expense_id}")
            raise ExpenseConflict(
                "Expense was changed by another request; reload it and retry"
            ) from exc
        except Exception:
            self.session.rollback()
            logger.error(f"expense_update_failed: id={expense_id}")
            raise
        logger.info(
            f"expense_updated: id={expense.id} fields={sorted(changes)} "
            f"old_amount_cents={old_effect.amount_cents} "
            f"amount_cents={expense.amount_cents}"
        )
        self._log_warnings(expense.id, result)
        return ExpenseResult(expense, list(result.warnings))

    def delete(self, expense_id: int) -> Expense:
        expense = self.get(expense_id, refresh=True)
        try:
            # compensate with what the DELETE removed, not with the earlier read
            effect = self.store.delete(expense.id)
            if effect is not None:
                self.engine.revert(effect)
            else:
                logger.info(f"expense_delete_noop: id={expense_id}")
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.error(f"expense_delete_failed: id={expense_id}")
            raise
        if effect is not None:
            logger.info(
                f"expense_deleted: id={expense_id} amount_cents={effect.amount_cents}"
            )
        return expense

    def _prepare_update(
        self, expense: Expense, data: ExpenseUpdateIn
    ) -> tuple[dict[str, object], ValidationResult]:
        supplied = {
            name
            for name in data.model_fields_set
            if not (name in _REQUIRED_EXPENSE_FIELDS and getattr(data, name) is None)
        }
        merged = {name: getattr(expense, name) for name in EXPENSE_FIELDS}
        merged.update({name: getattr(data, name) for name in supplied})

        if "category_id" in supplied:
            self.categories.get(merged["category_id"])
        source_fund_id = self.resolver.resolve(
            merged["category_id"], merged["source_fund_id"]
        )
        if source_fund_id != expense.source_fund_id:
            # also covers a category change that moves a derived source fund
            supplied.add("source_fund_id")
        merged["source_fund_id"] = source_fund_id

        result = self.validator.validate(
            merged["category_id"],
            merged["source_fund_id"],
            merged["destination_fund_id"],
            merged["amount_cents"],
            previous=expense,
            supplied=supplied,
        )
        changes = {
            name: merged[name]
            for name in EXPENSE_FIELDS
            if merged[name] != getattr(expense, name)
        }
        return changes, result

    def _raise_if_invalid(
        self, result: ValidationResult, action: str, expense_id: Optional[int]
    ) -> None:
        if result.is_valid:
            return
        logger.warning(
            f"expense_rejected: action={action} id={expense_id} errors={result.errors}"
        )
        raise ExpenseValidationError(result)

    def _log_warnings(self, expense_id: int, result: ValidationResult) -> None:
        for message in result.warnings:
            logger.warning(f"expense_warning: id={expense_id} message={message}")
