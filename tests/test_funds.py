from datetime import date

import pytest
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import Session

from balances import DirectSourceFundResolver
from database import Base
from models import Category, Fund, category_funds
from schemas import CategoryIn, ExpenseIn, FundIn, FundUpdateIn
from services import (
    CategoryService,
    DuplicateName,
    ExpenseService,
    FundInUse,
    FundNotFound,
    FundService,
)


def make_fund(session: Session, name: str, cents: int) -> Fund:
    return FundService(session).create(
        FundIn(name=name, initial_balance_cents=cents, start_date=date(2025, 1, 1))
    )


def spend(session: Session, category_id: int, cents: int, source: int, dest=None):
    return ExpenseService(session, resolver=DirectSourceFundResolver()).create(
        ExpenseIn(
            category_id=category_id,
            date=date(2025, 2, 1),
            amount_cents=cents,
            description="Spend",
            source_fund_id=source,
            destination_fund_id=dest,
        )
    )


def test_fund_create_starts_at_initial_balance() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        fund = make_fund(session, "  Emergency ", 12_000)
        assert fund.name == "Emergency"
        assert fund.current_balance_cents == 12_000
        assert FundService(session).exists(fund.id)
        assert not FundService(session).exists(999)

        with pytest.raises(DuplicateName):
            make_fund(session, "emergency", 1)


def test_changing_initial_balance_shifts_current_balance() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        fund = make_fund(session, "Main", 10_000)
        category = CategoryService(session).create(CategoryIn(name="Food"))
        spend(session, category.id, 3_000, fund.id)

        updated = FundService(session).update(
            fund.id, FundUpdateIn(initial_balance_cents=15_000, description="Payroll")
        )

        assert updated.initial_balance_cents == 15_000
        assert updated.current_balance_cents == 12_000
        assert updated.description == "Payroll"
        assert FundService(session).audit() == []


def test_fund_delete_refused_while_referenced() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        funds = FundService(session)
        used = make_fund(session, "Used", 1_000)
        legacy = make_fund(session, "Legacy", 1_000)
        linked = make_fund(session, "Linked", 1_000)
        categories = CategoryService(session)
        open_category = categories.create(CategoryIn(name="Open"))
        categories.create(CategoryIn(name="Old", fund_id=legacy.id))
        categories.create(CategoryIn(name="New", fund_ids=[linked.id]))
        spend(session, open_category.id, 100, used.id)

        with pytest.raises(FundInUse):
            funds.delete(used.id)
        with pytest.raises(FundInUse):
            funds.delete(legacy.id)

        funds.delete(linked.id)
        assert session.get(Fund, linked.id) is None
        assert (
            session.scalars(
                select(category_funds.c.category_id).where(
                    category_funds.c.fund_id == linked.id
                )
            ).all()
            == []
        )
        with pytest.raises(FundNotFound):
            funds.get(linked.id)


def test_audit_detects_drift_and_recalculate_repairs_it() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        a = make_fund(session, "A", 10_000)
        b = make_fund(session, "B", 2_000)
        category = CategoryService(session).create(CategoryIn(name="Moves"))
        spend(session, category.id, 1_000, a.id, b.id)
        spend(session, category.id, 500, a.id)

        session.execute(
            update(Fund)
            .where(Fund.id == a.id)
            .values(current_balance_cents=1)
            .execution_options(synchronize_session="fetch")
        )
        session.commit()

        funds = FundService(session)
        drifts = funds.audit()
        assert [
            (d.fund_id, d.cached_balance_cents, d.ledger_balance_cents) for d in drifts
        ] == [(a.id, 1, 8_500)]
        assert drifts[0].drift_cents == 1 - 8_500

        outcome = funds.recalculate(a.id)
        assert outcome.old_balance_cents == 1
        assert outcome.new_balance_cents == 8_500
        assert outcome.total_out_cents == 1_500
        assert outcome.transfers_out_cents == 1_000
        assert outcome.total_in_cents == 0
        assert funds.audit() == []
        assert funds.ledger_balance(b.id) == 3_000


def test_funds_for_falls_back_to_legacy_fund() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        a = make_fund(session, "A", 0)
        b = make_fund(session, "B", 0)
        legacy = Category(name="Legacy", fund_id=a.id)
        session.add(legacy)
        session.commit()

        categories = CategoryService(session)
        assert categories.funds_for(legacy.id) == {a.id}
        assert categories.primary_fund_id(legacy.id) == a.id

        open_category = categories.create(CategoryIn(name="Open"))
        assert categories.funds_for(open_category.id) == set()
        assert categories.primary_fund_id(open_category.id) is None
        assert categories.fund_label(open_category.id) == "Unrestricted"

        categories.set_funds(legacy.id, [a.id, b.id])
        assert categories.funds_for(legacy.id) == {a.id, b.id}
        assert categories.fund_label(legacy.id) == "A, B"


def test_set_funds_keeps_legacy_column_in_step() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        a = make_fund(session, "A", 0)
        b = make_fund(session, "B", 0)
        categories = CategoryService(session)
        category = categories.create(CategoryIn(name="Cat", fund_id=a.id))

        categories.set_funds(category.id, [b.id])
        assert session.get(Category, category.id).fund_id == b.id
        assert categories.primary_fund_id(category.id) == b.id

        categories.add_fund(category.id, a.id)
        assert categories.funds_for(category.id) == {a.id, b.id}

        categories.remove_fund(category.id, b.id)
        assert categories.funds_for(category.id) == {a.id}
        assert session.get(Category, category.id).fund_id is None

        with pytest.raises(FundNotFound):
            categories.set_funds(category.id, [a.id, 999])


def test_available_source_funds() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        a = make_fund(session, "Alpha", 0)
        make_fund(session, "Beta", 0)
        categories = CategoryService(session)
        narrow = categories.create(CategoryIn(name="Narrow", fund_ids=[a.id]))
        wide = categories.create(CategoryIn(name="Wide"))

        options = categories.available_source_funds(narrow.id)
        assert options.has_restrictions
        assert [f.name for f in options.funds] == ["Alpha"]

        options = categories.available_source_funds(wide.id)
        assert not options.has_restrictions
        assert [f.name for f in options.funds] == ["Alpha", "Beta"]
