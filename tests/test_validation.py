from datetime import date

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import Expense, Fund
from schemas import CategoryIn, FundIn
from services import CategoryService, FundService
from validation import SourceFundValidator, ValidationResult


def setup(session: Session):
    funds = FundService(session)
    a = funds.create(FundIn(name="Household", initial_balance_cents=5_000))
    b = funds.create(FundIn(name="Savings", initial_balance_cents=1_000))
    c = funds.create(FundIn(name="Travel", initial_balance_cents=0))
    categories = CategoryService(session)
    food = categories.create(CategoryIn(name="Food", fund_ids=[a.id, b.id]))
    trips = categories.create(CategoryIn(name="Trips", fund_ids=[c.id]))
    misc = categories.create(CategoryIn(name="Misc"))
    return SourceFundValidator(funds, categories), (a, b, c), (food, trips, misc)


def test_result_reports_validity() -> None:
    assert ValidationResult().is_valid
    result = ValidationResult(errors=["bad"], warnings=["careful"])
    assert not result.is_valid
    assert result.as_dict() == {
        "is_valid": False,
        "errors": ["bad"],
        "warnings": ["careful"],
    }


def test_rules_reject_in_order() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        validator, (a, b, c), (food, trips, misc) = setup(session)

        # amount is checked before the fund association
        result = validator.validate(food.id, c.id, None, -5)
        assert result.errors == ["Amount must be greater than zero"]

        result = validator.validate(food.id, c.id, None, 100)
        assert len(result.errors) == 1
        assert 'Source fund "Travel" is not associated with category "Food"' in (
            result.errors[0]
        )
        assert "Household, Savings" in result.errors[0]

        result = validator.validate(food.id, 999, None, 100)
        assert result.errors == ["Source fund 999 does not exist"]

        result = validator.validate(food.id, a.id, a.id, 100)
        assert result.errors == [
            "Destination fund must be different from the source fund"
        ]

        result = validator.validate(food.id, a.id, 777, 100)
        assert result.errors == ["Destination fund 777 does not exist"]


def test_unrestricted_category_accepts_any_fund_and_warns() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        validator, (a, b, c), (food, trips, misc) = setup(session)

        result = validator.validate(misc.id, c.id, b.id, 300)

        assert result.is_valid
        assert any("transfer" in w for w in result.warnings)
        assert any("exceeds the available balance" in w for w in result.warnings)


def test_partial_update_only_checks_supplied_fields() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        validator, (a, b, c), (food, trips, misc) = setup(session)
        # stored before Food was restricted; Travel is no longer admissible
        previous = Expense(
            id=1,
            category_id=food.id,
            date=date(2025, 1, 1),
            amount_cents=100,
            description="Old",
            source_fund_id=c.id,
        )

        result = validator.validate(
            food.id, c.id, None, 100, previous=previous, supplied={"description"}
        )
        assert result.is_valid

        result = validator.validate(
            food.id, c.id, None, 200, previous=previous, supplied={"amount_cents"}
        )
        assert result.is_valid

        result = validator.validate(
            food.id, c.id, None, 200, previous=previous, supplied={"category_id"}
        )
        assert not result.is_valid


def test_category_change_warns_when_fund_label_differs() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        validator, (a, b, c), (food, trips, misc) = setup(session)
        previous = Expense(
            id=1,
            category_id=food.id,
            date=date(2025, 1, 1),
            amount_cents=100,
            description="Old",
            source_fund_id=a.id,
        )

        result = validator.validate(
            trips.id,
            c.id,
            None,
            100,
            previous=previous,
            supplied={"category_id", "source_fund_id"},
        )

        assert result.is_valid
        assert any(
            'from fund "Household, Savings" to fund "Travel"' in w
            for w in result.warnings
        )
        assert any("Source fund will change" in w for w in result.warnings)


def test_change_warning_names_fund_with_id_zero() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        validator, (a, b, c), (food, trips, misc) = setup(session)
        session.add(
            Fund(
                id=0,
                name="Petty cash",
                initial_balance_cents=500,
                current_balance_cents=500,
                start_date=date(2025, 1, 1),
            )
        )
        session.commit()
        previous = Expense(
            id=1,
            category_id=misc.id,
            date=date(2025, 1, 1),
            amount_cents=100,
            description="Old",
            source_fund_id=0,
            destination_fund_id=0,
        )

        result = validator.validate(
            misc.id,
            a.id,
            None,
            100,
            previous=previous,
            supplied={"source_fund_id", "destination_fund_id"},
        )

        assert result.is_valid
        assert 'Source fund will change from "Petty cash" to "Household"' in (
            result.warnings
        )
        assert 'Destination fund will change from "Petty cash" to "none"' in (
            result.warnings
        )
