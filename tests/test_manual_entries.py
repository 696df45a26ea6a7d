from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from config import Settings
from database import Base
from errors import NotFoundError, PolicyViolationError, ValidationError
from models import Direction, ManagementPolicy, ManualLedgerEntry
from schemas import CategoryIn, ManualEntryIn, ManualEntryUpdate
from services import CategoryService, ManualEntryService

SETTINGS = Settings(database_url="sqlite:///:memory:", fx_provider="none")


def _setup(session: Session):
    categories = CategoryService(session)
    revenue = categories.create(
        CategoryIn(
            name="Consulting",
            direction=Direction.inflow,
            management_policy=ManagementPolicy.manual,
        )
    )
    expense = categories.create(
        CategoryIn(
            name="Contractors",
            direction=Direction.outflow,
            management_policy=ManagementPolicy.manual,
        )
    )
    auto = categories.create(CategoryIn(name="Card sales", direction=Direction.inflow))
    return revenue, expense, auto


def test_revenue_upsert_keeps_one_entry_per_month() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        revenue, _, _ = _setup(session)
        ledger = ManualEntryService(session, SETTINGS)

        first = ledger.upsert(
            ManualEntryIn(category_id=revenue.id, year=2024, month=3, amount_cents=100_000)
        )
        second = ledger.upsert(
            ManualEntryIn(
                category_id=revenue.id,
                year=2024,
                month=3,
                amount_cents=150_000,
                note="corrected",
            )
        )

        assert first.id == second.id
        entries = ledger.for_period(revenue.id, 2024, 3)
        assert len(entries) == 1
        assert entries[0].amount_cents == 150_000
        assert entries[0].note == "corrected"


def test_revenue_upsert_is_idempotent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        revenue, _, _ = _setup(session)
        ledger = ManualEntryService(session, SETTINGS)
        payload = ManualEntryIn(
            category_id=revenue.id,
            year=2024,
            month=7,
            amount_cents=42_00,
            currency_breakdown={"eur": 1000},
        )
        ledger.upsert(payload)
        ledger.upsert(payload)

        count = session.scalar(select(func.count()).select_from(ManualLedgerEntry))
        assert count == 1
        assert ledger.for_period(revenue.id, 2024, 7)[0].currency_breakdown == {
            "EUR": 1000
        }


def test_expense_entries_accumulate_and_allow_refunds() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, expense, _ = _setup(session)
        ledger = ManualEntryService(session, SETTINGS)
        for amount in (10_000, 20_000, -5_000):
            ledger.create(
                ManualEntryIn(
                    category_id=expense.id, year=2024, month=5, amount_cents=amount
                )
            )

        entries = ledger.for_period(expense.id, 2024, 5)
        assert len(entries) == 3
        assert sum(e.amount_cents for e in entries) == 25_000

        with pytest.raises(ValidationError):
            ledger.create(
                ManualEntryIn(category_id=expense.id, year=2024, month=5, amount_cents=0)
            )


def test_negative_revenue_is_rejected() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        revenue, _, _ = _setup(session)
        with pytest.raises(ValidationError):
            ManualEntryService(session, SETTINGS).upsert(
                ManualEntryIn(
                    category_id=revenue.id, year=2024, month=1, amount_cents=-1
                )
            )


def test_entries_require_manual_category_of_matching_direction() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        revenue, expense, auto = _setup(session)
        ledger = ManualEntryService(session, SETTINGS)

        with pytest.raises(PolicyViolationError):
            ledger.upsert(
                ManualEntryIn(category_id=auto.id, year=2024, month=1, amount_cents=1)
            )
        with pytest.raises(PolicyViolationError):
            ledger.upsert(
                ManualEntryIn(category_id=expense.id, year=2024, month=1, amount_cents=1)
            )
        with pytest.raises(PolicyViolationError):
            ledger.create(
                ManualEntryIn(category_id=revenue.id, year=2024, month=1, amount_cents=1)
            )
        with pytest.raises(NotFoundError):
            ledger.create(
                ManualEntryIn(category_id=9999, year=2024, month=1, amount_cents=1)
            )


@pytest.mark.parametrize(
    ("year", "month"), [(2019, 1), (2031, 1), (2024, 0), (2024, 13)]
)
def test_out_of_range_periods_are_rejected(year: int, month: int) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, expense, _ = _setup(session)
        with pytest.raises(ValidationError):
            ManualEntryService(session, SETTINGS).create(
                ManualEntryIn(
                    category_id=expense.id, year=year, month=month, amount_cents=100
                )
            )


def test_update_and_delete() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, expense, _ = _setup(session)
        ledger = ManualEntryService(session, SETTINGS)
        entry = ledger.create(
            ManualEntryIn(category_id=expense.id, year=2024, month=2, amount_cents=900)
        )

        with pytest.raises(ValidationError):
            ledger.update(entry.id, ManualEntryUpdate())

        updated = ledger.update(entry.id, ManualEntryUpdate(note="  invoice 17 "))
        assert updated.note == "invoice 17"
        assert updated.amount_cents == 900

        ledger.delete(entry.id)
        with pytest.raises(NotFoundError):
            ledger.get(entry.id)


def test_delete_period_returns_removed_count() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, expense, _ = _setup(session)
        ledger = ManualEntryService(session, SETTINGS)
        for amount in (100, 200):
            ledger.create(
                ManualEntryIn(
                    category_id=expense.id, year=2024, month=9, amount_cents=amount
                )
            )
        ledger.create(
            ManualEntryIn(category_id=expense.id, year=2024, month=10, amount_cents=50)
        )

        assert ledger.delete_period(expense.id, 2024, 9) == 2
        assert ledger.delete_period(expense.id, 2024, 9) == 0
        assert len(ledger.for_category_year(expense.id, 2024)) == 1


def test_entries_by_categories_nests_by_month() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        revenue, expense, _ = _setup(session)
        ledger = ManualEntryService(session, SETTINGS)
        ledger.create(
            ManualEntryIn(category_id=expense.id, year=2024, month=4, amount_cents=10)
        )
        ledger.create(
            ManualEntryIn(category_id=expense.id, year=2024, month=4, amount_cents=20)
        )
        ledger.upsert(
            ManualEntryIn(category_id=revenue.id, year=2024, month=4, amount_cents=30)
        )

        nested = ledger.entries_by_categories(
            [expense.id, revenue.id], 2024, Direction.outflow
        )
        assert list(nested) == [expense.id]
        assert [e.amount_cents for e in nested[expense.id][4]] == [10, 20]
        assert ledger.entries_by_categories([], 2024, Direction.outflow) == {}


def test_expenses_for_year_as_of_excludes_later_entries() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, expense, _ = _setup(session)
        ledger = ManualEntryService(session, SETTINGS)
        old = ledger.create(
            ManualEntryIn(category_id=expense.id, year=2024, month=1, amount_cents=10)
        )
        old.created_at = old.updated_at = datetime(2024, 2, 1)
        session.commit()
        ledger.create(
            ManualEntryIn(category_id=expense.id, year=2024, month=1, amount_cents=20)
        )

        snapshot = ledger.expenses_for_year(2024, as_of=datetime(2024, 3, 1))
        assert [e.amount_cents for e in snapshot] == [10]
        assert len(ledger.expenses_for_year(2024)) == 2

        with pytest.raises(ValidationError):
            ledger.expenses_for_year(
                2024, as_of=datetime.utcnow() + timedelta(days=2)
            )
