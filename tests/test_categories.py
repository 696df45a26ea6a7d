from datetime import datetime

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session

from database import Base
from errors import NotFoundError, ReferentialIntegrityError, ValidationError
from models import BankPayment, Direction, ManagementPolicy
from schemas import CategoryIn, CategoryUpdate
from services import CategoryService


def _make(service: CategoryService, name: str, direction=Direction.outflow, **kwargs):
    return service.create(CategoryIn(name=name, direction=direction, **kwargs))


def test_create_assigns_next_display_order_per_direction() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = CategoryService(session)
        rent = _make(service, "Rent")
        payroll = _make(service, "Payroll")
        sales = _make(service, "Sales", direction=Direction.inflow)

        assert rent.display_order == 0
        assert payroll.display_order == 1
        assert sales.display_order == 0
        assert rent.management_policy == ManagementPolicy.auto
        assert [c.name for c in service.list_all(Direction.outflow)] == [
            "Rent",
            "Payroll",
        ]


def test_names_are_unique_per_direction_ignoring_case() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = CategoryService(session)
        _make(service, "Software")
        with pytest.raises(ValidationError):
            _make(service, "  software ")
        # The same name is allowed on the other side of the ledger.
        other = _make(service, "Software", direction=Direction.inflow)
        assert other.direction == Direction.inflow


@pytest.mark.parametrize("name", ["", "   ", "Uncategorized", "x" * 256])
def test_invalid_names_are_rejected(name: str) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(ValidationError):
            CategoryService(session)._clean_name(name)


def test_update_changes_only_given_fields() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = CategoryService(session)
        category = _make(service, "Ads", description="Paid search")
        service.update(
            category.id, CategoryUpdate(management_policy=ManagementPolicy.manual)
        )

        updated = service.get(category.id)
        assert updated.name == "Ads"
        assert updated.description == "Paid search"
        assert updated.is_manual


def test_delete_refuses_referenced_category() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = CategoryService(session)
        used = _make(service, "Hosting")
        unused = _make(service, "Travel")
        session.add(
            BankPayment(
                operation_date=datetime(2024, 3, 5),
                amount_cents=-5000,
                currency="PLN",
                direction=Direction.outflow,
                category_id=used.id,
            )
        )
        session.commit()

        with pytest.raises(ReferentialIntegrityError):
            service.delete(used.id)

        service.delete(unused.id)
        with pytest.raises(NotFoundError):
            service.get(unused.id)


def test_reorder_swaps_with_neighbour_and_stops_at_edges() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = CategoryService(session)
        a = _make(service, "A")
        b = _make(service, "B")
        c = _make(service, "C")

        service.reorder(c.id, "up")
        assert [x.name for x in service.list_all(Direction.outflow)] == ["A", "C", "B"]

        with pytest.raises(ValidationError):
            service.reorder(a.id, "up")
        with pytest.raises(ValidationError):
            service.reorder(b.id, "down")
        with pytest.raises(ValidationError):
            service.reorder(b.id, "sideways")


def test_reorder_renumbers_duplicate_orders_first() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = CategoryService(session)
        first = _make(service, "Alpha")
        second = _make(service, "Beta")
        third = _make(service, "Gamma")
        for category in (first, second, third):
            category.display_order = 5
        session.commit()

        service.reorder(third.id, "up")
        ordered = service.list_all(Direction.outflow)
        assert [c.name for c in ordered] == ["Alpha", "Gamma", "Beta"]
        assert [c.display_order for c in ordered] == [0, 1, 2]


def test_legacy_schema_without_display_order_falls_back_to_names() -> None:
    engine = create_engine("sqlite:///:memory:")
    with engine.begin() as conn:
        conn.execute(
            text(
                "CREATE TABLE pnl_categories ("
                "id INTEGER PRIMARY KEY, name VARCHAR(255) NOT NULL, "
                "description TEXT, direction VARCHAR(7) NOT NULL, "
                "management_policy VARCHAR(6) NOT NULL, "
                "created_at DATETIME NOT NULL, updated_at DATETIME NOT NULL)"
            )
        )
        for name in ("Zebra", "apple", "Mango"):
            conn.execute(
                text(
                    "INSERT INTO pnl_categories "
                    "(name, direction, management_policy, created_at, updated_at) "
                    "VALUES (:name, 'outflow', 'auto', :now, :now)"
                ),
                {"name": name, "now": datetime(2024, 1, 1)},
            )

    with Session(engine, expire_on_commit=False) as session:
        service = CategoryService(session)
        assert not service.ordering_supported()

        names = [c.name for c in service.list_all(Direction.outflow)]
        assert names == ["apple", "Mango", "Zebra"]

        with pytest.raises(ValidationError):
            service.reorder(1, "down")
