from datetime import datetime, timedelta
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from config import Settings
from database import Base
from duplicates import DuplicateDetector, DuplicateService, description_similarity
from errors import NotFoundError
from models import (
    BankPayment,
    Direction,
    ManualStatus,
    TransactionSourceKind,
)
from services import TransactionService
from sources import SourceTransaction

SETTINGS = Settings(database_url="sqlite:///:memory:", fx_provider="none")


def _txn(
    n: int,
    day: int,
    amount_cents: int = 10_000,
    payer: Optional[str] = "ACME Sp. z o.o.",
    description: Optional[str] = None,
    fingerprint: Optional[str] = None,
) -> SourceTransaction:
    occurred = datetime(2024, 5, 1) + timedelta(days=day - 1)
    return SourceTransaction(
        id=f"bank:{n}",
        source=TransactionSourceKind.bank,
        external_id=str(n),
        settlement_ref=None,
        occurred_at=occurred,
        created_at=occurred + timedelta(minutes=n),
        amount_cents=amount_cents,
        currency="PLN",
        payer=payer,
        description=description,
        direction=Direction.outflow,
        category_id=None,
        status=ManualStatus.approved.value,
        match_status=None,
        converted_cents=None,
        rate=None,
        fingerprint=fingerprint,
    )


def test_similarity_counts_long_words_only() -> None:
    assert description_similarity("office rent", "office rent invoice paid") == 0.5
    assert description_similarity("Invoice 123 office rent", "office rent May") == (
        pytest.approx(2 / 3)
    )
    assert description_similarity("Same text", "  same   TEXT ") == 1.0
    assert description_similarity("", "anything") == 0.0
    assert description_similarity("a b c", "a b c d") == 0.0


def test_exact_fingerprint_groups_win() -> None:
    txns = [
        _txn(1, 3, fingerprint="h1"),
        _txn(2, 20, fingerprint="h1", payer="Someone else", amount_cents=1),
        _txn(3, 4),
    ]
    groups = DuplicateDetector().find(txns)

    assert len(groups) == 1
    assert groups[0].exact
    assert [t.id for t in groups[0].members] == ["bank:1", "bank:2"]


@pytest.mark.parametrize(("gap", "grouped"), [(6, True), (7, True), (8, False)])
def test_payer_matches_within_seven_days(gap: int, grouped: bool) -> None:
    groups = DuplicateDetector().find([_txn(1, 1), _txn(2, 1 + gap)])
    assert bool(groups) is grouped


def test_date_chain_links_consecutive_payments() -> None:
    groups = DuplicateDetector().find([_txn(1, 1), _txn(2, 6), _txn(3, 11)])

    assert len(groups) == 1
    assert groups[0].count == 3
    assert groups[0].keeper.id == "bank:1"
    assert [t.id for t in groups[0].removable] == ["bank:2", "bank:3"]


def test_different_amount_or_payer_is_not_a_duplicate() -> None:
    groups = DuplicateDetector().find(
        [_txn(1, 1), _txn(2, 2, amount_cents=10_001), _txn(3, 2, payer="Other")]
    )
    assert groups == []


def test_without_payer_descriptions_must_overlap() -> None:
    similar = DuplicateDetector().find(
        [
            _txn(1, 1, payer=None, description="Monthly office rent"),
            _txn(2, 3, payer="  ", description="office rent payment"),
        ]
    )
    assert len(similar) == 1
    assert similar[0].payer is None

    different = DuplicateDetector().find(
        [
            _txn(1, 1, payer=None, description="Monthly office rent"),
            _txn(2, 3, payer=None, description="Cloud hosting invoice"),
        ]
    )
    assert different == []


def test_service_reads_month_and_mark_duplicate_hides_row() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        for day in (2, 4):
            session.add(
                BankPayment(
                    operation_date=datetime(2024, 5, day),
                    amount_cents=-25_000,
                    currency="PLN",
                    payer_name="Landlord",
                    direction=Direction.outflow,
                )
            )
        session.add(
            BankPayment(
                operation_date=datetime(2024, 6, 1),
                amount_cents=-25_000,
                currency="PLN",
                payer_name="Landlord",
                direction=Direction.outflow,
            )
        )
        session.commit()

        service = DuplicateService(session, SETTINGS)
        groups = service.find_duplicates(2024, 5)
        assert len(groups) == 1
        removable = groups[0].removable[0].id

        TransactionService(session).mark_duplicate(removable)
        assert service.find_duplicates(2024, 5) == []

        with pytest.raises(NotFoundError):
            TransactionService(session).mark_duplicate(removable)
        with pytest.raises(NotFoundError):
            TransactionService(session).mark_duplicate("wire:1")
