"""Adapters that read the two transaction tables into one normalised shape.

Bank-statement rows (source A) and payment-processor rows (source B) use
different status vocabularies and carry their converted amounts in different
places; everything downstream only sees ``SourceTransaction``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional, Protocol

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, joinedload

from database import store_call
from errors import NotFoundError
from fx_rates import micros_to_rate
from models import (
    BankPayment,
    Direction,
    ManualStatus,
    MatchStatus,
    PaymentRefund,
    ProcessorPayment,
    ProcessorPaymentStatus,
    RefundReason,
    TransactionSourceKind,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceTransaction:
    id: str
    source: TransactionSourceKind
    external_id: str
    settlement_ref: Optional[str]
    occurred_at: datetime
    created_at: datetime
    amount_cents: int
    currency: str
    payer: Optional[str]
    description: Optional[str]
    direction: Direction
    category_id: Optional[int]
    status: str
    match_status: Optional[str]
    converted_cents: Optional[Decimal]
    rate: Optional[Decimal]
    fingerprint: Optional[str]


class TransactionSource(Protocol):
    kind: TransactionSourceKind

    def list_transactions(
        self,
        direction: Direction,
        date_from: datetime,
        date_to: datetime,
        category_ids: Optional[Iterable[int]] = None,
        include_uncategorized: bool = True,
        exclude_category_ids: Optional[Iterable[int]] = None,
    ) -> list[SourceTransaction]: ...

    def list_refunds(
        self, date_from: datetime, date_to: datetime, reason: RefundReason
    ) -> set[str]: ...

    def mark_deleted(self, external_id: str) -> None: ...


def is_eligible(txn: SourceTransaction) -> bool:
    """Single status predicate over both source vocabularies."""
    if txn.source == TransactionSourceKind.bank:
        return (
            txn.status == ManualStatus.approved.value
            or txn.match_status == MatchStatus.matched.value
        )
    if txn.source == TransactionSourceKind.processor:
        return txn.status == ProcessorPaymentStatus.paid.value
    return False


def parse_transaction_id(transaction_id: str) -> tuple[TransactionSourceKind, str]:
    prefix, _, external_id = transaction_id.partition(":")
    try:
        kind = TransactionSourceKind(prefix)
    except ValueError as exc:
        raise NotFoundError(f"Unknown transaction id: {transaction_id}") from exc
    if not external_id:
        raise NotFoundError(f"Unknown transaction id: {transaction_id}")
    return kind, external_id


def _filter_categories(
    stmt, column, category_ids, include_uncategorized: bool, exclude_category_ids
):
    """Restrict ``stmt`` by category; returns None when nothing can match.

    ``category_ids`` keeps only those categories (plus uncategorized rows when
    asked); ``exclude_category_ids`` drops those categories and keeps every
    other row, uncategorized ones included.
    """
    if category_ids is not None:
        ids = list(category_ids)
        clauses = []
        if ids:
            clauses.append(column.in_(ids))
        if include_uncategorized:
            clauses.append(column.is_(None))
        if not clauses:
            return None
        stmt = stmt.where(or_(*clauses))
    excluded = list(exclude_category_ids or [])
    if excluded:
        stmt = stmt.where(or_(column.is_(None), column.not_in(excluded)))
    return stmt


def _refund_refs(
    session: Session,
    kind: TransactionSourceKind,
    date_from: datetime,
    date_to: datetime,
    reason: RefundReason,
) -> set[str]:
    rows = session.scalars(
        select(PaymentRefund.payment_ref).where(
            PaymentRefund.source == kind,
            PaymentRefund.reason == reason,
            PaymentRefund.refunded_at >= date_from,
            PaymentRefund.refunded_at < date_to,
        )
    ).all()
    return {str(ref) for ref in rows if ref}


class BankPaymentSource:
    kind = TransactionSourceKind.bank

    def __init__(self, session: Session) -> None:
        self.session = session

    def list_transactions(
        self,
        direction: Direction,
        date_from: datetime,
        date_to: datetime,
        category_ids: Optional[Iterable[int]] = None,
        include_uncategorized: bool = True,
        exclude_category_ids: Optional[Iterable[int]] = None,
    ) -> list[SourceTransaction]:
        stmt = (
            select(BankPayment)
            .options(joinedload(BankPayment.settlement))
            .where(
                BankPayment.direction == direction,
                BankPayment.deleted_at.is_(None),
                BankPayment.operation_date >= date_from,
                BankPayment.operation_date < date_to,
            )
            .order_by(BankPayment.operation_date, BankPayment.id)
        )
        stmt = _filter_categories(
            stmt,
            BankPayment.category_id,
            category_ids,
            include_uncategorized,
            exclude_category_ids,
        )
        if stmt is None:
            return []
        with store_call("bank payments"):
            rows = self.session.scalars(stmt).all()
        return [self._normalise(row) for row in rows]

    def list_refunds(
        self, date_from: datetime, date_to: datetime, reason: RefundReason
    ) -> set[str]:
        with store_call("bank refunds"):
            return _refund_refs(self.session, self.kind, date_from, date_to, reason)

    def mark_deleted(self, external_id: str) -> None:
        payment = self.session.get(BankPayment, _int_id(external_id))
        if not payment or payment.deleted_at is not None:
            raise NotFoundError("Transaction not found")
        payment.deleted_at = datetime.utcnow()
        self.session.commit()

    @staticmethod
    def _normalise(row: BankPayment) -> SourceTransaction:
        settlement = row.settlement
        converted = None
        rate = None
        if settlement is not None:
            if settlement.converted_total_cents is not None:
                converted = Decimal(settlement.converted_total_cents)
            if settlement.exchange_rate_micros:
                rate = micros_to_rate(settlement.exchange_rate_micros)
        return SourceTransaction(
            id=f"{TransactionSourceKind.bank.value}:{row.id}",
            source=TransactionSourceKind.bank,
            external_id=str(row.id),
            settlement_ref=settlement.number if settlement is not None else None,
            occurred_at=row.operation_date,
            created_at=row.created_at,
            amount_cents=row.amount_cents,
            currency=(row.currency or "").upper(),
            payer=row.payer_name,
            description=row.description,
            direction=row.direction,
            category_id=row.category_id,
            status=row.manual_status.value,
            match_status=row.match_status.value,
            converted_cents=converted,
            rate=rate,
            fingerprint=row.operation_hash,
        )


class ProcessorPaymentSource:
    kind = TransactionSourceKind.processor

    def __init__(self, session: Session) -> None:
        self.session = session

    def list_transactions(
        self,
        direction: Direction,
        date_from: datetime,
        date_to: datetime,
        category_ids: Optional[Iterable[int]] = None,
        include_uncategorized: bool = True,
        exclude_category_ids: Optional[Iterable[int]] = None,
    ) -> list[SourceTransaction]:
        stmt = (
            select(ProcessorPayment)
            .where(
                ProcessorPayment.direction == direction,
                ProcessorPayment.deleted_at.is_(None),
                ProcessorPayment.paid_at >= date_from,
                ProcessorPayment.paid_at < date_to,
            )
            .order_by(ProcessorPayment.paid_at, ProcessorPayment.id)
        )
        stmt = _filter_categories(
            stmt,
            ProcessorPayment.category_id,
            category_ids,
            include_uncategorized,
            exclude_category_ids,
        )
        if stmt is None:
            return []
        with store_call("processor payments"):
            rows = self.session.scalars(stmt).all()
        return [self._normalise(row) for row in rows]

    def list_refunds(
        self, date_from: datetime, date_to: datetime, reason: RefundReason
    ) -> set[str]:
        with store_call("processor refunds"):
            return _refund_refs(self.session, self.kind, date_from, date_to, reason)

    def mark_deleted(self, external_id: str) -> None:
        payment = self.session.get(ProcessorPayment, _int_id(external_id))
        if not payment or payment.deleted_at is not None:
            raise NotFoundError("Transaction not found")
        payment.deleted_at = datetime.utcnow()
        self.session.commit()

    @staticmethod
    def _normalise(row: ProcessorPayment) -> SourceTransaction:
        converted = None
        if row.converted_amount_cents is not None:
            converted = Decimal(row.converted_amount_cents)
        return SourceTransaction(
            id=f"{TransactionSourceKind.processor.value}:{row.id}",
            source=TransactionSourceKind.processor,
            external_id=str(row.id),
            settlement_ref=row.session_id,
            occurred_at=row.paid_at,
            created_at=row.created_at,
            amount_cents=row.amount_cents,
            currency=(row.currency or "").upper(),
            payer=row.customer_name,
            description=row.description,
            direction=row.direction,
            category_id=row.category_id,
            status=row.payment_status.value,
            match_status=None,
            converted_cents=converted,
            rate=None,
            fingerprint=None,
        )


def _int_id(external_id: str) -> int:
    try:
        return int(external_id)
    except ValueError as exc:
        raise NotFoundError("Transaction not found") from exc


def default_sources(session: Session) -> list[TransactionSource]:
    return [BankPaymentSource(session), ProcessorPaymentSource(session)]
