from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class Direction(str, Enum):
    inflow = "inflow"
    outflow = "outflow"


class ManagementPolicy(str, Enum):
    auto = "auto"
    manual = "manual"


class TransactionSourceKind(str, Enum):
    bank = "bank"
    processor = "processor"


class ManualStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class MatchStatus(str, Enum):
    unmatched = "unmatched"
    matched = "matched"


class ProcessorPaymentStatus(str, Enum):
    unpaid = "unpaid"
    paid = "paid"
    refunded = "refunded"


class RefundReason(str, Enum):
    deal_lost = "deal_lost"
    processor_refund = "processor_refund"


def _utcnow() -> datetime:
    return datetime.utcnow()


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "pnl_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    direction: Mapped[Direction] = mapped_column(SAEnum(Direction), nullable=False)
    management_policy: Mapped[ManagementPolicy] = mapped_column(
        SAEnum(ManagementPolicy), default=ManagementPolicy.auto, nullable=False
    )
    display_order: Mapped[Optional[int]] = mapped_column(Integer)

    manual_entries: Mapped[list["ManualLedgerEntry"]] = relationship(
        "ManualLedgerEntry", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("direction", "name", name="uq_category_direction_name"),
    )

    @property
    def is_manual(self) -> bool:
        return self.management_policy == ManagementPolicy.manual


class Settlement(Base, TimestampMixin):
    """Invoice/proforma a bank payment can be matched against."""

    __tablename__ = "settlements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    exchange_rate_micros: Mapped[Optional[int]] = mapped_column(Integer)
    converted_total_cents: Mapped[Optional[int]] = mapped_column(Integer)


class BankPayment(Base, TimestampMixin):
    __tablename__ = "bank_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    operation_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="PLN")
    payer_name: Mapped[Optional[str]] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text)
    direction: Mapped[Direction] = mapped_column(SAEnum(Direction), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("pnl_categories.id")
    )
    manual_status: Mapped[ManualStatus] = mapped_column(
        SAEnum(ManualStatus), default=ManualStatus.pending, nullable=False
    )
    match_status: Mapped[MatchStatus] = mapped_column(
        SAEnum(MatchStatus), default=MatchStatus.unmatched, nullable=False
    )
    settlement_id: Mapped[Optional[int]] = mapped_column(ForeignKey("settlements.id"))
    operation_hash: Mapped[Optional[str]] = mapped_column(String(64))
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    category: Mapped[Optional["Category"]] = relationship("Category")
    settlement: Mapped[Optional["Settlement"]] = relationship("Settlement")

    __table_args__ = (
        Index("ix_bank_payments_direction_date", "direction", "operation_date"),
        Index("ix_bank_payments_category", "category_id"),
        Index("ix_bank_payments_hash", "operation_hash"),
    )


class ProcessorPayment(Base, TimestampMixin):
    __tablename__ = "processor_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    paid_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="PLN")
    converted_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    payment_status: Mapped[ProcessorPaymentStatus] = mapped_column(
        SAEnum(ProcessorPaymentStatus),
        default=ProcessorPaymentStatus.unpaid,
        nullable=False,
    )
    customer_name: Mapped[Optional[str]] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text)
    direction: Mapped[Direction] = mapped_column(
        SAEnum(Direction), default=Direction.inflow, nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("pnl_categories.id")
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        Index("ix_processor_payments_direction_paid", "direction", "paid_at"),
        Index("ix_processor_payments_category", "category_id"),
    )


class PaymentRefund(Base, TimestampMixin):
    """Refund/void feed. ``payment_ref`` is a payment id or its settlement/session id."""

    __tablename__ = "payment_refunds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source: Mapped[TransactionSourceKind] = mapped_column(
        SAEnum(TransactionSourceKind), nullable=False
    )
    payment_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[RefundReason] = mapped_column(SAEnum(RefundReason), nullable=False)
    refunded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_payment_refunds_source_at", "source", "refunded_at"),
    )


class ExchangeRate(Base, TimestampMixin):
    __tablename__ = "exchange_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    base: Mapped[str] = mapped_column(String(3), nullable=False)
    quote: Mapped[str] = mapped_column(String(3), nullable=False)
    rate_micros: Mapped[int] = mapped_column(Integer, nullable=False)
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    provider: Mapped[Optional[str]] = mapped_column(String(40))
    fetched_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        UniqueConstraint(
            "base", "quote", "effective_date", name="uq_exchange_rate_pair_date"
        ),
        CheckConstraint("rate_micros > 0", name="ck_exchange_rate_positive"),
    )


class ManualLedgerEntry(Base, TimestampMixin):
    __tablename__ = "pnl_manual_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("pnl_categories.id"), nullable=False
    )
    direction: Mapped[Direction] = mapped_column(SAEnum(Direction), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_breakdown: Mapped[Optional[dict]] = mapped_column(JSON)
    note: Mapped[Optional[str]] = mapped_column(Text)
    # Only revenue entries carry a key; NULLs never collide.
    period_key: Mapped[Optional[str]] = mapped_column(String(64), unique=True)

    category: Mapped["Category"] = relationship(
        "Category", back_populates="manual_entries"
    )

    __table_args__ = (
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_manual_entry_month"),
        CheckConstraint(
            "direction = 'outflow' OR amount_cents >= 0",
            name="ck_manual_entry_revenue_non_negative",
        ),
        Index("ix_manual_entries_category_year", "category_id", "year", "month"),
    )
