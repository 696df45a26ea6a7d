"""Yearly P&L aggregation.

For every category of a direction the report carries twelve month rows and a
yearly total in the reporting currency. Auto-policy categories are filled
from the transaction sources, manual-policy categories from the manual
ledger; a category is never read from both. Nothing here is cached: every
call reads the store again.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy.orm import Session

from config import Settings, get_settings
from errors import InvariantViolationError, UpstreamUnavailableError, ValidationError
from fx_rates import FxRateService, RateLookup
from models import Category, Direction, ManagementPolicy, RefundReason
from periods import (
    Period,
    month_period,
    rate_date,
    reporting_month,
    validate_month,
    validate_year,
    year_period,
)
from services import UNCATEGORIZED_NAME, CategoryService, ManualEntryService
from sources import (
    SourceTransaction,
    TransactionSource,
    default_sources,
    is_eligible,
)

logger = logging.getLogger(__name__)

MONTHS = range(1, 13)
# Refunds are looked up from the start of the period with no upper bound: a
# refund booked in a later year still voids the original payment.
REFUNDS_UNTIL = datetime(9999, 12, 31)


def round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _round_breakdown(breakdown: dict[str, Decimal]) -> Optional[dict[str, int]]:
    if not breakdown:
        return None
    return {cur: round_cents(amount) for cur, amount in sorted(breakdown.items())}


@dataclass
class _Bucket:
    amount: Decimal = Decimal("0")
    count: int = 0
    breakdown: dict[str, Decimal] = field(default_factory=dict)

    def add(
        self, amount: Decimal, breakdown: Optional[dict[str, Decimal]] = None
    ) -> None:
        self.amount += amount
        self.count += 1
        for currency, native in (breakdown or {}).items():
            self.breakdown[currency] = self.breakdown.get(currency, Decimal("0")) + native


@dataclass(frozen=True)
class AggregatedMonth:
    month: int
    amount_cents: int
    count: int
    currency_breakdown: Optional[dict[str, int]] = None


@dataclass(frozen=True)
class PeriodTotal:
    amount_cents: int
    count: int
    currency_breakdown: Optional[dict[str, int]] = None


@dataclass
class CategoryReport:
    id: Optional[int]
    name: str
    management_policy: ManagementPolicy
    monthly: list[AggregatedMonth]
    total: PeriodTotal
    degraded: bool = False
    unavailable: bool = False

    def month(self, month: int) -> AggregatedMonth:
        return self.monthly[month - 1]


@dataclass
class DirectionReport:
    direction: Direction
    categories: list[CategoryReport]
    monthly: list[AggregatedMonth]
    total: PeriodTotal

    def category(self, category_id: Optional[int]) -> CategoryReport:
        for row in self.categories:
            if row.id == category_id:
                return row
        raise KeyError(category_id)


@dataclass(frozen=True)
class MonthAmount:
    month: int
    amount_cents: int


@dataclass
class PnlReport:
    year: int
    currency: str
    revenue: DirectionReport
    expenses: DirectionReport
    profit_loss: list[MonthAmount]
    profit_loss_total: int
    balance: list[MonthAmount]
    balance_total: int
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class CellItem:
    id: str
    source: str
    occurred_at: Optional[datetime]
    amount_cents: int
    currency: str
    converted_cents: int
    payer: Optional[str]
    description: Optional[str]


class PnlReportService:
    def __init__(
        self,
        session: Session,
        settings: Optional[Settings] = None,
        sources: Optional[list[TransactionSource]] = None,
        rates: Optional[RateLookup] = None,
        categories: Optional[CategoryService] = None,
        ledger: Optional[ManualEntryService] = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.currency = self.settings.reporting_currency
        self.sources = sources if sources is not None else default_sources(session)
        self.rates = rates if rates is not None else FxRateService(session, self.settings)
        self.categories = categories or CategoryService(session)
        self.ledger = ledger or ManualEntryService(session, self.settings)

    def monthly_report(self, year: int, include_breakdown: bool = False) -> PnlReport:
        validate_year(year, self.settings)
        period = year_period(year)
        warnings: list[str] = []
        logger.info(f"pnl_report: year={year} breakdown={include_breakdown}")

        refunded, failed_sources = self._refunded_refs(period, warnings)
        categories = self._load_categories(warnings)
        revenue = self._direction_report(
            Direction.inflow, year, period, categories, refunded, failed_sources,
            include_breakdown, warnings,
        )
        expenses = self._direction_report(
            Direction.outflow, year, period, categories, refunded, failed_sources,
            include_breakdown, warnings,
        )

        profit_loss = [
            MonthAmount(
                month=m,
                amount_cents=revenue.monthly[m - 1].amount_cents
                - expenses.monthly[m - 1].amount_cents,
            )
            for m in MONTHS
        ]
        balance = _running_balance(profit_loss)

        report = PnlReport(
            year=year,
            currency=self.currency,
            revenue=revenue,
            expenses=expenses,
            profit_loss=profit_loss,
            profit_loss_total=revenue.total.amount_cents - expenses.total.amount_cents,
            balance=balance,
            balance_total=balance[-1].amount_cents,
            warnings=warnings,
        )
        logger.info(
            f"pnl_report_done: year={year} revenue_cents={revenue.total.amount_cents} "
            f"expense_cents={expenses.total.amount_cents} warnings={len(warnings)}"
        )
        return report

    def category_month_details(
        self,
        direction: Direction,
        category_id: Optional[int],
        year: int,
        month: int,
    ) -> list[CellItem]:
        """The records behind one report cell, ordered by event time."""
        validate_year(year, self.settings)
        validate_month(month)
        category: Optional[Category] = None
        if category_id is not None:
            category = self.categories.get(category_id)
            if category.direction != direction:
                raise ValidationError("Category does not belong to this direction")

        if category is not None and category.management_policy == ManagementPolicy.manual:
            return [
                CellItem(
                    id=f"manual:{entry.id}",
                    source="manual",
                    occurred_at=None,
                    amount_cents=entry.amount_cents,
                    currency=self.currency,
                    converted_cents=entry.amount_cents,
                    payer=None,
                    description=entry.note,
                )
                for entry in self.ledger.for_period(category.id, year, month)
            ]

        period = month_period(year, month)
        warnings: list[str] = []
        refunded, failed_sources = self._refunded_refs(period, warnings)
        if failed_sources:
            raise UpstreamUnavailableError("; ".join(warnings))
        if category is not None:
            filters = {"category_ids": [category.id], "include_uncategorized": False}
        else:
            # Uncategorized also holds rows tagged with a category the
            # direction's report has no auto row for.
            excluded = [
                c.id
                for c in self.categories.list_all()
                if c.direction == direction
                or c.management_policy == ManagementPolicy.manual
            ]
            filters = {"exclude_category_ids": sorted(excluded)}

        items: list[CellItem] = []
        for source in self.sources:
            txns = source.list_transactions(
                direction, period.start, period.end, **filters
            )
            for txn in txns:
                converted = self._usable_amount(txn, refunded, warnings)
                if converted is None:
                    continue
                items.append(
                    CellItem(
                        id=txn.id,
                        source=txn.source.value,
                        occurred_at=txn.occurred_at,
                        amount_cents=txn.amount_cents,
                        currency=txn.currency,
                        converted_cents=round_cents(converted),
                        payer=txn.payer,
                        description=txn.description,
                    )
                )
        return sorted(items, key=lambda i: (i.occurred_at, i.id))

    def _load_categories(self, warnings: list[str]) -> Optional[list[Category]]:
        """Every category of both directions, or None when the store fails."""
        try:
            return self.categories.list_all()
        except UpstreamUnavailableError as exc:
            message = f"categories unavailable: {exc}"
            logger.warning(message)
            warnings.append(message)
            return None

    def _refunded_refs(
        self, period: Period, warnings: list[str]
    ) -> tuple[dict[str, set[str]], set[str]]:
        refunded: dict[str, set[str]] = {}
        failed: set[str] = set()
        for source in self.sources:
            refs: set[str] = set()
            try:
                for reason in (RefundReason.deal_lost, RefundReason.processor_refund):
                    refs |= source.list_refunds(period.start, REFUNDS_UNTIL, reason)
            except UpstreamUnavailableError as exc:
                message = f"{source.kind.value} refunds unavailable: {exc}"
                logger.warning(message)
                warnings.append(message)
                failed.add(source.kind.value)
                continue
            refunded[source.kind.value] = refs
        return refunded, failed

    @staticmethod
    def _is_refunded(txn: SourceTransaction, refunded: dict[str, set[str]]) -> bool:
        refs = refunded.get(txn.source.value, set())
        if txn.external_id in refs:
            return True
        return bool(txn.settlement_ref) and txn.settlement_ref in refs

    def _convert(self, txn: SourceTransaction, warnings: list[str]) -> Optional[Decimal]:
        """Amount in the reporting currency, or None when it cannot be trusted."""
        if txn.converted_cents is not None:
            return abs(txn.converted_cents)
        native = Decimal(abs(txn.amount_cents))
        if txn.currency == self.currency:
            return native

        rate = txn.rate
        if rate is None:
            try:
                rate = self.rates.get_rate(
                    txn.currency, self.currency, rate_date(txn.occurred_at)
                )
            except UpstreamUnavailableError as exc:
                logger.warning(f"fx_lookup_failed: txn={txn.id} error={exc}")
                rate = None
        if rate is not None and rate > 0:
            return native * rate

        message = (
            f"Transaction {txn.id} excluded: no {txn.currency}/{self.currency} "
            "exchange rate available"
        )
        logger.warning(message)
        warnings.append(message)
        return None

    def _usable_amount(
        self,
        txn: SourceTransaction,
        refunded: dict[str, set[str]],
        warnings: list[str],
    ) -> Optional[Decimal]:
        if not is_eligible(txn) or self._is_refunded(txn, refunded):
            return None
        converted = self._convert(txn, warnings)
        if converted is None or converted == 0:
            return None
        return converted

    def _collect_auto(
        self,
        direction: Direction,
        period: Period,
        auto_ids: set[int],
        manual_ids: Optional[set[int]],
        refunded: dict[str, set[str]],
        failed_sources: set[str],
        include_breakdown: bool,
        warnings: list[str],
        buckets: dict[Optional[int], dict[int, _Bucket]],
    ) -> bool:
        """Fill auto categories from the sources.

        ``manual_ids`` holds the manual categories of both directions; those
        rows belong to the ledger and are never read here. Any other category
        that is not one of ``auto_ids`` lands in Uncategorized. With
        ``manual_ids`` unknown only untagged rows are safe to count.
        """
        degraded = manual_ids is None
        if manual_ids is None:
            filters = {"category_ids": [], "include_uncategorized": True}
        else:
            filters = {"exclude_category_ids": sorted(manual_ids)}
        for source in self.sources:
            if source.kind.value in failed_sources:
                degraded = True
                continue
            try:
                txns = source.list_transactions(
                    direction,
                    period.start,
                    period.end,
                    **filters,
                )
            except UpstreamUnavailableError as exc:
                message = (
                    f"{source.kind.value} {direction.value} transactions "
                    f"unavailable: {exc}"
                )
                logger.warning(message)
                warnings.append(message)
                degraded = True
                continue

            for txn in txns:
                if not period.contains(txn.occurred_at):
                    continue
                if txn.category_id is not None and (
                    manual_ids is None or txn.category_id in manual_ids
                ):
                    continue
                converted = self._usable_amount(txn, refunded, warnings)
                if converted is None:
                    continue
                _, month = reporting_month(txn.occurred_at)
                category_id = txn.category_id if txn.category_id in auto_ids else None
                native = None
                if include_breakdown:
                    native = {txn.currency: Decimal(abs(txn.amount_cents))}
                buckets[category_id][month].add(converted, native)
        return degraded

    def _collect_manual(
        self,
        direction: Direction,
        year: int,
        manual_ids: set[int],
        include_breakdown: bool,
        warnings: list[str],
        buckets: dict[Optional[int], dict[int, _Bucket]],
    ) -> bool:
        if not manual_ids:
            return False
        try:
            nested = self.ledger.entries_by_categories(
                sorted(manual_ids), year, direction
            )
        except UpstreamUnavailableError as exc:
            message = f"manual {direction.value} entries unavailable: {exc}"
            logger.warning(message)
            warnings.append(message)
            return True

        for category_id, months in nested.items():
            if category_id not in manual_ids:
                continue
            for month, entries in months.items():
                for entry in entries:
                    breakdown = None
                    if include_breakdown and entry.currency_breakdown:
                        breakdown = {
                            cur.upper(): Decimal(int(value))
                            for cur, value in entry.currency_breakdown.items()
                        }
                    buckets[category_id][month].add(
                        Decimal(entry.amount_cents), breakdown
                    )
        return False

    def _direction_report(
        self,
        direction: Direction,
        year: int,
        period: Period,
        all_categories: Optional[list[Category]],
        refunded: dict[str, set[str]],
        failed_sources: set[str],
        include_breakdown: bool,
        warnings: list[str],
    ) -> DirectionReport:
        categories = [c for c in all_categories or [] if c.direction == direction]
        every_manual_id = None
        if all_categories is not None:
            every_manual_id = {
                c.id
                for c in all_categories
                if c.management_policy == ManagementPolicy.manual
            }

        auto_ids: set[int] = set()
        manual_ids: set[int] = set()
        for category in categories:
            if category.management_policy == ManagementPolicy.auto:
                auto_ids.add(category.id)
            elif category.management_policy == ManagementPolicy.manual:
                manual_ids.add(category.id)
        if auto_ids & manual_ids:
            raise InvariantViolationError(
                f"Categories under both policies: {sorted(auto_ids & manual_ids)}"
            )

        buckets: dict[Optional[int], dict[int, _Bucket]] = defaultdict(
            lambda: defaultdict(_Bucket)
        )
        auto_degraded = self._collect_auto(
            direction, period, auto_ids, every_manual_id, refunded,
            failed_sources, include_breakdown, warnings, buckets,
        )
        manual_unavailable = self._collect_manual(
            direction, year, manual_ids, include_breakdown, warnings, buckets
        )

        rows: list[CategoryReport] = []
        for category in categories:
            policy = category.management_policy
            rows.append(
                _category_row(
                    category.id,
                    category.name,
                    policy,
                    buckets.get(category.id),
                    include_breakdown,
                    degraded=policy == ManagementPolicy.auto and auto_degraded,
                    unavailable=policy == ManagementPolicy.manual and manual_unavailable,
                )
            )
        rows.append(
            _category_row(
                None,
                UNCATEGORIZED_NAME,
                ManagementPolicy.auto,
                buckets.get(None),
                include_breakdown,
                degraded=auto_degraded,
            )
        )

        section = DirectionReport(
            direction=direction,
            categories=rows,
            monthly=_sum_months(rows, include_breakdown),
            total=_sum_totals(rows, include_breakdown),
        )
        _check_section(section)
        return section


def _category_row(
    category_id: Optional[int],
    name: str,
    policy: ManagementPolicy,
    months: Optional[dict[int, _Bucket]],
    include_breakdown: bool,
    degraded: bool = False,
    unavailable: bool = False,
) -> CategoryReport:
    months = months or {}
    monthly: list[AggregatedMonth] = []
    total = _Bucket()
    for m in MONTHS:
        bucket = months.get(m) or _Bucket()
        monthly.append(
            AggregatedMonth(
                month=m,
                amount_cents=round_cents(bucket.amount),
                count=bucket.count,
                currency_breakdown=(
                    _round_breakdown(bucket.breakdown) if include_breakdown else None
                ),
            )
        )
        total.amount += bucket.amount
        total.count += bucket.count
        for currency, native in bucket.breakdown.items():
            total.breakdown[currency] = total.breakdown.get(currency, Decimal("0")) + native
    return CategoryReport(
        id=category_id,
        name=name,
        management_policy=policy,
        monthly=monthly,
        total=PeriodTotal(
            amount_cents=round_cents(total.amount),
            count=total.count,
            currency_breakdown=(
                _round_breakdown(total.breakdown) if include_breakdown else None
            ),
        ),
        degraded=degraded,
        unavailable=unavailable,
    )


def _merge_int_maps(maps: list[Optional[dict[str, int]]]) -> Optional[dict[str, int]]:
    merged: dict[str, int] = {}
    for mapping in maps:
        for currency, value in (mapping or {}).items():
            merged[currency] = merged.get(currency, 0) + value
    return dict(sorted(merged.items())) if merged else None


def _sum_months(
    rows: list[CategoryReport], include_breakdown: bool
) -> list[AggregatedMonth]:
    result = []
    for m in MONTHS:
        cells = [row.month(m) for row in rows]
        result.append(
            AggregatedMonth(
                month=m,
                amount_cents=sum(c.amount_cents for c in cells),
                count=sum(c.count for c in cells),
                currency_breakdown=(
                    _merge_int_maps([c.currency_breakdown for c in cells])
                    if include_breakdown
                    else None
                ),
            )
        )
    return result


def _sum_totals(rows: list[CategoryReport], include_breakdown: bool) -> PeriodTotal:
    return PeriodTotal(
        amount_cents=sum(row.total.amount_cents for row in rows),
        count=sum(row.total.count for row in rows),
        currency_breakdown=(
            _merge_int_maps([row.total.currency_breakdown for row in rows])
            if include_breakdown
            else None
        ),
    )


def _check_section(section: DirectionReport) -> None:
    expected = sum(row.total.amount_cents for row in section.categories)
    if section.total.amount_cents != expected:
        raise InvariantViolationError(
            f"{section.direction.value} grand total {section.total.amount_cents} "
            f"!= sum of category totals {expected}"
        )
    seen: set[Optional[int]] = set()
    for row in section.categories:
        if row.id in seen:
            raise InvariantViolationError(f"Category {row.id} reported twice")
        seen.add(row.id)


def _running_balance(profit_loss: list[MonthAmount]) -> list[MonthAmount]:
    first_active = next((p.month for p in profit_loss if p.amount_cents != 0), 1)
    running = 0
    balance = []
    for entry in profit_loss:
        if entry.month >= first_active:
            running += entry.amount_cents
        balance.append(MonthAmount(month=entry.month, amount_cents=running))
    return balance
