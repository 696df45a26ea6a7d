from __future__ import annotations

import logging
import re
from collections import defaultdict
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import delete, func, inspect, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, defer

from config import Settings, get_settings
from database import store_call
from errors import (
    NotFoundError,
    PolicyViolationError,
    ReferentialIntegrityError,
    ValidationError,
)
from models import (
    BankPayment,
    Category,
    Direction,
    ManagementPolicy,
    ManualLedgerEntry,
    ProcessorPayment,
)
from periods import to_utc_naive, validate_month, validate_year
from schemas import (
    MAX_AMOUNT_CENTS,
    CategoryIn,
    CategoryUpdate,
    ManualEntryIn,
    ManualEntryUpdate,
)
from sources import TransactionSource, default_sources, parse_transaction_id

logger = logging.getLogger(__name__)

UNCATEGORIZED_NAME = "Uncategorized"
CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


def category_sort_key(category: Category) -> tuple:
    order = category.display_order
    return (order is None, order or 0, category.name.casefold(), category.id)


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self._ordering_supported: Optional[bool] = None

    def ordering_supported(self) -> bool:
        """Whether the live ``pnl_categories`` table has the ``display_order`` column."""
        if self._ordering_supported is None:
            columns = inspect(self.session.connection()).get_columns(
                Category.__tablename__
            )
            self._ordering_supported = any(
                col["name"] == "display_order" for col in columns
            )
            if not self._ordering_supported:
                logger.warning(
                    "display_order column missing; categories fall back to "
                    "alphabetical order"
                )
        return self._ordering_supported

    def _select(self):
        stmt = select(Category)
        if not self.ordering_supported():
            stmt = stmt.options(defer(Category.display_order, raiseload=True))
        return stmt

    def list_all(self, direction: Optional[Direction] = None) -> list[Category]:
        stmt = self._select()
        if direction is not None:
            stmt = stmt.where(Category.direction == direction)
        with store_call("categories"):
            categories = list(self.session.scalars(stmt).all())
        if self.ordering_supported():
            return sorted(categories, key=category_sort_key)
        return sorted(categories, key=lambda c: (c.name.casefold(), c.id))

    def get(self, category_id: int) -> Category:
        with store_call("categories"):
            category = self.session.scalar(
                self._select().where(Category.id == category_id)
            )
        if not category:
            raise NotFoundError("Category not found")
        return category

    def _clean_name(self, name: Optional[str]) -> str:
        if name is None or not name.strip():
            raise ValidationError(
                "Category name is required and must be a non-empty string"
            )
        name = name.strip()
        if len(name) > 255:
            raise ValidationError("Category name must not exceed 255 characters")
        if name.casefold() == UNCATEGORIZED_NAME.casefold():
            raise ValidationError(f"'{UNCATEGORIZED_NAME}' is a reserved name")
        return name

    def _ensure_unique(
        self, name: str, direction: Direction, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Category.id).where(
            Category.direction == direction,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ValidationError("Category with this name already exists")

    def create(self, data: CategoryIn) -> Category:
        name = self._clean_name(data.name)
        self._ensure_unique(name, data.direction)
        category = Category(
            name=name,
            description=_clean_text(data.description),
            direction=data.direction,
            management_policy=data.management_policy,
        )
        if self.ordering_supported():
            max_order = self.session.scalar(
                select(func.max(Category.display_order)).where(
                    Category.direction == data.direction
                )
            )
            category.display_order = 0 if max_order is None else max_order + 1
        self.session.add(category)
        self.session.commit()
        if self.ordering_supported():
            self.session.refresh(category)
        logger.info(
            f"category_created: id={category.id} name={category.name!r} "
            f"direction={category.direction.value} "
            f"policy={category.management_policy.value}"
        )
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        fields = data.model_fields_set
        if "name" in fields:
            name = self._clean_name(data.name)
            self._ensure_unique(name, category.direction, exclude_id=category.id)
            category.name = name
        if "description" in fields:
            category.description = _clean_text(data.description)
        if "management_policy" in fields:
            if data.management_policy is None:
                raise ValidationError('management_policy must be "auto" or "manual"')
            if category.management_policy != data.management_policy:
                logger.info(
                    f"category_policy_changed: id={category.id} "
                    f"{category.management_policy.value}->{data.management_policy.value}"
                )
            category.management_policy = data.management_policy
        self.session.commit()
        return category

    def reference_count(self, category_id: int) -> int:
        bank = self.session.scalar(
            select(func.count())
            .select_from(BankPayment)
            .where(BankPayment.category_id == category_id)
        )
        processor = self.session.scalar(
            select(func.count())
            .select_from(ProcessorPayment)
            .where(ProcessorPayment.category_id == category_id)
        )
        manual = self.session.scalar(
            select(func.count())
            .select_from(ManualLedgerEntry)
            .where(ManualLedgerEntry.category_id == category_id)
        )
        return int(bank or 0) + int(processor or 0) + int(manual or 0)

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        references = self.reference_count(category.id)
        if references > 0:
            raise ReferentialIntegrityError(
                f"Cannot delete category: {references} record(s) are associated "
                "with this category"
            )
        self.session.delete(category)
        self.session.commit()
        logger.info(f"category_deleted: id={category_id} name={category.name!r}")

    def reorder(self, category_id: int, move: str) -> Category:
        if move not in ("up", "down"):
            raise ValidationError('Direction must be "up" or "down"')
        if not self.ordering_supported():
            raise ValidationError(
                "Category ordering is not available; upgrade the database schema"
            )
        category = self.get(category_id)
        siblings = self.list_all(category.direction)

        orders = [c.display_order for c in siblings]
        if None in orders or len(set(orders)) != len(orders):
            for position, sibling in enumerate(siblings):
                sibling.display_order = position

        index = next(i for i, c in enumerate(siblings) if c.id == category.id)
        target = index - 1 if move == "up" else index + 1
        if target < 0 or target >= len(siblings):
            edge = "top" if move == "up" else "bottom"
            raise ValidationError(f"Cannot move category {move}: already at {edge}")

        neighbour = siblings[target]
        category.display_order, neighbour.display_order = (
            neighbour.display_order,
            category.display_order,
        )
        self.session.commit()
        logger.info(
            f"category_reordered: id={category.id} move={move} "
            f"swapped_with={neighbour.id}"
        )
        return category


def period_key(category_id: int, year: int, month: int) -> str:
    return f"{category_id}:{year}:{month:02d}"


class ManualEntryService:
    """Hand-entered monthly figures for manual-policy categories.

    Revenue categories hold at most one figure per month (``upsert``); expense
    categories may hold any number of independent entries per month
    (``create``).
    """

    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    def _manual_category(self, category_id: int, expected: Direction) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        if category.management_policy != ManagementPolicy.manual:
            raise PolicyViolationError(
                "Manual entries can only be created for categories with "
                'management policy "manual"'
            )
        if category.direction != expected:
            if expected == Direction.inflow:
                raise PolicyViolationError(
                    "Expense categories take individual entries; use create instead"
                )
            raise PolicyViolationError(
                "Revenue categories hold one figure per month; use upsert instead"
            )
        return category

    @staticmethod
    def _validate_amount(amount_cents: int, direction: Direction) -> int:
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
            raise ValidationError("amount_cents must be an integer")
        if abs(amount_cents) > MAX_AMOUNT_CENTS:
            raise ValidationError("amount_cents is out of range")
        if direction == Direction.inflow and amount_cents < 0:
            raise ValidationError(
                "amount_cents must be non-negative for revenue entries"
            )
        if direction == Direction.outflow and amount_cents == 0:
            raise ValidationError(
                "amount_cents must be non-zero for expense entries "
                "(negative values record refunds)"
            )
        return amount_cents

    @staticmethod
    def _clean_breakdown(
        breakdown: Optional[dict[str, int]],
    ) -> Optional[dict[str, int]]:
        if not breakdown:
            return None
        cleaned: dict[str, int] = {}
        for currency, amount in breakdown.items():
            code = (currency or "").strip().upper()
            if not CURRENCY_RE.match(code):
                raise ValidationError(f"Invalid currency code: {currency!r}")
            cleaned[code] = cleaned.get(code, 0) + int(amount)
        return cleaned

    def _validate(self, data: ManualEntryIn, direction: Direction) -> None:
        validate_year(data.year, self.settings)
        validate_month(data.month)
        self._validate_amount(data.amount_cents, direction)

    def _by_key(self, key: str) -> Optional[ManualLedgerEntry]:
        return self.session.scalar(
            select(ManualLedgerEntry).where(ManualLedgerEntry.period_key == key)
        )

    def upsert(self, data: ManualEntryIn) -> ManualLedgerEntry:
        self._validate(data, Direction.inflow)
        breakdown = self._clean_breakdown(data.currency_breakdown)
        note = _clean_text(data.note)

        with store_call("manual entry upsert"):
            category = self._manual_category(data.category_id, Direction.inflow)
            key = period_key(category.id, data.year, data.month)
            entry = self._by_key(key)
            if entry is None:
                entry = ManualLedgerEntry(
                    category_id=category.id,
                    direction=Direction.inflow,
                    year=data.year,
                    month=data.month,
                    amount_cents=data.amount_cents,
                    currency_breakdown=breakdown,
                    note=note,
                    period_key=key,
                )
                try:
                    with self.session.begin_nested():
                        self.session.add(entry)
                except IntegrityError:
                    # A concurrent writer inserted the key first; update its row.
                    entry = self._by_key(key)
                    if entry is None:
                        raise
                    entry.amount_cents = data.amount_cents
                    entry.currency_breakdown = breakdown
                    entry.note = note
            else:
                entry.amount_cents = data.amount_cents
                entry.currency_breakdown = breakdown
                entry.note = note
            self.session.commit()

        logger.info(
            f"manual_entry_upserted: id={entry.id} category={category.id} "
            f"year={data.year} month={data.month} amount_cents={data.amount_cents}"
        )
        return entry

    def create(self, data: ManualEntryIn) -> ManualLedgerEntry:
        self._validate(data, Direction.outflow)
        breakdown = self._clean_breakdown(data.currency_breakdown)

        with store_call("manual entry create"):
            category = self._manual_category(data.category_id, Direction.outflow)
            entry = ManualLedgerEntry(
                category_id=category.id,
                direction=Direction.outflow,
                year=data.year,
                month=data.month,
                amount_cents=data.amount_cents,
                currency_breakdown=breakdown,
                note=_clean_text(data.note),
            )
            self.session.add(entry)
            self.session.commit()
            self.session.refresh(entry)

        logger.info(
            f"manual_entry_created: id={entry.id} category={category.id} "
            f"year={data.year} month={data.month} amount_cents={data.amount_cents}"
        )
        return entry

    def get(self, entry_id: int) -> ManualLedgerEntry:
        with store_call("manual entries"):
            entry = self.session.get(ManualLedgerEntry, entry_id)
        if not entry:
            raise NotFoundError("Entry not found")
        return entry

    def for_period(
        self, category_id: int, year: int, month: int
    ) -> list[ManualLedgerEntry]:
        validate_year(year, self.settings)
        validate_month(month)
        stmt = (
            select(ManualLedgerEntry)
            .where(
                ManualLedgerEntry.category_id == category_id,
                ManualLedgerEntry.year == year,
                ManualLedgerEntry.month == month,
            )
            .order_by(ManualLedgerEntry.created_at, ManualLedgerEntry.id)
        )
        with store_call("manual entries"):
            return list(self.session.scalars(stmt).all())

    def for_category_year(self, category_id: int, year: int) -> list[ManualLedgerEntry]:
        validate_year(year, self.settings)
        stmt = (
            select(ManualLedgerEntry)
            .where(
                ManualLedgerEntry.category_id == category_id,
                ManualLedgerEntry.year == year,
            )
            .order_by(
                ManualLedgerEntry.month,
                ManualLedgerEntry.created_at,
                ManualLedgerEntry.id,
            )
        )
        with store_call("manual entries"):
            return list(self.session.scalars(stmt).all())

    def entries_by_categories(
        self, category_ids: Iterable[int], year: int, direction: Direction
    ) -> dict[int, dict[int, list[ManualLedgerEntry]]]:
        """Nested ``{category_id: {month: [entries]}}`` for many categories in one query."""
        ids = list(category_ids)
        validate_year(year, self.settings)
        if not ids:
            return {}
        stmt = (
            select(ManualLedgerEntry)
            .where(
                ManualLedgerEntry.category_id.in_(ids),
                ManualLedgerEntry.year == year,
                ManualLedgerEntry.direction == direction,
            )
            .order_by(
                ManualLedgerEntry.category_id,
                ManualLedgerEntry.month,
                ManualLedgerEntry.created_at,
                ManualLedgerEntry.id,
            )
        )
        with store_call("manual entries"):
            rows = self.session.scalars(stmt).all()

        nested: dict[int, dict[int, list[ManualLedgerEntry]]] = defaultdict(
            lambda: defaultdict(list)
        )
        for entry in rows:
            nested[entry.category_id][entry.month].append(entry)
        return {cat_id: dict(months) for cat_id, months in nested.items()}

    def update(self, entry_id: int, data: ManualEntryUpdate) -> ManualLedgerEntry:
        fields = data.model_fields_set
        if not fields:
            raise ValidationError("No fields to update")
        with store_call("manual entry update"):
            entry = self.get(entry_id)
            if "amount_cents" in fields:
                if data.amount_cents is None:
                    raise ValidationError("amount_cents cannot be cleared")
                entry.amount_cents = self._validate_amount(
                    data.amount_cents, entry.direction
                )
            if "note" in fields:
                entry.note = _clean_text(data.note)
            self.session.commit()
        logger.info(f"manual_entry_updated: id={entry_id} fields={sorted(fields)}")
        return entry

    def delete(self, entry_id: int) -> None:
        with store_call("manual entry delete"):
            entry = self.get(entry_id)
            self.session.delete(entry)
            self.session.commit()
        logger.info(f"manual_entry_deleted: id={entry_id}")

    def delete_period(self, category_id: int, year: int, month: int) -> int:
        validate_year(year, self.settings)
        validate_month(month)
        with store_call("manual entry delete"):
            result = self.session.execute(
                delete(ManualLedgerEntry).where(
                    ManualLedgerEntry.category_id == category_id,
                    ManualLedgerEntry.year == year,
                    ManualLedgerEntry.month == month,
                )
            )
            self.session.commit()
        removed = int(result.rowcount or 0)
        logger.info(
            f"manual_entries_deleted: category={category_id} year={year} "
            f"month={month} count={removed}"
        )
        return removed

    def expenses_for_year(
        self, year: int, as_of: Optional[datetime] = None
    ) -> list[ManualLedgerEntry]:
        validate_year(year, self.settings)
        stmt = (
            select(ManualLedgerEntry)
            .where(
                ManualLedgerEntry.year == year,
                ManualLedgerEntry.direction == Direction.outflow,
            )
            .order_by(ManualLedgerEntry.month, ManualLedgerEntry.created_at)
        )
        if as_of is not None:
            cutoff = to_utc_naive(as_of)
            if cutoff > datetime.utcnow():
                raise ValidationError("as_of cannot be in the future")
            stmt = stmt.where(
                ManualLedgerEntry.created_at <= cutoff,
                or_(
                    ManualLedgerEntry.updated_at.is_(None),
                    ManualLedgerEntry.updated_at <= cutoff,
                ),
            )
        with store_call("manual entries"):
            return list(self.session.scalars(stmt).all())


class TransactionService:
    def __init__(
        self,
        session: Session,
        sources: Optional[list[TransactionSource]] = None,
    ) -> None:
        self.session = session
        self.sources = sources if sources is not None else default_sources(session)

    def mark_duplicate(self, transaction_id: str) -> None:
        """Soft-delete one transaction so reports and later checks skip it."""
        kind, external_id = parse_transaction_id(transaction_id)
        for source in self.sources:
            if source.kind == kind:
                with store_call("mark duplicate"):
                    source.mark_deleted(external_id)
                logger.info(f"transaction_marked_duplicate: id={transaction_id}")
                return
        raise NotFoundError(f"Unknown transaction source: {kind.value}")
