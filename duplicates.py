"""Duplicate transaction detection.

Two passes over one direction's transactions for one month:

1. exact: rows sharing an ingestion fingerprint (``operation_hash``);
2. fuzzy: same normalised payer, amount and currency within a 7-day chain,
   or, for rows without a payer, same amount and currency plus at least 50%
   word overlap between descriptions.

A row lands in at most one group. Groups list their members by creation time;
the first member is the one to keep.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from config import Settings, get_settings
from models import Direction
from periods import month_period, validate_month, validate_year
from sources import SourceTransaction, TransactionSource, default_sources

logger = logging.getLogger(__name__)

DATE_WINDOW = timedelta(days=7)
MIN_DESCRIPTION_SIMILARITY = 0.5
MIN_WORD_LENGTH = 4

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(value: Optional[str]) -> str:
    if not value:
        return ""
    return _WHITESPACE_RE.sub(" ", value.strip()).casefold()


def description_similarity(first: Optional[str], second: Optional[str]) -> float:
    """Share of significant words (longer than 3 chars) the two texts have in common."""
    norm1 = normalize_text(first)
    norm2 = normalize_text(second)
    if not norm1 or not norm2:
        return 0.0
    if norm1 == norm2:
        return 1.0
    words1 = [w for w in norm1.split(" ") if len(w) >= MIN_WORD_LENGTH]
    words2 = [w for w in norm2.split(" ") if len(w) >= MIN_WORD_LENGTH]
    if not words1 or not words2:
        return 0.0
    common = [w for w in words1 if w in words2]
    return len(common) / max(len(words1), len(words2))


@dataclass
class DuplicateGroup:
    payer: Optional[str]
    amount_cents: int
    currency: str
    exact: bool
    members: list[SourceTransaction] = field(default_factory=list)

    @property
    def keeper(self) -> SourceTransaction:
        return self.members[0]

    @property
    def removable(self) -> list[SourceTransaction]:
        return self.members[1:]

    @property
    def count(self) -> int:
        return len(self.members)


def _by_creation(txns: Iterable[SourceTransaction]) -> list[SourceTransaction]:
    return sorted(txns, key=lambda t: (t.created_at, t.occurred_at, t.id))


def _make_group(members: list[SourceTransaction], exact: bool) -> DuplicateGroup:
    ordered = _by_creation(members)
    keeper = ordered[0]
    return DuplicateGroup(
        payer=keeper.payer if normalize_text(keeper.payer) else None,
        amount_cents=keeper.amount_cents,
        currency=keeper.currency,
        exact=exact,
        members=ordered,
    )


def _date_chains(txns: list[SourceTransaction]) -> list[list[SourceTransaction]]:
    ordered = sorted(txns, key=lambda t: (t.occurred_at, t.created_at, t.id))
    chains: list[list[SourceTransaction]] = []
    current = [ordered[0]]
    for prev, txn in zip(ordered, ordered[1:]):
        if txn.occurred_at - prev.occurred_at <= DATE_WINDOW:
            current.append(txn)
        else:
            chains.append(current)
            current = [txn]
    chains.append(current)
    return [chain for chain in chains if len(chain) > 1]


def _similar_clusters(
    chain: list[SourceTransaction],
) -> list[list[SourceTransaction]]:
    clusters: list[list[SourceTransaction]] = []
    taken: set[str] = set()
    for i, seed in enumerate(chain):
        if seed.id in taken:
            continue
        cluster = [seed]
        taken.add(seed.id)
        for other in chain[i + 1 :]:
            if other.id in taken:
                continue
            similarity = description_similarity(seed.description, other.description)
            if similarity >= MIN_DESCRIPTION_SIMILARITY:
                cluster.append(other)
                taken.add(other.id)
        if len(cluster) > 1:
            clusters.append(cluster)
    return clusters


class DuplicateDetector:
    def find(self, transactions: Iterable[SourceTransaction]) -> list[DuplicateGroup]:
        txns = sorted(transactions, key=lambda t: (t.occurred_at, t.created_at, t.id))

        by_hash: dict[str, list[SourceTransaction]] = {}
        for txn in txns:
            if txn.fingerprint:
                by_hash.setdefault(txn.fingerprint, []).append(txn)

        groups: list[DuplicateGroup] = []
        grouped: set[str] = set()
        for members in by_hash.values():
            if len(members) > 1:
                groups.append(_make_group(members, exact=True))
                grouped.update(t.id for t in members)

        candidates: dict[tuple, list[SourceTransaction]] = {}
        for txn in txns:
            if txn.id in grouped:
                continue
            payer = normalize_text(txn.payer)
            currency = (txn.currency or "").upper()
            if payer:
                key = ("payer", payer, txn.amount_cents, currency)
            else:
                key = ("no_payer", txn.amount_cents, currency)
            candidates.setdefault(key, []).append(txn)

        for key, members in candidates.items():
            if len(members) < 2:
                continue
            for chain in _date_chains(members):
                if key[0] == "payer":
                    groups.append(_make_group(chain, exact=False))
                else:
                    for cluster in _similar_clusters(chain):
                        groups.append(_make_group(cluster, exact=False))
        return groups


class DuplicateService:
    def __init__(
        self,
        session: Session,
        settings: Optional[Settings] = None,
        sources: Optional[list[TransactionSource]] = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.sources = sources if sources is not None else default_sources(session)
        self.detector = DuplicateDetector()

    def find_duplicates(
        self, year: int, month: int, direction: Direction = Direction.outflow
    ) -> list[DuplicateGroup]:
        validate_year(year, self.settings)
        validate_month(month)
        period = month_period(year, month)

        transactions: list[SourceTransaction] = []
        for source in self.sources:
            transactions.extend(
                source.list_transactions(direction, period.start, period.end)
            )

        groups = self.detector.find(transactions)
        logger.info(
            f"duplicates_found: period={period.slug} direction={direction.value} "
            f"scanned={len(transactions)} groups={len(groups)} "
            f"exact={sum(1 for g in groups if g.exact)}"
        )
        return groups
