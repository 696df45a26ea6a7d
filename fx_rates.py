from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Protocol
from urllib.error import URLError
from urllib.request import Request, urlopen

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Settings, get_settings
from database import store_call
from errors import UpstreamUnavailableError
from models import ExchangeRate

logger = logging.getLogger(__name__)

# Providers publish no rates on weekends and holidays.
MAX_RATE_AGE_DAYS = 4


@dataclass(frozen=True)
class FxQuote:
    provider: str
    base: str
    quote: str
    rate: Decimal  # quote per 1 base
    rate_date: date
    fetched_at: datetime


class RateLookup(Protocol):
    def get_rate(
        self, from_currency: str, to_currency: str, as_of: Optional[date] = None
    ) -> Optional[Decimal]: ...


def rate_to_micros(rate: Decimal) -> int:
    return int(
        (rate * Decimal("1000000")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )


def micros_to_rate(micros: int) -> Decimal:
    return Decimal(micros) / Decimal("1000000")


class FxRateService:
    """Exchange rates backed by the ``exchange_rates`` table.

    A missing rate is fetched from the configured provider and stored, so the
    next report reads it from the database. With provider ``none`` only stored
    rates are used.
    """

    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    def get_rate(
        self, from_currency: str, to_currency: str, as_of: Optional[date] = None
    ) -> Optional[Decimal]:
        base = from_currency.upper()
        quote = to_currency.upper()
        if base == quote:
            return Decimal("1")
        as_of = as_of or datetime.now(timezone.utc).date()

        with store_call("exchange rates"):
            stored = self.session.scalar(
                select(ExchangeRate)
                .where(
                    ExchangeRate.base == base,
                    ExchangeRate.quote == quote,
                    ExchangeRate.effective_date <= as_of,
                )
                .order_by(ExchangeRate.effective_date.desc())
                .limit(1)
            )
        if (
            stored is not None
            and (as_of - stored.effective_date).days <= MAX_RATE_AGE_DAYS
        ):
            return micros_to_rate(stored.rate_micros)

        provider = (self.settings.fx_provider or "none").lower()
        if provider == "none":
            return micros_to_rate(stored.rate_micros) if stored else None
        if provider != "frankfurter":
            raise UpstreamUnavailableError(f"Unsupported FX provider: {provider}")

        fx = _fetch_frankfurter_quote(
            base, quote, as_of, timeout=self.settings.fx_timeout_secs
        )
        fx = self._apply_markup(fx)
        self._store(fx)
        return fx.rate

    def store_rate(self, base: str, quote: str, rate: Decimal, on_date: date) -> None:
        self._store(
            FxQuote(
                provider="manual",
                base=base.upper(),
                quote=quote.upper(),
                rate=rate,
                rate_date=on_date,
                fetched_at=datetime.now(timezone.utc),
            )
        )

    def _apply_markup(self, fx: FxQuote) -> FxQuote:
        markup_bps = self.settings.fx_markup_bps
        if not markup_bps:
            return fx
        factor = Decimal("1") - (Decimal(markup_bps) / Decimal("10000"))
        return FxQuote(
            provider=fx.provider,
            base=fx.base,
            quote=fx.quote,
            rate=(fx.rate * factor),
            rate_date=fx.rate_date,
            fetched_at=fx.fetched_at,
        )

    def _store(self, fx: FxQuote) -> None:
        row = ExchangeRate(
            base=fx.base,
            quote=fx.quote,
            rate_micros=rate_to_micros(fx.rate),
            effective_date=fx.rate_date,
            provider=fx.provider,
            fetched_at=fx.fetched_at.replace(tzinfo=None),
        )
        # Own session: a lookup made while reading must not commit the caller.
        with store_call("exchange rates"), Session(
            bind=self.session.get_bind(), expire_on_commit=False
        ) as writer:
            writer.add(row)
            try:
                writer.commit()
            except IntegrityError:
                # Another request stored the same (pair, date) first.
                writer.rollback()
                logger.debug(
                    f"fx_rate_exists: {fx.base}/{fx.quote} "
                    f"on {fx.rate_date.isoformat()}"
                )
                return
        logger.info(
            f"fx_rate_stored: {fx.base}/{fx.quote}={fx.rate} "
            f"date={fx.rate_date.isoformat()} provider={fx.provider}"
        )


def _fetch_frankfurter_quote(
    base: str, quote: str, on_date: date, *, timeout: float
) -> FxQuote:
    url = f"https://api.frankfurter.app/{on_date.isoformat()}?from={base}&to={quote}"
    req = Request(url, headers={"Accept": "application/json"})
    fetched_at = datetime.now(timezone.utc)
    try:
        with urlopen(req, timeout=timeout) as resp:
            payload = json.loads(resp.read().decode("utf-8"))
    except (URLError, TimeoutError, json.JSONDecodeError) as exc:
        raise UpstreamUnavailableError(
            f"Failed to fetch FX rate {base}/{quote} from Frankfurter for {on_date}"
        ) from exc

    try:
        rate_value = payload["rates"][quote]
        effective_date = date.fromisoformat(payload["date"])
    except (KeyError, TypeError, ValueError) as exc:
        raise UpstreamUnavailableError("Unexpected FX provider response") from exc

    return FxQuote(
        provider="frankfurter",
        base=base,
        quote=quote,
        rate=Decimal(str(rate_value)),
        rate_date=effective_date,
        fetched_at=fetched_at,
    )
