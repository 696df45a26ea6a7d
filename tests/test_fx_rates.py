from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

import fx_rates
from config import Settings, get_settings
from database import Base
from errors import UpstreamUnavailableError
from fx_rates import FxQuote, FxRateService, micros_to_rate, rate_to_micros
from models import ExchangeRate


def _settings(**overrides) -> Settings:
    values = {"database_url": "sqlite:///:memory:", "fx_provider": "none"}
    values.update(overrides)
    return Settings(**values)


def test_micros_round_trip_keeps_six_places() -> None:
    assert rate_to_micros(Decimal("4.3215678")) == 4_321_568
    assert micros_to_rate(4_321_568) == Decimal("4.321568")


def test_same_currency_is_identity() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        assert FxRateService(session, _settings()).get_rate("pln", "PLN") == 1


def test_recent_stored_rate_is_used_without_provider() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = FxRateService(session, _settings())
        service.store_rate("EUR", "PLN", Decimal("4.31"), date(2024, 3, 1))

        # Friday's rate still covers the following Monday.
        assert service.get_rate("EUR", "PLN", date(2024, 3, 4)) == Decimal("4.31")
        assert service.get_rate("EUR", "PLN", date(2024, 2, 28)) is None
        assert service.get_rate("USD", "PLN", date(2024, 3, 4)) is None


def test_provider_quote_is_marked_up_and_stored(monkeypatch) -> None:
    calls = []

    def fake_fetch(base, quote, on_date, *, timeout):
        calls.append((base, quote, on_date, timeout))
        return FxQuote(
            provider="frankfurter",
            base=base,
            quote=quote,
            rate=Decimal("4.0"),
            rate_date=on_date,
            fetched_at=datetime(2024, 5, 6, tzinfo=timezone.utc),
        )

    monkeypatch.setattr(fx_rates, "_fetch_frankfurter_quote", fake_fetch)
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = FxRateService(
            session,
            _settings(fx_provider="frankfurter", fx_markup_bps=50, fx_timeout_secs=2.0),
        )
        rate = service.get_rate("EUR", "PLN", date(2024, 5, 6))
        assert rate == Decimal("3.98")

        # Second lookup is served from the table.
        assert service.get_rate("EUR", "PLN", date(2024, 5, 6)) == Decimal("3.98")
        assert calls == [("EUR", "PLN", date(2024, 5, 6), 2.0)]

        stored = session.scalars(select(ExchangeRate)).all()
        assert [(r.base, r.quote, r.rate_micros) for r in stored] == [
            ("EUR", "PLN", 3_980_000)
        ]


def test_provider_failure_raises_upstream_error(monkeypatch) -> None:
    def failing_fetch(base, quote, on_date, *, timeout):
        raise UpstreamUnavailableError("Frankfurter unreachable")

    monkeypatch.setattr(fx_rates, "_fetch_frankfurter_quote", failing_fetch)
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = FxRateService(session, _settings(fx_provider="frankfurter"))
        with pytest.raises(UpstreamUnavailableError):
            service.get_rate("EUR", "PLN", date(2024, 5, 6))


def test_unknown_provider_is_rejected() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = FxRateService(session, _settings(fx_provider="ecb-scraper"))
        with pytest.raises(UpstreamUnavailableError, match="ecb-scraper"):
            service.get_rate("EUR", "PLN", date(2024, 5, 6))


def test_storing_same_pair_and_date_twice_keeps_first() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = FxRateService(session, _settings())
        service.store_rate("EUR", "PLN", Decimal("4.30"), date(2024, 1, 2))
        service.store_rate("EUR", "PLN", Decimal("4.40"), date(2024, 1, 2))

        assert service.get_rate("EUR", "PLN", date(2024, 1, 2)) == Decimal("4.3")
        assert len(session.scalars(select(ExchangeRate)).all()) == 1


def test_unreachable_rate_table_raises_upstream_error() -> None:
    # Schema never created: the driver reports the table as missing.
    with Session(create_engine("sqlite:///:memory:")) as session:
        service = FxRateService(session, _settings())
        with pytest.raises(UpstreamUnavailableError):
            service.get_rate("EUR", "PLN", date(2024, 5, 6))
        with pytest.raises(UpstreamUnavailableError):
            service.store_rate("EUR", "PLN", Decimal("4.30"), date(2024, 5, 6))


def test_provider_defaults_agree(monkeypatch, tmp_path) -> None:
    monkeypatch.delenv("PNL_FX_PROVIDER", raising=False)
    monkeypatch.setenv("PNL_DATA_DIR", str(tmp_path))
    get_settings.cache_clear()
    try:
        assert get_settings().fx_provider == "frankfurter"
    finally:
        get_settings.cache_clear()
    assert Settings(database_url="sqlite://").fx_provider == "frankfurter"
