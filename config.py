import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        reporting_currency: str = "PLN",
        min_year: int = 2020,
        max_year: int = 2030,
        fx_provider: str = "frankfurter",
        fx_markup_bps: int = 0,
        fx_timeout_secs: float = 5.0,
        log_level: str = "INFO",
    ) -> None:
        self.database_url = database_url
        self.reporting_currency = reporting_currency.upper()
        self.min_year = min_year
        self.max_year = max_year
        self.fx_provider = fx_provider
        self.fx_markup_bps = fx_markup_bps
        self.fx_timeout_secs = fx_timeout_secs
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("PNL_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "pnl.db"
    database_url = os.getenv("PNL_DATABASE_URL", f"sqlite:///{default_db}")
    reporting_currency = os.getenv("PNL_REPORTING_CURRENCY", "PLN")
    min_year = int(os.getenv("PNL_MIN_YEAR", "2020"))
    max_year = int(os.getenv("PNL_MAX_YEAR", "2030"))
    fx_provider = os.getenv("PNL_FX_PROVIDER", "frankfurter")
    fx_markup_bps = int(os.getenv("PNL_FX_MARKUP_BPS", "0"))
    fx_timeout_secs = float(os.getenv("PNL_FX_TIMEOUT_SECS", "5"))
    log_level = os.getenv("PNL_LOG_LEVEL", "INFO")
    return Settings(
        database_url=database_url,
        reporting_currency=reporting_currency,
        min_year=min_year,
        max_year=max_year,
        fx_provider=fx_provider,
        fx_markup_bps=fx_markup_bps,
        fx_timeout_secs=fx_timeout_secs,
        log_level=log_level,
    )
