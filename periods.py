from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional

from config import Settings, get_settings
from errors import ValidationError


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime  # exclusive

    def contains(self, moment: datetime) -> bool:
        return self.start <= to_utc_naive(moment) < self.end


def validate_year(year: int, settings: Optional[Settings] = None) -> int:
    settings = settings or get_settings()
    if isinstance(year, bool) or not isinstance(year, int):
        raise ValidationError("Year must be an integer")
    if year < settings.min_year or year > settings.max_year:
        raise ValidationError(
            f"Year must be a number between {settings.min_year} and {settings.max_year}"
        )
    return year


def validate_month(month: int) -> int:
    if isinstance(month, bool) or not isinstance(month, int):
        raise ValidationError("Month must be an integer")
    if month < 1 or month > 12:
        raise ValidationError("Month must be a number between 1 and 12")
    return month


def to_utc_naive(moment: datetime) -> datetime:
    """Stored timestamps are naive UTC; aware values are converted first."""
    if moment.tzinfo is not None:
        return moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def year_period(year: int) -> Period:
    return Period(str(year), datetime(year, 1, 1), datetime(year + 1, 1, 1))


def month_period(year: int, month: int) -> Period:
    start = datetime(year, month, 1)
    if month == 12:
        end = datetime(year + 1, 1, 1)
    else:
        end = datetime(year, month + 1, 1)
    return Period(f"{year}-{month:02d}", start, end)


def reporting_month(moment: datetime) -> tuple[int, int]:
    utc = to_utc_naive(moment)
    return utc.year, utc.month


def rate_date(moment: datetime) -> date:
    return to_utc_naive(moment).date()
