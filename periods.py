import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo


class ReportPeriod(str, Enum):
    day = "day"
    week = "week"
    month = "month"
    year = "year"


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime


def local_now(timezone: str) -> datetime:
    return datetime.now(ZoneInfo(timezone)).replace(tzinfo=None)


def to_local_naive(value: datetime, timezone: str) -> datetime:
    """Convert an aware datetime to naive local time; raises ValueError when the
    converted value falls outside the supported datetime range."""
    if value.tzinfo is None:
        return value
    try:
        return value.astimezone(ZoneInfo(timezone)).replace(tzinfo=None)
    except OverflowError as exc:
        raise ValueError(f"Datetime out of range: {value.isoformat()}") from exc


def shift_months(value: datetime, months: int) -> datetime:
    index = value.year * 12 + (value.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def parse_boundary(value: str, *, end: bool, timezone: str = "UTC") -> datetime:
    """Parse a ``YYYY-MM-DD`` date or an ISO datetime into a naive local datetime.

    A bare date used as an end boundary covers the whole day.
    """
    value = value.strip()
    if len(value) == 10:
        day = date.fromisoformat(value)
        return datetime.combine(day, time.max if end else time.min)
    return to_local_naive(datetime.fromisoformat(value), timezone)


def parse_period(value: Optional[str]) -> ReportPeriod:
    if not value:
        return ReportPeriod.month
    try:
        return ReportPeriod(value.strip().lower())
    except ValueError as exc:
        raise ValueError(
            "Period must be one of: day, week, month, year"
        ) from exc


def default_start(period: ReportPeriod, end: datetime) -> datetime:
    if period == ReportPeriod.day:
        return end - timedelta(days=1)
    if period == ReportPeriod.week:
        return end - timedelta(days=7)
    if period == ReportPeriod.month:
        return shift_months(end, -1)
    if period == ReportPeriod.year:
        return shift_months(end, -12)
    raise ValueError(f"Unsupported period: {period}")


def resolve_report_range(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    now: datetime,
    timezone: str = "UTC",
) -> tuple[ReportPeriod, DateRange]:
    report_period = parse_period(period)
    try:
        end_at = parse_boundary(end, end=True, timezone=timezone) if end else now
        start_at = (
            parse_boundary(start, end=False, timezone=timezone)
            if start
            else default_start(report_period, end_at)
        )
    except (ValueError, OverflowError) as exc:
        raise ValueError("Dates must be YYYY-MM-DD or ISO 8601 datetimes") from exc
    if start_at > end_at:
        raise ValueError("Start date must be before end date")
    return report_period, DateRange(start_at, end_at)
