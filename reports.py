from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

from balance import BalanceSummary, summarize
from models import Movement, MovementType
from periods import DateRange, ReportPeriod, shift_months


class Granularity(str, Enum):
    hour = "hour"
    day = "day"
    month = "month"


GRANULARITY_BY_PERIOD = {
    ReportPeriod.day: Granularity.hour,
    ReportPeriod.week: Granularity.day,
    ReportPeriod.month: Granularity.day,
    ReportPeriod.year: Granularity.month,
}

LABEL_FORMATS = {
    ReportPeriod.day: "%d %b %H:00",
    ReportPeriod.week: "%a %d %b",
    ReportPeriod.month: "%d %b",
    ReportPeriod.year: "%b %Y",
}


@dataclass(frozen=True, order=True)
class BucketKey:
    granularity: Granularity
    offset: int


@dataclass
class Bucket:
    key: BucketKey
    start: datetime
    label: str
    income_cents: int = 0
    expense_cents: int = 0

    @property
    def net_cents(self) -> int:
        return self.income_cents - self.expense_cents


@dataclass
class ReportSummary:
    period: ReportPeriod
    range: DateRange
    buckets: list[Bucket]
    totals: BalanceSummary
    balance_series: list[int] = field(default_factory=list)

    @property
    def labels(self) -> list[str]:
        return [bucket.label for bucket in self.buckets]

    @property
    def income_series(self) -> list[int]:
        return [bucket.income_cents for bucket in self.buckets]

    @property
    def expense_series(self) -> list[int]:
        return [bucket.expense_cents for bucket in self.buckets]


def floor_to(value: datetime, granularity: Granularity) -> datetime:
    if granularity == Granularity.hour:
        return value.replace(minute=0, second=0, microsecond=0)
    if granularity == Granularity.day:
        return value.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity == Granularity.month:
        return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    raise ValueError(f"Unsupported granularity: {granularity}")


def bucket_key(value: datetime, origin: datetime, granularity: Granularity) -> BucketKey:
    if granularity == Granularity.hour:
        delta = floor_to(value, granularity) - floor_to(origin, granularity)
        offset = int(delta.total_seconds() // 3600)
    elif granularity == Granularity.day:
        offset = (value.date() - origin.date()).days
    elif granularity == Granularity.month:
        offset = (value.year * 12 + value.month) - (origin.year * 12 + origin.month)
    else:
        raise ValueError(f"Unsupported granularity: {granularity}")
    return BucketKey(granularity, offset)


def bucket_start(origin: datetime, key: BucketKey) -> datetime:
    base = floor_to(origin, key.granularity)
    if key.granularity == Granularity.hour:
        return base + timedelta(hours=key.offset)
    if key.granularity == Granularity.day:
        return base + timedelta(days=key.offset)
    return shift_months(base, key.offset)


def bucket_count(date_range: DateRange, granularity: Granularity) -> int:
    return bucket_key(date_range.end, date_range.start, granularity).offset + 1


def build_buckets(
    period: ReportPeriod, date_range: DateRange, *, max_buckets: Optional[int] = None
) -> list[Bucket]:
    granularity = GRANULARITY_BY_PERIOD[period]
    count = bucket_count(date_range, granularity)
    if max_buckets is not None and count > max_buckets:
        raise ValueError(
            f"Range too large for period '{period.value}': "
            f"{count} buckets exceeds the limit of {max_buckets}"
        )
    fmt = LABEL_FORMATS[period]
    buckets = []
    for offset in range(count):
        key = BucketKey(granularity, offset)
        start = bucket_start(date_range.start, key)
        buckets.append(Bucket(key=key, start=start, label=start.strftime(fmt)))
    return buckets


def build_report(
    movements: Iterable[Movement],
    period: ReportPeriod,
    date_range: DateRange,
    *,
    max_buckets: Optional[int] = None,
) -> ReportSummary:
    """Group movements into period buckets with a running balance per bucket.

    Movements outside ``date_range`` are left out of the buckets and the totals.
    """
    buckets = build_buckets(period, date_range, max_buckets=max_buckets)
    granularity = GRANULARITY_BY_PERIOD[period]
    by_key = {bucket.key: bucket for bucket in buckets}

    in_range: list[Movement] = []
    for movement in movements:
        if not date_range.start <= movement.date <= date_range.end:
            continue
        bucket = by_key[bucket_key(movement.date, date_range.start, granularity)]
        if movement.type == MovementType.INCOME:
            bucket.income_cents += movement.amount_cents
        else:
            bucket.expense_cents += movement.amount_cents
        in_range.append(movement)

    running = 0
    balance_series: list[int] = []
    for bucket in buckets:
        running += bucket.net_cents
        balance_series.append(running)

    return ReportSummary(
        period=period,
        range=date_range,
        buckets=buckets,
        totals=summarize(in_range),
        balance_series=balance_series,
    )
