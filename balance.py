from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from models import Movement, MovementType


@dataclass(frozen=True)
class BalanceSummary:
    total_income_cents: int
    total_expense_cents: int
    movement_count: int
    last_movement_date: Optional[datetime]

    @property
    def current_balance_cents(self) -> int:
        return self.total_income_cents - self.total_expense_cents


@dataclass(frozen=True)
class DailyBalance:
    day: date
    balance_cents: int


def cents_to_units(cents: int) -> float:
    return cents / 100


def signed_amount(movement: Movement) -> int:
    if movement.type == MovementType.INCOME:
        return movement.amount_cents
    if movement.type == MovementType.EXPENSE:
        return -movement.amount_cents
    raise ValueError(f"Unknown movement type: {movement.type}")


def summarize(movements: Iterable[Movement]) -> BalanceSummary:
    income = 0
    expense = 0
    count = 0
    last: Optional[datetime] = None
    for movement in movements:
        count += 1
        if movement.type == MovementType.INCOME:
            income += movement.amount_cents
        elif movement.type == MovementType.EXPENSE:
            expense += movement.amount_cents
        else:
            raise ValueError(f"Unknown movement type: {movement.type}")
        if last is None or movement.date > last:
            last = movement.date
    return BalanceSummary(
        total_income_cents=income,
        total_expense_cents=expense,
        movement_count=count,
        last_movement_date=last,
    )


def daily_history(
    movements: Iterable[Movement], days: int, today: date
) -> list[DailyBalance]:
    """Cumulative balance for each day from ``today - days`` through ``today``.

    Movements dated before the window form the opening balance; movements
    after ``today`` are ignored.
    """
    if days < 0:
        raise ValueError("days must not be negative")
    start = today - timedelta(days=days)

    opening = 0
    net_by_day: dict[date, int] = defaultdict(int)
    for movement in movements:
        day = movement.date.date()
        if day < start:
            opening += signed_amount(movement)
        elif day <= today:
            net_by_day[day] += signed_amount(movement)

    out: list[DailyBalance] = []
    running = opening
    for offset in range(days + 1):
        day = start + timedelta(days=offset)
        running += net_by_day.get(day, 0)
        out.append(DailyBalance(day=day, balance_cents=running))
    return out
