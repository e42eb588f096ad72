from __future__ import annotations

import logging
import math
from datetime import datetime, time
from typing import Optional

from auth import (
    AuthenticatedUser,
    RequestContext,
    can_edit_user,
    prevent_self_role_change,
)
from balance import cents_to_units, daily_history, summarize
from config import Settings
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from models import Movement, MovementType, User, UserRole
from periods import local_now, parse_boundary, resolve_report_range
from reports import build_report
from repository import MovementFilters, Repository
from schemas import (
    BalanceOut,
    ChartDataset,
    HistoryPointOut,
    MovementOut,
    Pagination,
    ReportSummaryOut,
    UserOut,
    UserRef,
)
from validation import validate_movement, validate_user_update

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_DAYS = 30
MAX_HISTORY_DAYS = 366
RECENT_MOVEMENTS_LIMIT = 10

CHART_STYLES = {
    "income": ("Income", "#10b981", "rgba(16, 185, 129, 0.1)"),
    "expense": ("Expense", "#ef4444", "rgba(239, 68, 68, 0.1)"),
    "balance": ("Cumulative Balance", "#3b82f6", "rgba(59, 130, 246, 0.1)"),
}


def paginate(total: int, page: int, limit: int) -> Pagination:
    return Pagination(
        page=page, limit=limit, total=total, total_pages=math.ceil(total / limit)
    )


def parse_user_ids(value: Optional[str]) -> Optional[list[int]]:
    """``None``/``"all"`` means every user, otherwise a comma separated id list."""
    if value is None or value.strip().lower() in ("", "all"):
        return None
    ids: list[int] = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.append(int(part))
        except ValueError as exc:
            raise ValidationError(
                "userIds must be 'all' or a comma separated list of ids",
                details=[{"field": "userIds", "message": f"Invalid id: {part}"}],
            ) from exc
    return ids


def movement_out(movement: Movement, *, include_user: bool = False) -> MovementOut:
    return MovementOut(
        id=movement.id,
        user_id=movement.user_id,
        amount=cents_to_units(movement.amount_cents),
        description=movement.description,
        type=movement.type,
        date=movement.date,
        created_at=movement.created_at,
        user=UserRef.model_validate(movement.user)
        if include_user and movement.user
        else None,
    )


def scoped_user_ids(
    user: AuthenticatedUser, requested: Optional[list[int]]
) -> Optional[list[int]]:
    """Owner filter a caller is allowed to query; ``None`` means all owners."""
    if user.role == UserRole.ADMIN:
        return requested
    if user.role == UserRole.USER:
        return [user.id]
    raise ValueError(f"Unknown role: {user.role}")


class MovementService:
    def __init__(
        self, repository: Repository, context: RequestContext, settings: Settings
    ) -> None:
        self.repository = repository
        self.context = context
        self.settings = settings

    def list(
        self,
        *,
        page: int = 1,
        limit: int = 10,
        type: Optional[MovementType] = None,
        user_id: Optional[int] = None,
    ) -> dict[str, object]:
        requested = [user_id] if user_id is not None else None
        filters = MovementFilters(
            user_ids=scoped_user_ids(self.context.user, requested), type=type
        )
        is_admin = self.context.user.is_admin
        items = self.repository.find_movements(
            filters,
            order="created_desc" if is_admin else "date_desc",
            offset=(page - 1) * limit,
            limit=limit,
        )
        total = self.repository.count_movements(filters)
        return {
            "movements": [movement_out(m, include_user=is_admin) for m in items],
            "pagination": paginate(total, page, limit),
        }

    def create(self, payload: object) -> MovementOut:
        now = local_now(self.settings.timezone)
        result = validate_movement(payload, now=now, timezone=self.settings.timezone)
        if not result.success:
            raise ValidationError(details=result.error_dicts())
        movement = self.repository.create_movement(self.context.user.id, result.data)
        logger.info(
            f"movement_created: id={movement.id} user_id={movement.user_id} "
            f"type={movement.type.value} amount_cents={movement.amount_cents}"
        )
        return movement_out(movement)

    def balance(self, user_ids: Optional[list[int]] = None) -> BalanceOut:
        filters = MovementFilters(user_ids=scoped_user_ids(self.context.user, user_ids))
        totals = summarize(self.repository.find_movements(filters))
        return BalanceOut(
            current_balance=cents_to_units(totals.current_balance_cents),
            total_income=cents_to_units(totals.total_income_cents),
            total_expense=cents_to_units(totals.total_expense_cents),
            movement_count=totals.movement_count,
            last_movement_date=totals.last_movement_date,
        )

    def history(
        self, days: int = DEFAULT_HISTORY_DAYS, user_ids: Optional[list[int]] = None
    ) -> list[HistoryPointOut]:
        if days < 0 or days > MAX_HISTORY_DAYS:
            raise ValidationError(
                details=[
                    {
                        "field": "days",
                        "message": f"days must be between 0 and {MAX_HISTORY_DAYS}",
                    }
                ]
            )
        today = local_now(self.settings.timezone).date()
        filters = MovementFilters(
            user_ids=scoped_user_ids(self.context.user, user_ids),
            end=datetime.combine(today, time.max),
        )
        movements = self.repository.find_movements(filters, order="date_asc")
        return [
            HistoryPointOut(
                date=point.day.isoformat(), balance=cents_to_units(point.balance_cents)
            )
            for point in daily_history(movements, days, today)
        ]


class UserService:
    def __init__(self, repository: Repository, context: RequestContext) -> None:
        self.repository = repository
        self.context = context

    def list(
        self, *, page: int = 1, limit: int = 10, search: Optional[str] = None
    ) -> dict[str, object]:
        users = self.repository.list_users(
            search, offset=(page - 1) * limit, limit=limit
        )
        total = self.repository.count_users(search)
        return {
            "users": [UserOut.model_validate(user) for user in users],
            "pagination": paginate(total, page, limit),
        }

    def _get_user(self, user_id: int) -> User:
        user = self.repository.find_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def get(self, user_id: int) -> dict[str, object]:
        user = self._get_user(user_id)
        filters = MovementFilters(user_ids=[user.id])
        recent = self.repository.find_movements(
            filters, order="created_desc", limit=RECENT_MOVEMENTS_LIMIT
        )
        return {
            "user": UserOut.model_validate(user),
            "movements": [movement_out(m) for m in recent],
            "movement_count": self.repository.count_movements(filters),
        }

    def me(self) -> UserOut:
        return UserOut.model_validate(self._get_user(self.context.user.id))

    def _apply_update(
        self, user_id: int, payload: object, restrictions: tuple[str, ...]
    ) -> UserOut:
        result = validate_user_update(payload)
        if not result.success:
            raise ValidationError(details=result.error_dicts())
        changes = result.data.changes()

        try:
            prevent_self_role_change(user_id, self.context.user, changes.get("role"))
        except ValidationError:
            logger.warning(f"user_update: blocked self role change user_id={user_id}")
            raise
        # unchanged role on a restricted edit is a no-op
        if "role" in restrictions:
            changes.pop("role", None)

        self._get_user(user_id)
        email = changes.get("email")
        if email:
            existing = self.repository.find_user_by_email(str(email))
            if existing and existing.id != user_id:
                raise ConflictError("Email is already in use by another user")

        user = self.repository.update_user(user_id, changes)
        logger.info(
            f"user_updated: id={user.id} by={self.context.user.id} "
            f"fields={','.join(sorted(changes)) or '-'}"
        )
        return UserOut.model_validate(user)

    def update(self, user_id: int, payload: object) -> UserOut:
        permission = can_edit_user(self.context.user, user_id)
        if not permission.allowed:
            raise AuthorizationError(permission.error)
        return self._apply_update(user_id, payload, permission.restrictions)

    def update_profile(self, payload: object) -> UserOut:
        return self.update(self.context.user.id, payload)


class ReportService:
    def __init__(self, repository: Repository, settings: Settings) -> None:
        self.repository = repository
        self.settings = settings

    def summary(
        self,
        *,
        period: Optional[str] = None,
        user_ids: Optional[list[int]] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReportSummaryOut:
        now = now or local_now(self.settings.timezone)
        try:
            report_period, date_range = resolve_report_range(
                period, start, end, now=now, timezone=self.settings.timezone
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        movements = self.repository.find_movements(
            MovementFilters(user_ids=user_ids, start=date_range.start, end=date_range.end),
            order="date_asc",
        )
        try:
            report = build_report(
                movements,
                report_period,
                date_range,
                max_buckets=self.settings.max_report_buckets,
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        series = {
            "income": [cents_to_units(v) for v in report.income_series],
            "expense": [cents_to_units(v) for v in report.expense_series],
            "balance": [cents_to_units(v) for v in report.balance_series],
        }
        datasets = []
        for name, (label, border, background) in CHART_STYLES.items():
            datasets.append(
                ChartDataset(
                    label=label,
                    data=series[name],
                    border_color=border,
                    background_color=background,
                )
            )
        totals = report.totals
        return ReportSummaryOut(
            period=report_period.value,
            start=report.range.start,
            end=report.range.end,
            labels=report.labels,
            income=series["income"],
            expense=series["expense"],
            balance=series["balance"],
            datasets=datasets,
            total_income=cents_to_units(totals.total_income_cents),
            total_expense=cents_to_units(totals.total_expense_cents),
            total_balance=cents_to_units(totals.current_balance_cents),
            movement_count=totals.movement_count,
        )

    def export_movements(
        self,
        *,
        user_ids: Optional[list[int]] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> list[Movement]:
        tz = self.settings.timezone
        try:
            start_at = parse_optional_boundary(start, end=False, timezone=tz)
            end_at = parse_optional_boundary(end, end=True, timezone=tz)
        except ValueError as exc:
            raise ValidationError(
                "Dates must be YYYY-MM-DD or ISO 8601 datetimes"
            ) from exc
        if start_at and end_at and start_at > end_at:
            raise ValidationError("Start date must be before end date")
        movements = self.repository.find_movements(
            MovementFilters(user_ids=user_ids, start=start_at, end=end_at),
            order="date_desc",
        )
        logger.info(f"report_export: movements={len(movements)}")
        return movements


def parse_optional_boundary(
    value: Optional[str], *, end: bool, timezone: str
) -> Optional[datetime]:
    if not value:
        return None
    return parse_boundary(value, end=end, timezone=timezone)
