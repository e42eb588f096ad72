"""Persistence access for movements and users.

Services depend on the ``Repository`` protocol; ``SqlRepository`` is the
SQLAlchemy implementation built once per process and handed to the app.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import joinedload, sessionmaker

from database import session_scope
from errors import ConflictError, NotFoundError
from models import Movement, MovementType, User
from periods import local_now
from schemas import MovementIn, UserIn


@dataclass
class MovementFilters:
    user_ids: Optional[list[int]] = None
    type: Optional[MovementType] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


# SQLite INTEGER range; larger ids can never match a stored row.
MAX_RECORD_ID = 2**63 - 1


def _storable_id(value: int) -> bool:
    return -MAX_RECORD_ID <= value <= MAX_RECORD_ID


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


MOVEMENT_ORDERINGS = {
    "date_desc": (Movement.date.desc(), Movement.id.desc()),
    "date_asc": (Movement.date.asc(), Movement.id.asc()),
    "created_desc": (Movement.created_at.desc(), Movement.id.desc()),
}


class Repository(Protocol):
    def find_movements(
        self,
        filters: MovementFilters,
        *,
        order: str = "date_desc",
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[Movement]: ...

    def count_movements(self, filters: MovementFilters) -> int: ...

    def create_movement(self, user_id: int, data: MovementIn) -> Movement: ...

    def find_user(self, user_id: int) -> Optional[User]: ...

    def find_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(
        self, search: Optional[str] = None, *, offset: int = 0, limit: int = 10
    ) -> list[User]: ...

    def count_users(self, search: Optional[str] = None) -> int: ...

    def create_user(self, data: UserIn) -> User: ...

    def update_user(self, user_id: int, changes: dict[str, object]) -> User: ...


class SqlRepository:
    def __init__(self, session_factory: sessionmaker, timezone: str = "UTC") -> None:
        self.session_factory = session_factory
        self.timezone = timezone

    def _stamp(self, record: Movement | User) -> None:
        now = local_now(self.timezone)
        if record.created_at is None:
            record.created_at = now
        record.updated_at = now

    @staticmethod
    def _movement_conditions(filters: MovementFilters) -> list:
        conditions = []
        if filters.user_ids is not None:
            user_ids = [uid for uid in filters.user_ids if _storable_id(uid)]
            conditions.append(Movement.user_id.in_(user_ids))
        if filters.type:
            conditions.append(Movement.type == filters.type)
        if filters.start:
            conditions.append(Movement.date >= filters.start)
        if filters.end:
            conditions.append(Movement.date <= filters.end)
        return conditions

    def find_movements(
        self,
        filters: MovementFilters,
        *,
        order: str = "date_desc",
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[Movement]:
        if order not in MOVEMENT_ORDERINGS:
            raise ValueError(f"Unknown movement ordering: {order}")
        stmt = (
            select(Movement)
            .options(joinedload(Movement.user))
            .where(*self._movement_conditions(filters))
            .order_by(*MOVEMENT_ORDERINGS[order])
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with session_scope(self.session_factory) as session:
            return list(session.scalars(stmt).all())

    def count_movements(self, filters: MovementFilters) -> int:
        stmt = select(func.count(Movement.id)).where(
            *self._movement_conditions(filters)
        )
        with session_scope(self.session_factory) as session:
            return int(session.execute(stmt).scalar_one() or 0)

    def create_movement(self, user_id: int, data: MovementIn) -> Movement:
        with session_scope(self.session_factory) as session:
            owner = session.get(User, user_id)
            if not owner:
                raise NotFoundError("User not found")
            movement = Movement(
                user=owner,
                amount_cents=data.amount_cents,
                description=data.description,
                type=data.type,
                date=data.date,
            )
            self._stamp(movement)
            session.add(movement)
            session.flush()
            return movement

    def find_user(self, user_id: int) -> Optional[User]:
        if not _storable_id(user_id):
            return None
        with session_scope(self.session_factory) as session:
            return session.get(User, user_id)

    def find_user_by_email(self, email: str) -> Optional[User]:
        with session_scope(self.session_factory) as session:
            return session.scalar(select(User).where(User.email == email))

    @staticmethod
    def _user_conditions(search: Optional[str]) -> list:
        if not search or not search.strip():
            return []
        like = f"%{_escape_like(search.strip().lower())}%"
        return [
            or_(
                func.lower(User.name).like(like, escape="\\"),
                func.lower(User.email).like(like, escape="\\"),
            )
        ]

    def list_users(
        self, search: Optional[str] = None, *, offset: int = 0, limit: int = 10
    ) -> list[User]:
        stmt = (
            select(User)
            .where(*self._user_conditions(search))
            .order_by(User.created_at.desc(), User.id.desc())
            .offset(offset)
            .limit(limit)
        )
        with session_scope(self.session_factory) as session:
            return list(session.scalars(stmt).all())

    def count_users(self, search: Optional[str] = None) -> int:
        stmt = select(func.count(User.id)).where(*self._user_conditions(search))
        with session_scope(self.session_factory) as session:
            return int(session.execute(stmt).scalar_one() or 0)

    def create_user(self, data: UserIn) -> User:
        try:
            with session_scope(self.session_factory) as session:
                user = User(
                    name=data.name,
                    email=data.email,
                    role=data.role,
                    email_verified=data.email_verified,
                )
                self._stamp(user)
                session.add(user)
                session.flush()
                session.refresh(user)
                return user
        except IntegrityError as exc:
            raise ConflictError("Email is already in use by another user") from exc

    def update_user(self, user_id: int, changes: dict[str, object]) -> User:
        if not _storable_id(user_id):
            raise NotFoundError("User not found")
        try:
            with session_scope(self.session_factory) as session:
                user = session.get(User, user_id)
                if not user:
                    raise NotFoundError("User not found")
                for name, value in changes.items():
                    setattr(user, name, value)
                self._stamp(user)
                session.flush()
                session.refresh(user)
                return user
        except IntegrityError as exc:
            raise ConflictError("Email is already in use by another user") from exc
