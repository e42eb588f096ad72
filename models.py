from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class MovementType(str, Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        SAEnum(UserRole), nullable=False, default=UserRole.USER
    )
    email_verified: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    movements: Mapped[list["Movement"]] = relationship(
        "Movement", back_populates="user"
    )

    __table_args__ = (UniqueConstraint("email", name="uq_users_email"),)


class Movement(Base, TimestampMixin):
    __tablename__ = "movements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[MovementType] = mapped_column(SAEnum(MovementType), nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="movements")

    __table_args__ = (
        Index("ix_movements_user_date", "user_id", "date"),
        Index("ix_movements_type_date", "type", "date"),
        CheckConstraint("amount_cents > 0", name="ck_movements_amount_positive"),
    )
