from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import MovementType, UserRole

MAX_MOVEMENT_AMOUNT = Decimal("1000000")
EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"


class MovementIn(BaseModel):
    amount: Decimal = Field(..., gt=0, le=MAX_MOVEMENT_AMOUNT, decimal_places=2)
    description: str = Field(..., min_length=1, max_length=255)
    type: MovementType
    date: Optional[datetime] = None

    @property
    def amount_cents(self) -> int:
        return int((self.amount * 100).quantize(Decimal("1")))


class UserUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255, pattern=EMAIL_PATTERN)
    role: Optional[UserRole] = None

    @field_validator("name", "email", "role", mode="before")
    @classmethod
    def reject_explicit_null(cls, value):
        if value is None:
            raise ValueError("Value may not be null")
        return value

    def changes(self) -> dict[str, object]:
        return self.model_dump(exclude_unset=True)


class UserIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    role: UserRole = UserRole.USER
    email_verified: bool = False


class UserRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    role: UserRole
    email_verified: bool
    created_at: datetime
    updated_at: datetime


class MovementOut(BaseModel):
    id: int
    user_id: int
    amount: float
    description: str
    type: MovementType
    date: datetime
    created_at: datetime
    user: Optional[UserRef] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class BalanceOut(BaseModel):
    current_balance: float
    total_income: float
    total_expense: float
    movement_count: int
    last_movement_date: Optional[datetime]


class HistoryPointOut(BaseModel):
    date: str
    balance: float


class ChartDataset(BaseModel):
    label: str
    data: list[float]
    border_color: str
    background_color: str


class ReportSummaryOut(BaseModel):
    period: str
    start: datetime
    end: datetime
    labels: list[str]
    income: list[float]
    expense: list[float]
    balance: list[float]
    datasets: list[ChartDataset]
    total_income: float
    total_expense: float
    total_balance: float
    movement_count: int
