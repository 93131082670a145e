from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import PaymentMethod, TransactionStatus, TransactionType

FALLBACK_CATEGORY_ID = "outros"

# R$ 10 billion, far below the 64-bit integer column limit
MAX_AMOUNT_CENTS = 10**12


class TransactionIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    # magnitude only; the sign follows ``type``
    amount_cents: int = Field(..., ge=1, le=MAX_AMOUNT_CENTS)
    type: TransactionType
    date: date
    category_id: str = Field(..., min_length=1, max_length=36)
    method: str = Field(..., min_length=1, max_length=40)
    is_scheduled: bool = False
    status: Optional[TransactionStatus] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    name: str
    description: str = ""
    amount_cents: int
    type: TransactionType
    date: date
    category_id: str = FALLBACK_CATEGORY_ID
    method: str
    is_scheduled: bool = False
    status: TransactionStatus = TransactionStatus.paid
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "TransactionOut":
        return cls(
            id=row.id,
            user_id=row.user_id,
            name=row.name,
            description=row.notes or "",
            amount_cents=row.amount_cents,
            type=row.type,
            date=row.date,
            category_id=row.category_id or FALLBACK_CATEGORY_ID,
            method=row.payment_method,
            is_scheduled=bool(row.is_scheduled),
            status=row.status or TransactionStatus.paid,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @property
    def counts_as_settled(self) -> bool:
        return not self.is_scheduled or self.status == TransactionStatus.paid


class StatusChangeIn(BaseModel):
    status: TransactionStatus


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = Field(None, pattern=r"^#[0-9A-Fa-f]{6}$")
    icon: Optional[str] = Field(None, max_length=50)


class CategoryUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    color: Optional[str] = Field(None, pattern=r"^#[0-9A-Fa-f]{6}$")
    icon: Optional[str] = Field(None, max_length=50)


class CategoryOut(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    name: str
    color: str
    icon: Optional[str] = None


class NotificationIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1, max_length=40)
    related_id: Optional[str] = None


class NotificationOut(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    title: str
    message: str
    type: str
    is_read: bool = False
    related_id: Optional[str] = None
    created_at: datetime


class SignUpIn(BaseModel):
    full_name: str = Field(..., min_length=3, max_length=120)
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=255)
    password: str = Field(..., min_length=6)


class SignInIn(BaseModel):
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=255)
    password: str = Field(..., min_length=6)


class ResetPasswordIn(BaseModel):
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=255)


class UpdateUserIn(BaseModel):
    reset_token: Optional[str] = None
    password: Optional[str] = Field(None, min_length=6)
    full_name: Optional[str] = Field(None, min_length=3, max_length=120)
    avatar_url: Optional[str] = Field(None, max_length=500)


class ProfileUpdateIn(BaseModel):
    full_name: Optional[str] = Field(None, min_length=3, max_length=120)
    avatar_url: Optional[str] = Field(None, max_length=500)


class ProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None


class SessionOut(BaseModel):
    access_token: str
    user: ProfileOut


class SeriesPoint(BaseModel):
    name: str
    income: int = 0
    expenses: int = 0


class CategorySlice(BaseModel):
    # raw category id; names are resolved by the caller
    name: str
    value: int


class PeriodAverage(BaseModel):
    income: float = 0.0
    expenses: float = 0.0
    balance: float = 0.0


class PeriodAverages(BaseModel):
    daily: PeriodAverage = Field(default_factory=PeriodAverage)
    weekly: PeriodAverage = Field(default_factory=PeriodAverage)
    monthly: PeriodAverage = Field(default_factory=PeriodAverage)


class TopCategory(BaseModel):
    category_id: str = ""
    name: str
    amount: int = 0
    percentage: float = 0.0


class CategoryChange(BaseModel):
    category_id: str = ""
    name: str
    percentage: float = 0.0


class AnalysisOut(BaseModel):
    period_data: PeriodAverages
    top_expense_category: TopCategory
    biggest_saving: CategoryChange
    biggest_increase: CategoryChange


class DashboardOut(BaseModel):
    balance: int = 0
    income: int = 0
    expenses: int = 0
    income_change: float = 0.0
    expenses_change: float = 0.0
    monthly: list[SeriesPoint] = Field(default_factory=list)
    weekly: list[SeriesPoint] = Field(default_factory=list)
    daily: list[SeriesPoint] = Field(default_factory=list)
    categories: list[CategorySlice] = Field(default_factory=list)
    pending_count: int = 0


PAYMENT_METHOD_CHOICES = [m.value for m in PaymentMethod]
