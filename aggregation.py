"""Dashboard and analysis figures derived from a user's transactions.

Every function here is pure: the result depends only on the transactions
passed in and on the ``now``/``today`` argument, so the same inputs always
give the same output. Amounts are integer cents; an empty input yields zeros
and empty series, never an error.

Monthly series keep the seven most recent months that have data. The
averages divide by a fixed number of periods (6 months, 4 weeks, 30 days)
whatever the history actually covers, so they are an approximation for users
with less history than the window.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Sequence

from categories import CategoryRegistry
from dates import (
    add_months,
    as_utc,
    reference_instant,
    same_month,
    subtract_months,
    utcnow,
)
from models import TransactionType
from schemas import (
    AnalysisOut,
    CategoryChange,
    CategorySlice,
    DashboardOut,
    PeriodAverage,
    PeriodAverages,
    SeriesPoint,
    TopCategory,
    TransactionOut,
)
from status import pending_count, settled

MONTH_LABELS = [
    "Jan",
    "Fev",
    "Mar",
    "Abr",
    "Mai",
    "Jun",
    "Jul",
    "Ago",
    "Set",
    "Out",
    "Nov",
    "Dez",
]
WEEKDAY_LABELS = ["Dom", "Seg", "Ter", "Qua", "Qui", "Sex", "Sáb"]

MONTHLY_BUCKETS = 7
WEEKLY_WINDOW = timedelta(days=7)
FORECAST_WINDOW = timedelta(days=7)

AVERAGE_MONTHS = 6
AVERAGE_WEEKS = 4
AVERAGE_DAYS = 30


@dataclass(frozen=True)
class MonthTotals:
    balance: int = 0
    income: int = 0
    expenses: int = 0


def percentage_change(previous: float, current: float) -> float:
    """Relative change in percent. No previous value means no change (0)."""
    if previous == 0:
        return 0.0
    return ((current - previous) / abs(previous)) * 100


def _add(point: SeriesPoint, txn: TransactionOut) -> None:
    if txn.type == TransactionType.income:
        point.income += txn.amount_cents
    else:
        point.expenses += abs(txn.amount_cents)


def month_totals(
    transactions: Iterable[TransactionOut], year: int, month: int
) -> MonthTotals:
    balance = income = expenses = 0
    for txn in transactions:
        if not same_month(txn.date, year, month):
            continue
        balance += txn.amount_cents
        if txn.type == TransactionType.income:
            income += txn.amount_cents
        else:
            expenses += abs(txn.amount_cents)
    return MonthTotals(balance=balance, income=income, expenses=expenses)


def monthly_series(transactions: Sequence[TransactionOut]) -> list[SeriesPoint]:
    buckets: dict[tuple[int, int], SeriesPoint] = {}
    for txn in transactions:
        key = (txn.date.year, txn.date.month)
        if key not in buckets:
            label = f"{MONTH_LABELS[key[1] - 1]} {key[0]}"
            buckets[key] = SeriesPoint(name=label)
        _add(buckets[key], txn)
    ordered = [buckets[key] for key in sorted(buckets)]
    return ordered[-MONTHLY_BUCKETS:]


def weekly_series(
    transactions: Sequence[TransactionOut], now: datetime
) -> list[SeriesPoint]:
    """One slot per weekday (Sunday first) over a rolling week either side of now."""
    if not transactions:
        return []
    now = as_utc(now)
    start, end = now - WEEKLY_WINDOW, now + WEEKLY_WINDOW
    slots = [SeriesPoint(name=label) for label in WEEKDAY_LABELS]
    for txn in transactions:
        instant = reference_instant(txn.date)
        if start <= instant <= end:
            _add(slots[(txn.date.weekday() + 1) % 7], txn)
    return slots


def _hour_of(txn: TransactionOut) -> int:
    if txn.created_at is None:
        return 12
    return as_utc(txn.created_at).hour


def daily_series(
    transactions: Sequence[TransactionOut], now: datetime
) -> list[SeriesPoint]:
    """Hourly slots for today plus scheduled payments of the next seven days."""
    if not transactions:
        return []
    now = as_utc(now)
    today = now.date()
    forecast_end = now + FORECAST_WINDOW
    slots = [SeriesPoint(name=f"{hour:02d}:00") for hour in range(24)]
    for txn in transactions:
        hour = _hour_of(txn)
        instant = reference_instant(txn.date, hour)
        is_today = txn.date == today
        is_upcoming = txn.is_scheduled and now < instant <= forecast_end
        if is_today or is_upcoming:
            _add(slots[hour], txn)
    return slots


def category_breakdown(transactions: Iterable[TransactionOut]) -> list[CategorySlice]:
    totals: dict[str, int] = {}
    for txn in transactions:
        if txn.type != TransactionType.expense:
            continue
        totals[txn.category_id] = totals.get(txn.category_id, 0) + abs(
            txn.amount_cents
        )
    return [
        CategorySlice(name=category_id, value=value)
        for category_id, value in totals.items()
    ]


def summarize(
    transactions: Sequence[TransactionOut], now: Optional[datetime] = None
) -> DashboardOut:
    """Dashboard figures. ``transactions`` is the full list, pending ones included."""
    now = as_utc(now) if now else utcnow()
    pending = pending_count(transactions, now)
    counted = settled(transactions)
    if not counted:
        return DashboardOut(pending_count=pending)

    today = now.date()
    previous = add_months(today, -1)
    current_totals = month_totals(counted, today.year, today.month)
    previous_totals = month_totals(counted, previous.year, previous.month)

    return DashboardOut(
        balance=current_totals.balance,
        income=current_totals.income,
        expenses=current_totals.expenses,
        income_change=percentage_change(
            previous_totals.income, current_totals.income
        ),
        expenses_change=percentage_change(
            previous_totals.expenses, current_totals.expenses
        ),
        monthly=monthly_series(counted),
        weekly=weekly_series(counted, now),
        daily=daily_series(counted, now),
        categories=category_breakdown(counted),
        pending_count=pending,
    )


def _average(
    transactions: Iterable[TransactionOut], since: date, divisor: int
) -> PeriodAverage:
    income = expenses = 0
    for txn in transactions:
        if txn.date < since:
            continue
        if txn.type == TransactionType.income:
            income += txn.amount_cents
        else:
            expenses += abs(txn.amount_cents)
    avg_income = income / divisor
    avg_expenses = expenses / divisor
    return PeriodAverage(
        income=avg_income,
        expenses=avg_expenses,
        balance=avg_income - avg_expenses,
    )


def period_averages(
    transactions: Sequence[TransactionOut], today: date
) -> PeriodAverages:
    counted = settled(transactions)
    return PeriodAverages(
        monthly=_average(
            counted, subtract_months(today, AVERAGE_MONTHS), AVERAGE_MONTHS
        ),
        weekly=_average(
            counted, today - timedelta(weeks=AVERAGE_WEEKS), AVERAGE_WEEKS
        ),
        daily=_average(counted, today - timedelta(days=AVERAGE_DAYS), AVERAGE_DAYS),
    )


def _expenses_by_category(
    transactions: Iterable[TransactionOut], year: int, month: int
) -> dict[str, int]:
    totals: dict[str, int] = {}
    for txn in transactions:
        if txn.type != TransactionType.expense:
            continue
        if not same_month(txn.date, year, month):
            continue
        totals[txn.category_id] = totals.get(txn.category_id, 0) + abs(
            txn.amount_cents
        )
    return totals


def top_expense_category(
    transactions: Sequence[TransactionOut], registry: CategoryRegistry, today: date
) -> TopCategory:
    """Largest expense category this month. Ties go to the first one seen."""
    totals = _expenses_by_category(settled(transactions), today.year, today.month)
    total = sum(totals.values())
    top_id, top_amount = "", 0
    for category_id, amount in totals.items():
        if amount > top_amount:
            top_id, top_amount = category_id, amount
    return TopCategory(
        category_id=top_id,
        name=registry.name_of(top_id),
        amount=top_amount,
        percentage=(top_amount / total) * 100 if total > 0 else 0.0,
    )


def category_changes(
    transactions: Sequence[TransactionOut], registry: CategoryRegistry, today: date
) -> tuple[CategoryChange, CategoryChange]:
    """Biggest saving and biggest increase between last month and this one.

    A category with spending this month and none last month counts as a 100%
    increase, unless some category already grew by more.
    """
    counted = settled(transactions)
    previous = add_months(today, -1)
    current = _expenses_by_category(counted, today.year, today.month)
    last = _expenses_by_category(counted, previous.year, previous.month)

    max_saving = max_increase = 0.0
    saving_id = increase_id = ""
    for category_id, last_amount in last.items():
        if last_amount <= 0:
            continue
        difference = (last_amount - current.get(category_id, 0)) / last_amount
        if difference > max_saving:
            max_saving, saving_id = difference, category_id
        if difference < 0 and abs(difference) > max_increase:
            max_increase, increase_id = abs(difference), category_id

    for category_id, amount in current.items():
        if category_id not in last and amount > 0 and max_increase < 1:
            max_increase, increase_id = 1.0, category_id

    return (
        CategoryChange(
            category_id=saving_id,
            name=registry.name_of(saving_id),
            percentage=max_saving * 100,
        ),
        CategoryChange(
            category_id=increase_id,
            name=registry.name_of(increase_id),
            percentage=max_increase * 100,
        ),
    )


def analyze(
    transactions: Sequence[TransactionOut],
    registry: CategoryRegistry,
    now: Optional[datetime] = None,
) -> AnalysisOut:
    today = (as_utc(now) if now else utcnow()).date()
    saving, increase = category_changes(transactions, registry, today)
    return AnalysisOut(
        period_data=period_averages(transactions, today),
        top_expense_category=top_expense_category(transactions, registry, today),
        biggest_saving=saving,
        biggest_increase=increase,
    )
