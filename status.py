"""Lifecycle of scheduled payments.

Only scheduled transactions move between states; everything else is paid for
good. ``cancelled`` is terminal: a withdrawn payment has to be scheduled again
as a new transaction.
"""

from datetime import datetime, timedelta
from typing import Iterable, Optional

from dates import as_utc, reference_instant, utcnow
from errors import InvalidStatusTransition
from models import TransactionStatus
from schemas import TransactionOut

PENDING_WINDOW = timedelta(days=7)

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.pending: frozenset(
        {TransactionStatus.paid, TransactionStatus.cancelled}
    ),
    TransactionStatus.paid: frozenset(
        {TransactionStatus.pending, TransactionStatus.cancelled}
    ),
    TransactionStatus.cancelled: frozenset(),
}


def initial_status(
    is_scheduled: bool, requested: Optional[TransactionStatus] = None
) -> TransactionStatus:
    if not is_scheduled:
        return TransactionStatus.paid
    return requested or TransactionStatus.pending


def can_transition(
    current: TransactionStatus, target: TransactionStatus, *, is_scheduled: bool
) -> bool:
    if current == target:
        return True
    if not is_scheduled:
        return False
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(
    current: TransactionStatus, target: TransactionStatus, *, is_scheduled: bool
) -> None:
    if can_transition(current, target, is_scheduled=is_scheduled):
        return
    if not is_scheduled:
        raise InvalidStatusTransition(
            "Only scheduled transactions can change status"
        )
    raise InvalidStatusTransition(
        f"Cannot change status from {current.value} to {target.value}"
    )


def settled(transactions: Iterable[TransactionOut]) -> list[TransactionOut]:
    """Transactions that take part in balances, totals and series."""
    return [t for t in transactions if t.counts_as_settled]


def pending_count(
    transactions: Iterable[TransactionOut], now: Optional[datetime] = None
) -> int:
    """Pending scheduled payments due up to seven days from now, overdue included."""
    now = as_utc(now) if now else utcnow()
    horizon = now + PENDING_WINDOW
    return sum(
        1
        for t in transactions
        if t.is_scheduled
        and t.status == TransactionStatus.pending
        and reference_instant(t.date) <= horizon
    )
