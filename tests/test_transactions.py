from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import Base
from errors import InvalidStatusTransition, NotFoundError
from models import (
    NotificationType,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from periods import resolve_period
from schemas import TransactionIn, TransactionOut
from services import NotificationService, TransactionFilters, TransactionService


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _data(**overrides) -> TransactionIn:
    values = dict(
        name="Mercado",
        amount_cents=12_345,
        type=TransactionType.expense,
        date=date(2024, 3, 10),
        category_id="food",
        method="debit_card",
    )
    values.update(overrides)
    return TransactionIn(**values)


def test_sign_follows_type_through_add_and_fetch() -> None:
    with _session() as session:
        service = TransactionService(session, "user-1")
        expense = service.create(_data())
        income = service.create(_data(name="Salário", type=TransactionType.income))

        fetched = {t.id: TransactionOut.from_row(t) for t in service.list_all()}

        assert fetched[expense.id].amount_cents == -12_345
        assert fetched[expense.id].type == TransactionType.expense
        assert fetched[income.id].amount_cents == 12_345
        assert fetched[income.id].type == TransactionType.income


def test_update_flips_sign_with_type() -> None:
    with _session() as session:
        service = TransactionService(session, "user-1")
        txn = service.create(_data())

        updated = service.update(
            txn.id, _data(type=TransactionType.income, amount_cents=500)
        )

        assert updated.amount_cents == 500
        assert updated.type == TransactionType.income


def test_store_rejects_mismatched_sign() -> None:
    with _session() as session:
        session.add(
            Transaction(
                user_id="user-1",
                name="Broken",
                amount_cents=-100,
                type=TransactionType.income,
                date=date(2024, 3, 1),
                payment_method="cash",
            )
        )
        with pytest.raises(IntegrityError):
            session.commit()


def test_unscheduled_transactions_are_paid() -> None:
    with _session() as session:
        txn = TransactionService(session, "user-1").create(
            _data(status=TransactionStatus.pending)
        )

        assert txn.status == TransactionStatus.paid
        assert NotificationService(session, "user-1").list_all() == []


def test_scheduled_payment_defaults_to_pending_and_notifies() -> None:
    with _session() as session:
        txn = TransactionService(session, "user-1").create(
            _data(name="Aluguel", amount_cents=150_000, is_scheduled=True, method="pix")
        )

        assert txn.status == TransactionStatus.pending
        notifications = NotificationService(session, "user-1").list_all()
        assert len(notifications) == 1
        notice = notifications[0]
        assert notice.type == NotificationType.scheduled_payment.value
        assert notice.related_id == txn.id
        assert notice.is_read is False
        assert "R$ 1.500,00" in notice.message
        assert "PIX" in notice.message
        assert "10/03/2024" in notice.message


def test_status_changes_follow_the_state_machine() -> None:
    with _session() as session:
        service = TransactionService(session, "user-1")
        txn = service.create(_data(is_scheduled=True))

        assert service.set_status(txn.id, TransactionStatus.paid).status == (
            TransactionStatus.paid
        )
        assert service.set_status(txn.id, TransactionStatus.cancelled).status == (
            TransactionStatus.cancelled
        )
        with pytest.raises(InvalidStatusTransition):
            service.set_status(txn.id, TransactionStatus.paid)

        plain = service.create(_data())
        with pytest.raises(InvalidStatusTransition):
            service.set_status(plain.id, TransactionStatus.pending)


def test_update_keeps_status_and_unscheduling_marks_paid() -> None:
    with _session() as session:
        service = TransactionService(session, "user-1")
        txn = service.create(_data(is_scheduled=True))

        renamed = service.update(txn.id, _data(name="Conta de luz", is_scheduled=True))
        assert renamed.status == TransactionStatus.pending

        unscheduled = service.update(txn.id, _data(is_scheduled=False))
        assert unscheduled.status == TransactionStatus.paid


def test_rows_of_other_users_are_not_found() -> None:
    with _session() as session:
        txn = TransactionService(session, "user-1").create(_data())
        intruder = TransactionService(session, "user-2")

        assert intruder.list_all() == []
        with pytest.raises(NotFoundError):
            intruder.get(txn.id)
        with pytest.raises(NotFoundError):
            intruder.update(txn.id, _data())
        with pytest.raises(NotFoundError):
            intruder.delete(txn.id)


def test_delete_is_immediate() -> None:
    with _session() as session:
        service = TransactionService(session, "user-1")
        txn = service.create(_data())
        txn_id = txn.id

        service.delete(txn_id)

        with pytest.raises(NotFoundError):
            service.get(txn_id)


def test_list_filters() -> None:
    with _session() as session:
        service = TransactionService(session, "user-1")
        service.create(_data(date=date(2024, 2, 10)))
        service.create(_data(date=date(2024, 3, 5), category_id="fun"))
        service.create(
            _data(date=date(2024, 3, 6), type=TransactionType.income, name="Pix")
        )

        march = resolve_period("this_month", None, None, today=date(2024, 3, 20))
        in_march = service.list(TransactionFilters(period=march))
        assert {t.date for t in in_march} == {date(2024, 3, 5), date(2024, 3, 6)}

        expenses = service.list(TransactionFilters(type=TransactionType.expense))
        assert len(expenses) == 2

        fun = service.list(TransactionFilters(category_id="fun"))
        assert [t.date for t in fun] == [date(2024, 3, 5)]

        newest_first = service.list_all()
        assert [t.date for t in newest_first] == sorted(
            (t.date for t in newest_first), reverse=True
        )


def test_cancelled_transactions_stay_cancelled_through_updates() -> None:
    with _session() as session:
        service = TransactionService(session, "user-1")
        txn = service.create(_data(is_scheduled=True))
        service.set_status(txn.id, TransactionStatus.cancelled)

        with pytest.raises(InvalidStatusTransition):
            service.update(txn.id, _data(is_scheduled=False))
        with pytest.raises(InvalidStatusTransition):
            service.update(
                txn.id, _data(is_scheduled=True, status=TransactionStatus.pending)
            )
        session.rollback()

        renamed = service.update(txn.id, _data(name="Academia", is_scheduled=True))
        assert renamed.status == TransactionStatus.cancelled
        assert renamed.name == "Academia"
        assert service.get(txn.id).is_scheduled is True
