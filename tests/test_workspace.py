import threading
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base, make_engine, make_session_factory
from errors import InvalidStatusTransition, NotFoundError
from models import TransactionStatus, TransactionType
from schemas import CategoryIn, NotificationIn, TransactionIn
from services import NotificationService
from store import ChangeFeed, install_change_feed
from workspace import FinanceWorkspace, WorkspaceRegistry

NOW = datetime(2024, 3, 20, 15, 0, tzinfo=timezone.utc)


def _factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'workspace.db'}")
    Base.metadata.create_all(engine)
    factory = make_session_factory(engine)
    feed = ChangeFeed()
    install_change_feed(factory, feed)
    return factory, feed


def _workspace(tmp_path, user_id="user-1") -> FinanceWorkspace:
    factory, feed = _factory(tmp_path)
    workspace = FinanceWorkspace(factory, user_id, feed, clock=lambda: NOW)
    workspace.load()
    return workspace


def _data(**overrides) -> TransactionIn:
    values = dict(
        name="Salário",
        amount_cents=500_000,
        type=TransactionType.income,
        date=date(2024, 3, 5),
        category_id="salary",
        method="transfer",
    )
    values.update(overrides)
    return TransactionIn(**values)


def test_first_load_seeds_categories_and_has_zero_figures(tmp_path) -> None:
    workspace = _workspace(tmp_path)

    assert len(workspace.categories) == 9
    assert workspace.transactions == []
    assert workspace.dashboard.balance == 0
    assert workspace.dashboard.monthly == []
    assert workspace.notifications == []
    assert workspace.drain_toasts() == []


def test_failed_load_leaves_empty_state(tmp_path) -> None:
    engine = create_engine("sqlite:///:memory:")  # no tables
    workspace = FinanceWorkspace(sessionmaker(bind=engine), "user-1", clock=lambda: NOW)

    workspace.load()

    assert workspace.transactions == []
    assert len(workspace.categories) == 0
    assert workspace.dashboard.income == 0
    toasts = workspace.drain_toasts()
    assert [t.kind for t in toasts] == ["error", "error", "error"]
    assert workspace.drain_toasts() == []


def test_mutations_refresh_aggregates_before_returning(tmp_path) -> None:
    workspace = _workspace(tmp_path)

    income = workspace.add_transaction(_data())
    assert income is not None
    assert workspace.dashboard.income == 500_000

    expense = workspace.add_transaction(
        _data(name="Mercado", amount_cents=20_000, type=TransactionType.expense)
    )
    assert expense.amount_cents == -20_000
    assert workspace.dashboard.balance == 480_000
    assert workspace.dashboard.categories[0].name == "salary"

    workspace.update_transaction(
        expense.id,
        _data(name="Mercado", amount_cents=30_000, type=TransactionType.expense),
    )
    assert workspace.dashboard.expenses == 30_000

    assert workspace.delete_transaction(expense.id)
    assert workspace.dashboard.expenses == 0
    assert len(workspace.transactions) == 1


def test_failed_mutation_keeps_state_and_queues_toast(tmp_path) -> None:
    workspace = _workspace(tmp_path)
    workspace.add_transaction(_data())
    before = (list(workspace.transactions), workspace.dashboard)

    assert workspace.update_transaction("missing", _data()) is None
    assert workspace.delete_transaction("missing") is False

    assert isinstance(workspace.last_error, NotFoundError)
    assert (workspace.transactions, workspace.dashboard) == before
    toasts = workspace.drain_toasts()
    assert [t.title for t in toasts] == [
        "Erro ao atualizar transação",
        "Erro ao excluir transação",
    ]
    assert toasts[0].description == "Transaction not found"


def test_paying_a_scheduled_transaction(tmp_path) -> None:
    workspace = _workspace(tmp_path)
    scheduled = workspace.add_transaction(
        _data(
            name="Aluguel",
            amount_cents=150_000,
            type=TransactionType.expense,
            date=date(2024, 3, 22),
            is_scheduled=True,
            method="boleto",
        )
    )
    assert scheduled.status == TransactionStatus.pending
    assert workspace.dashboard.pending_count == 1
    assert workspace.dashboard.expenses == 0

    paid = workspace.change_status(scheduled.id, TransactionStatus.paid)
    assert paid.status == TransactionStatus.paid
    assert workspace.dashboard.pending_count == 0
    assert workspace.dashboard.expenses == 150_000

    assert workspace.change_status(scheduled.id, TransactionStatus.cancelled)
    assert workspace.change_status(scheduled.id, TransactionStatus.paid) is None
    assert isinstance(workspace.last_error, InvalidStatusTransition)


def test_scheduling_pushes_a_notification(tmp_path) -> None:
    workspace = _workspace(tmp_path)

    scheduled = workspace.add_transaction(
        _data(type=TransactionType.expense, is_scheduled=True)
    )

    assert len(workspace.notifications) == 1
    assert workspace.notifications[0].related_id == scheduled.id
    assert workspace.unread_count == 1
    assert [t.kind for t in workspace.drain_toasts()] == ["info"]


def test_push_does_not_resurrect_locally_read_notifications(tmp_path) -> None:
    factory, feed = _factory(tmp_path)
    workspace = FinanceWorkspace(factory, "user-1", feed, clock=lambda: NOW)
    workspace.load()

    with factory() as session:
        first = NotificationService(session, "user-1").add(
            NotificationIn(title="Primeira", message="a", type="info")
        )
    assert workspace.unread_count == 1

    assert workspace.mark_read(first.id)
    stale = {
        "id": first.id,
        "user_id": "user-1",
        "title": "Primeira",
        "message": "a",
        "type": "info",
        "is_read": False,
        "related_id": None,
        "created_at": first.created_at,
    }
    workspace.receive_notification(stale)

    with factory() as session:
        NotificationService(session, "user-1").add(
            NotificationIn(title="Segunda", message="b", type="info")
        )

    titles = {n.title: n.is_read for n in workspace.notifications}
    assert titles == {"Primeira": True, "Segunda": False}
    assert workspace.notifications[0].title == "Segunda"
    assert workspace.unread_count == 1

    assert workspace.mark_all_read()
    assert workspace.unread_count == 0
    assert workspace.delete_notification(first.id)
    assert [n.title for n in workspace.notifications] == ["Segunda"]


def test_pushes_for_other_users_are_ignored(tmp_path) -> None:
    factory, feed = _factory(tmp_path)
    workspace = FinanceWorkspace(factory, "user-1", feed, clock=lambda: NOW)

    with factory() as session:
        NotificationService(session, "user-2").add(
            NotificationIn(title="Outro", message="x", type="info")
        )

    assert workspace.notifications == []


def test_category_changes_update_registry(tmp_path) -> None:
    workspace = _workspace(tmp_path)

    created = workspace.create_category(CategoryIn(name="Pets", color="#123456"))
    assert workspace.category(created.id).name == "Pets"

    assert workspace.delete_category(created.id)
    assert workspace.category(created.id).id == "outros"
    assert workspace.delete_category(created.id) is False


def test_registry_lifecycle(tmp_path) -> None:
    factory, feed = _factory(tmp_path)
    registry = WorkspaceRegistry(factory, feed)

    workspace = registry.open("token-a", "user-1")
    assert registry.open("token-a", "user-1") is workspace
    registry.open("token-b", "user-1")
    registry.open("token-c", "user-2")
    assert len(registry) == 3

    registry.close("token-a")
    assert registry.get("token-a") is None

    registry.close_user("user-1")
    assert registry.get("token-b") is None
    assert registry.get("token-c") is not None

    with factory() as session:
        NotificationService(session, "user-1").add(
            NotificationIn(title="Depois", message="x", type="info")
        )
    assert workspace.notifications == []

    registry.close_all()
    assert len(registry) == 0


def test_two_sessions_of_one_user_write_concurrently(tmp_path) -> None:
    factory, feed = _factory(tmp_path)
    phone = FinanceWorkspace(factory, "user-1", feed, clock=lambda: NOW)
    laptop = FinanceWorkspace(factory, "user-1", feed, clock=lambda: NOW)
    created: list[str] = []

    def add_many(workspace: FinanceWorkspace, prefix: str) -> None:
        for i in range(15):
            txn = workspace.add_transaction(
                _data(
                    name=f"{prefix} {i}",
                    type=TransactionType.expense,
                    is_scheduled=True,
                )
            )
            if txn is not None:
                created.append(txn.id)

    threads = [
        threading.Thread(target=add_many, args=(phone, "Celular")),
        threading.Thread(target=add_many, args=(laptop, "Notebook")),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert [thread.is_alive() for thread in threads] == [False, False]
    assert created
    for workspace in (phone, laptop):
        related = {n.related_id for n in workspace.notifications}
        assert set(created) <= related


def test_pushes_wait_until_the_workspace_is_free(tmp_path) -> None:
    factory, feed = _factory(tmp_path)
    workspace = FinanceWorkspace(factory, "user-1", feed, clock=lambda: NOW)
    row = {
        "id": "n-1",
        "user_id": "user-1",
        "title": "Aviso",
        "message": "x",
        "type": "info",
        "is_read": False,
        "related_id": None,
        "created_at": NOW,
    }

    with workspace._lock:
        pusher = threading.Thread(target=workspace.receive_notification, args=(row,))
        pusher.start()
        pusher.join(timeout=5)
        assert not pusher.is_alive()
        assert workspace.notifications == []

    workspace.drain_toasts()
    assert [n.id for n in workspace.notifications] == ["n-1"]


def test_read_ids_forget_deleted_notifications(tmp_path) -> None:
    factory, feed = _factory(tmp_path)
    workspace = FinanceWorkspace(factory, "user-1", feed, clock=lambda: NOW)
    with factory() as session:
        first = NotificationService(session, "user-1").add(
            NotificationIn(title="Primeira", message="a", type="info")
        )
        second = NotificationService(session, "user-1").add(
            NotificationIn(title="Segunda", message="b", type="info")
        )
    workspace.mark_read(first.id)
    workspace.mark_read(second.id)

    workspace.delete_notification(first.id)
    assert workspace._read_ids == {second.id}

    with factory() as session:
        NotificationService(session, "user-1").delete(second.id)
    workspace.load()
    assert workspace._read_ids == set()
    assert workspace.notifications == []


def test_registry_sweeps_workspaces_past_max_age(tmp_path) -> None:
    factory, feed = _factory(tmp_path)
    now = [NOW]
    registry = WorkspaceRegistry(
        factory, feed, max_age=timedelta(hours=1), clock=lambda: now[0]
    )

    old = registry.open("token-old", "user-1")
    now[0] = NOW + timedelta(minutes=50)
    fresh = registry.open("token-new", "user-1")
    now[0] = NOW + timedelta(hours=1, minutes=1)

    assert registry.sweep() == 1
    assert registry.get("token-old") is None
    assert registry.get("token-new") is fresh
    assert len(registry) == 1

    with factory() as session:
        NotificationService(session, "user-1").add(
            NotificationIn(title="Depois", message="x", type="info")
        )
    assert old.notifications == []
    assert [n.title for n in fresh.notifications] == ["Depois"]

    now[0] = NOW + timedelta(hours=3)
    registry.open("token-later", "user-1")
    assert registry.get("token-new") is None
    assert len(registry) == 1
