"""Per-session application state.

A ``FinanceWorkspace`` holds one user's transactions, categories and
notifications in memory together with the figures derived from them. Every
store call goes through ``call_store``: on success the affected list is
re-read from the store and the aggregates recomputed before the method
returns; on failure the previous state is kept, a toast is queued and the
method reports the failure through its return value.
"""

import logging
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Optional, TypeVar

from sqlalchemy.orm import Session, sessionmaker

from aggregation import analyze, summarize
from categories import CategoryRegistry
from dates import utcnow
from errors import StoreError
from models import TransactionStatus
from schemas import (
    AnalysisOut,
    CategoryIn,
    CategoryOut,
    CategoryUpdateIn,
    DashboardOut,
    NotificationOut,
    TransactionIn,
    TransactionOut,
)
from services import CategoryService, NotificationService, TransactionService
from store import ChangeFeed, StoreResult, Subscription, call_store

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOTIFICATIONS_TABLE = "notifications"


@dataclass(frozen=True)
class Toast:
    kind: str
    title: str
    description: str = ""


@dataclass(frozen=True)
class _Snapshot:
    transactions: list[TransactionOut]
    categories: list[CategoryOut]
    notifications: list[NotificationOut]
    dashboard: DashboardOut
    analysis: AnalysisOut


class FinanceWorkspace:
    def __init__(
        self,
        session_factory: sessionmaker,
        user_id: str,
        feed: Optional[ChangeFeed] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.user_id = user_id
        self.clock = clock
        self.transactions: list[TransactionOut] = []
        self.categories = CategoryRegistry()
        self.notifications: list[NotificationOut] = []
        self.toasts: list[Toast] = []
        self.last_error: Optional[StoreError] = None
        self.dashboard = DashboardOut()
        self.analysis = analyze([], self.categories, self.clock())
        # ids marked read here; a push racing with the store update must not
        # bring them back as unread
        self._read_ids: set[str] = set()
        # pushes arrive on whichever thread committed the insert, possibly while
        # that thread holds another workspace's lock; they wait in the inbox
        # until this lock is free
        self._lock = threading.RLock()
        self._inbox: deque[dict[str, Any]] = deque()
        self._subscription: Optional[Subscription] = None
        if feed is not None:
            self._subscription = feed.subscribe(
                NOTIFICATIONS_TABLE, user_id, self.receive_notification
            )

    # -- plumbing ---------------------------------------------------------

    @contextmanager
    def _locked(self) -> Iterator[None]:
        try:
            with self._lock:
                yield
        finally:
            self._deliver_pushes()

    def _deliver_pushes(self) -> None:
        while self._inbox and self._lock.acquire(blocking=False):
            try:
                while self._inbox:
                    self._merge_push(self._inbox.popleft())
            finally:
                self._lock.release()

    def _merge_push(self, row: dict[str, Any]) -> None:
        notification = self._merge_read(NotificationOut.model_validate(row))
        if any(n.id == notification.id for n in self.notifications):
            return
        self.notifications = [notification, *self.notifications]
        self.toasts.append(Toast("info", notification.title, notification.message))
        logger.info(
            f"notification_received: user={self.user_id} id={notification.id}"
        )

    def _set_notifications(self, notifications: list[NotificationOut]) -> None:
        self.notifications = notifications
        self._read_ids &= {n.id for n in notifications}

    def _call(self, fn: Callable[[Session], T]) -> StoreResult[T]:
        def run() -> T:
            with self.session_factory() as session:
                return fn(session)

        result = call_store(run)
        self.last_error = result.error
        return result

    def _fail(self, title: str, result: StoreResult) -> None:
        self.toasts.append(Toast("error", title, str(result.error)))

    def _snapshot(self) -> _Snapshot:
        return _Snapshot(
            transactions=list(self.transactions),
            categories=self.categories.all(),
            notifications=list(self.notifications),
            dashboard=self.dashboard,
            analysis=self.analysis,
        )

    def _restore(self, snapshot: _Snapshot) -> None:
        self.transactions = snapshot.transactions
        self.categories.replace(snapshot.categories)
        self.notifications = snapshot.notifications
        self.dashboard = snapshot.dashboard
        self.analysis = snapshot.analysis

    def _recompute(self) -> None:
        now = self.clock()
        self.dashboard = summarize(self.transactions, now)
        self.analysis = analyze(self.transactions, self.categories, now)

    def _fetch_transactions(self) -> StoreResult[list[TransactionOut]]:
        return self._call(
            lambda s: [
                TransactionOut.from_row(row)
                for row in TransactionService(s, self.user_id).list_all()
            ]
        )

    def _fetch_categories(self) -> StoreResult[list[CategoryOut]]:
        def fetch(s: Session) -> list[CategoryOut]:
            service = CategoryService(s, self.user_id)
            service.seed_defaults()
            return [CategoryOut.model_validate(c) for c in service.list_all()]

        return self._call(fetch)

    def _fetch_notifications(self) -> StoreResult[list[NotificationOut]]:
        return self._call(
            lambda s: [
                self._merge_read(NotificationOut.model_validate(n))
                for n in NotificationService(s, self.user_id).list_all()
            ]
        )

    def _merge_read(self, notification: NotificationOut) -> NotificationOut:
        if notification.id in self._read_ids and not notification.is_read:
            return notification.model_copy(update={"is_read": True})
        return notification

    def _mutate(
        self,
        title: str,
        fn: Callable[[Session], Any],
        *,
        transactions: bool = False,
        categories: bool = False,
        notifications: bool = False,
    ) -> StoreResult:
        """Run a store mutation and re-read what it touched."""
        with self._locked():
            snapshot = self._snapshot()
            result = self._call(fn)
            if not result.ok:
                self._fail(title, result)
                return result

            reloads = []
            if transactions:
                reloads.append((self._fetch_transactions, "transactions"))
            if categories:
                reloads.append((self._fetch_categories, "categories"))
            if notifications:
                reloads.append((self._fetch_notifications, "notifications"))
            for fetch, attr in reloads:
                fresh = fetch()
                if not fresh.ok:
                    self._restore(snapshot)
                    self._fail(title, fresh)
                    return fresh
                if attr == "categories":
                    self.categories.replace(fresh.data)
                elif attr == "notifications":
                    self._set_notifications(fresh.data)
                else:
                    setattr(self, attr, fresh.data)
            self._recompute()
            return result

    # -- loading ----------------------------------------------------------

    def load(self) -> None:
        """Fill every list from the store. A list that fails to load stays empty."""
        with self._locked():
            categories = self._fetch_categories()
            if categories.ok:
                self.categories.replace(categories.data)
            else:
                self.categories.replace([])
                self._fail("Erro ao carregar categorias", categories)

            transactions = self._fetch_transactions()
            if transactions.ok:
                self.transactions = transactions.data
            else:
                self.transactions = []
                self._fail("Erro ao carregar transações", transactions)

            notifications = self._fetch_notifications()
            if notifications.ok:
                self._set_notifications(notifications.data)
            else:
                self._set_notifications([])
                self._fail("Erro ao carregar notificações", notifications)

            self._recompute()
            logger.info(
                f"workspace_loaded: user={self.user_id} "
                f"transactions={len(self.transactions)} "
                f"categories={len(self.categories)}"
            )

    # -- transactions -----------------------------------------------------

    def add_transaction(self, data: TransactionIn) -> Optional[TransactionOut]:
        result = self._mutate(
            "Erro ao adicionar transação",
            lambda s: TransactionOut.from_row(
                TransactionService(s, self.user_id).create(data)
            ),
            transactions=True,
        )
        return result.data

    def update_transaction(
        self, transaction_id: str, data: TransactionIn
    ) -> Optional[TransactionOut]:
        result = self._mutate(
            "Erro ao atualizar transação",
            lambda s: TransactionOut.from_row(
                TransactionService(s, self.user_id).update(transaction_id, data)
            ),
            transactions=True,
        )
        return result.data

    def change_status(
        self, transaction_id: str, status: TransactionStatus
    ) -> Optional[TransactionOut]:
        result = self._mutate(
            "Erro ao atualizar status",
            lambda s: TransactionOut.from_row(
                TransactionService(s, self.user_id).set_status(transaction_id, status)
            ),
            transactions=True,
        )
        return result.data

    def delete_transaction(self, transaction_id: str) -> bool:
        result = self._mutate(
            "Erro ao excluir transação",
            lambda s: TransactionService(s, self.user_id).delete(transaction_id),
            transactions=True,
        )
        return result.ok

    # -- categories -------------------------------------------------------

    def create_category(self, data: CategoryIn) -> Optional[CategoryOut]:
        result = self._mutate(
            "Erro ao criar categoria",
            lambda s: CategoryOut.model_validate(
                CategoryService(s, self.user_id).create(data)
            ),
            categories=True,
        )
        return result.data

    def update_category(
        self, category_id: str, data: CategoryUpdateIn
    ) -> Optional[CategoryOut]:
        result = self._mutate(
            "Erro ao atualizar categoria",
            lambda s: CategoryOut.model_validate(
                CategoryService(s, self.user_id).update(category_id, data)
            ),
            categories=True,
        )
        return result.data

    def delete_category(self, category_id: str) -> bool:
        result = self._mutate(
            "Erro ao excluir categoria",
            lambda s: CategoryService(s, self.user_id).delete(category_id),
            categories=True,
        )
        return result.ok

    def category(self, category_id: Optional[str]) -> CategoryOut:
        return self.categories.lookup(category_id)

    # -- notifications ----------------------------------------------------

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self.notifications if not n.is_read)

    def receive_notification(self, row: dict[str, Any]) -> None:
        """Queue a notification pushed by the change feed and merge it when free."""
        self._inbox.append(row)
        self._deliver_pushes()

    def mark_read(self, notification_id: str) -> bool:
        with self._locked():
            result = self._call(
                lambda s: NotificationService(s, self.user_id).mark_read(
                    notification_id
                )
            )
            if not result.ok:
                self._fail("Erro ao marcar notificação como lida", result)
                return False
            self._read_ids.add(notification_id)
            self.notifications = [
                self._merge_read(n) for n in self.notifications
            ]
            return True

    def mark_all_read(self) -> bool:
        with self._locked():
            result = self._call(
                lambda s: NotificationService(s, self.user_id).mark_all_read()
            )
            if not result.ok:
                self._fail("Erro ao marcar notificações como lidas", result)
                return False
            self._read_ids.update(n.id for n in self.notifications)
            self.notifications = [
                self._merge_read(n) for n in self.notifications
            ]
            return True

    def delete_notification(self, notification_id: str) -> bool:
        with self._locked():
            result = self._call(
                lambda s: NotificationService(s, self.user_id).delete(notification_id)
            )
            if not result.ok:
                self._fail("Erro ao excluir notificação", result)
                return False
            self._read_ids.discard(notification_id)
            self.notifications = [
                n for n in self.notifications if n.id != notification_id
            ]
            return True

    # -- toasts / lifecycle -----------------------------------------------

    def drain_toasts(self) -> list[Toast]:
        with self._locked():
            toasts, self.toasts = self.toasts, []
        return toasts

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        logger.info(f"workspace_closed: user={self.user_id}")


class WorkspaceRegistry:
    """One workspace per session token.

    Workspaces are torn down at sign-out, when their token stops validating,
    and by ``sweep`` once they are older than ``max_age``.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        feed: Optional[ChangeFeed] = None,
        max_age: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.feed = feed
        self.max_age = max_age
        self.clock = clock
        self._lock = threading.Lock()
        self._workspaces: dict[str, FinanceWorkspace] = {}
        self._opened_at: dict[str, datetime] = {}

    def get(self, token: str) -> Optional[FinanceWorkspace]:
        with self._lock:
            return self._workspaces.get(token)

    def open(self, token: str, user_id: str) -> FinanceWorkspace:
        self.sweep()
        with self._lock:
            workspace = self._workspaces.get(token)
            if workspace is not None:
                return workspace
            workspace = FinanceWorkspace(self.session_factory, user_id, self.feed)
            self._workspaces[token] = workspace
            self._opened_at[token] = self.clock()
        workspace.load()
        return workspace

    def close(self, token: str) -> None:
        with self._lock:
            workspace = self._workspaces.pop(token, None)
            self._opened_at.pop(token, None)
        if workspace is not None:
            workspace.close()

    def close_user(self, user_id: str) -> None:
        with self._lock:
            tokens = [t for t, w in self._workspaces.items() if w.user_id == user_id]
        for token in tokens:
            self.close(token)

    def sweep(self) -> int:
        """Close workspaces opened longer than ``max_age`` ago."""
        if self.max_age is None:
            return 0
        cutoff = self.clock() - self.max_age
        with self._lock:
            expired = [t for t, at in self._opened_at.items() if at <= cutoff]
        for token in expired:
            self.close(token)
        if expired:
            logger.info(f"workspaces_swept: count={len(expired)}")
        return len(expired)

    def close_all(self) -> None:
        with self._lock:
            workspaces = list(self._workspaces.values())
            self._workspaces.clear()
            self._opened_at.clear()
        for workspace in workspaces:
            workspace.close()

    def __len__(self) -> int:
        return len(self._workspaces)
