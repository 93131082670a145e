"""Store-side plumbing the services and workspaces build on.

``call_store`` gives store calls the ``{data, error}`` result shape,
``ChangeFeed`` delivers committed inserts to subscribers and ``BlobStorage``
keeps uploaded files on disk behind public URLs.
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Generic, Optional, TypeVar

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from errors import StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class StoreResult(Generic[T]):
    data: Optional[T] = None
    error: Optional[StoreError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def call_store(fn: Callable[[], T]) -> StoreResult[T]:
    try:
        return StoreResult(data=fn())
    except StoreError as exc:
        logger.warning(f"store_error: {exc}")
        return StoreResult(error=exc)
    except SQLAlchemyError as exc:
        logger.warning(f"store_error: {exc.__class__.__name__}: {exc}")
        return StoreResult(error=StoreError("The store rejected the operation"))


ChangeCallback = Callable[[dict[str, Any]], None]


class Subscription:
    def __init__(self, feed: "ChangeFeed", key: tuple[str, str], callback) -> None:
        self._feed = feed
        self._key = key
        self._callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._feed._remove(self._key, self._callback)
            self.active = False


class ChangeFeed:
    """Delivers inserted rows, per table and owner, to registered callbacks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[tuple[str, str], list[ChangeCallback]] = {}

    def subscribe(
        self, table: str, user_id: str, callback: ChangeCallback
    ) -> Subscription:
        key = (table, user_id)
        with self._lock:
            self._subscribers.setdefault(key, []).append(callback)
        return Subscription(self, key, callback)

    def _remove(self, key: tuple[str, str], callback: ChangeCallback) -> None:
        with self._lock:
            callbacks = self._subscribers.get(key, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(key, None)

    def publish(self, table: str, row: dict[str, Any]) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get((table, row.get("user_id")), []))
        for callback in callbacks:
            try:
                callback(row)
            except Exception:
                logger.exception(f"change_feed: callback failed table={table}")


def _row_to_dict(obj) -> dict[str, Any]:
    return {col.key: getattr(obj, col.key) for col in obj.__table__.columns}


def install_change_feed(
    factory: sessionmaker,
    feed: ChangeFeed,
    tables: tuple[str, ...] = ("notifications",),
) -> None:
    """Publish rows inserted into ``tables`` once their transaction commits."""

    def collect(session: Session, _flush_context) -> None:
        pending = session.info.setdefault("change_feed_rows", [])
        for obj in session.new:
            table = getattr(obj, "__tablename__", None)
            if table in tables:
                pending.append((table, obj))

    def snapshot(session: Session, _flush_context) -> None:
        rows = session.info.get("change_feed_rows", [])
        session.info["change_feed_rows"] = [
            (table, obj if isinstance(obj, dict) else _row_to_dict(obj))
            for table, obj in rows
        ]

    def publish(session: Session) -> None:
        rows = session.info.pop("change_feed_rows", [])
        for table, row in rows:
            feed.publish(table, row)

    def discard(session: Session) -> None:
        session.info.pop("change_feed_rows", None)

    event.listen(factory, "before_flush", lambda s, ctx, _inst: collect(s, ctx))
    event.listen(factory, "after_flush", snapshot)
    event.listen(factory, "after_commit", publish)
    event.listen(factory, "after_soft_rollback", lambda s, _tx: discard(s))


class BlobStorage:
    """Bucketed file storage on the local disk with public URLs."""

    def __init__(self, root: Path, public_base_url: str = "/storage") -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def _path(self, bucket: str, path: str) -> Path:
        base = (self.root / bucket).resolve()
        target = (base / path).resolve()
        if base != target and base not in target.parents:
            raise StoreError("Invalid storage path")
        return target

    def upload(self, bucket: str, path: str, data: bytes) -> StoreResult[str]:
        def write() -> str:
            target = self._path(bucket, path)
            if target.exists():
                raise StoreError("The resource already exists")
            target.parent.mkdir(parents=True, exist_ok=True)
            try:
                target.write_bytes(data)
            except OSError as exc:
                raise StoreError(f"Could not write file: {exc.strerror}") from exc
            return path

        return call_store(write)

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.public_base_url}/{bucket}/{path}"

    def open(self, bucket: str, path: str) -> Path:
        target = self._path(bucket, path)
        if not target.is_file():
            raise StoreError("Object not found")
        return target
