from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from categories import DEFAULT_CATEGORIES, random_category_color
from config import get_settings
from errors import AuthError, NotFoundError, StoreError
from formatting import format_currency, format_date, format_payment_method
from models import (
    Category,
    Notification,
    NotificationType,
    Profile,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from periods import Period
from schemas import (
    CategoryIn,
    CategoryUpdateIn,
    NotificationIn,
    ProfileUpdateIn,
    TransactionIn,
    UpdateUserIn,
)
from status import check_transition, initial_status
from store import BlobStorage
from tokens import (
    issue_reset_token,
    issue_session_token,
    read_reset_token,
    read_session_token,
)

logger = logging.getLogger(__name__)

AVATAR_BUCKET = "profiles"
AVATAR_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp"}
MAX_AVATAR_BYTES = 2 * 1024 * 1024


def signed_amount(amount_cents: int, txn_type: TransactionType) -> int:
    """Expenses are stored negative and income positive, whatever sign was given."""
    if txn_type == TransactionType.expense:
        return -abs(amount_cents)
    return abs(amount_cents)


@dataclass
class TransactionFilters:
    period: Optional[Period] = None
    type: Optional[TransactionType] = None
    category_id: Optional[str] = None


@dataclass
class SessionInfo:
    access_token: str
    profile: Profile


class AuthService:
    def __init__(self, session: Session, secret: Optional[str] = None) -> None:
        self.session = session
        self.secret = secret or get_settings().secret_key

    def _by_email(self, email: str) -> Optional[Profile]:
        stmt = select(Profile).where(func.lower(Profile.email) == email.lower())
        return self.session.scalar(stmt)

    def sign_up(self, email: str, password: str, full_name: str) -> Profile:
        clean_email = email.strip().lower()
        if self._by_email(clean_email):
            raise AuthError("User already registered")
        profile = Profile(
            email=clean_email,
            password_hash=generate_password_hash(password),
            full_name=full_name.strip(),
        )
        self.session.add(profile)
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            raise AuthError("User already registered") from exc
        CategoryService(self.session, profile.id).seed_defaults(commit=False)
        self.session.commit()
        self.session.refresh(profile)
        logger.info(f"user_signed_up: user={profile.id}")
        return profile

    def sign_in(self, email: str, password: str) -> SessionInfo:
        profile = self._by_email(email.strip())
        if not profile or not check_password_hash(profile.password_hash, password):
            raise AuthError("Invalid login credentials")
        token = issue_session_token(profile.id, profile.session_version, self.secret)
        logger.info(f"user_signed_in: user={profile.id}")
        return SessionInfo(access_token=token, profile=profile)

    def get_session(
        self, token: Optional[str], max_age_hours: Optional[int] = None
    ) -> Optional[SessionInfo]:
        claims = read_session_token(token or "", max_age_hours, self.secret)
        if claims is None:
            return None
        user_id, version = claims
        profile = self.session.get(Profile, user_id)
        if not profile or profile.session_version != version:
            return None
        return SessionInfo(access_token=token, profile=profile)

    def sign_out(self, token: Optional[str]) -> None:
        info = self.get_session(token)
        if info is None:
            return
        # invalidates every token issued before this point
        info.profile.session_version += 1
        self.session.commit()
        logger.info(f"user_signed_out: user={info.profile.id}")

    def reset_password(self, email: str) -> Optional[str]:
        """Reset token for ``email``, or ``None`` when no such user exists.

        Delivery of the token is left to the mail side of the platform; callers
        must not reveal whether the address was known.
        """
        profile = self._by_email(email.strip())
        if not profile:
            logger.info("password_reset_requested: user=unknown")
            return None
        logger.info(f"password_reset_requested: user={profile.id}")
        return issue_reset_token(profile.id, profile.session_version, self.secret)

    def update_user(
        self, data: UpdateUserIn, session_token: Optional[str] = None
    ) -> Profile:
        if data.reset_token:
            claims = read_reset_token(data.reset_token, self.secret)
            if claims is None:
                raise AuthError("Reset link is invalid or has expired")
            profile = self.session.get(Profile, claims[0])
            if not profile or profile.session_version != claims[1]:
                raise AuthError("Reset link is invalid or has expired")
            if not data.password:
                raise AuthError("A new password is required")
        else:
            info = self.get_session(session_token)
            if info is None:
                raise AuthError("Auth session missing")
            profile = info.profile

        if data.full_name is not None:
            profile.full_name = data.full_name.strip()
        if data.avatar_url is not None:
            profile.avatar_url = data.avatar_url
        if data.password:
            profile.password_hash = generate_password_hash(data.password)
            profile.session_version += 1
        self.session.commit()
        self.session.refresh(profile)
        logger.info(f"user_updated: user={profile.id}")
        return profile


class ProfileService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def get(self) -> Profile:
        profile = self.session.get(Profile, self.user_id)
        if not profile:
            raise NotFoundError("Profile not found")
        return profile

    def update(self, data: ProfileUpdateIn) -> Profile:
        profile = self.get()
        if data.full_name is not None:
            profile.full_name = data.full_name.strip()
        if data.avatar_url is not None:
            profile.avatar_url = data.avatar_url
        self.session.commit()
        self.session.refresh(profile)
        return profile

    def upload_avatar(self, filename: str, data: bytes, storage: BlobStorage) -> str:
        extension = PurePosixPath(filename or "").suffix.lstrip(".").lower()
        if extension not in AVATAR_EXTENSIONS:
            raise StoreError("Unsupported image type")
        if len(data) > MAX_AVATAR_BYTES:
            raise StoreError("Image is larger than 2 MB")
        path = f"avatars/{self.user_id}-{secrets.token_hex(8)}.{extension}"
        result = storage.upload(AVATAR_BUCKET, path, data)
        if not result.ok:
            raise result.error
        url = storage.public_url(AVATAR_BUCKET, path)
        profile = self.get()
        profile.avatar_url = url
        self.session.commit()
        logger.info(f"avatar_uploaded: user={self.user_id} path={path}")
        return url


class CategoryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name)
        )
        return self.session.scalars(stmt).all()

    def _get(self, category_id: str) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def seed_defaults(self, commit: bool = True) -> bool:
        """Create the default categories unless the user already has some."""
        count = self.session.scalar(
            select(func.count(Category.id)).where(Category.user_id == self.user_id)
        )
        if count:
            return False
        for name, color, txn_type in DEFAULT_CATEGORIES:
            self.session.add(
                Category(user_id=self.user_id, name=name, color=color, type=txn_type)
            )
        if commit:
            self.session.commit()
        else:
            self.session.flush()
        logger.info(f"categories_seeded: user={self.user_id}")
        return True

    def create(self, data: CategoryIn) -> Category:
        clean_name = data.name.strip()
        if not clean_name:
            raise StoreError("Category name cannot be empty")
        category = Category(
            user_id=self.user_id,
            name=clean_name,
            color=(data.color or random_category_color()).upper(),
            icon=data.icon,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: str, data: CategoryUpdateIn) -> Category:
        category = self._get(category_id)
        if data.name is not None:
            clean_name = data.name.strip()
            if not clean_name:
                raise StoreError("Category name cannot be empty")
            category.name = clean_name
        if data.color is not None:
            category.color = data.color.upper()
        if data.icon is not None:
            category.icon = data.icon
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: str) -> None:
        # transactions keep the dangling id and resolve to the fallback on read
        category = self._get(category_id)
        self.session.delete(category)
        self.session.commit()


class TransactionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Transaction]:
        return self.list(TransactionFilters())

    def list(self, filters: TransactionFilters) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.created_at.desc())
        )
        if filters.period:
            stmt = stmt.where(
                Transaction.date.between(filters.period.start, filters.period.end)
            )
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        return self.session.scalars(stmt).all()

    def get(self, transaction_id: str) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFoundError("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        txn = Transaction(
            user_id=self.user_id,
            name=data.name.strip(),
            notes=data.description,
            amount_cents=signed_amount(data.amount_cents, data.type),
            type=data.type,
            date=data.date,
            category_id=data.category_id,
            payment_method=data.method,
            is_scheduled=data.is_scheduled,
            status=initial_status(data.is_scheduled, data.status),
        )
        self.session.add(txn)
        self.session.flush()
        if txn.is_scheduled:
            NotificationService(self.session, self.user_id).add(
                scheduled_payment_notice(txn), commit=False
            )
        self.session.commit()
        self.session.refresh(txn)
        logger.info(
            f"transaction_added: user={self.user_id} id={txn.id} "
            f"scheduled={txn.is_scheduled}"
        )
        return txn

    def update(self, transaction_id: str, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        if not data.is_scheduled:
            status = TransactionStatus.paid
            if txn.is_scheduled:
                check_transition(txn.status, status, is_scheduled=True)
        elif not txn.is_scheduled:
            status = initial_status(True, data.status)
        else:
            status = data.status or txn.status
            check_transition(txn.status, status, is_scheduled=True)

        txn.name = data.name.strip()
        txn.notes = data.description
        txn.type = data.type
        txn.amount_cents = signed_amount(data.amount_cents, data.type)
        txn.date = data.date
        txn.category_id = data.category_id
        txn.payment_method = data.method
        txn.is_scheduled = data.is_scheduled
        txn.status = status
        self.session.commit()
        self.session.refresh(txn)
        logger.info(f"transaction_updated: user={self.user_id} id={txn.id}")
        return txn

    def set_status(self, transaction_id: str, status: TransactionStatus) -> Transaction:
        txn = self.get(transaction_id)
        check_transition(txn.status, status, is_scheduled=txn.is_scheduled)
        if txn.status == status:
            return txn
        previous = txn.status
        txn.status = status
        self.session.commit()
        self.session.refresh(txn)
        logger.info(
            f"transaction_status_changed: user={self.user_id} id={txn.id} "
            f"from={previous.value} to={status.value}"
        )
        return txn

    def delete(self, transaction_id: str) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()
        logger.info(f"transaction_deleted: user={self.user_id} id={transaction_id}")


def scheduled_payment_notice(txn: Transaction) -> NotificationIn:
    return NotificationIn(
        title="Pagamento agendado",
        message=(
            f"{txn.name}: {format_currency(abs(txn.amount_cents))} "
            f"via {format_payment_method(txn.payment_method)} "
            f"em {format_date(txn.date)}"
        ),
        type=NotificationType.scheduled_payment.value,
        related_id=txn.id,
    )


class NotificationService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Notification]:
        stmt = (
            select(Notification)
            .where(Notification.user_id == self.user_id)
            .order_by(Notification.created_at.desc())
        )
        return self.session.scalars(stmt).all()

    def _get(self, notification_id: str) -> Notification:
        notification = self.session.get(Notification, notification_id)
        if not notification or notification.user_id != self.user_id:
            raise NotFoundError("Notification not found")
        return notification

    def add(self, data: NotificationIn, commit: bool = True) -> Notification:
        notification = Notification(
            user_id=self.user_id,
            title=data.title,
            message=data.message,
            type=data.type,
            related_id=data.related_id,
        )
        self.session.add(notification)
        if commit:
            self.session.commit()
            self.session.refresh(notification)
        else:
            self.session.flush()
        return notification

    def mark_read(self, notification_id: str) -> Notification:
        notification = self._get(notification_id)
        notification.is_read = True
        self.session.commit()
        return notification

    def mark_all_read(self) -> int:
        result = self.session.execute(
            update(Notification)
            .where(
                Notification.user_id == self.user_id,
                Notification.is_read.is_(False),
            )
            .values(is_read=True)
        )
        self.session.commit()
        return result.rowcount or 0

    def delete(self, notification_id: str) -> None:
        notification = self._get(notification_id)
        self.session.delete(notification)
        self.session.commit()

