import logging
from datetime import datetime
from typing import Callable, Iterator, Optional

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from taskmaster.utils.timezone import to_utc_aware
from .models import DeviceToken, Reminder
from .schemas import ReminderSnapshot

logger = logging.getLogger(__name__)


def get_reminder(db: Session, reminder_id: str) -> Optional[Reminder]:
    return db.get(Reminder, str(reminder_id))


def iter_active_reminders(db: Session, batch_size: int = 500) -> Iterator[Reminder]:
    """Yield non-deleted reminders in id order, one keyset page at a time."""
    last_id = None
    while True:
        stmt = (
            select(Reminder)
            .where(Reminder.is_deleted == False)  # noqa: E712
            .order_by(Reminder.id.asc())
            .limit(batch_size)
        )
        if last_id is not None:
            stmt = stmt.where(Reminder.id > last_id)
        rows = list(db.execute(stmt).scalars())
        if not rows:
            return
        yield from rows
        last_id = rows[-1].id


def mark_reminder_sent(db: Session, reminder_id: str, sent_at: datetime) -> None:
    db.execute(
        update(Reminder)
        .where(Reminder.id == str(reminder_id))
        .values(last_sent_at=to_utc_aware(sent_at), sync_status="pending")
    )
    db.commit()


def get_latest_token_for_user(db: Session, user_id: str, platform: str = "ios") -> Optional[str]:
    t = (
        db.query(DeviceToken)
        .filter(DeviceToken.user_id == str(user_id), DeviceToken.platform == platform)
        .order_by(DeviceToken.created_at.desc())
        .first()
    )
    return t.fcm_token if t else None


def to_snapshot(row: Reminder) -> Optional[ReminderSnapshot]:
    """Build the read model for ``row``; rows with malformed recurrence data yield None."""
    try:
        return ReminderSnapshot(
            id=row.id,
            user_id=row.user_id,
            title=row.title,
            description=row.description,
            scheduled_at=row.scheduled_at,
            timezone=row.timezone,
            recurrence=row.recurrence,
            is_deleted=row.is_deleted,
        )
    except ValidationError as exc:
        logger.warning("Reminder %s has malformed data, skipping: %s", row.id, exc)
        return None


class SqlReminderSource:
    """Reminder read model backed by the reminders table"""

    def __init__(self, session_factory: Callable[[], Session], batch_size: int = 500):
        self.session_factory = session_factory
        self.batch_size = batch_size

    def get(self, reminder_id: str) -> Optional[ReminderSnapshot]:
        db = self.session_factory()
        try:
            row = get_reminder(db, reminder_id)
            return to_snapshot(row) if row else None
        finally:
            db.close()

    def list_active(self) -> Iterator[ReminderSnapshot]:
        db = self.session_factory()
        try:
            for row in iter_active_reminders(db, self.batch_size):
                snapshot = to_snapshot(row)
                if snapshot is not None:
                    yield snapshot
        finally:
            db.close()

    def mark_sent(self, reminder_id: str, sent_at: datetime) -> None:
        db = self.session_factory()
        try:
            mark_reminder_sent(db, reminder_id, sent_at)
        finally:
            db.close()

    def token_for_user(self, user_id: str, platform: str = "ios") -> Optional[str]:
        db = self.session_factory()
        try:
            return get_latest_token_for_user(db, user_id, platform=platform)
        finally:
            db.close()
