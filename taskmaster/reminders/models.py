"""
Reminder tables read by the occurrence scheduler, plus the delivery job records
"""
from datetime import datetime, timezone as dt_timezone
import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB

from taskmaster.db.base import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(dt_timezone.utc)


class Reminder(Base):
    """Reminder document; written by the CRUD layer, read here"""
    __tablename__ = "reminders"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(String(2000), nullable=False, default="")
    scheduled_at = Column(DateTime(timezone=True), nullable=False, index=True)
    timezone = Column(String(60), nullable=False, default="UTC")
    recurrence = Column(JSONType, nullable=False, default=dict)  # cadence/interval/daysOfWeek/anchorDate
    is_deleted = Column(Boolean, nullable=False, default=False, index=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    last_sent_at = Column(DateTime(timezone=True), nullable=True)
    sync_status = Column(String, nullable=False, default="synced")

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_reminders_user_scheduled", "user_id", "scheduled_at", "is_deleted"),
    )


class DeviceToken(Base):
    """Push token registered by a user's device"""
    __tablename__ = "device_tokens"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    platform = Column(String, nullable=False, index=True)  # ios, android, web
    fcm_token = Column(String, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_device_tokens_user_platform", "user_id", "platform"),
    )


class ScheduledJob(Base):
    """Durable record of a pending delivery job; deleted once the job has run"""
    __tablename__ = "scheduled_jobs"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    run_at = Column(DateTime(timezone=True), nullable=False, index=True)
    unique_key = Column(String, nullable=True)
    reminder_id = Column(String(36), nullable=True, index=True)
    status = Column(String, nullable=False, default="pending")  # pending, running
    celery_task_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("name", "unique_key", name="uq_scheduled_jobs_name_key"),
    )
