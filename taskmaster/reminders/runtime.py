"""
Process-wide wiring of the job scheduler, reminder source and notifier.

Built lazily so importing the task module does not open database connections.
"""
from typing import Optional

from taskmaster.db.session import SessionLocal
from .celery_app import celery_app
from .config import settings
from .dispatcher import FcmNotifier
from .jobs import SqlCeleryJobScheduler
from .repository import SqlReminderSource
from .scheduler import ReminderOccurrenceScheduler

_job_scheduler: Optional[SqlCeleryJobScheduler] = None
_occurrence_scheduler: Optional[ReminderOccurrenceScheduler] = None


def get_job_scheduler() -> SqlCeleryJobScheduler:
    global _job_scheduler
    if _job_scheduler is None:
        _job_scheduler = SqlCeleryJobScheduler(
            SessionLocal,
            celery_app,
            queue=settings.RABBITMQ_QUEUE,
            routing_key=settings.RABBITMQ_ROUTING_KEY,
        )
    return _job_scheduler


def get_occurrence_scheduler() -> ReminderOccurrenceScheduler:
    global _occurrence_scheduler
    if _occurrence_scheduler is None:
        source = SqlReminderSource(SessionLocal, batch_size=settings.SCHEDULER_BATCH_SIZE)
        scheduler = ReminderOccurrenceScheduler(
            jobs=get_job_scheduler(),
            notifier=FcmNotifier(token_lookup=source.token_for_user, settings=settings),
            reminders=source,
            settings=settings,
        )
        scheduler.register()
        _occurrence_scheduler = scheduler
    return _occurrence_scheduler
