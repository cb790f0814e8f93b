"""
Durable delivery jobs

Job records live in the ``scheduled_jobs`` table and execution is driven by
Celery: scheduling a job inserts its record and enqueues ``reminders.run_job``
with an ETA. The record is the source of truth, so cancelling deletes it and
a Celery message whose record is gone (or already claimed) is ignored.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from taskmaster.utils.timezone import to_utc_aware
from .metrics import jobs_cancelled_total, jobs_deduplicated_total, jobs_failed_total, jobs_scheduled_total
from .models import ScheduledJob

logger = logging.getLogger(__name__)

RUN_JOB_TASK = "reminders.run_job"

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"


@dataclass(frozen=True)
class Job:
    id: str
    name: str
    run_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)


# A handler may return a UTC instant to run the same job again later
JobHandler = Callable[[Job], Optional[datetime]]


class UnknownJobError(LookupError):
    pass


class JobScheduler(Protocol):
    """Schedule named jobs at UTC instants; jobs survive restarts and are removed after running."""

    def define(self, name: str, handler: JobHandler) -> None: ...

    def schedule(
        self,
        run_at: datetime,
        name: str,
        payload: Dict[str, Any],
        unique_key: Optional[str] = None,
    ) -> str: ...

    def remove(self, job_id: str) -> None: ...

    def cancel_for_reminder(self, reminder_id: str) -> int: ...


class SqlCeleryJobScheduler:
    """JobScheduler storing job records with SQLAlchemy and executing them through Celery"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        celery: Any,
        queue: Optional[str] = None,
        routing_key: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.celery = celery
        self.queue = queue
        self.routing_key = routing_key
        self._handlers: Dict[str, JobHandler] = {}

    def define(self, name: str, handler: JobHandler) -> None:
        self._handlers[name] = handler

    @staticmethod
    def _find_existing(db: Session, name: str, unique_key: str) -> Optional[ScheduledJob]:
        stmt = (
            select(ScheduledJob)
            .where(ScheduledJob.name == name)
            .where(ScheduledJob.unique_key == unique_key)
        )
        return db.execute(stmt).scalars().first()

    def _enqueue(self, job_id: str, run_at: datetime) -> Optional[str]:
        options: Dict[str, Any] = {"eta": run_at}
        if self.queue:
            options["queue"] = self.queue
        if self.routing_key:
            options["routing_key"] = self.routing_key
        result = self.celery.send_task(RUN_JOB_TASK, args=[job_id], **options)
        return getattr(result, "id", None)

    @staticmethod
    def _discard(db: Session, job: ScheduledJob) -> None:
        job_id, name = job.id, job.name
        db.rollback()
        db.execute(delete(ScheduledJob).where(ScheduledJob.id == job_id))
        db.commit()
        logger.error("Failed to enqueue job %s (%s), record removed", job_id, name)

    def schedule(
        self,
        run_at: datetime,
        name: str,
        payload: Dict[str, Any],
        unique_key: Optional[str] = None,
    ) -> str:
        """Schedule ``name`` at ``run_at``; a pending or running job with the same ``unique_key`` is reused."""
        run_at = to_utc_aware(run_at)
        db = self.session_factory()
        try:
            if unique_key is not None:
                existing = self._find_existing(db, name, unique_key)
                if existing is not None:
                    jobs_deduplicated_total.inc()
                    return existing.id

            job = ScheduledJob(
                name=name,
                payload=dict(payload),
                run_at=run_at,
                unique_key=unique_key,
                reminder_id=payload.get("reminderId"),
                status=STATUS_PENDING,
            )
            db.add(job)
            try:
                db.commit()
            except IntegrityError:
                # A concurrent sweep inserted the same key first
                db.rollback()
                existing = self._find_existing(db, name, unique_key) if unique_key is not None else None
                if existing is None:
                    raise
                jobs_deduplicated_total.inc()
                return existing.id

            try:
                job.celery_task_id = self._enqueue(job.id, run_at)
            except Exception:
                # A record without a message would block its key forever
                self._discard(db, job)
                raise
            db.commit()
            jobs_scheduled_total.inc()
            logger.info("Scheduled job %s (%s) at %s key=%s", job.id, name, run_at.isoformat(), unique_key)
            return job.id
        finally:
            db.close()

    def remove(self, job_id: str) -> None:
        db = self.session_factory()
        try:
            db.execute(delete(ScheduledJob).where(ScheduledJob.id == job_id))
            db.commit()
        finally:
            db.close()

    def cancel_for_reminder(self, reminder_id: str) -> int:
        """Delete every pending job of ``reminder_id`` and revoke its Celery message."""
        db = self.session_factory()
        try:
            jobs = list(
                db.execute(
                    select(ScheduledJob)
                    .where(ScheduledJob.reminder_id == str(reminder_id))
                    .where(ScheduledJob.status == STATUS_PENDING)
                ).scalars()
            )
            for job in jobs:
                if job.celery_task_id:
                    self.celery.control.revoke(job.celery_task_id)
                db.delete(job)
            db.commit()
        finally:
            db.close()
        if jobs:
            jobs_cancelled_total.inc(len(jobs))
            logger.info("Cancelled %d pending jobs for reminder %s", len(jobs), reminder_id)
        return len(jobs)

    def _claim(self, job_id: str) -> Optional[Job]:
        db = self.session_factory()
        try:
            # Conditional update so a redelivered message cannot run the job twice
            claimed = db.execute(
                update(ScheduledJob)
                .where(ScheduledJob.id == job_id)
                .where(ScheduledJob.status == STATUS_PENDING)
                .values(status=STATUS_RUNNING)
            ).rowcount
            db.commit()
            if not claimed:
                return None
            row = db.get(ScheduledJob, job_id)
            return Job(id=row.id, name=row.name, run_at=to_utc_aware(row.run_at), payload=dict(row.payload or {}))
        finally:
            db.close()

    def _defer(self, job_id: str, run_at: datetime) -> None:
        run_at = to_utc_aware(run_at)
        db = self.session_factory()
        try:
            job = db.get(ScheduledJob, job_id)
            job.run_at = run_at
            job.status = STATUS_PENDING
            try:
                job.celery_task_id = self._enqueue(job.id, run_at)
            except Exception:
                self._discard(db, job)
                raise
            db.commit()
            logger.info("Deferred job %s (%s) to %s", job.id, job.name, run_at.isoformat())
        finally:
            db.close()

    def run(self, job_id: str) -> bool:
        """Execute a job once and delete its record, whether the handler succeeds or raises.

        A handler returning a datetime keeps the record and re-arms it for
        that instant instead.
        """
        job = self._claim(job_id)
        if job is None:
            logger.info("Job %s is no longer scheduled, skipping", job_id)
            return False

        defer_to: Optional[datetime] = None
        try:
            handler = self._handlers.get(job.name)
            if handler is None:
                raise UnknownJobError(f"No handler defined for job {job.name!r}")
            defer_to = handler(job)
        except Exception:
            jobs_failed_total.inc()
            logger.exception("Job %s (%s) failed, payload=%s", job.id, job.name, job.payload)
            raise
        finally:
            if defer_to is None:
                self.remove(job.id)

        if defer_to is not None:
            self._defer(job.id, defer_to)
        return True
