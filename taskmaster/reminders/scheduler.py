"""
Occurrence scheduling

Turns expanded occurrences into delivery jobs keyed by (reminder id,
occurrence date), delivers a reminder when its job fires, and keeps the next
horizon of a recurring reminder scheduled. Collaborators (job scheduler,
notifier, reminder source) are injected so nothing here touches real timers
or the network.
"""
import logging
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, Union

from taskmaster.utils.timezone import parse_date_input_to_utc, to_utc_aware
from .config import ReminderSettings, settings as reminder_settings
from .dispatcher import Notifier
from .jobs import Job, JobScheduler
from .metrics import scheduler_sweeps_total
from .recurrence import coerce_reminder, expand_reminder_occurrences
from .schemas import ReminderSnapshot

logger = logging.getLogger(__name__)

SEND_REMINDER_JOB = "reminders.send_reminder"


class ReminderSource(Protocol):
    def get(self, reminder_id: str) -> Optional[ReminderSnapshot]: ...

    def list_active(self) -> Iterable[ReminderSnapshot]: ...

    def mark_sent(self, reminder_id: str, sent_at: datetime) -> None: ...


def _iso(dt: datetime) -> str:
    return to_utc_aware(dt).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def job_key(reminder_id: str, occurrence_date: datetime) -> str:
    """Identity of a delivery job: one per reminder and occurrence instant."""
    return f"{reminder_id}:{_iso(occurrence_date)}"


class ReminderOccurrenceScheduler:
    """Schedules, cancels and delivers reminder occurrences"""

    def __init__(
        self,
        jobs: JobScheduler,
        notifier: Notifier,
        reminders: ReminderSource,
        settings: ReminderSettings = reminder_settings,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.jobs = jobs
        self.notifier = notifier
        self.reminders = reminders
        self.settings = settings
        self.clock = clock or (lambda: datetime.now(dt_timezone.utc))

    def register(self) -> None:
        self.jobs.define(SEND_REMINDER_JOB, self.handle_job)

    def _schedule_occurrence(self, reminder_id: str, occurrence_date: datetime) -> str:
        return self.jobs.schedule(
            occurrence_date,
            SEND_REMINDER_JOB,
            {"reminderId": reminder_id, "occurrenceDate": _iso(occurrence_date)},
            unique_key=job_key(reminder_id, occurrence_date),
        )

    def schedule_occurrences(
        self,
        reminder: Union[ReminderSnapshot, Mapping[str, Any], None],
        horizon: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Schedule a job for every occurrence in [now, now + horizon]; returns how many occurrences."""
        snapshot = coerce_reminder(reminder)
        if snapshot is None or not snapshot.id or snapshot.is_deleted:
            return 0

        start = to_utc_aware(now) or self.clock()
        if horizon is None:
            horizon = timedelta(days=self.settings.SCHEDULE_HORIZON_DAYS)
        occurrences = expand_reminder_occurrences(snapshot, start, start + horizon)
        for occurrence in occurrences:
            self._schedule_occurrence(snapshot.id, occurrence.occurrence_date)
        return len(occurrences)

    def cancel_jobs(self, reminder_id: str) -> int:
        return self.jobs.cancel_for_reminder(str(reminder_id))

    def reschedule(
        self,
        reminder: Union[ReminderSnapshot, Mapping[str, Any], None],
        horizon: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Cancel pending jobs then schedule afresh; used when a reminder is created or edited."""
        snapshot = coerce_reminder(reminder)
        if snapshot is None or not snapshot.id:
            return 0
        self.cancel_jobs(snapshot.id)
        if snapshot.is_deleted:
            return 0
        return self.schedule_occurrences(snapshot, horizon=horizon, now=now)

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Expand every active reminder over the rolling sweep window and schedule the results.

        Re-running a sweep is harmless: jobs are keyed by occurrence. A reminder
        that fails is logged and skipped.
        """
        start = to_utc_aware(now) or self.clock()
        window = timedelta(seconds=self.settings.SWEEP_WINDOW_SECONDS)
        scanned = 0
        scheduled = 0
        for reminder in self.reminders.list_active():
            scanned += 1
            try:
                scheduled += self.schedule_occurrences(reminder, horizon=window, now=start)
            except Exception:
                logger.exception("Sweep failed for reminder %s", reminder.id)
        scheduler_sweeps_total.inc()
        logger.info("Sweep at %s scanned %d reminders, %d occurrences due", _iso(start), scanned, scheduled)
        return scheduled

    def handle_job(self, job: Job) -> Optional[datetime]:
        """Deliver one occurrence. Returns an instant when the job fired too early and must run again."""
        reminder_id = job.payload.get("reminderId")
        if not reminder_id:
            raise ValueError("Missing reminderId in job data")

        reminder = self.reminders.get(reminder_id)
        if reminder is None or reminder.is_deleted:
            logger.info("Reminder %s is gone, cancelling its jobs", reminder_id)
            self.cancel_jobs(reminder_id)
            return None

        now = self.clock()
        occurrence = parse_date_input_to_utc(job.payload.get("occurrenceDate") or job.run_at)
        if occurrence > now + timedelta(seconds=self.settings.EARLY_FIRE_TOLERANCE_SECONDS):
            logger.info("Job for reminder %s fired early, re-arming for %s", reminder_id, _iso(occurrence))
            return occurrence

        if reminder.user_id:
            self.notifier.send(
                reminder.user_id,
                reminder.title or "Reminder",
                reminder.description or reminder.title or "Reminder is due",
                data={"type": "reminder", "reminderId": reminder_id, "occurrenceDate": _iso(occurrence)},
            )
        else:
            logger.warning("Reminder %s has no user to notify", reminder_id)
        self.reminders.mark_sent(reminder_id, now)

        if reminder.recurrence.cadence.is_recurring:
            self.schedule_occurrences(reminder, now=now)
        return None
