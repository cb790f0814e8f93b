"""
Recurrence expansion

Expands a reminder's recurrence rule into the concrete UTC instants that fall
inside a window, respecting the reminder's timezone for weekday and calendar
month computations.
"""
import calendar
import logging
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from taskmaster.utils.timezone import (
    DateInput,
    LocalParts,
    build_localized_date_time_metadata,
    convert_local_parts_to_utc,
    ensure_time_zone,
    get_local_weekday,
    get_zoneinfo,
    parse_date_input_to_utc,
)
from .metrics import occurrences_expanded_total
from .schemas import Cadence, Occurrence, Recurrence, ReminderSnapshot

logger = logging.getLogger(__name__)

DAY = timedelta(days=1)
DEFAULT_WINDOW_DAYS = 90
MAX_OCCURRENCES = 400


class OccurrenceWindow:
    """Collects in-window occurrences for one expansion call."""

    def __init__(self, start: datetime, end: datetime, time_zone: str, limit: int = MAX_OCCURRENCES):
        self.start = start
        self.end = end
        self.time_zone = time_zone
        self.limit = limit
        self.occurrences: List[Occurrence] = []

    @property
    def full(self) -> bool:
        return len(self.occurrences) >= self.limit

    def push_if_in_window(self, candidate: datetime) -> None:
        if candidate < self.start or candidate > self.end:
            return
        self.occurrences.append(
            Occurrence(
                occurrence_date=candidate,
                local_meta=build_localized_date_time_metadata(candidate, self.time_zone),
            )
        )


def _whole_days_between(earlier: datetime, later: datetime) -> int:
    return (later - earlier) // DAY


def _expand_once(window: OccurrenceWindow, anchor: datetime, recurrence: Recurrence) -> None:
    window.push_if_in_window(anchor)


def _expand_daily(window: OccurrenceWindow, anchor: datetime, recurrence: Recurrence) -> None:
    step = max(1, recurrence.interval)
    offset = max(0, _whole_days_between(anchor, window.start))
    # Align the first candidate to the interval
    offset += -offset % step
    # Offsets past the window end are never turned into datetimes; huge intervals would overflow
    last_offset = _whole_days_between(anchor, window.end)
    while offset <= last_offset and not window.full:
        window.push_if_in_window(anchor + offset * DAY)
        offset += step


def _expand_weekly(window: OccurrenceWindow, anchor: datetime, recurrence: Recurrence) -> None:
    step_weeks = max(1, recurrence.interval)
    weekdays = set(recurrence.days_of_week) or {get_local_weekday(anchor, window.time_zone)}

    # Start a week early so boundary days near the window start are not missed
    day_offset = max(0, _whole_days_between(anchor, window.start) - 7)
    while not window.full:
        candidate = anchor + day_offset * DAY
        if candidate > window.end:
            break
        weeks_since_anchor = day_offset // 7
        if weeks_since_anchor % step_weeks == 0 and get_local_weekday(candidate, window.time_zone) in weekdays:
            window.push_if_in_window(candidate)
        day_offset += 1


def _months_between(earlier: datetime, later: datetime) -> int:
    return (later.year - earlier.year) * 12 + (later.month - earlier.month)


def _monthly_candidate(local_anchor: datetime, month_offset: int, time_zone: str) -> datetime:
    year, month_index = divmod(local_anchor.month - 1 + month_offset, 12)
    year += local_anchor.year
    month = month_index + 1
    # Clamp to the month's last day, never overflow into the next month
    day = min(local_anchor.day, calendar.monthrange(year, month)[1])
    parts = LocalParts.from_datetime(local_anchor)
    return convert_local_parts_to_utc(
        LocalParts(year, month, day, parts.hour, parts.minute, parts.second, parts.millisecond),
        time_zone,
    )


def _expand_monthly(window: OccurrenceWindow, anchor: datetime, recurrence: Recurrence) -> None:
    step = max(1, recurrence.interval)
    zone = get_zoneinfo(window.time_zone)
    local_anchor = anchor.astimezone(zone)

    month_offset = max(0, _months_between(local_anchor, window.start.astimezone(zone)) - 1)
    month_offset += -month_offset % step
    last_offset = _months_between(local_anchor, window.end.astimezone(zone))
    budget = last_offset - month_offset + 2

    iterations = 0
    # A candidate in a later local month than the window end is past it
    while iterations < budget and month_offset <= last_offset and not window.full:
        candidate = _monthly_candidate(local_anchor, month_offset, window.time_zone)
        if candidate > window.end:
            break
        window.push_if_in_window(candidate)
        month_offset += step
        iterations += 1


_CADENCE_EXPANDERS: Dict[Cadence, Callable[[OccurrenceWindow, datetime, Recurrence], None]] = {
    Cadence.NONE: _expand_once,
    Cadence.DAILY: _expand_daily,
    Cadence.WEEKLY: _expand_weekly,
    Cadence.MONTHLY: _expand_monthly,
}


def coerce_reminder(reminder: Union[ReminderSnapshot, Mapping[str, Any], None]) -> Optional[ReminderSnapshot]:
    """Validate a reminder document; malformed documents yield None and a warning."""
    if reminder is None:
        return None
    if isinstance(reminder, ReminderSnapshot):
        return reminder
    try:
        return ReminderSnapshot.model_validate(reminder)
    except ValidationError as exc:
        reminder_id = (reminder.get("_id") or reminder.get("id")) if isinstance(reminder, Mapping) else None
        logger.warning("Skipping malformed reminder %s: %s", reminder_id, exc)
        return None


def expand_reminder_occurrences(
    reminder: Union[ReminderSnapshot, Mapping[str, Any], None],
    window_start: Optional[DateInput] = None,
    window_end: Optional[DateInput] = None,
) -> List[Occurrence]:
    """Expand ``reminder`` into occurrences between ``window_start`` and ``window_end`` (inclusive).

    The window defaults to now .. now + 90 days. Returns occurrences in
    ascending order, at most ``MAX_OCCURRENCES`` of them. Malformed reminders
    produce an empty list; malformed window bounds raise ``DateInputError``.
    """
    snapshot = coerce_reminder(reminder)
    if snapshot is None:
        return []

    anchor = snapshot.anchor
    if anchor is None:
        logger.warning("Reminder %s has neither anchorDate nor scheduledAt", snapshot.id)
        return []

    start = parse_date_input_to_utc(window_start) if window_start is not None else datetime.now(dt_timezone.utc)
    end = (
        parse_date_input_to_utc(window_end)
        if window_end is not None
        else start + timedelta(days=DEFAULT_WINDOW_DAYS)
    )

    recurrence = snapshot.recurrence
    window = OccurrenceWindow(start, end, ensure_time_zone(snapshot.timezone))
    expander = _CADENCE_EXPANDERS.get(recurrence.cadence, _expand_once)
    expander(window, anchor, recurrence)

    if window.occurrences:
        occurrences_expanded_total.labels(cadence=recurrence.cadence.value).inc(len(window.occurrences))
    return window.occurrences
