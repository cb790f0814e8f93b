from datetime import datetime, timedelta, timezone as dt_timezone

import pytest

from taskmaster.reminders.recurrence import MAX_OCCURRENCES, expand_reminder_occurrences
from taskmaster.reminders.schemas import Cadence, ReminderSnapshot
from taskmaster.utils.timezone import DateInputError, get_local_weekday

from .conftest import utc


def reminder(anchor, cadence="none", interval=1, days=None, tz="UTC", **extra):
    doc = {
        "_id": "r1",
        "user": "u1",
        "title": "Take vitamins",
        "scheduledAt": anchor,
        "timezone": tz,
        "recurrence": {"cadence": cadence, "interval": interval, "daysOfWeek": days or []},
    }
    doc.update(extra)
    return doc


def dates(occurrences):
    return [o.occurrence_date for o in occurrences]


def test_one_shot_only_in_window():
    anchor = utc(2024, 3, 1, 9)
    assert dates(expand_reminder_occurrences(reminder(anchor), utc(2024, 2, 1), utc(2024, 4, 1))) == [anchor]
    assert expand_reminder_occurrences(reminder(anchor), utc(2024, 3, 2), utc(2024, 4, 1)) == []


def test_daily_interval_steps():
    result = dates(
        expand_reminder_occurrences(reminder(utc(2024, 1, 1, 9), "daily", 3), utc(2024, 1, 5), utc(2024, 1, 20))
    )
    assert result == [utc(2024, 1, d, 9) for d in (7, 10, 13, 16, 19)]
    assert all(b - a == timedelta(days=3) for a, b in zip(result, result[1:]))


def test_daily_non_positive_interval_is_every_day():
    result = dates(
        expand_reminder_occurrences(reminder(utc(2024, 1, 1, 9), "daily", 0), utc(2024, 1, 1), utc(2024, 1, 4))
    )
    assert result == [utc(2024, 1, d, 9) for d in (1, 2, 3)]


def test_window_bounds_are_inclusive():
    doc = reminder(utc(2024, 1, 1, 9), "daily")
    start, end = utc(2024, 1, 3, 9), utc(2024, 1, 5, 9)
    assert dates(expand_reminder_occurrences(doc, start, end)) == [start, utc(2024, 1, 4, 9), end]

    ms = timedelta(milliseconds=1)
    assert dates(expand_reminder_occurrences(doc, start + ms, end - ms)) == [utc(2024, 1, 4, 9)]


def test_daily_cap():
    start = utc(2024, 1, 1)
    result = expand_reminder_occurrences(reminder(start, "daily"), start, start + timedelta(days=1000))
    assert len(result) == MAX_OCCURRENCES == 400


def test_weekly_days_and_interval():
    # 2024-01-01 is a Monday; every other week on Mon/Wed/Fri
    doc = reminder(utc(2024, 1, 1, 9), "weekly", 2, days=[1, 3, 5])
    result = dates(expand_reminder_occurrences(doc, utc(2024, 1, 1), utc(2024, 1, 31, 23, 59)))
    assert result == [utc(2024, 1, d, 9) for d in (1, 3, 5, 15, 17, 19, 29, 31)]
    assert {get_local_weekday(d, "UTC") for d in result} == {1, 3, 5}


def test_weekly_window_starting_mid_series():
    doc = reminder(utc(2024, 1, 1, 9), "weekly", 2, days=[1, 3, 5])
    result = dates(expand_reminder_occurrences(doc, utc(2024, 1, 16), utc(2024, 1, 31, 23, 59)))
    assert result == [utc(2024, 1, d, 9) for d in (17, 19, 29, 31)]


def test_weekly_defaults_to_anchor_weekday():
    doc = reminder(utc(2024, 1, 1, 9), "weekly")
    result = dates(expand_reminder_occurrences(doc, utc(2024, 1, 1), utc(2024, 1, 22, 9)))
    assert result == [utc(2024, 1, d, 9) for d in (1, 8, 15, 22)]


def test_weekly_uses_local_weekday():
    """Test that the same anchor matches different days in far-apart zones"""
    anchor = utc(2024, 1, 10, 12)
    window = (anchor, anchor + timedelta(days=6))

    kiritimati = reminder(anchor, "weekly", days=[4], tz="Pacific/Kiritimati")
    midway = reminder(anchor, "weekly", days=[4], tz="Pacific/Midway")

    assert get_local_weekday(anchor, "Pacific/Kiritimati") != get_local_weekday(anchor, "Pacific/Midway")
    assert dates(expand_reminder_occurrences(kiritimati, *window)) == [anchor]
    assert dates(expand_reminder_occurrences(midway, *window)) == [anchor + timedelta(days=1)]


def test_monthly_clamps_and_keeps_local_time():
    doc = reminder(utc(2024, 1, 31, 9), "monthly", tz="America/New_York")
    result = expand_reminder_occurrences(doc, "2024-02-01", "2024-04-30")

    # 04:00 local: EST in February, EDT at the end of March
    assert dates(result) == [utc(2024, 2, 29, 9), utc(2024, 3, 31, 8)]
    assert [o.local_meta.local_date for o in result] == ["2024-02-29", "2024-03-31"]
    assert {o.local_meta.local_time for o in result} == {"04:00"}


def test_monthly_interval_clamps_to_month_end():
    doc = reminder(utc(2024, 1, 31, 9), "monthly", 2)
    result = dates(expand_reminder_occurrences(doc, utc(2024, 1, 1), utc(2024, 12, 31)))
    assert result == [
        utc(2024, 1, 31, 9),
        utc(2024, 3, 31, 9),
        utc(2024, 5, 31, 9),
        utc(2024, 7, 31, 9),
        utc(2024, 9, 30, 9),
        utc(2024, 11, 30, 9),
    ]


def test_monthly_window_aligned_to_interval():
    doc = reminder(utc(2024, 1, 15, 10), "monthly", 3)
    result = dates(expand_reminder_occurrences(doc, utc(2024, 6, 1), utc(2024, 12, 31)))
    assert result == [utc(2024, 7, 15, 10), utc(2024, 10, 15, 10)]


@pytest.mark.parametrize("cadence", ["custom", "fortnightly"])
def test_unsupported_cadences_fire_once_at_anchor(cadence):
    anchor = utc(2024, 3, 1, 9)
    doc = reminder(anchor, cadence)
    doc["recurrence"]["customRule"] = "FREQ=YEARLY"
    assert dates(expand_reminder_occurrences(doc, utc(2024, 1, 1), utc(2025, 1, 1))) == [anchor]
    assert ReminderSnapshot.model_validate(doc).recurrence.cadence is Cadence.CUSTOM


def test_anchor_date_overrides_scheduled_at():
    doc = reminder(utc(2024, 3, 1, 9), "daily")
    doc["recurrence"]["anchorDate"] = "2024-03-10T07:30:00Z"
    result = dates(expand_reminder_occurrences(doc, utc(2024, 3, 1), utc(2024, 3, 11, 12)))
    assert result == [utc(2024, 3, 10, 7, 30), utc(2024, 3, 11, 7, 30)]


def test_malformed_reminders_yield_nothing():
    window = (utc(2024, 1, 1), utc(2024, 12, 31))
    assert expand_reminder_occurrences(None, *window) == []
    assert expand_reminder_occurrences(reminder("not a date", "daily"), *window) == []
    assert expand_reminder_occurrences(reminder(None, "daily"), *window) == []
    assert expand_reminder_occurrences(reminder(utc(2024, 1, 1), "daily", days=[9]), *window) == []


def test_invalid_timezone_falls_back_to_utc():
    doc = reminder(utc(2024, 1, 1, 9), "daily", tz="Mars/Olympus")
    result = expand_reminder_occurrences(doc, utc(2024, 1, 1), utc(2024, 1, 1, 23))
    assert dates(result) == [utc(2024, 1, 1, 9)]
    assert result[0].local_meta.local_timezone == "UTC"


def test_malformed_window_raises():
    with pytest.raises(DateInputError):
        expand_reminder_occurrences(reminder(utc(2024, 1, 1), "daily"), "yesterday", utc(2024, 2, 1))


def test_default_window_is_next_ninety_days():
    now = datetime.now(dt_timezone.utc)
    soon, late = now + timedelta(days=1), now + timedelta(days=120)
    assert dates(expand_reminder_occurrences(reminder(soon))) == [soon]
    assert expand_reminder_occurrences(reminder(late)) == []


def test_expansion_is_idempotent():
    doc = reminder(utc(2024, 1, 31, 9), "monthly", tz="Asia/Kolkata")
    window = (utc(2024, 1, 1), utc(2025, 1, 1))
    assert expand_reminder_occurrences(doc, *window) == expand_reminder_occurrences(doc, *window)


def test_accepts_snapshot_instances():
    snapshot = ReminderSnapshot.model_validate(reminder(utc(2024, 1, 1, 9), "daily"))
    assert len(expand_reminder_occurrences(snapshot, utc(2024, 1, 1), utc(2024, 1, 10))) == 9


@pytest.mark.parametrize(
    "cadence,interval",
    [("daily", 10_000_000), ("daily", 2_000_000_000), ("monthly", 100_000), ("weekly", 2_000_000_000)],
)
def test_interval_larger_than_window(cadence, interval):
    """Test that huge intervals end expansion instead of overflowing dates"""
    anchor = utc(2024, 1, 1, 9)
    doc = reminder(anchor, cadence, interval)

    assert expand_reminder_occurrences(doc, utc(2024, 2, 1), utc(2024, 5, 1)) == []
    assert dates(expand_reminder_occurrences(doc, utc(2023, 12, 1), utc(2024, 5, 1))) == [anchor]
