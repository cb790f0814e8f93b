"""
Timezone utilities.

Validate IANA timezone names, convert between zone-local wall-clock parts and
UTC instants, and build localized display metadata. Reminder expansion, the
delivery scheduler and the request middleware all go through these helpers so
that offset arithmetic lives in one place. Instants returned from this module
are always timezone-aware UTC datetimes.
"""
import logging
import math
import re
from dataclasses import dataclass, fields, replace
from datetime import date, datetime, timedelta, timezone as dt_timezone
from typing import Any, Mapping, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from taskmaster.schemas.timezone import LocalizedDateTime

logger = logging.getLogger(__name__)

UTC = "UTC"
EPOCH = datetime(1970, 1, 1, tzinfo=dt_timezone.utc)

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_MONTH_ABBR = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

DateInput = Union[datetime, date, str, int, float]


class DateInputError(ValueError):
    """A date value passed by the caller could not be interpreted."""


@dataclass(frozen=True)
class LocalParts:
    """Wall-clock calendar fields, interpreted relative to some timezone."""
    year: int
    month: int
    day: int
    hour: int = 0
    minute: int = 0
    second: int = 0
    millisecond: int = 0

    @classmethod
    def from_datetime(cls, dt: datetime) -> "LocalParts":
        return cls(dt.year, dt.month, dt.day, dt.hour, dt.minute, dt.second, dt.microsecond // 1000)

    def with_overrides(self, overrides: Optional[Mapping[str, int]]) -> "LocalParts":
        if not overrides:
            return self
        return replace(self, **_coerce_part_values(overrides))


@dataclass(frozen=True)
class ZonedNow:
    date: datetime  # naive, wall-clock time in the requested zone
    parts: LocalParts


_PART_NAMES = tuple(f.name for f in fields(LocalParts))


def _coerce_part_values(values: Mapping[str, Any]) -> dict:
    try:
        return {name: int(values[name]) for name in _PART_NAMES if values.get(name) is not None}
    except (TypeError, ValueError) as exc:
        raise DateInputError(f"Invalid local date parts {dict(values)!r}: {exc}") from exc


def _coerce_parts(parts: Union[LocalParts, Mapping[str, Any]]) -> LocalParts:
    if isinstance(parts, LocalParts):
        return parts
    if isinstance(parts, Mapping):
        try:
            return LocalParts(**_coerce_part_values(parts))
        except TypeError as exc:
            raise DateInputError(f"Local date parts need year, month and day: {exc}") from exc
    raise DateInputError(f"Unsupported local parts type: {type(parts).__name__}")


def ensure_time_zone(time_zone: Optional[str] = UTC) -> str:
    """Return ``time_zone`` if it is a loadable IANA name, else ``"UTC"``.

    Never raises: a bad zone must not drop a reminder, so the failure is only
    logged.
    """
    zone = time_zone or UTC
    try:
        ZoneInfo(zone)
        return zone
    except (ZoneInfoNotFoundError, ValueError, TypeError, OSError):
        logger.warning('Invalid timezone "%s", falling back to UTC.', zone)
        return UTC


def get_zoneinfo(time_zone: Optional[str]) -> ZoneInfo:
    return ZoneInfo(ensure_time_zone(time_zone))


def to_utc_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize any datetime to UTC-aware (tzinfo=UTC).
    - Aware datetimes are converted to UTC
    - Naive datetimes are assumed UTC and tz attached
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=dt_timezone.utc)
    return dt.astimezone(dt_timezone.utc)


def _local_datetime(instant: Optional[datetime], time_zone: str) -> datetime:
    moment = to_utc_aware(instant) if instant is not None else datetime.now(dt_timezone.utc)
    return moment.astimezone(ZoneInfo(time_zone))


def get_time_zone_offset(time_zone: Optional[str], instant: Optional[datetime] = None) -> float:
    """Offset in minutes of ``time_zone`` at ``instant``, local minus UTC.

    Derived at the exact instant, so it follows daylight-saving transitions
    (New York is -300 in January and -240 in July).
    """
    offset = _local_datetime(instant, ensure_time_zone(time_zone)).utcoffset()
    return offset.total_seconds() / 60 if offset is not None else 0.0


def convert_local_parts_to_utc(
    parts: Union[LocalParts, Mapping[str, Any]],
    time_zone: Optional[str] = UTC,
) -> datetime:
    """Convert wall-clock ``parts`` observed in ``time_zone`` to a UTC instant.

    Month is 1-based. Ambiguous wall times (clocks falling back) resolve to
    the first occurrence; wall times skipped by a spring-forward transition
    are read with the pre-transition offset, landing one hour later locally.
    """
    p = _coerce_parts(parts)
    zone = get_zoneinfo(time_zone)
    try:
        local = datetime(
            p.year, p.month, p.day, p.hour, p.minute, p.second, p.millisecond * 1000,
            tzinfo=zone,
        )
    except ValueError as exc:
        raise DateInputError(f"Invalid local date parts {p}: {exc}") from exc
    return local.astimezone(dt_timezone.utc)


def is_date_only_string(value: Any) -> bool:
    return isinstance(value, str) and bool(_DATE_ONLY_RE.match(value.strip()))


def _local_day_to_utc(
    day: date,
    time_zone: Optional[str],
    override_parts: Optional[Mapping[str, int]] = None,
) -> datetime:
    parts = LocalParts(day.year, day.month, day.day).with_overrides(override_parts)
    return convert_local_parts_to_utc(parts, time_zone)


def parse_date_input_to_utc(
    value: Optional[DateInput],
    time_zone: Optional[str] = UTC,
    override_parts: Optional[Mapping[str, int]] = None,
) -> datetime:
    """Interpret ``value`` as a UTC instant.

    Accepts datetimes (naive ones are taken as UTC), dates and ``YYYY-MM-DD``
    strings (local midnight in ``time_zone`` unless ``override_parts`` sets
    the hour/minute/second/millisecond), epoch milliseconds, and ISO-8601
    strings. Anything else raises :class:`DateInputError`.
    """
    if value is None:
        raise DateInputError("Date value is required.")

    if isinstance(value, datetime):
        return to_utc_aware(value)

    if isinstance(value, date):
        return _local_day_to_utc(value, time_zone, override_parts)

    if isinstance(value, bool):
        raise DateInputError("Unsupported date input type: bool")

    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise DateInputError("Invalid timestamp provided.")
        try:
            return EPOCH + timedelta(milliseconds=value)
        except OverflowError:
            raise DateInputError("Invalid timestamp provided.") from None

    if isinstance(value, str):
        trimmed = value.strip()
        if is_date_only_string(trimmed):
            try:
                day = date.fromisoformat(trimmed)
            except ValueError:
                raise DateInputError(f"Invalid calendar date: {trimmed!r}") from None
            return _local_day_to_utc(day, time_zone, override_parts)
        try:
            parsed = datetime.fromisoformat(trimmed.replace("Z", "+00:00"))
        except ValueError:
            raise DateInputError(f"Unable to parse date string: {trimmed!r}") from None
        return to_utc_aware(parsed)

    raise DateInputError(f"Unsupported date input type: {type(value).__name__}")


def get_start_of_day_utc(time_zone: Optional[str], reference: Optional[datetime] = None) -> datetime:
    """Local 00:00:00.000 of ``reference``'s day in ``time_zone``, as UTC."""
    zone = ensure_time_zone(time_zone)
    local_day = _local_datetime(reference, zone).date()
    return parse_date_input_to_utc(local_day.isoformat(), time_zone=zone)


def get_end_of_day_utc(time_zone: Optional[str], reference: Optional[datetime] = None) -> datetime:
    """Local 23:59:59.999 of ``reference``'s day in ``time_zone``, as UTC."""
    zone = ensure_time_zone(time_zone)
    local_day = _local_datetime(reference, zone).date()
    return parse_date_input_to_utc(
        local_day.isoformat(),
        time_zone=zone,
        override_parts={"hour": 23, "minute": 59, "second": 59, "millisecond": 999},
    )


def get_now_in_time_zone(time_zone: Optional[str] = UTC, now: Optional[datetime] = None) -> ZonedNow:
    local = _local_datetime(now, ensure_time_zone(time_zone)).replace(microsecond=0)
    return ZonedNow(date=local.replace(tzinfo=None), parts=LocalParts.from_datetime(local))


def get_local_weekday(instant: datetime, time_zone: Optional[str]) -> int:
    """Day of week of ``instant`` as observed in ``time_zone``; 0=Sunday .. 6=Saturday."""
    return _local_datetime(instant, ensure_time_zone(time_zone)).isoweekday() % 7


def _lookup(source: Any, key: str) -> Any:
    if source is None:
        return None
    if isinstance(source, Mapping) or hasattr(source, "get"):
        return source.get(key)
    return getattr(source, key, None)


def resolve_timezone_from_request(
    request: Any = None,
    fallback: str = UTC,
    body: Optional[Mapping[str, Any]] = None,
) -> str:
    """Pick the requester's timezone and remember it on ``request.state``.

    Looks at the parsed body, the ``timezone`` query parameter, the
    ``X-User-Timezone`` header and finally the authenticated user stored on
    ``request.state``. Invalid or missing values fall back to ``fallback``.
    """
    state = getattr(request, "state", None)
    user = _lookup(state, "user")
    user_doc = _lookup(state, "user_doc")
    candidate = (
        _lookup(body, "timezone")
        or _lookup(getattr(request, "query_params", None), "timezone")
        or _lookup(getattr(request, "headers", None), "x-user-timezone")
        or _lookup(user, "preferred_timezone")
        or _lookup(user, "timezone")
        or _lookup(user_doc, "timezone")
    )
    zone = ensure_time_zone(candidate or fallback)
    if state is not None:
        state.requested_timezone = zone
    return zone


def _display(local: datetime) -> str:
    hour = local.hour % 12 or 12
    meridiem = "AM" if local.hour < 12 else "PM"
    return f"{_MONTH_ABBR[local.month - 1]} {local.day}, {local.year}, {hour}:{local.minute:02d} {meridiem}"


def build_localized_date_time_metadata(
    value: Optional[DateInput],
    time_zone: Optional[str] = UTC,
) -> Optional[LocalizedDateTime]:
    """Localized date/time strings for ``value``; None when it is missing or unparseable."""
    if value is None or value == "":
        return None
    try:
        moment = parse_date_input_to_utc(value)
    except DateInputError:
        return None

    zone = ensure_time_zone(time_zone)
    local = moment.astimezone(ZoneInfo(zone))
    local_date = f"{local.year:04d}-{local.month:02d}-{local.day:02d}"
    local_time = f"{local.hour:02d}:{local.minute:02d}"
    return LocalizedDateTime(
        local_timezone=zone,
        local_date=local_date,
        local_time=local_time,
        local_date_time_iso=f"{local_date}T{local_time}:{local.second:02d}",
        local_date_time_display=_display(local),
    )
