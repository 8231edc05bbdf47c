"""Time-zone helpers shared by the slot generator and the booking resolvers.

Every function here takes the zone (and, where relevant, "now") explicitly.
Nothing in the engine reads the process clock or local zone on its own; the
dispatcher builds one :class:`TimeContext` per request and threads it through.

Day arithmetic is done on calendar ``date`` objects and only converted to UTC
per day, so daylight-saving transitions never shift a window by an hour.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from appointment_engine.models.availability import TimeWindow

log = logging.getLogger("appointment_engine.timeutil")

UTC = timezone.utc

WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

# "2026-01-03T11:00" / "2026-01-03T11:00:00" with no zone designator.
BARE_TIMESTAMP = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2})?$")
_YMD = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_AMPM = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*([ap])\.?\s*m\.?$")

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%B %d, %Y",
    "%B %d %Y",
    "%b %d, %Y",
    "%b %d %Y",
    "%A, %B %d, %Y",
)

# Upper bound on days walked per request.
MAX_DAYS = 60


def get_zone(name: Optional[str]) -> ZoneInfo:
    """Resolve an IANA zone name, falling back to UTC for unknown names."""
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        log.warning("Unknown timezone %r, using UTC", name)
        return ZoneInfo("UTC")


@dataclass(frozen=True)
class TimeContext:
    """The request's notion of "now", paired with the account's zone."""

    now: datetime
    tz: ZoneInfo

    @classmethod
    def create(cls, now: datetime, tz_name: Optional[str]) -> "TimeContext":
        if now.tzinfo is None:
            raise ValueError("TimeContext.now must be timezone-aware")
        return cls(now=now.astimezone(UTC), tz=get_zone(tz_name))

    @property
    def zone_name(self) -> str:
        return self.tz.key

    @property
    def local_now(self) -> datetime:
        return self.now.astimezone(self.tz)

    @property
    def today(self) -> date:
        return self.local_now.date()

    def to_utc(self, day: date, at: time) -> datetime:
        return to_utc(day, at, self.tz)


def to_utc(day: date, at: time, tz: ZoneInfo) -> datetime:
    """Interpret ``day at`` as wall-clock time in ``tz`` and return the UTC instant."""
    return datetime.combine(day, at.replace(tzinfo=None), tzinfo=tz).astimezone(UTC)


def local_date(instant: datetime, tz: ZoneInfo) -> date:
    return instant.astimezone(tz).date()


def day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """UTC instants for local midnight of ``day`` and of the following day."""
    return to_utc(day, time(0, 0), tz), to_utc(day + timedelta(days=1), time(0, 0), tz)


def iter_days(start: date, end: date, limit: int = MAX_DAYS) -> Iterator[date]:
    """Yield each calendar date from ``start`` through ``end`` inclusive."""
    current = start
    count = 0
    while current <= end and count < limit:
        yield current
        current += timedelta(days=1)
        count += 1


def weekday_name(day: date) -> str:
    return WEEKDAYS[day.weekday()]


def is_ymd(value: Optional[str]) -> bool:
    return bool(value) and bool(_YMD.match(value))


def parse_ymd(value: Optional[str]) -> Optional[date]:
    if not is_ymd(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def parse_date(value: Optional[str], today: date) -> Optional[date]:
    """Parse the date shapes a voice agent tends to send.

    Accepts ISO dates, US numeric dates, spelled-out month names and the
    words "today" / "tomorrow" (relative to the caller-supplied ``today``).
    """
    if not value:
        return None
    text = value.strip()
    lowered = text.lower()
    if lowered == "today":
        return today
    if lowered == "tomorrow":
        return today + timedelta(days=1)
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_time_of_day(value: Optional[str]) -> Optional[time]:
    """Parse "14:30", "2:30 PM", "2pm", "2", "noon" and friends."""
    if value is None:
        return None
    text = str(value).strip().lower()
    if not text:
        return None
    if text in ("noon", "midday"):
        return time(12, 0)
    if text == "midnight":
        return time(0, 0)

    hours: int
    minutes = 0
    match = _AMPM.match(text)
    if match:
        hours = int(match.group(1))
        minutes = int(match.group(2) or 0)
        if not 1 <= hours <= 12:
            return None
        if match.group(3) == "p" and hours < 12:
            hours += 12
        if match.group(3) == "a" and hours == 12:
            hours = 0
    elif re.fullmatch(r"\d{1,2}", text):
        hours = int(text)
    elif re.fullmatch(r"\d{1,2}:\d{2}(:\d{2})?", text):
        parts = text.split(":")
        hours, minutes = int(parts[0]), int(parts[1])
    else:
        return None

    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        return None
    return time(hours, minutes)


def minutes_of_day(at: time) -> int:
    return at.hour * 60 + at.minute


def is_within_schedule(
    instant: datetime,
    tz: ZoneInfo,
    schedule: Mapping[str, Sequence[TimeWindow]],
) -> bool:
    """True when ``instant`` falls inside one of its local weekday's windows."""
    if not schedule:
        return False
    local = instant.astimezone(tz)
    windows = schedule.get(weekday_name(local.date()), [])
    current = local.hour * 60 + local.minute
    for window in windows:
        start = parse_time_of_day(window.start)
        end = parse_time_of_day(window.end)
        if start is None or end is None:
            continue
        if minutes_of_day(start) <= current < minutes_of_day(end):
            return True
    return False


def parse_instant(
    value: Optional[str],
    tz: ZoneInfo,
    schedule: Optional[Mapping[str, Sequence[TimeWindow]]] = None,
) -> Optional[datetime]:
    """Turn an ISO-ish timestamp into an aware UTC instant.

    A timestamp with an explicit offset or ``Z`` is taken literally.  A bare
    one is ambiguous: the agent may have copied a UTC slot or may mean
    wall-clock time in the account's zone.  Both readings are checked against
    the weekly schedule; the UTC reading wins only when it alone lands inside
    a configured window.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None

    if parsed.tzinfo is not None:
        return parsed.astimezone(UTC)

    as_utc = parsed.replace(tzinfo=UTC)
    as_local = parsed.replace(tzinfo=tz).astimezone(UTC)
    if schedule:
        utc_fits = is_within_schedule(as_utc, tz, schedule)
        local_fits = is_within_schedule(as_local, tz, schedule)
        if utc_fits and not local_fits:
            log.info("Bare timestamp %s read as UTC (only UTC fits schedule)", value)
            return as_utc
    return as_local


def overlaps(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    """Half-open interval intersection test."""
    return a_start < b_end and b_start < a_end


def iso_utc(instant: datetime) -> str:
    """``2026-01-05T15:00:00Z``"""
    return instant.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_clock(instant: datetime, tz: ZoneInfo) -> str:
    """``9:00 AM`` style time of day in ``tz``."""
    local = instant.astimezone(tz)
    hour = local.hour % 12 or 12
    suffix = "AM" if local.hour < 12 else "PM"
    return f"{hour}:{local.minute:02d} {suffix}"


def format_for_voice(instant: datetime, tz: ZoneInfo) -> str:
    """``Monday, January 5 at 9:00 AM``, the form read aloud to callers."""
    local = instant.astimezone(tz)
    return f"{local:%A}, {local:%B} {local.day} at {format_clock(local, tz)}"


def format_current_time(ctx: TimeContext) -> str:
    local = ctx.local_now
    return (
        f"{local:%A}, {local:%B} {local.day}, {local.year} at "
        f"{format_clock(local, ctx.tz)} {local.tzname()}"
    )
