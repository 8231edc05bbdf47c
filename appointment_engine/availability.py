"""Bookable slot generation.

Walks the account's weekly template day by day in its own timezone, steps
through each window, and keeps candidates whose buffered extent is clear of
every busy interval and that respect the minimum notice.  The list is capped
(five by default) because it is read aloud, not paged through.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Optional, Sequence

from appointment_engine import timeutil
from appointment_engine.busy import BusyIntervalAggregator
from appointment_engine.calendar_providers.base import TimeSlot
from appointment_engine.config import settings
from appointment_engine.models import AvailabilityProfile
from appointment_engine.models.params import SlotQuery
from appointment_engine.store import AppointmentStore
from appointment_engine.timeutil import TimeContext

log = logging.getLogger("appointment_engine.availability")

FALLBACK_SLOTS = ["9:00 AM", "10:00 AM", "11:00 AM", "2:00 PM", "3:00 PM"]
FALLBACK_MESSAGE = (
    "I have availability at 9 AM, 10 AM, 11 AM, 2 PM, and 3 PM. "
    "Which time works best for you?"
)
DEFAULT_RANGE_DAYS = 6


@dataclass
class Slot:
    start: datetime
    end: datetime
    formatted: str

    def to_dict(self) -> dict[str, str]:
        return {
            "start": timeutil.iso_utc(self.start),
            "end": timeutil.iso_utc(self.end),
            "formatted": self.formatted,
        }


def resolve_range(
    ctx: TimeContext,
    requested_start: Optional[str],
    requested_end: Optional[str],
    max_days_ahead: int,
) -> tuple[date, date]:
    """Local date range for a slot query.

    Start defaults to today and is never before today; end defaults to six
    days after start, is never before start and never beyond the booking
    horizon.
    """
    today = ctx.today
    start = timeutil.parse_ymd(requested_start) or today
    if start < today:
        start = today
    end = timeutil.parse_ymd(requested_end) or start + timedelta(days=DEFAULT_RANGE_DAYS)
    if end < start:
        end = start
    horizon = today + timedelta(days=max(max_days_ahead, 0))
    if end > horizon:
        end = max(horizon, start)
    return start, end


def generate_slots(
    profile: AvailabilityProfile,
    busy: Sequence[TimeSlot],
    ctx: TimeContext,
    start_day: date,
    end_day: date,
    duration_minutes: int,
    max_slots: int = 5,
) -> list[Slot]:
    """Produce up to ``max_slots`` bookable slots, earliest first."""
    duration = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=max(profile.slot_interval_minutes, 1))
    before = timedelta(minutes=profile.buffer_before_minutes)
    after = timedelta(minutes=profile.buffer_after_minutes)
    earliest = ctx.now + timedelta(hours=profile.min_notice_hours)

    slots: list[Slot] = []
    for day in timeutil.iter_days(start_day, end_day):
        for window in profile.windows_for(timeutil.weekday_name(day)):
            opens = timeutil.parse_time_of_day(window.start)
            closes = timeutil.parse_time_of_day(window.end)
            if opens is None or closes is None:
                log.warning("Skipping malformed window %s-%s", window.start, window.end)
                continue
            window_start = ctx.to_utc(day, opens)
            window_end = ctx.to_utc(day, closes)

            candidate = window_start
            while candidate + duration <= window_end:
                slot_end = candidate + duration
                if candidate >= earliest and not any(
                    timeutil.overlaps(candidate - before, slot_end + after, b.start, b.end)
                    for b in busy
                ):
                    slots.append(
                        Slot(candidate, slot_end, timeutil.format_for_voice(candidate, ctx.tz))
                    )
                    if len(slots) >= max_slots:
                        return slots
                candidate += step
    return slots


class AvailabilityService:
    """Handler for ``get_available_slots``."""

    def __init__(self, store: AppointmentStore, aggregator: BusyIntervalAggregator) -> None:
        self._store = store
        self._aggregator = aggregator

    async def get_available_slots(
        self, account_id: str, query: SlotQuery, now: datetime
    ) -> dict[str, Any]:
        profile = await self._store.get_availability_profile(account_id)
        if profile is None:
            ctx = TimeContext.create(now, "UTC")
            log.info("No availability profile for %s, returning default hours", account_id)
            return {
                "success": True,
                "available_slots": list(FALLBACK_SLOTS),
                "current_time": timeutil.format_current_time(ctx),
                "timezone": "UTC",
                "message": FALLBACK_MESSAGE,
            }

        ctx = TimeContext.create(now, profile.timezone)
        start_day, end_day = resolve_range(ctx, query.date, query.end_date, profile.max_days_ahead)
        range_start, _ = timeutil.day_bounds(start_day, ctx.tz)
        _, range_end = timeutil.day_bounds(end_day, ctx.tz)

        busy = await self._aggregator.collect(account_id, range_start, range_end, ctx.now)
        duration = query.duration_minutes or profile.default_meeting_duration
        slots = generate_slots(
            profile, busy, ctx, start_day, end_day, duration, settings.max_slots
        )
        log.info(
            "Account %s: %d slots between %s and %s (%d busy)",
            account_id, len(slots), start_day, end_day, len(busy),
        )

        spoken = [s.formatted for s in slots]
        if spoken:
            message = (
                f"I have {len(spoken)} available time slots: {', '.join(spoken)}. "
                "Which time works best for you?"
            )
        else:
            message = (
                "I don't have any available slots in the next few days. "
                "Would you like to try a different week?"
            )
        return {
            "success": True,
            "current_time": timeutil.format_current_time(ctx),
            "timezone": ctx.zone_name,
            "range_start": start_day.isoformat(),
            "range_end": end_day.isoformat(),
            "available_slots": spoken,
            "slots": [s.to_dict() for s in slots],
            "message": message,
        }
