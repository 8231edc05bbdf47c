"""Appointment booking.

Turns whatever the voice agent sent (an ISO start, a date plus a spoken time,
or only a time) into a UTC ``[start, end)``, rejects past and conflicting
requests conversationally, absorbs agent retries of a booking that already
went through, writes the local record, and then mirrors it to the enabled
calendars.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Mapping, Optional, Sequence

from appointment_engine import timeutil
from appointment_engine.busy import LONGEST_APPOINTMENT, BusyIntervalAggregator, load_preference
from appointment_engine.caller import CallerContext, normalize_phone, redact_pii
from appointment_engine.config import settings
from appointment_engine.mirror import ProviderSync, sync_flags
from appointment_engine.models import Appointment, AppointmentStatus, TimeWindow
from appointment_engine.models.params import BookingParams
from appointment_engine.store import AppointmentStore
from appointment_engine.timeutil import TimeContext

log = logging.getLogger("appointment_engine.booking")

DEFAULT_DURATION_MINUTES = 30
SOURCE = "retell_ai"

MSG_NEED_DATETIME = (
    "I need a date and time to book the appointment. What date and time works for you?"
)
MSG_BAD_START = (
    "I couldn't understand that appointment time. Could you tell me the date and time again?"
)
MSG_BAD_END = "I couldn't understand the end time for that appointment. What time should it end?"
MSG_BAD_TIME = "I couldn't understand that time. Could you say it like '2 PM' or '10:30 AM'?"
MSG_BAD_DATE = "I couldn't understand that date. Could you tell me the day again?"
MSG_END_BEFORE_START = "The end time needs to be after the start time. What time should it end?"
MSG_PAST = (
    "That time has already passed. Let me check what times I have available today or "
    "tomorrow. When would you prefer - morning or afternoon?"
)
MSG_CONFLICT = (
    "I'm sorry, that time slot is no longer available. Would you like me to check what "
    "other times I have open today?"
)


class NeedsClarification(Exception):
    """The request cannot be acted on as given; ``message`` is read back to the caller."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "message": self.message}


@dataclass
class RequestedTime:
    start: datetime
    end: datetime


def infer_day(at: time, ctx: TimeContext, tolerance_minutes: int) -> date:
    """Today if ``at`` is comfortably ahead of local now, otherwise tomorrow."""
    current = timeutil.minutes_of_day(ctx.local_now.time())
    if timeutil.minutes_of_day(at) > current + tolerance_minutes:
        return ctx.today
    return ctx.today + timedelta(days=1)


def resolve_requested_time(
    *,
    start_raw: Optional[str],
    end_raw: Optional[str],
    date_raw: Optional[str],
    time_raw: Optional[str],
    duration_minutes: int,
    ctx: TimeContext,
    schedule: Mapping[str, Sequence[TimeWindow]],
    tolerance_minutes: Optional[int] = None,
) -> RequestedTime:
    """Normalize the temporal fields of a request to a UTC interval.

    Raises:
        NeedsClarification: input missing, unparsable or inconsistent.
    """
    if tolerance_minutes is None:
        tolerance_minutes = settings.same_day_tolerance_minutes
    duration = timedelta(minutes=duration_minutes)

    # Agents sometimes put a full "YYYY-MM-DDTHH:MM" into the time field.
    if not start_raw and time_raw and timeutil.BARE_TIMESTAMP.match(time_raw):
        start_raw, time_raw = time_raw, None

    if start_raw:
        start = timeutil.parse_instant(start_raw, ctx.tz, schedule)
        if start is None:
            raise NeedsClarification(MSG_BAD_START)
        if end_raw:
            end = _parse_end(start_raw, start, end_raw, ctx)
            if end is None:
                raise NeedsClarification(MSG_BAD_END)
        else:
            end = start + duration
    else:
        if not date_raw and not time_raw:
            raise NeedsClarification(MSG_NEED_DATETIME)
        at = timeutil.parse_time_of_day(time_raw)
        if at is None:
            raise NeedsClarification(MSG_BAD_TIME)
        if date_raw:
            day = timeutil.parse_date(date_raw, ctx.today)
            if day is None:
                raise NeedsClarification(MSG_BAD_DATE)
        else:
            day = infer_day(at, ctx, tolerance_minutes)
            log.info("Inferred %s for time-only request %r", day, time_raw)
        start = ctx.to_utc(day, at)
        end = start + duration

    if end <= start:
        raise NeedsClarification(MSG_END_BEFORE_START)
    return RequestedTime(start=start, end=end)


def _parse_end(
    start_raw: str, start: datetime, end_raw: str, ctx: TimeContext
) -> Optional[datetime]:
    # A bare end paired with a bare start keeps the same reading as the start.
    if timeutil.BARE_TIMESTAMP.match(start_raw.strip()) and timeutil.BARE_TIMESTAMP.match(
        end_raw.strip()
    ):
        naive_start = datetime.fromisoformat(start_raw.strip())
        naive_end = datetime.fromisoformat(end_raw.strip())
        return start + (naive_end - naive_start)
    return timeutil.parse_instant(end_raw, ctx.tz)


def is_duplicate(
    existing: Appointment,
    start: datetime,
    attendee_name: Optional[str],
    window_seconds: Optional[int] = None,
) -> bool:
    """Does ``existing`` look like an earlier, successful run of this same booking?"""
    if window_seconds is None:
        window_seconds = settings.duplicate_window_seconds
    if abs((existing.start_time - start).total_seconds()) > window_seconds:
        return False
    wanted = (attendee_name or "").strip().lower()
    if not wanted:
        return True
    return wanted in existing.title.lower() or wanted in existing.attendee_name.lower()


class BookingService:
    """Handler for ``book_appointment``."""

    def __init__(
        self,
        store: AppointmentStore,
        aggregator: BusyIntervalAggregator,
        sync: ProviderSync,
    ) -> None:
        self._store = store
        self._aggregator = aggregator
        self._sync = sync

    async def book(
        self,
        account_id: str,
        params: BookingParams,
        caller: CallerContext,
        now: datetime,
    ) -> dict[str, Any]:
        profile = await self._store.get_availability_profile(account_id)
        ctx = TimeContext.create(now, profile.timezone if profile else "UTC")
        schedule = profile.weekly_schedule if profile else {}
        duration = params.duration_minutes or (
            profile.default_meeting_duration if profile else DEFAULT_DURATION_MINUTES
        )

        try:
            requested = resolve_requested_time(
                start_raw=params.start_time,
                end_raw=params.end_time,
                date_raw=params.date,
                time_raw=params.time,
                duration_minutes=duration,
                ctx=ctx,
                schedule=schedule,
            )
        except NeedsClarification as exc:
            return exc.to_dict()

        if requested.start <= ctx.now:
            log.info("Rejected past booking %s (now %s)", requested.start, ctx.now)
            return {"success": False, "message": MSG_PAST}

        day_start, day_end = timeutil.day_bounds(
            timeutil.local_date(requested.start, ctx.tz), ctx.tz
        )
        nearby = await self._store.list_appointments(
            account_id,
            start_from=day_start - LONGEST_APPOINTMENT,
            start_to=max(day_end, requested.end),
        )
        clashing = [
            a
            for a in nearby
            if timeutil.overlaps(requested.start, requested.end, a.start_time, a.end_time)
        ]
        existing = next(
            (a for a in clashing if is_duplicate(a, requested.start, params.attendee_name)), None
        )
        if existing is not None:
            log.info("Booking matches existing appointment %s, not duplicating", existing.id)
            voice = timeutil.format_for_voice(
                existing.start_time, timeutil.get_zone(existing.timezone or ctx.zone_name)
            )
            return {
                "success": True,
                "appointment_id": existing.id,
                "event_id": existing.google_event_id,
                "message": f"You're all set, I already have you booked for {voice}.",
            }
        if clashing:
            log.info("Booking conflicts with appointment %s", clashing[0].id)
            return {"success": False, "message": MSG_CONFLICT}

        preference = await load_preference(self._store, account_id)
        if settings.check_provider_conflicts:
            busy = await self._aggregator.collect(
                account_id, day_start, day_end, ctx.now, preference, include_local=False
            )
            if any(
                timeutil.overlaps(requested.start, requested.end, b.start, b.end) for b in busy
            ):
                log.info("Booking conflicts with external calendar busy time")
                return {"success": False, "message": MSG_CONFLICT}

        name = params.attendee_name
        phone = caller.phone or normalize_phone(params.attendee_phone)
        appointment = Appointment(
            account_id=account_id,
            contact_id=caller.contact_id,
            title=params.title or f"Appointment with {name or 'Lead'}",
            start_time=requested.start,
            end_time=requested.end,
            timezone=ctx.zone_name,
            status=AppointmentStatus.CONFIRMED,
            metadata={
                "attendee_name": name,
                "attendee_email": params.attendee_email,
                "attendee_phone": phone,
                "caller_phone": caller.phone,
                "source": SOURCE,
            },
        )
        stored = await self._store.create_appointment(appointment)
        log.info(
            "Booked %s for %s at %s", stored.id, redact_pii(phone), timeutil.iso_utc(stored.start_time)
        )

        outcomes = await self._sync.create(stored, preference, ctx.now, caller)
        event_ids = {n: o.event_id for n, o in outcomes.items() if o.success and o.event_id}
        updated = await self._store.update_appointment(
            account_id,
            stored.id,
            {
                "external_event_ids": event_ids,
                "metadata": {**stored.metadata, **sync_flags(outcomes)},
            },
        )
        final = updated or stored

        voice = timeutil.format_for_voice(final.start_time, ctx.tz)
        email = params.attendee_email
        follow_up = (
            f"You should receive a confirmation at {email}."
            if email
            else "Looking forward to speaking with you!"
        )
        return {
            "success": True,
            "appointment_id": final.id,
            "event_id": event_ids.get("google") or next(iter(event_ids.values()), None),
            "start_time": timeutil.iso_utc(final.start_time),
            "end_time": timeutil.iso_utc(final.end_time),
            "sync": {n: o.to_dict() for n, o in outcomes.items()},
            "message": f"Perfect! I've booked your appointment for {voice}. {follow_up}",
        }
