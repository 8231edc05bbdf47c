"""Finding "which appointment" from weak signals.

Callers on a live phone call never read out record ids, so reschedule and
cancel requests identify their target through whatever the agent gathered:
an id (if the orchestration layer has one), the caller's phone, a time, or a
name.  Each signal is a :class:`ResolutionStrategy`; the :class:`Resolver`
tries them in a fixed order and the first one that matches wins.

Some misses end resolution on the spot.  If the agent named a specific id,
time or name and nothing matches it, falling through to "the soonest
appointment" could act on the wrong booking, so the resolver reports the
miss instead.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Optional, Sequence

from appointment_engine import timeutil
from appointment_engine.caller import CallerContext
from appointment_engine.config import settings
from appointment_engine.models import Appointment
from appointment_engine.store import AppointmentStore
from appointment_engine.timeutil import TimeContext

log = logging.getLogger("appointment_engine.resolution")

CANDIDATE_LIMIT = 25


class UnreadableHint(Exception):
    """A date or time hint was given but could not be parsed."""


class NoMatch(Exception):
    """Raised by a strategy whose signal rules out every appointment."""


@dataclass
class TargetQuery:
    """Everything known about the appointment being referred to."""

    account_id: str
    ctx: TimeContext
    caller: CallerContext = field(default_factory=CallerContext)
    appointment_id: Optional[str] = None
    event_id: Optional[str] = None
    target: Optional[datetime] = None  # exact date + time
    day: Optional[date] = None  # date given without a time
    time_of_day: Optional[time] = None  # time given without a date
    text: Optional[str] = None

    @property
    def has_time_hint(self) -> bool:
        return self.target is not None or self.day is not None or self.time_of_day is not None

    @property
    def has_signal(self) -> bool:
        return bool(
            self.appointment_id
            or self.event_id
            or self.caller.phone
            or self.caller.contact_id
            or self.has_time_hint
            or self.text
        )


def build_query(
    account_id: str,
    ctx: TimeContext,
    caller: CallerContext,
    *,
    appointment_id: Optional[str] = None,
    event_id: Optional[str] = None,
    date_raw: Optional[str] = None,
    time_raw: Optional[str] = None,
    text: Optional[str] = None,
) -> TargetQuery:
    """Parse raw hints into a :class:`TargetQuery`.

    A full ``YYYY-MM-DDTHH:MM`` in the time field is split into date and
    time as local wall-clock values.

    Raises:
        UnreadableHint: a date or time was supplied but cannot be parsed.
    """
    if time_raw and not date_raw and timeutil.BARE_TIMESTAMP.match(time_raw):
        date_raw, time_raw = time_raw[:10], time_raw[11:16]

    at = None
    if time_raw:
        at = timeutil.parse_time_of_day(time_raw)
        if at is None:
            raise UnreadableHint(time_raw)
    day = None
    if date_raw:
        day = timeutil.parse_date(date_raw, ctx.today)
        if day is None:
            raise UnreadableHint(date_raw)

    query = TargetQuery(
        account_id=account_id,
        ctx=ctx,
        caller=caller,
        appointment_id=appointment_id,
        event_id=event_id,
        text=text,
    )
    if day is not None and at is not None:
        query.target = ctx.to_utc(day, at)
    elif at is not None:
        query.time_of_day = at
    elif day is not None:
        query.day = day
    return query


# ── matching helpers ─────────────────────────────────────────


def match_window() -> timedelta:
    return timedelta(hours=settings.match_window_hours)


def nearest_within(
    appointments: Sequence[Appointment], target: datetime, window: timedelta
) -> list[Appointment]:
    close = [a for a in appointments if abs(a.start_time - target) <= window]
    return sorted(close, key=lambda a: abs(a.start_time - target))


def at_time_of_day(
    appointments: Sequence[Appointment], at: time, ctx: TimeContext
) -> list[Appointment]:
    wanted = timeutil.minutes_of_day(at)
    matched = []
    for appt in appointments:
        tz = timeutil.get_zone(appt.timezone) if appt.timezone else ctx.tz
        local = appt.start_time.astimezone(tz)
        if local.hour * 60 + local.minute == wanted:
            matched.append(appt)
    return matched


def on_day(appointments: Sequence[Appointment], day: date, ctx: TimeContext) -> list[Appointment]:
    return [a for a in appointments if timeutil.local_date(a.start_time, ctx.tz) == day]


def text_matches(appointments: Sequence[Appointment], text: str) -> list[Appointment]:
    needle = text.strip().lower()
    return [
        a
        for a in appointments
        if needle in a.title.lower() or needle in a.attendee_name.lower()
    ]


# ── strategies ───────────────────────────────────────────────


class ResolutionStrategy(ABC):
    name: str = ""
    # A miss ends resolution instead of falling through to the next strategy.
    conclusive: bool = False

    @abstractmethod
    def applies(self, query: TargetQuery) -> bool:
        ...

    @abstractmethod
    async def find(self, store: AppointmentStore, query: TargetQuery) -> list[Appointment]:
        ...


class IdStrategy(ResolutionStrategy):
    """Explicit local id or provider event id; any status."""

    name = "id"
    conclusive = True

    def applies(self, query: TargetQuery) -> bool:
        return bool(query.appointment_id or query.event_id)

    async def find(self, store: AppointmentStore, query: TargetQuery) -> list[Appointment]:
        appt = None
        if query.appointment_id:
            appt = await store.get_appointment(query.account_id, query.appointment_id)
            if appt is None:
                # Agents sometimes pass a provider event id as "id".
                appt = await store.find_by_event_id(query.account_id, query.appointment_id)
        if appt is None and query.event_id:
            appt = await store.find_by_event_id(query.account_id, query.event_id)
        return [appt] if appt else []


class CallerStrategy(ResolutionStrategy):
    """Upcoming appointments linked to the caller's contact, then to the caller's phone.

    A caller with nothing upcoming but a cancelled booking on file gets that
    booking back (most recent first) so a repeated cancel reads as "already
    cancelled".  A caller with only past bookings and no other hint ends
    resolution.  Otherwise the next strategy gets its turn.
    """

    name = "caller"

    def applies(self, query: TargetQuery) -> bool:
        return bool(query.caller.contact_id or query.caller.phone)

    async def _lookup(
        self, store: AppointmentStore, query: TargetQuery, **filters
    ) -> list[Appointment]:
        found: list[Appointment] = []
        if query.caller.contact_id:
            found = await store.list_appointments(
                query.account_id, contact_id=query.caller.contact_id, **filters
            )
        if not found and query.caller.phones:
            found = await store.list_appointments(
                query.account_id, phones=query.caller.phones, **filters
            )
        return found

    async def find(self, store: AppointmentStore, query: TargetQuery) -> list[Appointment]:
        upcoming = await self._lookup(
            store, query, start_from=query.ctx.now, limit=CANDIDATE_LIMIT
        )
        if upcoming:
            return upcoming

        history = await self._lookup(store, query, include_cancelled=True)
        if not history:
            return []
        cancelled = [a for a in history if a.is_cancelled]
        if not cancelled:
            if query.has_time_hint or query.text:
                return []
            raise NoMatch()
        return sorted(cancelled, key=lambda a: a.start_time, reverse=True)


class TimeWindowStrategy(ResolutionStrategy):
    """Appointments near a stated date+time, on a stated date, or at a stated time of day."""

    name = "time"
    conclusive = True

    def applies(self, query: TargetQuery) -> bool:
        return query.has_time_hint

    async def find(self, store: AppointmentStore, query: TargetQuery) -> list[Appointment]:
        if query.target is not None:
            window = match_window()
            candidates = await store.list_appointments(
                query.account_id,
                start_from=query.target - window,
                start_to=query.target + window + timedelta(seconds=1),
            )
            return nearest_within(candidates, query.target, window)

        if query.day is not None:
            day_start, day_end = timeutil.day_bounds(query.day, query.ctx.tz)
            return await store.list_appointments(
                query.account_id, start_from=day_start, start_to=day_end
            )

        upcoming = await store.list_appointments(
            query.account_id, start_from=query.ctx.now, limit=CANDIDATE_LIMIT
        )
        return at_time_of_day(upcoming, query.time_of_day, query.ctx)


class TextStrategy(ResolutionStrategy):
    """Upcoming appointments whose title or attendee name contains the text."""

    name = "text"
    conclusive = True

    def applies(self, query: TargetQuery) -> bool:
        return bool(query.text and query.text.strip())

    async def find(self, store: AppointmentStore, query: TargetQuery) -> list[Appointment]:
        upcoming = await store.list_appointments(
            query.account_id, start_from=query.ctx.now, limit=CANDIDATE_LIMIT
        )
        return text_matches(upcoming, query.text or "")


class SoonestStrategy(ResolutionStrategy):
    name = "soonest"

    def applies(self, query: TargetQuery) -> bool:
        return True

    async def find(self, store: AppointmentStore, query: TargetQuery) -> list[Appointment]:
        return await store.list_appointments(
            query.account_id, start_from=query.ctx.now, limit=CANDIDATE_LIMIT
        )


DEFAULT_CHAIN: tuple[ResolutionStrategy, ...] = (
    IdStrategy(),
    CallerStrategy(),
    TimeWindowStrategy(),
    TextStrategy(),
    SoonestStrategy(),
)


@dataclass
class Resolution:
    matches: list[Appointment]
    strategy: Optional[str] = None
    # Name of the conclusive strategy whose signal matched nothing.
    missed: Optional[str] = None

    @property
    def first(self) -> Optional[Appointment]:
        return self.matches[0] if self.matches else None


class Resolver:
    def __init__(
        self,
        store: AppointmentStore,
        chain: Sequence[ResolutionStrategy] = DEFAULT_CHAIN,
    ) -> None:
        self._store = store
        self._chain = tuple(chain)

    def _narrow(self, matches: list[Appointment], query: TargetQuery) -> Optional[list[Appointment]]:
        """Apply the remaining hints to a broad match set.

        Returns None when a specific hint rules out every match, so the next
        strategy gets its turn.
        """
        if query.target is not None:
            narrowed = nearest_within(matches, query.target, match_window())
            if not narrowed:
                return None
            matches = narrowed
        elif query.day is not None:
            narrowed = on_day(matches, query.day, query.ctx)
            if not narrowed:
                return None
            matches = narrowed
        elif query.time_of_day is not None:
            narrowed = at_time_of_day(matches, query.time_of_day, query.ctx)
            if not narrowed:
                return None
            matches = narrowed
        if query.text:
            narrowed = text_matches(matches, query.text)
            if not narrowed:
                return None
            matches = narrowed
        return matches

    async def resolve(self, query: TargetQuery, narrow: bool = True) -> Resolution:
        """Run the chain; ``narrow`` refines broad matches with the other hints."""
        for strategy in self._chain:
            if not strategy.applies(query):
                continue
            try:
                matches = await strategy.find(self._store, query)
            except NoMatch:
                log.info("The %s hint ruled out every appointment for %s", strategy.name, query.account_id)
                return Resolution(matches=[], strategy=strategy.name, missed=strategy.name)
            if matches and narrow and isinstance(strategy, CallerStrategy):
                refined = self._narrow(matches, query)
                if refined is None:
                    log.debug("%s matches ruled out by other hints", strategy.name)
                    continue
                matches = refined
            if matches:
                log.info(
                    "Resolved %d appointment(s) via %s for %s",
                    len(matches), strategy.name, query.account_id,
                )
                return Resolution(matches=matches, strategy=strategy.name)
            if strategy.conclusive:
                log.info("No appointment matched the %s hint for %s", strategy.name, query.account_id)
                return Resolution(matches=[], strategy=strategy.name, missed=strategy.name)
        return Resolution(matches=[])

