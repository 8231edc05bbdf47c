"""Busy-interval aggregation across the local store and external calendars.

Each source is read independently.  A source that is not connected, needs
re-authorization or fails outright contributes nothing and is logged; it
never fails the request.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Mapping, Optional

from appointment_engine.calendar_providers.base import CalendarProvider, ProviderError, TimeSlot
from appointment_engine.config import settings
from appointment_engine.models import CalendarPreference
from appointment_engine.oauth import NotConnected, ReconnectRequired, TokenManager
from appointment_engine.store import AppointmentStore

log = logging.getLogger("appointment_engine.busy")

PROVIDER_ORDER = ("google", "ghl")

# Local lookups reach back this far for bookings that started earlier but
# still run into the range.
LONGEST_APPOINTMENT = timedelta(days=1)


async def load_preference(store: AppointmentStore, account_id: str) -> CalendarPreference:
    """The account's provider preference, or the configured default."""
    preference = await store.get_calendar_preference(account_id)
    if preference is None:
        return CalendarPreference(provider=settings.default_calendar_preference)
    return preference


def enabled_providers(
    preference: CalendarPreference, providers: Mapping[str, CalendarProvider]
) -> list[str]:
    """Provider names the preference allows, in primary-first order.

    The secondary calendar is only usable once a calendar has been picked.
    """
    names = []
    for name in PROVIDER_ORDER:
        if name not in providers or not preference.includes(name):
            continue
        if name == "ghl" and not preference.ghl_calendar_id:
            continue
        names.append(name)
    return names


class BusyIntervalAggregator:
    def __init__(
        self,
        store: AppointmentStore,
        tokens: TokenManager,
        providers: Mapping[str, CalendarProvider],
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._providers = providers

    async def local_busy(self, account_id: str, start: datetime, end: datetime) -> list[TimeSlot]:
        appointments = await self._store.list_appointments(
            account_id, start_from=start - LONGEST_APPOINTMENT, start_to=end
        )
        return [
            TimeSlot(start=a.start_time, end=a.end_time)
            for a in appointments
            if a.end_time > start
        ]

    async def provider_busy(
        self,
        account_id: str,
        name: str,
        start: datetime,
        end: datetime,
        now: datetime,
        calendar_id: Optional[str] = None,
    ) -> list[TimeSlot]:
        provider = self._providers[name]
        try:
            return await self._tokens.call(
                account_id,
                name,
                now,
                lambda integration: provider.list_busy(integration, start, end, calendar_id),
            )
        except NotConnected as exc:
            log.debug("Skipping %s busy time for %s: %s", name, account_id, exc.reason)
        except ReconnectRequired as exc:
            log.warning("%s needs reconnect for account %s: %s", name, account_id, exc.reason)
        except ProviderError as exc:
            log.warning("%s busy lookup failed for account %s: %s", name, account_id, exc)
        return []

    async def collect(
        self,
        account_id: str,
        start: datetime,
        end: datetime,
        now: datetime,
        preference: Optional[CalendarPreference] = None,
        include_local: bool = True,
    ) -> list[TimeSlot]:
        """Union of committed intervals in ``[start, end)`` from every enabled source."""
        if preference is None:
            preference = await load_preference(self._store, account_id)

        busy: list[TimeSlot] = []
        if include_local:
            busy.extend(await self.local_busy(account_id, start, end))

        for name in enabled_providers(preference, self._providers):
            calendar_id = preference.ghl_calendar_id if name == "ghl" else None
            intervals = await self.provider_busy(account_id, name, start, end, now, calendar_id)
            log.debug("%s contributed %d busy intervals", name, len(intervals))
            busy.extend(intervals)

        return busy
