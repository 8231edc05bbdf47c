"""Best-effort mirroring of local appointments into external calendars.

The local record is always written first.  Each provider is then called on
its own; the outcome (event id, or why it failed) is recorded on the
appointment and nothing is ever rolled back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Collection, Mapping, Optional

from appointment_engine.busy import enabled_providers
from appointment_engine.caller import CallerContext, redact_pii
from appointment_engine.calendar_providers.base import (
    CalendarEvent,
    CalendarProvider,
    ProviderAuthError,
    ProviderError,
)
from appointment_engine.models import Appointment, CalendarIntegration, CalendarPreference
from appointment_engine.oauth import NotConnected, ReconnectRequired, TokenManager

log = logging.getLogger("appointment_engine.mirror")

EVENT_NOTES = "Booked via AI Voice System"


@dataclass
class SyncOutcome:
    success: bool
    event_id: Optional[str] = None
    error: Optional[str] = None
    needs_reconnect: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.event_id:
            data["event_id"] = self.event_id
        if self.error:
            data["error"] = self.error
        if self.needs_reconnect:
            data["needs_reconnect"] = True
        return data


def sync_flags(outcomes: Mapping[str, SyncOutcome]) -> dict[str, bool]:
    """``synced_to_<provider>`` metadata flags for a set of outcomes."""
    return {f"synced_to_{name}": outcome.success for name, outcome in outcomes.items()}


def is_synced(appointment: Appointment, name: str) -> bool:
    """Has ``appointment`` already been mirrored into provider ``name``?"""
    if appointment.metadata.get(f"synced_to_{name}"):
        return True
    return name in appointment.external_event_ids


class ProviderSync:
    def __init__(self, tokens: TokenManager, providers: Mapping[str, CalendarProvider]) -> None:
        self._tokens = tokens
        self._providers = providers

    async def _attempt(
        self,
        account_id: str,
        name: str,
        now: datetime,
        operation: Callable[[CalendarIntegration], Awaitable[Any]],
    ) -> tuple[SyncOutcome, Any]:
        try:
            result = await self._tokens.call(account_id, name, now, operation)
        except NotConnected as exc:
            log.info("%s not connected for %s, skipping mirror", name, account_id)
            return SyncOutcome(success=False, error=exc.reason), None
        except ReconnectRequired as exc:
            log.warning("%s needs reconnect for %s: %s", name, account_id, exc.reason)
            return SyncOutcome(success=False, error=exc.reason, needs_reconnect=True), None
        except ProviderError as exc:
            log.warning("%s mirror failed for %s: %s", name, account_id, exc)
            return SyncOutcome(success=False, error=str(exc)), None
        return SyncOutcome(success=True), result

    def _event_for(
        self,
        name: str,
        appointment: Appointment,
        preference: CalendarPreference,
        caller: Optional[CallerContext],
    ) -> CalendarEvent:
        meta = appointment.metadata
        phone = meta.get("attendee_phone") or meta.get("caller_phone")
        description = EVENT_NOTES
        if phone:
            description += f"\nPhone: {phone}"
        contact_id = None
        if name == "ghl" and caller and caller.contact:
            contact_id = caller.contact.ghl_contact_id
        return CalendarEvent(
            summary=appointment.title,
            start=appointment.start_time,
            end=appointment.end_time,
            timezone=appointment.timezone,
            description=description,
            attendees=[meta["attendee_email"]] if meta.get("attendee_email") else [],
            contact_id=contact_id,
            phone=phone,
            calendar_id=preference.ghl_calendar_id if name == "ghl" else None,
        )

    async def create(
        self,
        appointment: Appointment,
        preference: CalendarPreference,
        now: datetime,
        caller: Optional[CallerContext] = None,
        only: Optional[Collection[str]] = None,
    ) -> dict[str, SyncOutcome]:
        """Create a mirrored event in every provider the preference enables.

        ``only`` restricts the run to the named providers.
        """
        outcomes: dict[str, SyncOutcome] = {}
        for name in enabled_providers(preference, self._providers):
            if only is not None and name not in only:
                continue
            provider = self._providers[name]
            event = self._event_for(name, appointment, preference, caller)

            async def create_event(integration, provider=provider, event=event):
                if provider.name == "ghl" and not event.contact_id and event.phone:
                    try:
                        event.contact_id = await provider.find_contact_id(integration, event.phone)
                    except ProviderAuthError:
                        raise
                    except ProviderError as exc:
                        log.warning("GHL contact lookup failed: %s", exc)
                    if event.contact_id is None:
                        log.debug("No GHL contact for %s", redact_pii(event.phone))
                return await provider.create_event(integration, event)

            outcome, event_id = await self._attempt(
                appointment.account_id, name, now, create_event
            )
            outcome.event_id = event_id
            outcomes[name] = outcome
        return outcomes

    async def reschedule(self, appointment: Appointment, now: datetime) -> dict[str, SyncOutcome]:
        """Move every mirrored event to the appointment's (new) time."""
        outcomes: dict[str, SyncOutcome] = {}
        for name, event_id in appointment.external_event_ids.items():
            provider = self._providers.get(name)
            if provider is None:
                continue
            outcome, _ = await self._attempt(
                appointment.account_id,
                name,
                now,
                lambda integration, p=provider, eid=event_id: p.update_event_time(
                    integration,
                    eid,
                    appointment.start_time,
                    appointment.end_time,
                    appointment.timezone,
                ),
            )
            outcome.event_id = event_id
            outcomes[name] = outcome
        return outcomes

    async def cancel(self, appointment: Appointment, now: datetime) -> dict[str, SyncOutcome]:
        """Delete every mirrored event; a missing event counts as deleted."""
        outcomes: dict[str, SyncOutcome] = {}
        for name, event_id in appointment.external_event_ids.items():
            provider = self._providers.get(name)
            if provider is None:
                continue
            outcome, _ = await self._attempt(
                appointment.account_id,
                name,
                now,
                lambda integration, p=provider, eid=event_id: p.cancel_event(integration, eid),
            )
            outcome.event_id = event_id
            outcomes[name] = outcome
        return outcomes

    async def backfill(
        self,
        appointment: Appointment,
        preference: CalendarPreference,
        now: datetime,
        caller: Optional[CallerContext] = None,
    ) -> dict[str, SyncOutcome]:
        """Mirror ``appointment`` into the enabled providers it is missing from."""
        pending = [
            name
            for name in enabled_providers(preference, self._providers)
            if not is_synced(appointment, name)
        ]
        if not pending:
            return {}
        log.info("Backfilling %s into %s", appointment.id, ", ".join(pending))
        return await self.create(appointment, preference, now, caller, only=pending)
