"""In-process store used in development and by the test suite.

Data lives only as long as the process does.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional, Sequence

from appointment_engine.models import (
    Appointment,
    AuditEntry,
    AvailabilityProfile,
    CalendarIntegration,
    CalendarPreference,
    Contact,
)

from .base import AppointmentStore

log = logging.getLogger("appointment_engine.store.memory")


class InMemoryStore(AppointmentStore):
    """Dict-backed :class:`AppointmentStore`."""

    def __init__(self) -> None:
        self.profiles: dict[str, AvailabilityProfile] = {}
        self.preferences: dict[str, CalendarPreference] = {}
        self.integrations: dict[tuple[str, str], CalendarIntegration] = {}
        self.contacts: dict[str, Contact] = {}
        self.appointments: dict[str, Appointment] = {}
        self.invocations: list[AuditEntry] = []

    # ── seeding helpers ──────────────────────────────────────

    def add_profile(self, profile: AvailabilityProfile) -> None:
        self.profiles[profile.account_id] = profile

    def set_preference(self, account_id: str, preference: CalendarPreference) -> None:
        self.preferences[account_id] = preference

    def add_integration(self, integration: CalendarIntegration) -> None:
        self.integrations[(integration.account_id, integration.provider)] = integration

    def add_contact(self, contact: Contact) -> None:
        self.contacts[contact.id] = contact

    def add_appointment(self, appointment: Appointment) -> None:
        self.appointments[appointment.id] = appointment

    # ── AppointmentStore ─────────────────────────────────────

    async def get_availability_profile(self, account_id: str) -> Optional[AvailabilityProfile]:
        return self.profiles.get(account_id)

    async def get_calendar_preference(self, account_id: str) -> Optional[CalendarPreference]:
        return self.preferences.get(account_id)

    async def get_integration(self, account_id: str, provider: str) -> Optional[CalendarIntegration]:
        integration = self.integrations.get((account_id, provider))
        return integration.model_copy() if integration else None

    async def save_integration(self, integration: CalendarIntegration) -> None:
        self.integrations[(integration.account_id, integration.provider)] = integration.model_copy()

    async def find_contact_by_phone(
        self, account_id: str, phones: Sequence[str]
    ) -> Optional[Contact]:
        for phone in phones:
            for contact in self.contacts.values():
                if contact.account_id == account_id and contact.phone_number == phone:
                    return contact
        return None

    async def get_contact(self, account_id: str, contact_id: str) -> Optional[Contact]:
        contact = self.contacts.get(contact_id)
        if contact and contact.account_id == account_id:
            return contact
        return None

    async def list_appointments(
        self,
        account_id: str,
        *,
        start_from: Optional[datetime] = None,
        start_to: Optional[datetime] = None,
        include_cancelled: bool = False,
        contact_id: Optional[str] = None,
        phones: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> list[Appointment]:
        wanted_phones = set(phones or [])
        rows = []
        for appt in self.appointments.values():
            if appt.account_id != account_id:
                continue
            if not include_cancelled and appt.is_cancelled:
                continue
            if start_from is not None and appt.start_time < start_from:
                continue
            if start_to is not None and appt.start_time >= start_to:
                continue
            if contact_id is not None and appt.contact_id != contact_id:
                continue
            if phones is not None and not (appt.phones & wanted_phones):
                continue
            rows.append(appt)
        rows.sort(key=lambda a: a.start_time)
        if limit is not None:
            rows = rows[:limit]
        return [a.model_copy(deep=True) for a in rows]

    async def get_appointment(self, account_id: str, appointment_id: str) -> Optional[Appointment]:
        appt = self.appointments.get(appointment_id)
        if appt and appt.account_id == account_id:
            return appt.model_copy(deep=True)
        return None

    async def find_by_event_id(self, account_id: str, event_id: str) -> Optional[Appointment]:
        for appt in self.appointments.values():
            if appt.account_id == account_id and event_id in appt.external_event_ids.values():
                return appt.model_copy(deep=True)
        return None

    async def create_appointment(self, appointment: Appointment) -> Appointment:
        self.appointments[appointment.id] = appointment.model_copy(deep=True)
        log.debug("Stored appointment %s", appointment.id)
        return appointment

    async def update_appointment(
        self, account_id: str, appointment_id: str, changes: dict[str, Any]
    ) -> Optional[Appointment]:
        current = self.appointments.get(appointment_id)
        if current is None or current.account_id != account_id:
            return None
        updated = Appointment.model_validate({**current.model_dump(), **changes})
        self.appointments[appointment_id] = updated
        return updated.model_copy(deep=True)

    async def record_invocation(self, entry: AuditEntry) -> None:
        self.invocations.append(entry)
