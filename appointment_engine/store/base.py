"""Logical persistence contract for the scheduling engine.

The engine only needs a handful of reads and writes; whichever database backs
them is an adapter detail.  All methods are async so adapters may do I/O.
"""

from abc import ABC, abstractmethod
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


class StoreError(Exception):
    """The backing store rejected or failed a read/write."""


class AppointmentStore(ABC):
    """Abstract store of profiles, integrations, contacts and appointments."""

    # -- account configuration (read-only here) --

    @abstractmethod
    async def get_availability_profile(self, account_id: str) -> Optional[AvailabilityProfile]:
        """Return the account's weekly schedule, or None if never configured."""

    @abstractmethod
    async def get_calendar_preference(self, account_id: str) -> Optional[CalendarPreference]:
        """Return which providers the account mirrors into, or None for the default."""

    # -- provider credentials --

    @abstractmethod
    async def get_integration(self, account_id: str, provider: str) -> Optional[CalendarIntegration]:
        ...

    @abstractmethod
    async def save_integration(self, integration: CalendarIntegration) -> None:
        """Persist refreshed tokens for an integration."""

    # -- contacts --

    @abstractmethod
    async def find_contact_by_phone(
        self, account_id: str, phones: Sequence[str]
    ) -> Optional[Contact]:
        """Return the first contact whose stored phone equals one of ``phones`` (tried in order)."""

    @abstractmethod
    async def get_contact(self, account_id: str, contact_id: str) -> Optional[Contact]:
        ...

    # -- appointments --

    @abstractmethod
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
        """List appointments ordered by start time, ascending.

        Args:
            start_from: Only appointments starting at or after this instant.
            start_to: Only appointments starting before this instant.
            include_cancelled: Include appointments with status cancelled.
            contact_id: Only appointments linked to this contact.
            phones: Only appointments whose caller or attendee phone is one of these.
            limit: Maximum number of rows returned.
        """

    @abstractmethod
    async def get_appointment(self, account_id: str, appointment_id: str) -> Optional[Appointment]:
        ...

    @abstractmethod
    async def find_by_event_id(self, account_id: str, event_id: str) -> Optional[Appointment]:
        """Find an appointment by any of its mirrored provider event ids."""

    @abstractmethod
    async def create_appointment(self, appointment: Appointment) -> Appointment:
        ...

    @abstractmethod
    async def update_appointment(
        self, account_id: str, appointment_id: str, changes: dict[str, Any]
    ) -> Optional[Appointment]:
        """Apply field changes and return the updated record (None if missing)."""

    # -- audit --

    @abstractmethod
    async def record_invocation(self, entry: AuditEntry) -> None:
        ...
