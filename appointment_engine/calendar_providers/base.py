"""Abstract base class for calendar providers.

Defines the interface the engine uses to read busy time from, and mirror
appointments into, an external calendar.  Any backend (Google, GoHighLevel,
etc.) implements this ABC.

Providers are stateless: every call receives the account's
:class:`CalendarIntegration`, already refreshed by the token manager.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from appointment_engine.models.appointment import CalendarIntegration


class ProviderError(Exception):
    """A provider call failed (transport, rate limit, unexpected status)."""

    def __init__(self, provider: str, message: str, status: Optional[int] = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status = status


class ProviderAuthError(ProviderError):
    """The provider rejected the access token (HTTP 401)."""


@dataclass
class TimeSlot:
    """A window of time on a calendar (busy or bookable)."""

    start: datetime
    end: datetime


@dataclass
class CalendarEvent:
    """Represents a calendar event to be created."""

    summary: str
    start: datetime
    end: datetime
    timezone: str = "UTC"
    description: str = ""
    attendees: list[str] = field(default_factory=list)  # email addresses
    location: str = ""
    contact_id: Optional[str] = None  # provider-side contact, if known
    phone: Optional[str] = None
    calendar_id: Optional[str] = None  # overrides the integration's calendar


class CalendarProvider(ABC):
    """Abstract calendar backend.

    Subclasses must implement busy-time listing, event creation, event
    time updates and event cancellation.  Authorization failures must be
    raised as :class:`ProviderAuthError` so the token manager can refresh
    and retry once; other failures as :class:`ProviderError`.
    """

    name: str = ""

    @abstractmethod
    async def list_busy(
        self,
        integration: CalendarIntegration,
        start: datetime,
        end: datetime,
        calendar_id: Optional[str] = None,
    ) -> list[TimeSlot]:
        """Return committed intervals overlapping ``[start, end)``.

        Args:
            integration: Credentials and default calendar for the account.
            start: Beginning of the search window (aware UTC).
            end: End of the search window (aware UTC).
            calendar_id: Calendar to read instead of the integration default.
        """

    @abstractmethod
    async def create_event(
        self, integration: CalendarIntegration, event: CalendarEvent
    ) -> str:
        """Create a calendar event and return the provider's event id."""

    @abstractmethod
    async def update_event_time(
        self,
        integration: CalendarIntegration,
        event_id: str,
        start: datetime,
        end: datetime,
        timezone: str,
    ) -> None:
        """Move an existing event in place (patch, not delete + recreate)."""

    @abstractmethod
    async def cancel_event(
        self, integration: CalendarIntegration, event_id: str
    ) -> bool:
        """Cancel / delete an event.

        Returns:
            True if the event is gone (deleted now or already missing).
        """

    async def find_contact_id(
        self, integration: CalendarIntegration, phone: str
    ) -> Optional[str]:
        """Look up the provider-side contact for a phone number, if supported."""
        return None
