"""Google Calendar provider implementation.

Uses each account's OAuth2 access token (kept fresh by
:mod:`appointment_engine.oauth`) to talk to the Calendar API v3.  The API
client is synchronous, so every request runs in the default thread pool.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Optional

import httplib2
from google.auth.exceptions import TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from appointment_engine.models.appointment import CalendarIntegration

from .base import (
    CalendarEvent,
    CalendarProvider,
    ProviderAuthError,
    ProviderError,
    TimeSlot,
)

logger = logging.getLogger(__name__)


class GoogleCalendarProvider(CalendarProvider):
    """CalendarProvider backed by Google Calendar API v3."""

    name = "google"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _service(self, integration: CalendarIntegration) -> Any:
        credentials = Credentials(token=integration.access_token)
        return build("calendar", "v3", credentials=credentials, cache_discovery=False)

    async def _execute(self, request: Any) -> Any:
        """Run a prepared API request in the thread pool, mapping HTTP and network errors."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(request.execute))
        except HttpError as exc:
            status = exc.resp.status if exc.resp is not None else None
            if status == 401:
                raise ProviderAuthError(self.name, "access token rejected", status) from exc
            raise ProviderError(self.name, f"API error {status}", status) from exc
        except (OSError, httplib2.HttpLib2Error, TransportError) as exc:
            raise ProviderError(self.name, f"transport error: {exc!r}") from exc

    @staticmethod
    def _to_rfc3339(dt: datetime) -> str:
        """Convert a datetime to an RFC 3339 string with timezone."""
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.isoformat()

    @staticmethod
    def _parse_edge(edge: dict) -> Optional[datetime]:
        # Timed events carry dateTime; all-day events only a date.
        raw = edge.get("dateTime") or edge.get("date")
        if not raw:
            return None
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    @staticmethod
    def _calendar(integration: CalendarIntegration, calendar_id: Optional[str] = None) -> str:
        return calendar_id or integration.calendar_id or "primary"

    # ------------------------------------------------------------------
    # CalendarProvider interface
    # ------------------------------------------------------------------

    async def list_busy(
        self,
        integration: CalendarIntegration,
        start: datetime,
        end: datetime,
        calendar_id: Optional[str] = None,
    ) -> list[TimeSlot]:
        """List events in ``[start, end)`` and return their time spans.

        Cancelled events and events marked "free" (transparent) are skipped.
        """
        service = self._service(integration)
        cal = self._calendar(integration, calendar_id)
        busy: list[TimeSlot] = []
        page_token: Optional[str] = None

        while True:
            response = await self._execute(
                service.events().list(
                    calendarId=cal,
                    timeMin=self._to_rfc3339(start),
                    timeMax=self._to_rfc3339(end),
                    singleEvents=True,
                    orderBy="startTime",
                    pageToken=page_token,
                )
            )
            for item in response.get("items", []):
                if item.get("status") == "cancelled" or item.get("transparency") == "transparent":
                    continue
                b_start = self._parse_edge(item.get("start", {}))
                b_end = self._parse_edge(item.get("end", {}))
                if b_start and b_end:
                    busy.append(TimeSlot(start=b_start, end=b_end))
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        logger.debug("Google calendar %s: %d busy intervals", cal, len(busy))
        return busy

    async def create_event(
        self, integration: CalendarIntegration, event: CalendarEvent
    ) -> str:
        """Insert an event into the Google Calendar.

        Sends email invitations to any attendees listed on the event.
        """
        body: dict[str, Any] = {
            "summary": event.summary,
            "start": {"dateTime": self._to_rfc3339(event.start), "timeZone": event.timezone},
            "end": {"dateTime": self._to_rfc3339(event.end), "timeZone": event.timezone},
        }
        if event.description:
            body["description"] = event.description
        if event.location:
            body["location"] = event.location
        if event.attendees:
            body["attendees"] = [{"email": addr} for addr in event.attendees]

        cal = self._calendar(integration, event.calendar_id)
        result = await self._execute(
            self._service(integration)
            .events()
            .insert(calendarId=cal, body=body, sendUpdates="all")
        )

        logger.info("Created event %s on calendar %s", result["id"], cal)
        return result["id"]

    async def update_event_time(
        self,
        integration: CalendarIntegration,
        event_id: str,
        start: datetime,
        end: datetime,
        timezone: str,
    ) -> None:
        body = {
            "start": {"dateTime": self._to_rfc3339(start), "timeZone": timezone},
            "end": {"dateTime": self._to_rfc3339(end), "timeZone": timezone},
        }
        cal = self._calendar(integration)
        await self._execute(
            self._service(integration)
            .events()
            .patch(calendarId=cal, eventId=event_id, body=body, sendUpdates="all")
        )
        logger.info("Moved event %s on calendar %s", event_id, cal)

    async def cancel_event(
        self, integration: CalendarIntegration, event_id: str
    ) -> bool:
        """Delete an event from Google Calendar; a missing event counts as done."""
        cal = self._calendar(integration)
        try:
            await self._execute(
                self._service(integration)
                .events()
                .delete(calendarId=cal, eventId=event_id, sendUpdates="all")
            )
        except ProviderAuthError:
            raise
        except ProviderError as exc:
            if exc.status in (404, 410):
                logger.info("Event %s already gone from calendar %s", event_id, cal)
                return True
            raise
        logger.info("Cancelled event %s on calendar %s", event_id, cal)
        return True
