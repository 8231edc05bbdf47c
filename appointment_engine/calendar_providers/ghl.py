"""GoHighLevel (LeadConnector) calendar provider.

The secondary, CRM-side calendar.  Accounts store a location API key (or an
OAuth access token) as the integration's access token and the location id
alongside it.  All calls go through ``httpx`` against the v2 REST API.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from appointment_engine.config import settings
from appointment_engine.models.appointment import CalendarIntegration

from .base import (
    CalendarEvent,
    CalendarProvider,
    ProviderAuthError,
    ProviderError,
    TimeSlot,
)

logger = logging.getLogger(__name__)


class GoHighLevelProvider(CalendarProvider):
    """CalendarProvider backed by the GoHighLevel calendars API."""

    name = "ghl"

    def __init__(
        self,
        base_url: str | None = None,
        api_version: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
    ) -> None:
        self._base_url = (base_url or settings.ghl_base_url).rstrip("/")
        self._api_version = api_version or settings.ghl_api_version
        self._transport = transport
        self._timeout = timeout or settings.http_timeout_seconds

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        integration: CalendarIntegration,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {integration.access_token}",
            "Version": self._api_version,
            "Accept": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                resp = await client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"transport error: {exc}") from exc

        if resp.status_code == 401:
            raise ProviderAuthError(self.name, "access token rejected", 401)
        return resp

    def _raise_for_status(self, resp: httpx.Response, what: str) -> None:
        if resp.is_success:
            return
        logger.warning("GHL %s failed: %s %s", what, resp.status_code, resp.text[:300])
        raise ProviderError(self.name, f"{what} failed ({resp.status_code})", resp.status_code)

    @staticmethod
    def _location(integration: CalendarIntegration) -> str:
        if not integration.location_id:
            raise ProviderError("ghl", "integration has no location id")
        return integration.location_id

    @staticmethod
    def _parse_time(raw: Any) -> Optional[datetime]:
        if raw in (None, ""):
            return None
        if isinstance(raw, (int, float)) or str(raw).isdigit():
            return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
        parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    @staticmethod
    def _millis(dt: datetime) -> str:
        return str(int(dt.timestamp() * 1000))

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
        cal = calendar_id or integration.calendar_id
        if not cal:
            raise ProviderError(self.name, "no calendar selected")
        resp = await self._request(
            integration,
            "GET",
            "/calendars/events",
            params={
                "locationId": self._location(integration),
                "calendarId": cal,
                "startTime": self._millis(start),
                "endTime": self._millis(end),
            },
        )
        self._raise_for_status(resp, "list events")

        busy: list[TimeSlot] = []
        for event in resp.json().get("events", []):
            if str(event.get("appointmentStatus", "")).lower() == "cancelled":
                continue
            b_start = self._parse_time(event.get("startTime"))
            b_end = self._parse_time(event.get("endTime"))
            if b_start and b_end:
                busy.append(TimeSlot(start=b_start, end=b_end))
        logger.debug("GHL calendar %s: %d busy intervals", cal, len(busy))
        return busy

    async def create_event(
        self, integration: CalendarIntegration, event: CalendarEvent
    ) -> str:
        body: dict[str, Any] = {
            "locationId": self._location(integration),
            "title": event.summary or "Appointment",
            "startTime": event.start.isoformat(),
            "endTime": event.end.isoformat(),
            "timezone": event.timezone,
            "notes": event.description or "Booked via AI Voice System",
        }
        cal = event.calendar_id or integration.calendar_id
        if cal:
            body["calendarId"] = cal
        if event.contact_id:
            body["contactId"] = event.contact_id
        if event.phone:
            body["phone"] = event.phone
        if event.attendees:
            body["email"] = event.attendees[0]

        resp = await self._request(integration, "POST", "/calendars/events/appointments", json=body)
        self._raise_for_status(resp, "create appointment")

        data = resp.json()
        event_id = data.get("id") or (data.get("event") or {}).get("id")
        if not event_id:
            raise ProviderError(self.name, "create appointment returned no id")
        logger.info("Created GHL appointment %s", event_id)
        return event_id

    async def update_event_time(
        self,
        integration: CalendarIntegration,
        event_id: str,
        start: datetime,
        end: datetime,
        timezone: str,
    ) -> None:
        resp = await self._request(
            integration,
            "PUT",
            f"/calendars/events/appointments/{event_id}",
            json={"startTime": start.isoformat(), "endTime": end.isoformat(), "timezone": timezone},
        )
        self._raise_for_status(resp, "update appointment")
        logger.info("Moved GHL appointment %s", event_id)

    async def cancel_event(
        self, integration: CalendarIntegration, event_id: str
    ) -> bool:
        resp = await self._request(integration, "DELETE", f"/calendars/events/{event_id}")
        if resp.status_code == 404:
            logger.info("GHL appointment %s already gone", event_id)
            return True
        self._raise_for_status(resp, "delete event")
        logger.info("Cancelled GHL appointment %s", event_id)
        return True

    async def find_contact_id(
        self, integration: CalendarIntegration, phone: str
    ) -> Optional[str]:
        resp = await self._request(
            integration,
            "GET",
            "/contacts/search/duplicate",
            params={"locationId": self._location(integration), "number": phone},
        )
        self._raise_for_status(resp, "contact lookup")
        contact = resp.json().get("contact") or {}
        return contact.get("id")
