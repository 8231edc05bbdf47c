"""Supabase (PostgREST) adapter for :class:`AppointmentStore`.

Table layout::

    calendar_availability       one row per account (user_id)
    ghl_sync_settings           calendar_preference, ghl_calendar_id
    calendar_integrations       Google OAuth tokens (base64 columns)
    user_credentials            GoHighLevel key/value credentials (base64)
    leads                       contacts, matched by phone_number
    calendar_appointments       the local appointment records
    calendar_tool_invocations   audit log

The supabase client is synchronous; queries run in the default executor so
the event loop never blocks on the network.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from datetime import datetime
from typing import Any, Optional, Sequence

from supabase import Client, create_client

from appointment_engine.models import (
    Appointment,
    AppointmentStatus,
    AuditEntry,
    AvailabilityProfile,
    CalendarIntegration,
    CalendarPreference,
    Contact,
)

from .base import AppointmentStore, StoreError

log = logging.getLogger("appointment_engine.store.supabase")

GHL_SERVICE = "gohighlevel"

# provider name -> column holding that provider's event id
_EVENT_COLUMNS = {"google": "google_event_id", "ghl": "ghl_appointment_id"}


def _encode(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return base64.b64encode(value.encode()).decode()


def _decode(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        return base64.b64decode(value).decode()
    except (binascii.Error, UnicodeDecodeError):
        log.warning("Stored credential is not valid base64, ignoring it")
        return None


def _quote(value: str) -> str:
    # PostgREST filter values containing reserved chars must be double-quoted.
    return '"' + value.replace('"', '\\"') + '"'


def appointment_to_row(appt: Appointment) -> dict[str, Any]:
    return {
        "id": appt.id,
        "user_id": appt.account_id,
        "lead_id": appt.contact_id,
        "title": appt.title,
        "start_time": appt.start_time.isoformat(),
        "end_time": appt.end_time.isoformat(),
        "timezone": appt.timezone,
        "status": appt.status.value,
        "google_event_id": appt.external_event_ids.get("google"),
        "ghl_appointment_id": appt.external_event_ids.get("ghl"),
        "metadata": appt.metadata,
        "created_at": appt.created_at.isoformat(),
    }


def row_to_appointment(row: dict[str, Any]) -> Appointment:
    event_ids = {
        provider: row[column]
        for provider, column in _EVENT_COLUMNS.items()
        if row.get(column)
    }
    data = {
        "id": row["id"],
        "account_id": row["user_id"],
        "contact_id": row.get("lead_id"),
        "title": row.get("title") or "",
        "start_time": row["start_time"],
        "end_time": row["end_time"],
        "timezone": row.get("timezone") or "UTC",
        "status": row.get("status") or AppointmentStatus.SCHEDULED.value,
        "external_event_ids": event_ids,
        "metadata": row.get("metadata") or {},
    }
    if row.get("created_at"):
        data["created_at"] = row["created_at"]
    return Appointment.model_validate(data)


def changes_to_row(changes: dict[str, Any]) -> dict[str, Any]:
    """Translate model field changes into column updates."""
    row: dict[str, Any] = {}
    for key, value in changes.items():
        if key in ("start_time", "end_time") and isinstance(value, datetime):
            row[key] = value.isoformat()
        elif key == "status":
            row[key] = value.value if isinstance(value, AppointmentStatus) else value
        elif key == "contact_id":
            row["lead_id"] = value
        elif key == "account_id":
            row["user_id"] = value
        elif key == "external_event_ids":
            for provider, column in _EVENT_COLUMNS.items():
                row[column] = value.get(provider)
        else:
            row[key] = value
    return row


class SupabaseStore(AppointmentStore):
    """Store backed by a Supabase project (service-role key)."""

    def __init__(self, client: Client) -> None:
        self._client = client

    @classmethod
    def from_settings(cls, url: str, key: str) -> "SupabaseStore":
        return cls(create_client(url, key))

    async def _execute(self, query: Any) -> list[dict[str, Any]]:
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, query.execute)
        data = getattr(response, "data", None)
        if data is None:
            return []
        return data if isinstance(data, list) else [data]

    async def _first(self, query: Any) -> Optional[dict[str, Any]]:
        rows = await self._execute(query.limit(1))
        return rows[0] if rows else None

    # ── account configuration ────────────────────────────────

    async def get_availability_profile(self, account_id: str) -> Optional[AvailabilityProfile]:
        row = await self._first(
            self._client.table("calendar_availability").select("*").eq("user_id", account_id)
        )
        if row is None:
            return None
        return AvailabilityProfile(
            account_id=account_id,
            timezone=row.get("timezone") or "UTC",
            weekly_schedule=row.get("weekly_schedule"),
            slot_interval_minutes=int(row.get("slot_interval_minutes") or 30),
            default_meeting_duration=int(row.get("default_meeting_duration") or 30),
            buffer_before_minutes=int(row.get("buffer_before_minutes") or 0),
            buffer_after_minutes=int(row.get("buffer_after_minutes") or 0),
            min_notice_hours=float(row.get("min_notice_hours") or 0),
            max_days_ahead=int(row.get("max_days_ahead") or 60),
        )

    async def get_calendar_preference(self, account_id: str) -> Optional[CalendarPreference]:
        row = await self._first(
            self._client.table("ghl_sync_settings")
            .select("calendar_preference, ghl_calendar_id")
            .eq("user_id", account_id)
        )
        if row is None:
            return None
        provider = row.get("calendar_preference")
        if provider not in ("google", "ghl", "both"):
            provider = "both"
        return CalendarPreference(provider=provider, ghl_calendar_id=row.get("ghl_calendar_id"))

    # ── provider credentials ─────────────────────────────────

    async def get_integration(self, account_id: str, provider: str) -> Optional[CalendarIntegration]:
        if provider == "ghl":
            return await self._get_ghl_integration(account_id)

        row = await self._first(
            self._client.table("calendar_integrations")
            .select("*")
            .eq("user_id", account_id)
            .eq("provider", provider)
        )
        if row is None:
            return None
        return CalendarIntegration(
            id=str(row["id"]),
            account_id=account_id,
            provider=provider,
            access_token=_decode(row.get("access_token_encrypted")) or "",
            refresh_token=_decode(row.get("refresh_token_encrypted")),
            expires_at=row.get("token_expires_at"),
            calendar_id=row.get("calendar_id"),
            sync_enabled=bool(row.get("sync_enabled", True)),
        )

    async def _get_ghl_integration(self, account_id: str) -> Optional[CalendarIntegration]:
        rows = await self._execute(
            self._client.table("user_credentials")
            .select("credential_key, credential_value_encrypted")
            .eq("user_id", account_id)
            .eq("service_name", GHL_SERVICE)
        )
        creds = {r["credential_key"]: _decode(r.get("credential_value_encrypted")) for r in rows}
        token = creds.get("accessToken") or creds.get("apiKey")
        if not token:
            return None
        return CalendarIntegration(
            id=f"{account_id}:{GHL_SERVICE}",
            account_id=account_id,
            provider="ghl",
            access_token=token,
            refresh_token=creds.get("refreshToken"),
            expires_at=creds.get("expiresAt") or None,
            location_id=creds.get("locationId"),
        )

    async def save_integration(self, integration: CalendarIntegration) -> None:
        expires = integration.expires_at.isoformat() if integration.expires_at else None
        if integration.provider == "ghl":
            values = {
                "accessToken": integration.access_token,
                "refreshToken": integration.refresh_token,
                "expiresAt": expires,
            }
            for key, value in values.items():
                if value is None:
                    continue
                await self._execute(
                    self._client.table("user_credentials")
                    .update({"credential_value_encrypted": _encode(value)})
                    .eq("user_id", integration.account_id)
                    .eq("service_name", GHL_SERVICE)
                    .eq("credential_key", key)
                )
            return

        update: dict[str, Any] = {
            "access_token_encrypted": _encode(integration.access_token),
            "token_expires_at": expires,
        }
        # Providers may omit the refresh token on refresh; keep the stored one.
        if integration.refresh_token:
            update["refresh_token_encrypted"] = _encode(integration.refresh_token)
        await self._execute(
            self._client.table("calendar_integrations")
            .update(update)
            .eq("user_id", integration.account_id)
            .eq("provider", integration.provider)
        )

    # ── contacts ─────────────────────────────────────────────

    @staticmethod
    def _row_to_contact(row: dict[str, Any]) -> Contact:
        name = row.get("name") or " ".join(
            part for part in (row.get("first_name"), row.get("last_name")) if part
        )
        return Contact(
            id=str(row["id"]),
            account_id=row.get("user_id") or "",
            phone_number=row.get("phone_number") or "",
            name=name,
            email=row.get("email") or "",
            ghl_contact_id=row.get("ghl_contact_id"),
        )

    async def find_contact_by_phone(
        self, account_id: str, phones: Sequence[str]
    ) -> Optional[Contact]:
        for phone in phones:
            row = await self._first(
                self._client.table("leads")
                .select("*")
                .eq("user_id", account_id)
                .eq("phone_number", phone)
            )
            if row is not None:
                return self._row_to_contact(row)
        return None

    async def get_contact(self, account_id: str, contact_id: str) -> Optional[Contact]:
        row = await self._first(
            self._client.table("leads").select("*").eq("user_id", account_id).eq("id", contact_id)
        )
        return self._row_to_contact(row) if row else None

    # ── appointments ─────────────────────────────────────────

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
        query = self._client.table("calendar_appointments").select("*").eq("user_id", account_id)
        if not include_cancelled:
            query = query.neq("status", AppointmentStatus.CANCELLED.value)
        if start_from is not None:
            query = query.gte("start_time", start_from.isoformat())
        if start_to is not None:
            query = query.lt("start_time", start_to.isoformat())
        if contact_id is not None:
            query = query.eq("lead_id", contact_id)
        if phones is not None:
            if not phones:
                return []
            values = ",".join(_quote(p) for p in phones)
            query = query.or_(
                f"metadata->>caller_phone.in.({values}),metadata->>attendee_phone.in.({values})"
            )
        query = query.order("start_time")
        if limit is not None:
            query = query.limit(limit)
        return [row_to_appointment(row) for row in await self._execute(query)]

    async def get_appointment(self, account_id: str, appointment_id: str) -> Optional[Appointment]:
        row = await self._first(
            self._client.table("calendar_appointments")
            .select("*")
            .eq("user_id", account_id)
            .eq("id", appointment_id)
        )
        return row_to_appointment(row) if row else None

    async def find_by_event_id(self, account_id: str, event_id: str) -> Optional[Appointment]:
        quoted = _quote(event_id)
        filters = ",".join(f"{column}.eq.{quoted}" for column in _EVENT_COLUMNS.values())
        row = await self._first(
            self._client.table("calendar_appointments")
            .select("*")
            .eq("user_id", account_id)
            .or_(filters)
        )
        return row_to_appointment(row) if row else None

    async def create_appointment(self, appointment: Appointment) -> Appointment:
        rows = await self._execute(
            self._client.table("calendar_appointments").insert(appointment_to_row(appointment))
        )
        if not rows:
            raise StoreError(f"insert of appointment {appointment.id} returned no row")
        return row_to_appointment(rows[0])

    async def update_appointment(
        self, account_id: str, appointment_id: str, changes: dict[str, Any]
    ) -> Optional[Appointment]:
        rows = await self._execute(
            self._client.table("calendar_appointments")
            .update(changes_to_row(changes))
            .eq("user_id", account_id)
            .eq("id", appointment_id)
        )
        return row_to_appointment(rows[0]) if rows else None

    # ── audit ────────────────────────────────────────────────

    async def record_invocation(self, entry: AuditEntry) -> None:
        await self._execute(
            self._client.table("calendar_tool_invocations").insert(
                {
                    "user_id": entry.account_id,
                    "action": entry.action,
                    "parameters": entry.parameters,
                    "result": entry.result,
                    "success": entry.success,
                    "error_message": entry.error_message,
                    "duration_ms": entry.duration_ms,
                }
            )
        )
