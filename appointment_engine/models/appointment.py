"""Pydantic models for appointments, contacts and calendar integrations."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class Appointment(BaseModel):
    """The canonical (local) appointment record.

    ``external_event_ids`` maps a provider name ("google", "ghl") to the id of
    the mirrored event in that provider.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    account_id: str
    contact_id: Optional[str] = None
    title: str = ""
    start_time: datetime
    end_time: datetime
    timezone: str = "UTC"
    status: AppointmentStatus = AppointmentStatus.CONFIRMED
    external_event_ids: dict[str, str] = {}
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("start_time", "end_time", "created_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> "Appointment":
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self

    @property
    def is_cancelled(self) -> bool:
        return self.status == AppointmentStatus.CANCELLED

    @property
    def google_event_id(self) -> Optional[str]:
        return self.external_event_ids.get("google")

    @property
    def attendee_name(self) -> str:
        return str(self.metadata.get("attendee_name") or "")

    @property
    def phones(self) -> set[str]:
        return {
            str(self.metadata[key])
            for key in ("caller_phone", "attendee_phone")
            if self.metadata.get(key)
        }


class Contact(BaseModel):
    """A lead/contact on the account that a caller's phone can be linked to."""

    id: str
    account_id: str
    phone_number: str = ""
    name: str = ""
    email: str = ""
    ghl_contact_id: Optional[str] = None


class CalendarIntegration(BaseModel):
    """Stored OAuth2 credentials for one account + provider."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    account_id: str
    provider: str
    access_token: str = ""
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    calendar_id: Optional[str] = None
    location_id: Optional[str] = None
    sync_enabled: bool = True

    @field_validator("expires_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value) if value is not None else None


class AuditEntry(BaseModel):
    """One row of the invocation audit log."""

    account_id: Optional[str] = None
    action: str
    parameters: str
    result: str
    success: bool
    error_message: Optional[str] = None
    duration_ms: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
