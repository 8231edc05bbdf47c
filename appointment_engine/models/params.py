"""Typed parameter records for each dispatcher action.

Voice agents send the same value under several historical names
(``attendee_name`` vs ``name``, ``start_time`` vs ``startTime`` ...).  Each
model lists every accepted spelling once, so handlers never look at the raw
request shape.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationInfo, field_validator

_TRUTHY = {"true", "1", "yes", "y"}


def boolish(value: Any) -> bool:
    """Interpret LLM-supplied flags like ``"yes"`` or ``1`` as booleans."""
    if value is True:
        return True
    if value is False or value is None:
        return False
    return str(value).strip().lower() in _TRUTHY


def _alias(*names: str) -> Any:
    return Field(default=None, validation_alias=AliasChoices(*names))


class ActionParams(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any, info: ValidationInfo) -> Any:
        if info.field_name in _FLAG_FIELDS:
            return boolish(value)
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value


_FLAG_FIELDS = {"cancel_all"}


class SlotQuery(ActionParams):
    date: Optional[str] = _alias("date", "startDate", "start_date")
    end_date: Optional[str] = _alias("endDate", "end_date")
    duration_minutes: Optional[int] = _alias("duration_minutes", "duration")


class ListQuery(ActionParams):
    limit: Optional[int] = _alias("limit", "max_results")


class BookingParams(ActionParams):
    date: Optional[str] = _alias("date")
    time: Optional[str] = _alias("time")
    start_time: Optional[str] = _alias("start_time", "startTime")
    end_time: Optional[str] = _alias("end_time", "endTime")
    duration_minutes: Optional[int] = _alias("duration_minutes", "duration")
    attendee_name: Optional[str] = _alias("attendee_name", "name")
    attendee_email: Optional[str] = _alias("attendee_email", "email")
    attendee_phone: Optional[str] = _alias("attendee_phone")
    title: Optional[str] = _alias("title")


class TargetHints(ActionParams):
    """Weak signals identifying an existing appointment."""

    appointment_id: Optional[str] = _alias("appointment_id", "id")
    event_id: Optional[str] = _alias("event_id", "google_event_id")
    title_contains: Optional[str] = _alias("title_contains", "titleContains", "name")


class CancelParams(TargetHints):
    date: Optional[str] = _alias("date")
    time: Optional[str] = _alias("time")
    cancel_all: bool = Field(default=False, validation_alias=AliasChoices("cancel_all", "all", "cancelAll"))


class RescheduleParams(TargetHints):
    current_date: Optional[str] = _alias("current_date", "original_date")
    current_time: Optional[str] = _alias("current_time", "original_time")
    new_date: Optional[str] = _alias("new_date", "date")
    new_time: Optional[str] = _alias("new_time", "time")
    start_time: Optional[str] = _alias("new_start_time", "start_time", "startTime")
    end_time: Optional[str] = _alias("new_end_time", "end_time", "endTime")
    duration_minutes: Optional[int] = _alias("duration_minutes", "duration")


class SyncParams(ActionParams):
    appointment_id: Optional[str] = _alias("appointment_id", "id")
    event_id: Optional[str] = _alias("event_id", "google_event_id")
    # Some callers send the whole record as ``appointment``.
    appointment: Optional[dict[str, Any]] = _alias("appointment")

    @property
    def target_id(self) -> Optional[str]:
        if self.appointment_id:
            return self.appointment_id
        if self.appointment and self.appointment.get("id"):
            return str(self.appointment["id"])
        return None
