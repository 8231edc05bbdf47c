"""Pydantic models for per-account availability and provider preferences."""

from __future__ import annotations

import json
import logging
from typing import Any, Literal

from pydantic import BaseModel, field_validator

log = logging.getLogger("appointment_engine.models")


class TimeWindow(BaseModel):
    """One bookable wall-clock window, e.g. ``{"start": "09:00", "end": "17:00"}``."""

    start: str
    end: str


class AvailabilityProfile(BaseModel):
    """Recurring weekly schedule plus slot/buffer/notice settings for an account.

    Windows within a day are expected to be ordered and non-overlapping; that
    is not checked here.
    """

    account_id: str = ""
    timezone: str = "UTC"
    weekly_schedule: dict[str, list[TimeWindow]] = {}
    slot_interval_minutes: int = 30
    default_meeting_duration: int = 30
    buffer_before_minutes: int = 0
    buffer_after_minutes: int = 0
    min_notice_hours: float = 0
    max_days_ahead: int = 60

    @field_validator("weekly_schedule", mode="before")
    @classmethod
    def _parse_schedule(cls, value: Any) -> Any:
        # Stored either as JSON text or as an object; bad JSON means "no hours".
        if value is None:
            return {}
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                log.warning("Unparsable weekly_schedule, treating as empty")
                return {}
        if not isinstance(value, dict):
            return {}
        return {
            str(day).strip().lower(): windows
            for day, windows in value.items()
            if isinstance(windows, list)
        }

    @field_validator("timezone", mode="before")
    @classmethod
    def _default_timezone(cls, value: Any) -> Any:
        return value or "UTC"

    def windows_for(self, weekday: str) -> list[TimeWindow]:
        return self.weekly_schedule.get(weekday, [])


class CalendarPreference(BaseModel):
    """Which external calendars an account mirrors into and reads busy time from."""

    provider: Literal["google", "ghl", "both"] = "both"
    ghl_calendar_id: str | None = None

    def includes(self, provider: str) -> bool:
        return self.provider == "both" or self.provider == provider
