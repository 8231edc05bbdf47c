"""Data models for the appointment engine."""

from .appointment import (
    Appointment,
    AppointmentStatus,
    AuditEntry,
    CalendarIntegration,
    Contact,
)
from .availability import AvailabilityProfile, CalendarPreference, TimeWindow

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "AuditEntry",
    "AvailabilityProfile",
    "CalendarIntegration",
    "CalendarPreference",
    "Contact",
    "TimeWindow",
]
