"""Calendar provider abstractions and implementations."""

from .base import (
    CalendarEvent,
    CalendarProvider,
    ProviderAuthError,
    ProviderError,
    TimeSlot,
)

__all__ = [
    "CalendarEvent",
    "CalendarProvider",
    "ProviderAuthError",
    "ProviderError",
    "TimeSlot",
]
