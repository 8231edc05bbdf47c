"""Tests for booking: time resolution, conflicts, idempotent retries, mirroring."""

import sys, os
sys.path.insert(0, os.path.dirname(__file__))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from datetime import date, datetime, time, timedelta, timezone

import pytest

from fakes import ACCOUNT, NOW, WEEKDAYS_9_TO_5, build_dispatcher, make_appointment, make_integration
from appointment_engine.booking import (
    MSG_BAD_DATE,
    MSG_BAD_START,
    MSG_BAD_TIME,
    MSG_CONFLICT,
    MSG_END_BEFORE_START,
    MSG_NEED_DATETIME,
    MSG_PAST,
    NeedsClarification,
    infer_day,
    is_duplicate,
    resolve_requested_time,
)
from appointment_engine.caller import CallerContext
from appointment_engine.calendar_providers.base import ProviderError, TimeSlot
from appointment_engine.models import CalendarPreference, Contact
from appointment_engine.models.params import BookingParams
from appointment_engine.store import InMemoryStore
from appointment_engine.timeutil import TimeContext


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def ny_ctx(now=NOW):
    return TimeContext.create(now, "America/New_York")


async def book(dispatcher, caller=None, **params):
    return await dispatcher.booking.book(
        ACCOUNT, BookingParams.model_validate(params), caller or CallerContext(), NOW
    )


# ── Time resolution ─────────────────────────────────────────────────


class TestResolveRequestedTime:
    def resolve(self, **kwargs):
        args = {
            "start_raw": None,
            "end_raw": None,
            "date_raw": None,
            "time_raw": None,
            "duration_minutes": 30,
            "ctx": ny_ctx(),
            "schedule": WEEKDAYS_9_TO_5,
            "tolerance_minutes": 30,
        }
        args.update(kwargs)
        return resolve_requested_time(**args)

    def test_date_and_spoken_time(self):
        requested = self.resolve(date_raw="2026-01-06", time_raw="2:30 PM")
        assert requested.start == utc(2026, 1, 6, 19, 30)
        assert requested.end == utc(2026, 1, 6, 20, 0)

    def test_time_only_later_today(self):
        assert self.resolve(time_raw="2 PM").start == utc(2026, 1, 5, 19, 0)

    def test_time_only_inside_tolerance_means_tomorrow(self):
        # Now is 9:00; 9:20 is within the 30-minute tolerance.
        assert self.resolve(time_raw="9:20 AM").start == utc(2026, 1, 6, 14, 20)

    def test_time_only_earlier_means_tomorrow(self):
        assert self.resolve(time_raw="8:45 AM").start == utc(2026, 1, 6, 13, 45)

    def test_bare_timestamp_in_time_field(self):
        assert self.resolve(time_raw="2026-01-05T19:00").start == utc(2026, 1, 5, 19, 0)

    def test_explicit_end(self):
        requested = self.resolve(
            start_raw="2026-01-05T19:00:00Z", end_raw="2026-01-05T20:00:00Z"
        )
        assert requested.end - requested.start == timedelta(hours=1)

    def test_bare_end_keeps_start_reading(self):
        # Start reads as UTC (only that fits the schedule); the end follows it.
        requested = self.resolve(start_raw="2026-01-05T19:00", end_raw="2026-01-05T19:45")
        assert requested.start == utc(2026, 1, 5, 19, 0)
        assert requested.end == utc(2026, 1, 5, 19, 45)

    @pytest.mark.parametrize(
        "kwargs,message",
        [
            ({}, MSG_NEED_DATETIME),
            ({"time_raw": "whenever"}, MSG_BAD_TIME),
            ({"date_raw": "2026-01-06"}, MSG_BAD_TIME),
            ({"date_raw": "someday", "time_raw": "2pm"}, MSG_BAD_DATE),
            ({"start_raw": "next week"}, MSG_BAD_START),
            (
                {"start_raw": "2026-01-05T19:00:00Z", "end_raw": "2026-01-05T18:00:00Z"},
                MSG_END_BEFORE_START,
            ),
        ],
    )
    def test_needs_clarification(self, kwargs, message):
        with pytest.raises(NeedsClarification) as exc_info:
            self.resolve(**kwargs)
        assert exc_info.value.message == message

    def test_infer_day(self):
        ctx = ny_ctx()
        assert infer_day(time(9, 31), ctx, 30) == date(2026, 1, 5)
        assert infer_day(time(9, 30), ctx, 30) == date(2026, 1, 6)


class TestIsDuplicate:
    def test_same_time_same_name(self):
        existing = make_appointment(utc(2026, 1, 5, 19, 0), name="Jane Doe")
        assert is_duplicate(existing, utc(2026, 1, 5, 19, 1), "jane doe", 120)

    def test_different_name(self):
        existing = make_appointment(utc(2026, 1, 5, 19, 0), name="Jane Doe")
        assert not is_duplicate(existing, utc(2026, 1, 5, 19, 0), "Bob", 120)

    def test_outside_window(self):
        existing = make_appointment(utc(2026, 1, 5, 19, 0), name="Jane Doe")
        assert not is_duplicate(existing, utc(2026, 1, 5, 19, 15), "Jane Doe", 120)

    def test_no_name_given(self):
        existing = make_appointment(utc(2026, 1, 5, 19, 0), name="Jane Doe")
        assert is_duplicate(existing, utc(2026, 1, 5, 19, 0), None, 120)


# ── Booking handler ─────────────────────────────────────────────────


class TestBook:
    async def test_books_time_only_request_today(self, store, dispatcher):
        result = await book(dispatcher, time="2 PM", attendee_name="Jane Doe")

        assert result["success"] is True
        assert result["start_time"] == "2026-01-05T19:00:00Z"
        assert result["end_time"] == "2026-01-05T19:30:00Z"
        assert result["message"] == (
            "Perfect! I've booked your appointment for Monday, January 5 at 2:00 PM. "
            "Looking forward to speaking with you!"
        )
        stored = store.appointments[result["appointment_id"]]
        assert stored.title == "Appointment with Jane Doe"
        assert stored.timezone == "America/New_York"
        assert stored.metadata["source"] == "retell_ai"

    async def test_confirmation_mentions_email(self, dispatcher):
        result = await book(
            dispatcher, date="2026-01-06", time="10am", attendee_email="jane@example.com"
        )
        assert result["message"].endswith("You should receive a confirmation at jane@example.com.")

    async def test_utc_copied_slot(self, dispatcher):
        result = await book(dispatcher, start_time="2026-01-05T19:00", attendee_name="Jane")
        assert result["start_time"] == "2026-01-05T19:00:00Z"

    async def test_retry_is_absorbed(self, store, dispatcher):
        first = await book(dispatcher, date="2026-01-05", time="2 PM", attendee_name="Jane Doe")
        second = await book(dispatcher, date="2026-01-05", time="2 PM", attendee_name="Jane Doe")

        assert second["success"] is True
        assert second["appointment_id"] == first["appointment_id"]
        assert second["message"] == (
            "You're all set, I already have you booked for Monday, January 5 at 2:00 PM."
        )
        assert len(store.appointments) == 1

    async def test_conflict_with_someone_else(self, store, dispatcher):
        store.add_appointment(make_appointment(utc(2026, 1, 5, 19, 0), name="Bob Smith"))

        result = await book(dispatcher, date="2026-01-05", time="2:15 PM", attendee_name="Jane Doe")

        assert result == {"success": False, "message": MSG_CONFLICT}
        assert len(store.appointments) == 1

    async def test_retry_found_among_overlapping_bookings(self, store, dispatcher):
        store.add_appointment(make_appointment(utc(2026, 1, 5, 19, 0), minutes=60, name="Bob Smith"))
        store.add_appointment(make_appointment(utc(2026, 1, 5, 19, 30), name="Jane Doe", id="jane"))

        result = await book(dispatcher, date="2026-01-05", time="2:30 PM", attendee_name="Jane Doe")

        assert result["success"] is True
        assert result["appointment_id"] == "jane"
        assert len(store.appointments) == 2

    async def test_conflict_with_booking_from_the_night_before(self, store, dispatcher):
        # 10 PM Monday until 10 AM Tuesday, New York time.
        store.add_appointment(make_appointment(utc(2026, 1, 6, 3, 0), minutes=720, name="Night Shift"))

        result = await book(dispatcher, date="2026-01-06", time="9:30am", attendee_name="Jane Doe")

        assert result == {"success": False, "message": MSG_CONFLICT}

    async def test_past_time(self, store, dispatcher):
        result = await book(dispatcher, date="2026-01-05", time="8 AM")
        assert result == {"success": False, "message": MSG_PAST}
        assert store.appointments == {}

    async def test_missing_time(self, dispatcher):
        result = await book(dispatcher, attendee_name="Jane")
        assert result == {"success": False, "message": MSG_NEED_DATETIME}

    async def test_duration_defaults_to_profile(self, store, dispatcher):
        store.profiles[ACCOUNT] = store.profiles[ACCOUNT].model_copy(
            update={"default_meeting_duration": 45}
        )
        result = await book(dispatcher, date="2026-01-06", time="10am")
        assert result["end_time"] == "2026-01-06T15:45:00Z"

    async def test_no_profile_books_in_utc(self):
        dispatcher = build_dispatcher(InMemoryStore())
        result = await book(dispatcher, date="2026-01-06", time="10am")
        assert result["start_time"] == "2026-01-06T10:00:00Z"
        assert result["end_time"] == "2026-01-06T10:30:00Z"

    async def test_caller_phone_recorded(self, store, dispatcher):
        store.add_contact(Contact(id="lead-1", account_id=ACCOUNT, phone_number="+15551234567"))
        caller = CallerContext(phone="+15551234567", contact=store.contacts["lead-1"])

        result = await book(dispatcher, caller=caller, date="2026-01-06", time="10am")

        stored = store.appointments[result["appointment_id"]]
        assert stored.contact_id == "lead-1"
        assert stored.metadata["caller_phone"] == "+15551234567"
        assert stored.metadata["attendee_phone"] == "+15551234567"


# ── Mirroring to providers ──────────────────────────────────────────


class TestBookMirroring:
    async def test_mirrors_to_google(self, store, google, dispatcher):
        store.add_integration(make_integration("google"))

        result = await book(
            dispatcher, date="2026-01-06", time="10am", attendee_name="Jane",
            attendee_email="jane@example.com",
        )

        assert result["event_id"] == "google-evt-1"
        assert result["sync"] == {"google": {"success": True, "event_id": "google-evt-1"}}
        stored = store.appointments[result["appointment_id"]]
        assert stored.external_event_ids == {"google": "google-evt-1"}
        assert stored.metadata["synced_to_google"] is True
        event = google.created[0]
        assert event.attendees == ["jane@example.com"]
        assert event.description.startswith("Booked via AI Voice System")

    async def test_provider_failure_keeps_local_booking(self, store, google, dispatcher):
        store.add_integration(make_integration("google"))
        google.fail_with = ProviderError("google", "API error 500", 500)

        result = await book(dispatcher, date="2026-01-06", time="10am")

        assert result["success"] is True
        assert result["event_id"] is None
        assert result["sync"]["google"]["success"] is False
        stored = store.appointments[result["appointment_id"]]
        assert stored.external_event_ids == {}
        assert stored.metadata["synced_to_google"] is False

    async def test_expired_grant_reports_reconnect(self, store, dispatcher):
        store.add_integration(
            make_integration("google", refresh_token=None, expires_at=NOW - timedelta(hours=1))
        )

        result = await book(dispatcher, date="2026-01-06", time="10am")

        assert result["success"] is True
        assert result["sync"]["google"]["needs_reconnect"] is True

    async def test_not_connected_provider(self, dispatcher):
        result = await book(dispatcher, date="2026-01-06", time="10am")
        assert result["sync"]["google"] == {"success": False, "error": "not connected"}

    async def test_external_busy_time_blocks_booking(self, store, google, dispatcher):
        store.add_integration(make_integration("google"))
        google.busy = [TimeSlot(start=utc(2026, 1, 6, 15, 0), end=utc(2026, 1, 6, 16, 0))]

        result = await book(dispatcher, date="2026-01-06", time="10am")

        assert result == {"success": False, "message": MSG_CONFLICT}
        assert store.appointments == {}
        assert google.created == []

    async def test_external_conflict_check_can_be_disabled(self, store, google, dispatcher, monkeypatch):
        monkeypatch.setattr("appointment_engine.booking.settings.check_provider_conflicts", False)
        store.add_integration(make_integration("google"))
        google.busy = [TimeSlot(start=utc(2026, 1, 6, 15, 0), end=utc(2026, 1, 6, 16, 0))]

        result = await book(dispatcher, date="2026-01-06", time="10am")
        assert result["success"] is True

    async def test_ghl_gets_contact_and_calendar(self, store, ghl, dispatcher):
        store.set_preference(ACCOUNT, CalendarPreference(provider="ghl", ghl_calendar_id="cal-9"))
        store.add_integration(make_integration("ghl"))
        ghl.contact_id = "ghl-contact-1"

        result = await book(
            dispatcher,
            caller=CallerContext(phone="+15551234567"),
            date="2026-01-06",
            time="10am",
        )

        assert result["event_id"] == "ghl-evt-1"
        event = ghl.created[0]
        assert event.calendar_id == "cal-9"
        assert event.contact_id == "ghl-contact-1"
        assert event.phone == "+15551234567"
        assert "google" not in result["sync"]
