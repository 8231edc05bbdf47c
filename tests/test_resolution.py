"""Tests for finding an appointment from weak signals (id, phone, time, name)."""

import sys, os
sys.path.insert(0, os.path.dirname(__file__))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from datetime import date, datetime, time, timezone

import pytest

from fakes import ACCOUNT, NOW, make_appointment
from appointment_engine.caller import CallerContext
from appointment_engine.models import Contact
from appointment_engine.resolution import Resolver, UnreadableHint, build_query
from appointment_engine.store import InMemoryStore
from appointment_engine.timeutil import TimeContext

CALLER = "+15551234567"


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def ctx():
    return TimeContext.create(NOW, "America/New_York")


def query(caller=None, **hints):
    return build_query(ACCOUNT, ctx(), caller or CallerContext(), **hints)


@pytest.fixture
def store():
    """Two of the caller's bookings and one of someone else's."""
    store = InMemoryStore()
    store.add_appointment(make_appointment(utc(2026, 1, 6, 15, 0), name="Jane Doe", phone=CALLER, id="jane-tue"))
    store.add_appointment(make_appointment(utc(2026, 1, 7, 19, 0), name="Jane Doe", phone=CALLER, id="jane-wed"))
    store.add_appointment(
        make_appointment(
            utc(2026, 1, 8, 19, 0),
            name="Bob Smith",
            phone="+15559998888",
            id="bob-thu",
            external_event_ids={"google": "gcal-bob"},
        )
    )
    return store


# ── build_query ─────────────────────────────────────────────────────


class TestBuildQuery:
    def test_date_and_time_make_a_target(self):
        q = query(date_raw="2026-01-07", time_raw="2 PM")
        assert q.target == utc(2026, 1, 7, 19, 0)
        assert q.day is None and q.time_of_day is None

    def test_bare_timestamp_in_time_field_is_split(self):
        q = query(time_raw="2026-01-07T14:00")
        assert q.target == utc(2026, 1, 7, 19, 0)

    def test_time_only(self):
        q = query(time_raw="2pm")
        assert q.time_of_day == time(14, 0)
        assert q.has_time_hint

    def test_date_only(self):
        assert query(date_raw="tomorrow").day == date(2026, 1, 6)

    def test_unreadable(self):
        with pytest.raises(UnreadableHint):
            query(time_raw="after lunch")

    def test_no_signal(self):
        assert not query().has_signal
        assert query(CallerContext(phone=CALLER)).has_signal


# ── Resolver chain ──────────────────────────────────────────────────


class TestResolver:
    async def test_by_id_any_status(self, store):
        store.appointments["jane-tue"] = store.appointments["jane-tue"].model_copy(
            update={"status": "cancelled"}
        )
        resolution = await Resolver(store).resolve(query(appointment_id="jane-tue"))
        assert resolution.first.id == "jane-tue"
        assert resolution.strategy == "id"

    async def test_event_id_passed_as_id(self, store):
        resolution = await Resolver(store).resolve(query(appointment_id="gcal-bob"))
        assert resolution.first.id == "bob-thu"

    async def test_unknown_id_is_a_miss(self, store):
        resolution = await Resolver(store).resolve(query(appointment_id="nope"))
        assert resolution.first is None
        assert resolution.missed == "id"

    async def test_caller_phone_soonest_first(self, store):
        resolution = await Resolver(store).resolve(query(CallerContext(phone=CALLER)))
        assert [a.id for a in resolution.matches] == ["jane-tue", "jane-wed"]
        assert resolution.strategy == "caller"

    async def test_caller_contact(self, store):
        store.appointments["jane-wed"] = store.appointments["jane-wed"].model_copy(
            update={"contact_id": "lead-1"}
        )
        contact = Contact(id="lead-1", account_id=ACCOUNT, phone_number=CALLER)
        resolution = await Resolver(store).resolve(query(CallerContext(phone=CALLER, contact=contact)))
        assert [a.id for a in resolution.matches] == ["jane-wed"]

    async def test_caller_narrowed_by_time_of_day(self, store):
        resolution = await Resolver(store).resolve(
            query(CallerContext(phone=CALLER), time_raw="2 PM")
        )
        assert [a.id for a in resolution.matches] == ["jane-wed"]

    async def test_caller_narrowed_by_day(self, store):
        resolution = await Resolver(store).resolve(
            query(CallerContext(phone=CALLER), date_raw="2026-01-06")
        )
        assert [a.id for a in resolution.matches] == ["jane-tue"]

    async def test_caller_hint_ruling_out_own_bookings_falls_through(self, store):
        # The caller's number is on other bookings, but the stated time is Bob's.
        resolution = await Resolver(store).resolve(
            query(CallerContext(phone=CALLER), date_raw="2026-01-08", time_raw="2 PM")
        )
        assert resolution.first.id == "bob-thu"
        assert resolution.strategy == "time"

    async def test_unknown_caller_uses_time(self, store):
        resolution = await Resolver(store).resolve(
            query(CallerContext(phone="+15550000000"), date_raw="2026-01-07", time_raw="2:30 PM")
        )
        assert resolution.first.id == "jane-wed"

    async def test_time_only_miss_is_conclusive(self, store):
        resolution = await Resolver(store).resolve(query(time_raw="4 PM"))
        assert resolution.matches == []
        assert resolution.missed == "time"

    async def test_text_match(self, store):
        resolution = await Resolver(store).resolve(query(text="bob"))
        assert resolution.first.id == "bob-thu"

    async def test_text_miss_is_conclusive(self, store):
        resolution = await Resolver(store).resolve(query(text="Zed"))
        assert resolution.missed == "text"

    async def test_soonest_without_signals(self, store):
        resolution = await Resolver(store).resolve(query())
        assert resolution.first.id == "jane-tue"
        assert resolution.strategy == "soonest"

    async def test_past_appointments_not_considered(self):
        store = InMemoryStore()
        store.add_appointment(make_appointment(utc(2026, 1, 2, 15, 0), phone=CALLER))
        resolution = await Resolver(store).resolve(query(CallerContext(phone=CALLER)))
        assert resolution.matches == []
        assert resolution.missed == "caller"

    async def test_caller_with_past_bookings_never_reaches_soonest(self, store):
        store.add_appointment(
            make_appointment(utc(2026, 1, 2, 15, 0), phone="+15550001111", id="ann-past")
        )
        resolution = await Resolver(store).resolve(query(CallerContext(phone="+15550001111")))
        assert resolution.matches == []
        assert resolution.missed == "caller"

    async def test_caller_with_only_cancelled_bookings_gets_them_back(self, store):
        for appt_id in ("jane-tue", "jane-wed"):
            store.appointments[appt_id] = store.appointments[appt_id].model_copy(
                update={"status": "cancelled"}
            )
        resolution = await Resolver(store).resolve(query(CallerContext(phone=CALLER)))
        assert [a.id for a in resolution.matches] == ["jane-wed", "jane-tue"]
        assert resolution.strategy == "caller"

    async def test_cancelled_history_still_narrowed_by_hints(self, store):
        store.appointments["jane-tue"] = store.appointments["jane-tue"].model_copy(
            update={"status": "cancelled"}
        )
        store.appointments["jane-wed"] = store.appointments["jane-wed"].model_copy(
            update={"status": "cancelled"}
        )
        resolution = await Resolver(store).resolve(
            query(CallerContext(phone=CALLER), date_raw="2026-01-08", time_raw="2 PM")
        )
        assert resolution.first.id == "bob-thu"
        assert resolution.strategy == "time"
