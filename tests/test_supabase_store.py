"""Tests for the Supabase store adapter against a fake PostgREST query builder."""

import sys, os
sys.path.insert(0, os.path.dirname(__file__))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import base64
import json
from datetime import datetime, timezone

import pytest

from fakes import ACCOUNT, make_appointment
from appointment_engine.models import AppointmentStatus, AuditEntry, CalendarIntegration
from appointment_engine.store.supabase import (
    SupabaseStore,
    appointment_to_row,
    changes_to_row,
    row_to_appointment,
)


def b64(value):
    return base64.b64encode(value.encode()).decode()


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """Just enough of the supabase-py builder: eq/neq filters, insert, update."""

    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.filters = []
        self.calls = []
        self.payload = None
        self.mode = "select"
        self._limit = None
        db.queries.append(self)

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        return self

    def select(self, *columns):
        return self._record("select", *columns)

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self._record("eq", column, value)

    def neq(self, column, value):
        self.filters.append(lambda row: row.get(column) != value)
        return self._record("neq", column, value)

    def gte(self, column, value):
        return self._record("gte", column, value)

    def lt(self, column, value):
        return self._record("lt", column, value)

    def or_(self, filters):
        return self._record("or_", filters)

    def order(self, column):
        return self._record("order", column)

    def limit(self, count):
        self._limit = count
        return self._record("limit", count)

    def insert(self, row):
        self.mode, self.payload = "insert", row
        return self._record("insert", row)

    def update(self, values):
        self.mode, self.payload = "update", values
        return self._record("update", values)

    def execute(self):
        rows = self.db.tables.setdefault(self.table, [])
        if self.mode == "insert":
            rows.append(dict(self.payload))
            return FakeResponse([dict(self.payload)])
        matched = [r for r in rows if all(f(r) for f in self.filters)]
        if self.mode == "update":
            for row in matched:
                row.update(self.payload)
        if self._limit is not None:
            matched = matched[: self._limit]
        return FakeResponse([dict(r) for r in matched])


class FakeClient:
    def __init__(self, tables=None):
        self.tables = tables or {}
        self.queries = []

    def table(self, name):
        return FakeQuery(self, name)


# ── Row mapping ─────────────────────────────────────────────────────


class TestRowMapping:
    def test_event_ids_live_in_provider_columns(self):
        appt = make_appointment(
            utc(2026, 1, 6, 15, 0), external_event_ids={"google": "g-1", "ghl": "h-1"}
        )
        row = appointment_to_row(appt)
        assert row["google_event_id"] == "g-1"
        assert row["ghl_appointment_id"] == "h-1"
        assert row["user_id"] == ACCOUNT

        back = row_to_appointment(row)
        assert back.external_event_ids == {"google": "g-1", "ghl": "h-1"}
        assert back.start_time == appt.start_time

    def test_changes_to_row(self):
        row = changes_to_row(
            {
                "status": AppointmentStatus.CANCELLED,
                "start_time": utc(2026, 1, 9, 20, 0),
                "external_event_ids": {"google": "g-2"},
                "contact_id": "lead-1",
            }
        )
        assert row == {
            "status": "cancelled",
            "start_time": "2026-01-09T20:00:00+00:00",
            "google_event_id": "g-2",
            "ghl_appointment_id": None,
            "lead_id": "lead-1",
        }


# ── Store reads and writes ──────────────────────────────────────────


class TestSupabaseStore:
    async def test_profile_with_json_schedule(self):
        client = FakeClient(
            {
                "calendar_availability": [
                    {
                        "user_id": ACCOUNT,
                        "timezone": "America/Chicago",
                        "weekly_schedule": json.dumps({"Monday": [{"start": "09:00", "end": "12:00"}]}),
                        "slot_interval_minutes": 15,
                        "buffer_before_minutes": None,
                    }
                ]
            }
        )
        profile = await SupabaseStore(client).get_availability_profile(ACCOUNT)

        assert profile.timezone == "America/Chicago"
        assert profile.slot_interval_minutes == 15
        assert profile.buffer_before_minutes == 0
        assert profile.windows_for("monday")[0].end == "12:00"

    async def test_missing_profile(self):
        assert await SupabaseStore(FakeClient()).get_availability_profile(ACCOUNT) is None

    async def test_unknown_preference_means_both(self):
        client = FakeClient(
            {"ghl_sync_settings": [{"user_id": ACCOUNT, "calendar_preference": "outlook"}]}
        )
        preference = await SupabaseStore(client).get_calendar_preference(ACCOUNT)
        assert preference.provider == "both"

    async def test_google_integration_decoded(self):
        client = FakeClient(
            {
                "calendar_integrations": [
                    {
                        "id": 7,
                        "user_id": ACCOUNT,
                        "provider": "google",
                        "access_token_encrypted": b64("ya29.token"),
                        "refresh_token_encrypted": b64("1//refresh"),
                        "token_expires_at": "2026-01-05T15:00:00+00:00",
                        "sync_enabled": True,
                    }
                ]
            }
        )
        integration = await SupabaseStore(client).get_integration(ACCOUNT, "google")

        assert integration.access_token == "ya29.token"
        assert integration.refresh_token == "1//refresh"
        assert integration.expires_at == utc(2026, 1, 5, 15, 0)

    async def test_ghl_integration_from_credentials(self):
        rows = [
            {"user_id": ACCOUNT, "service_name": "gohighlevel", "credential_key": "apiKey",
             "credential_value_encrypted": b64("pit-123")},
            {"user_id": ACCOUNT, "service_name": "gohighlevel", "credential_key": "locationId",
             "credential_value_encrypted": b64("loc-9")},
        ]
        integration = await SupabaseStore(FakeClient({"user_credentials": rows})).get_integration(
            ACCOUNT, "ghl"
        )
        assert integration.access_token == "pit-123"
        assert integration.location_id == "loc-9"
        assert integration.refresh_token is None

    async def test_bad_base64_ignored(self):
        client = FakeClient(
            {
                "calendar_integrations": [
                    {"id": 1, "user_id": ACCOUNT, "provider": "google",
                     "access_token_encrypted": "%%%not-base64%%%"}
                ]
            }
        )
        integration = await SupabaseStore(client).get_integration(ACCOUNT, "google")
        assert integration.access_token == ""

    async def test_save_integration_keeps_refresh_token(self):
        client = FakeClient(
            {"calendar_integrations": [{"id": 1, "user_id": ACCOUNT, "provider": "google",
                                        "refresh_token_encrypted": b64("old")}]}
        )
        integration = CalendarIntegration(
            account_id=ACCOUNT, provider="google", access_token="new", expires_at=utc(2026, 1, 5, 15, 0)
        )
        await SupabaseStore(client).save_integration(integration)

        row = client.tables["calendar_integrations"][0]
        assert row["access_token_encrypted"] == b64("new")
        assert row["refresh_token_encrypted"] == b64("old")
        assert row["token_expires_at"] == "2026-01-05T15:00:00+00:00"

    async def test_contact_lookup_tries_each_form(self):
        client = FakeClient(
            {"leads": [{"id": "lead-1", "user_id": ACCOUNT, "phone_number": "5551234567",
                        "first_name": "Jane", "last_name": "Doe"}]}
        )
        contact = await SupabaseStore(client).find_contact_by_phone(
            ACCOUNT, ["+15551234567", "5551234567"]
        )
        assert contact.id == "lead-1"
        assert contact.name == "Jane Doe"

    async def test_phone_filter(self):
        client = FakeClient()
        await SupabaseStore(client).list_appointments(ACCOUNT, phones=["+15551234567"])

        calls = client.queries[-1].calls
        assert ("or_", 'metadata->>caller_phone.in.("+15551234567"),'
                       'metadata->>attendee_phone.in.("+15551234567")') in calls
        assert ("neq", "status", "cancelled") in calls
        assert ("order", "start_time") in calls

    async def test_empty_phone_list_matches_nothing(self):
        client = FakeClient()
        assert await SupabaseStore(client).list_appointments(ACCOUNT, phones=[]) == []

    async def test_create_then_update(self):
        client = FakeClient()
        store = SupabaseStore(client)
        appt = make_appointment(utc(2026, 1, 6, 15, 0), id="appt-1")

        created = await store.create_appointment(appt)
        updated = await store.update_appointment(
            ACCOUNT, "appt-1", {"external_event_ids": {"google": "g-1"}}
        )

        assert created.id == "appt-1"
        assert updated.external_event_ids == {"google": "g-1"}
        assert client.tables["calendar_appointments"][0]["google_event_id"] == "g-1"

    async def test_update_missing_row(self):
        store = SupabaseStore(FakeClient())
        assert await store.update_appointment(ACCOUNT, "nope", {"status": "cancelled"}) is None

    async def test_record_invocation(self):
        client = FakeClient()
        entry = AuditEntry(
            account_id=ACCOUNT, action="list_appointments", parameters="{}", result="{}",
            success=True, duration_ms=12,
        )
        await SupabaseStore(client).record_invocation(entry)
        row = client.tables["calendar_tool_invocations"][0]
        assert row["action"] == "list_appointments"
        assert row["duration_ms"] == 12
