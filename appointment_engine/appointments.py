"""Listing, cancelling and rescheduling existing appointments.

Targets are found through :class:`~appointment_engine.resolution.Resolver`.
Local state changes first; provider events are then deleted or patched on a
best-effort basis and never roll the local change back.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from string import ascii_uppercase
from typing import Any

from appointment_engine import timeutil
from appointment_engine.booking import MSG_NEED_DATETIME, NeedsClarification, resolve_requested_time
from appointment_engine.busy import load_preference
from appointment_engine.caller import CallerContext
from appointment_engine.mirror import ProviderSync, SyncOutcome, sync_flags
from appointment_engine.models import Appointment, AppointmentStatus
from appointment_engine.models.params import CancelParams, ListQuery, RescheduleParams, SyncParams
from appointment_engine.resolution import IdStrategy, Resolver, UnreadableHint, build_query
from appointment_engine.store import AppointmentStore
from appointment_engine.timeutil import TimeContext

log = logging.getLogger("appointment_engine.appointments")

DEFAULT_LIST_LIMIT = 10
MAX_LIST_LIMIT = 20

MSG_NEED_TARGET = (
    "I can do that. I just need the phone number on the booking (or tell me the "
    "appointment time) so I cancel the right one."
)
MSG_UNREADABLE_HINT = (
    "I couldn't understand that date/time. Can you repeat the appointment date and time?"
)
MSG_NOTHING_TO_CANCEL = "I don't see any upcoming appointments to cancel."
MSG_CANCEL_NOT_FOUND = (
    "I couldn't find that appointment. If you tell me the date and time, I can cancel it."
)
MSG_NOTHING_TO_MOVE = "I don't see any upcoming appointments to reschedule."
MSG_MOVE_NOT_FOUND = "I couldn't find that appointment to reschedule."
MSG_MOVE_CANCELLED = (
    "That appointment was cancelled, so I can't move it. Would you like to book a new time instead?"
)
MSG_MOVE_NEED_TIME = "What date and time would you like to move it to?"
MSG_MOVE_PAST = "That time has already passed. What other time would you like to move it to?"
MSG_SYNC_NEED_ID = "Which appointment should I sync? I need its id."
MSG_SYNC_NOT_FOUND = "I couldn't find that appointment to sync."
MSG_SYNC_CANCELLED = "That appointment was cancelled, so there is nothing to sync."
MSG_SYNC_UP_TO_DATE = "That appointment is already on every connected calendar."
MSG_SYNC_DONE = "Done, the appointment is now on every connected calendar."
MSG_SYNC_PARTIAL = "I couldn't add the appointment to every calendar. It is still saved here."


def _text_not_found(text: str) -> str:
    return (
        f'I couldn\'t find an appointment matching "{text}". '
        "Would you like me to list your appointments?"
    )


def _sync_dict(outcomes: dict[str, SyncOutcome]) -> dict[str, Any]:
    return {name: outcome.to_dict() for name, outcome in outcomes.items()}


def spoken_name(appt: Appointment) -> str:
    """Attendee name for read-back, falling back to the title."""
    if appt.attendee_name:
        return appt.attendee_name
    if appt.title:
        return appt.title.replace("Appointment with ", "") or "Unknown"
    return "Unknown"


class AppointmentService:
    """Handlers for listing, cancelling, rescheduling and re-syncing appointments."""

    def __init__(self, store: AppointmentStore, resolver: Resolver, sync: ProviderSync) -> None:
        self._store = store
        self._resolver = resolver
        self._sync = sync

    async def _context(self, account_id: str, now: datetime):
        profile = await self._store.get_availability_profile(account_id)
        ctx = TimeContext.create(now, profile.timezone if profile else "UTC")
        return profile, ctx

    # ── list ─────────────────────────────────────────────────

    async def list_appointments(
        self, account_id: str, query: ListQuery, now: datetime
    ) -> dict[str, Any]:
        _, ctx = await self._context(account_id, now)
        limit = max(1, min(query.limit or DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT))
        upcoming = await self._store.list_appointments(
            account_id, start_from=ctx.now, limit=limit
        )
        if not upcoming:
            return {
                "success": True,
                "appointments": [],
                "count": 0,
                "message": "There are no upcoming appointments on the calendar right now.",
            }

        items = []
        spoken = []
        for ref, appt in zip(ascii_uppercase, upcoming):
            tz = timeutil.get_zone(appt.timezone) if appt.timezone else ctx.tz
            name = spoken_name(appt)
            items.append(
                {
                    "reference": ref,
                    "appointment_id": appt.id,
                    "title": appt.title,
                    "attendee_name": name,
                    "start_time": timeutil.iso_utc(appt.start_time),
                    "end_time": timeutil.iso_utc(appt.end_time),
                    "timezone": tz.key,
                    "status": appt.status.value,
                }
            )
            spoken.append(f"{ref}) {name}, {timeutil.format_for_voice(appt.start_time, tz)}")

        plural = "" if len(items) == 1 else "s"
        return {
            "success": True,
            "appointments": items,
            "count": len(items),
            "message": f"You have {len(items)} upcoming appointment{plural}: {'; '.join(spoken)}",
        }

    # ── cancel ───────────────────────────────────────────────

    async def _cancel_one(
        self, appt: Appointment, now: datetime
    ) -> tuple[Appointment, dict[str, SyncOutcome]]:
        updated = await self._store.update_appointment(
            appt.account_id, appt.id, {"status": AppointmentStatus.CANCELLED}
        )
        outcomes = await self._sync.cancel(appt, now)
        log.info("Cancelled appointment %s", appt.id)
        return updated or appt, outcomes

    async def cancel(
        self,
        account_id: str,
        params: CancelParams,
        caller: CallerContext,
        now: datetime,
    ) -> dict[str, Any]:
        _, ctx = await self._context(account_id, now)
        try:
            query = build_query(
                account_id,
                ctx,
                caller,
                appointment_id=params.appointment_id,
                event_id=params.event_id,
                date_raw=params.date,
                time_raw=params.time,
                text=params.title_contains,
            )
        except UnreadableHint:
            return {"success": True, "message": MSG_UNREADABLE_HINT}

        if not params.cancel_all and not query.has_signal:
            return {"success": True, "message": MSG_NEED_TARGET}

        if params.cancel_all:
            return await self._cancel_all(query, ctx)

        resolution = await self._resolver.resolve(query)
        appt = resolution.first
        if appt is None:
            if resolution.missed == "text":
                message = _text_not_found(params.title_contains or "")
            elif resolution.missed:
                message = MSG_CANCEL_NOT_FOUND
            else:
                message = MSG_NOTHING_TO_CANCEL
            return {"success": True, "message": message}

        if appt.is_cancelled:
            return {
                "success": True,
                "appointment_id": appt.id,
                "event_id": appt.google_event_id,
                "message": "That appointment is already cancelled.",
            }

        cancelled, outcomes = await self._cancel_one(appt, ctx.now)
        tz = timeutil.get_zone(appt.timezone) if appt.timezone else ctx.tz
        voice = timeutil.format_for_voice(appt.start_time, tz)
        return {
            "success": True,
            "appointment_id": cancelled.id,
            "event_id": cancelled.google_event_id,
            "sync": _sync_dict(outcomes),
            "message": f"Done, I cancelled {appt.title or 'the appointment'} scheduled for {voice}.",
        }

    async def _cancel_all(self, query, ctx: TimeContext) -> dict[str, Any]:
        resolution = await self._resolver.resolve(query, narrow=False)
        if resolution.strategy == "soonest" and not query.caller.is_empty:
            # A known caller only ever bulk-cancels their own bookings.
            return {"success": True, "cancelled": 0, "message": MSG_NOTHING_TO_CANCEL}
        targets = [a for a in resolution.matches if not a.is_cancelled]
        if not targets:
            return {"success": True, "cancelled": 0, "message": MSG_NOTHING_TO_CANCEL}

        ids = []
        sync: dict[str, Any] = {}
        for appt in targets:
            # A provider failure on one booking must not stop the rest.
            _, outcomes = await self._cancel_one(appt, ctx.now)
            ids.append(appt.id)
            sync[appt.id] = _sync_dict(outcomes)

        plural = "" if len(ids) == 1 else "s"
        return {
            "success": True,
            "cancelled": len(ids),
            "appointment_ids": ids,
            "sync": sync,
            "message": f"Done, I cancelled {len(ids)} appointment{plural}.",
        }

    # ── reschedule ───────────────────────────────────────────

    async def reschedule(
        self,
        account_id: str,
        params: RescheduleParams,
        caller: CallerContext,
        now: datetime,
    ) -> dict[str, Any]:
        profile, ctx = await self._context(account_id, now)
        try:
            query = build_query(
                account_id,
                ctx,
                caller,
                appointment_id=params.appointment_id,
                event_id=params.event_id,
                date_raw=params.current_date,
                time_raw=params.current_time,
                text=params.title_contains,
            )
        except UnreadableHint:
            return {"success": False, "message": MSG_UNREADABLE_HINT}

        resolution = await self._resolver.resolve(query)
        appt = resolution.first
        if appt is None:
            if resolution.missed == "text":
                message = _text_not_found(params.title_contains or "")
            else:
                message = MSG_MOVE_NOT_FOUND if resolution.missed else MSG_NOTHING_TO_MOVE
            return {"success": False, "message": message}
        if appt.is_cancelled:
            return {"success": False, "appointment_id": appt.id, "message": MSG_MOVE_CANCELLED}

        current_minutes = int((appt.end_time - appt.start_time) / timedelta(minutes=1))
        try:
            requested = resolve_requested_time(
                start_raw=params.start_time,
                end_raw=params.end_time,
                date_raw=params.new_date,
                time_raw=params.new_time,
                duration_minutes=params.duration_minutes or current_minutes,
                ctx=ctx,
                schedule=profile.weekly_schedule if profile else {},
            )
        except NeedsClarification as exc:
            message = MSG_MOVE_NEED_TIME if exc.message == MSG_NEED_DATETIME else exc.message
            return {"success": False, "appointment_id": appt.id, "message": message}

        if requested.start <= ctx.now:
            return {"success": False, "appointment_id": appt.id, "message": MSG_MOVE_PAST}

        # No conflict check against other bookings on a move.
        moved = await self._store.update_appointment(
            account_id,
            appt.id,
            {"start_time": requested.start, "end_time": requested.end},
        )
        if moved is None:
            return {"success": False, "message": MSG_MOVE_NOT_FOUND}
        log.info("Rescheduled %s to %s", moved.id, timeutil.iso_utc(moved.start_time))

        outcomes = await self._sync.reschedule(moved, ctx.now)
        if outcomes:
            moved = await self._store.update_appointment(
                account_id,
                moved.id,
                {"metadata": {**moved.metadata, **sync_flags(outcomes)}},
            ) or moved

        voice = timeutil.format_for_voice(moved.start_time, ctx.tz)
        return {
            "success": True,
            "appointment_id": moved.id,
            "event_id": moved.google_event_id,
            "start_time": timeutil.iso_utc(moved.start_time),
            "end_time": timeutil.iso_utc(moved.end_time),
            "sync": _sync_dict(outcomes),
            "message": f"Done, I've rescheduled it to {voice}.",
        }

    # ── sync ─────────────────────────────────────────────────

    async def sync(
        self,
        account_id: str,
        params: SyncParams,
        caller: CallerContext,
        now: datetime,
    ) -> dict[str, Any]:
        """Mirror an existing appointment into the calendars it is missing from."""
        if not (params.target_id or params.event_id):
            return {"success": False, "message": MSG_SYNC_NEED_ID}

        _, ctx = await self._context(account_id, now)
        query = build_query(
            account_id,
            ctx,
            CallerContext(),
            appointment_id=params.target_id,
            event_id=params.event_id,
        )
        found = await IdStrategy().find(self._store, query)
        if not found:
            return {"success": False, "message": MSG_SYNC_NOT_FOUND}
        appt = found[0]
        if appt.is_cancelled:
            return {"success": False, "appointment_id": appt.id, "message": MSG_SYNC_CANCELLED}

        preference = await load_preference(self._store, account_id)
        outcomes = await self._sync.backfill(appt, preference, ctx.now, caller)
        if not outcomes:
            return {
                "success": True,
                "appointment_id": appt.id,
                "event_id": appt.google_event_id,
                "sync": {},
                "message": MSG_SYNC_UP_TO_DATE,
            }

        created = {n: o.event_id for n, o in outcomes.items() if o.success and o.event_id}
        updated = await self._store.update_appointment(
            account_id,
            appt.id,
            {
                "external_event_ids": {**appt.external_event_ids, **created},
                "metadata": {**appt.metadata, **sync_flags(outcomes)},
            },
        ) or appt
        complete = all(o.success for o in outcomes.values())
        log.info("Synced %s: %s", appt.id, {n: o.success for n, o in outcomes.items()})
        return {
            "success": complete,
            "appointment_id": updated.id,
            "event_id": updated.google_event_id,
            "sync": _sync_dict(outcomes),
            "message": MSG_SYNC_DONE if complete else MSG_SYNC_PARTIAL,
        }
