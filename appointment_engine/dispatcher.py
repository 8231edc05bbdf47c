"""Request dispatcher: one endpoint, many spellings.

Voice platforms and older agent prompts call the same operation by different
names (``list_appointments``, ``listAppointments``, ``my_appointments`` ...)
and nest arguments under different keys (``args``, ``arguments``,
``params``).  Everything is normalized here, once, into an :class:`Action`
plus a plain parameter dict; handlers only ever see typed parameter models.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from pydantic import ValidationError

from appointment_engine.appointments import AppointmentService
from appointment_engine.audit import AuditLog
from appointment_engine.availability import AvailabilityService
from appointment_engine.booking import BookingService
from appointment_engine.busy import BusyIntervalAggregator
from appointment_engine.calendar_providers.base import CalendarProvider
from appointment_engine.caller import CallerContext, resolve_caller_context
from appointment_engine.config import settings
from appointment_engine.mirror import ProviderSync
from appointment_engine.models.params import (
    BookingParams,
    CancelParams,
    ListQuery,
    RescheduleParams,
    SlotQuery,
    SyncParams,
)
from appointment_engine.oauth import TokenManager
from appointment_engine.resolution import Resolver
from appointment_engine.store import AppointmentStore

log = logging.getLogger("appointment_engine.dispatcher")


class Action(str, Enum):
    GET_AVAILABLE_SLOTS = "get_available_slots"
    BOOK_APPOINTMENT = "book_appointment"
    LIST_APPOINTMENTS = "list_appointments"
    CANCEL_APPOINTMENT = "cancel_appointment"
    RESCHEDULE_APPOINTMENT = "reschedule_appointment"
    CHECK_TOKEN_STATUS = "check_token_status"
    SYNC_APPOINTMENT = "sync_appointment"


ACTION_ALIASES: dict[str, Action] = {
    "get_available_slots": Action.GET_AVAILABLE_SLOTS,
    "retell_check_availability": Action.GET_AVAILABLE_SLOTS,
    "check_availability": Action.GET_AVAILABLE_SLOTS,
    "book_appointment": Action.BOOK_APPOINTMENT,
    "create_appointment": Action.BOOK_APPOINTMENT,
    "createAppointment": Action.BOOK_APPOINTMENT,
    "schedule_appointment": Action.BOOK_APPOINTMENT,
    "retell_book_appointment": Action.BOOK_APPOINTMENT,
    "list_appointments": Action.LIST_APPOINTMENTS,
    "listAppointments": Action.LIST_APPOINTMENTS,
    "get_appointments": Action.LIST_APPOINTMENTS,
    "my_appointments": Action.LIST_APPOINTMENTS,
    "cancel_appointment": Action.CANCEL_APPOINTMENT,
    "cancelAppointment": Action.CANCEL_APPOINTMENT,
    "delete_appointment": Action.CANCEL_APPOINTMENT,
    "reschedule_appointment": Action.RESCHEDULE_APPOINTMENT,
    "rescheduleAppointment": Action.RESCHEDULE_APPOINTMENT,
    "update_appointment": Action.RESCHEDULE_APPOINTMENT,
    "check_token_status": Action.CHECK_TOKEN_STATUS,
    "sync_appointment": Action.SYNC_APPOINTMENT,
    "syncAppointment": Action.SYNC_APPOINTMENT,
}

DEFAULT_ACTION = Action.GET_AVAILABLE_SLOTS

# Where nested arguments may live, in priority order.
ENVELOPE_KEYS = ("args", "arguments", "params")

MSG_INVALID_PARAMS = "I didn't catch some of those details. Could you say them again?"


class UnknownAction(Exception):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown action: {name}")
        self.name = name


class AccountRequired(Exception):
    """No account id in the request, the query string or the configuration."""


@dataclass
class Envelope:
    action: Action
    params: dict[str, Any]
    account_id: str
    call: Optional[dict[str, Any]] = None


@dataclass
class DispatchResult:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def lookup_action(name: Any) -> Action:
    if name is None or name == "":
        return DEFAULT_ACTION
    action = ACTION_ALIASES.get(str(name).strip())
    if action is None:
        raise UnknownAction(str(name))
    return action


def parse_envelope(
    body: Optional[Mapping[str, Any]],
    query: Optional[Mapping[str, str]] = None,
) -> Envelope:
    """Normalize a raw request into an :class:`Envelope`.

    Raises:
        UnknownAction: the action name is not a known alias.
        AccountRequired: no account can be determined.
    """
    query = dict(query or {})
    body = dict(body or {})
    call = body.get("call") if isinstance(body.get("call"), dict) else None
    tool_name = body.get("name") if isinstance(body.get("name"), str) else None

    nested = next(
        (body[key] for key in ENVELOPE_KEYS if isinstance(body.get(key), dict)), None
    )
    if nested is not None:
        params = dict(nested)
    else:
        params = {k: v for k, v in body.items() if k != "call"}
        # A top-level "name" is the tool name only when it is one; otherwise
        # it is the attendee's name.
        if tool_name in ACTION_ALIASES:
            params.pop("name", None)
    raw_action = params.pop("action", None)
    if not raw_action and nested is not None:
        raw_action = body.get("action")
    if not raw_action and tool_name in ACTION_ALIASES:
        raw_action = tool_name

    # Query-string values fill in anything the body did not provide.
    query_action = query.pop("action", None)
    if not raw_action:
        raw_action = query_action
    for key, value in query.items():
        params.setdefault(key, value)

    action = lookup_action(raw_action)

    account_id = (
        params.pop("user_id", None)
        or params.pop("account_id", None)
        or body.get("user_id")
        or body.get("account_id")
        or settings.default_account_id
    )
    if not account_id:
        raise AccountRequired()
    return Envelope(action=action, params=params, account_id=str(account_id), call=call)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Dispatcher:
    """Routes normalized requests to their handlers and audits every call."""

    def __init__(
        self,
        store: AppointmentStore,
        providers: Optional[Mapping[str, CalendarProvider]] = None,
        tokens: Optional[TokenManager] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.providers = dict(providers or {})
        self.tokens = tokens or TokenManager(store)
        self.clock = clock

        self.aggregator = BusyIntervalAggregator(store, self.tokens, self.providers)
        sync = ProviderSync(self.tokens, self.providers)
        self.availability = AvailabilityService(store, self.aggregator)
        self.booking = BookingService(store, self.aggregator, sync)
        self.appointments = AppointmentService(store, Resolver(store), sync)
        self.audit = AuditLog(store)

    async def _caller(self, envelope: Envelope) -> CallerContext:
        return await resolve_caller_context(
            self.store, envelope.account_id, envelope.params, envelope.call
        )

    async def _handle(self, envelope: Envelope, now: datetime) -> dict[str, Any]:
        action = envelope.action
        account_id = envelope.account_id
        params = envelope.params

        if action is Action.GET_AVAILABLE_SLOTS:
            return await self.availability.get_available_slots(
                account_id, SlotQuery.model_validate(params), now
            )
        if action is Action.LIST_APPOINTMENTS:
            return await self.appointments.list_appointments(
                account_id, ListQuery.model_validate(params), now
            )
        if action is Action.CHECK_TOKEN_STATUS:
            provider = str(params.get("provider") or "google")
            status = await self.tokens.status(account_id, provider, now)
            return {"success": True, "provider": provider, **status}

        caller = await self._caller(envelope)
        if action is Action.BOOK_APPOINTMENT:
            return await self.booking.book(
                account_id, BookingParams.model_validate(params), caller, now
            )
        if action is Action.CANCEL_APPOINTMENT:
            return await self.appointments.cancel(
                account_id, CancelParams.model_validate(params), caller, now
            )
        if action is Action.SYNC_APPOINTMENT:
            return await self.appointments.sync(
                account_id, SyncParams.model_validate(params), caller, now
            )
        return await self.appointments.reschedule(
            account_id, RescheduleParams.model_validate(params), caller, now
        )

    async def dispatch(
        self,
        body: Optional[Mapping[str, Any]],
        query: Optional[Mapping[str, str]] = None,
    ) -> DispatchResult:
        started = time.monotonic()
        try:
            envelope = parse_envelope(body, query)
        except UnknownAction as exc:
            log.warning("Rejected unknown action %r", exc.name)
            return DispatchResult(400, {"success": False, "error": str(exc)})
        except AccountRequired:
            log.warning("Rejected request with no account")
            return DispatchResult(401, {"success": False, "error": "Authentication required"})

        log.info("Dispatching %s for account %s", envelope.action.value, envelope.account_id)
        now = self.clock()
        error: Optional[str] = None
        try:
            result = await self._handle(envelope, now)
            status_code = 200
        except ValidationError as exc:
            log.info("Invalid parameters for %s: %s", envelope.action.value, exc.error_count())
            result = {"success": False, "message": MSG_INVALID_PARAMS}
            status_code = 200
        except Exception as exc:
            log.exception("Unhandled error in %s", envelope.action.value)
            error = f"{type(exc).__name__}: {exc}"
            result = {"success": False, "error": "Internal error"}
            status_code = 500

        await self.audit.record(
            envelope.account_id,
            envelope.action.value,
            envelope.params,
            result,
            success=status_code == 200 and bool(result.get("success")),
            duration_ms=int((time.monotonic() - started) * 1000),
            error=error,
        )
        return DispatchResult(status_code, result)
