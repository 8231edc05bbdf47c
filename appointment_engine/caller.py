"""Caller context: who is on the phone, as far as the request tells us.

Voice platforms put the caller's number in different places (tool arguments,
the call object, ...).  This module pulls out the first phone-looking value,
normalizes it to E.164 assuming North-American numbering, and links it to a
stored contact.  An empty context is normal and means "account scope".
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from appointment_engine.models import Contact
from appointment_engine.store import AppointmentStore

log = logging.getLogger("appointment_engine.caller")

_NON_DIGITS = re.compile(r"\D")

PARAM_PHONE_FIELDS = ("attendee_phone", "phone", "caller_phone", "from_number")
CALL_PHONE_FIELDS = ("from_number", "caller_number", "phone")


def redact_pii(value: Optional[str]) -> str:
    """Mask PII for logging: show first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]


def normalize_phone(raw: Any) -> Optional[str]:
    """Normalize a phone number to ``+<digits>``.

    Fewer than 7 digits is not a phone number.  Ten digits are taken as a
    North-American number and get ``+1``.
    """
    if raw is None:
        return None
    digits = _NON_DIGITS.sub("", str(raw))
    if len(digits) < 7:
        return None
    if len(digits) == 10:
        return "+1" + digits
    return "+" + digits


def phone_alternates(normalized: Optional[str]) -> list[str]:
    """The normalized number plus the form with the ``+1`` stripped or added."""
    if not normalized:
        return []
    if normalized.startswith("+1"):
        alt = normalized[2:]
    else:
        alt = "+1" + _NON_DIGITS.sub("", normalized)
    return [normalized, alt] if alt != normalized else [normalized]


def extract_caller_phone(
    params: Mapping[str, Any], call: Optional[Mapping[str, Any]] = None
) -> Optional[str]:
    """Return the caller's normalized phone from params, else the call metadata."""
    for key in PARAM_PHONE_FIELDS:
        value = params.get(key)
        if value:
            return normalize_phone(value)
    if call:
        for key in CALL_PHONE_FIELDS:
            value = call.get(key)
            if value:
                return normalize_phone(value)
    return None


@dataclass
class CallerContext:
    phone: Optional[str] = None
    contact: Optional[Contact] = None

    @property
    def contact_id(self) -> Optional[str]:
        return self.contact.id if self.contact else None

    @property
    def phones(self) -> list[str]:
        return phone_alternates(self.phone)

    @property
    def is_empty(self) -> bool:
        return self.phone is None and self.contact is None


async def resolve_caller_context(
    store: AppointmentStore,
    account_id: str,
    params: Mapping[str, Any],
    call: Optional[Mapping[str, Any]] = None,
) -> CallerContext:
    """Extract the caller's phone and link it to a contact, if one matches."""
    phone = extract_caller_phone(params, call)
    if phone is None:
        return CallerContext()

    contact = await store.find_contact_by_phone(account_id, phone_alternates(phone))
    if contact:
        log.info("Caller %s matched contact %s", redact_pii(phone), contact.id)
    else:
        log.debug("Caller %s has no stored contact", redact_pii(phone))
    return CallerContext(phone=phone, contact=contact)
