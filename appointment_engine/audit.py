"""Invocation audit log.

One entry per dispatched action: what was asked, what was answered, whether
it worked and how long it took.  Phones and emails are masked and
credentials dropped before anything is stored.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from appointment_engine.caller import redact_pii
from appointment_engine.models import AuditEntry
from appointment_engine.store import AppointmentStore

log = logging.getLogger("appointment_engine.audit")

MAX_PAYLOAD_CHARS = 5000
MAX_ERROR_CHARS = 500

_PII_MARKERS = ("phone", "email", "number")
_SECRET_MARKERS = ("token", "secret", "password", "api_key", "apikey", "authorization")


def scrub(value: Any, key: str = "") -> Any:
    """Return a copy of ``value`` safe to persist."""
    lowered = key.lower()
    if any(marker in lowered for marker in _SECRET_MARKERS):
        return "***"
    if isinstance(value, dict):
        return {k: scrub(v, str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [scrub(v, key) for v in value]
    if isinstance(value, str) and any(marker in lowered for marker in _PII_MARKERS):
        return redact_pii(value)
    return value


def serialize(value: Any, limit: int = MAX_PAYLOAD_CHARS) -> str:
    return json.dumps(scrub(value), default=str)[:limit]


class AuditLog:
    def __init__(self, store: AppointmentStore) -> None:
        self._store = store

    async def record(
        self,
        account_id: Optional[str],
        action: str,
        parameters: Any,
        result: Any,
        success: bool,
        duration_ms: int,
        error: Optional[str] = None,
    ) -> None:
        """Write one entry; failures are logged and never reach the caller."""
        entry = AuditEntry(
            account_id=account_id,
            action=action,
            parameters=serialize(parameters),
            result=serialize(result),
            success=success,
            error_message=error[:MAX_ERROR_CHARS] if error else None,
            duration_ms=duration_ms,
        )
        try:
            await self._store.record_invocation(entry)
        except Exception:
            log.exception("Failed to record audit entry for %s", action)
