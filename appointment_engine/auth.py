"""API-key check for ``/calendar``.

Voice platforms call the tool endpoint with ``Authorization: Bearer <API_KEY>``.
Without a configured key the endpoint only answers in debug mode.
"""

from __future__ import annotations

import logging
import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from appointment_engine.config import settings

log = logging.getLogger("appointment_engine.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


def _token_matches(credentials: HTTPAuthorizationCredentials | None, key: str) -> bool:
    if credentials is None:
        return False
    return secrets.compare_digest(credentials.credentials.encode(), key.encode())


async def require_api_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    key = settings.api_key
    if not key:
        if settings.debug:
            return
        log.error("Calendar request refused: API_KEY is not set")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="API key not configured. Set API_KEY in .env.",
        )

    if not _token_matches(credentials, key):
        log.warning(
            "Rejected calendar request with %s token",
            "no" if credentials is None else "a wrong",
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
