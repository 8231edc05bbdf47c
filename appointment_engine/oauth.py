"""OAuth2 access-token lifecycle for calendar providers.

Every provider call goes through :meth:`TokenManager.call`, which

1. loads the account's integration and refreshes the access token first if
   it expires within the lead window and a refresh token is stored;
2. runs the call, and on an authorization failure refreshes once and retries
   exactly once;
3. turns every unrecoverable credential problem into :class:`ReconnectRequired`
   so callers never see a raw transport error for auth.

The initial authorization (consent screen, code exchange) is handled
elsewhere; this module only keeps existing grants alive.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from appointment_engine.calendar_providers.base import ProviderAuthError
from appointment_engine.config import settings
from appointment_engine.models import CalendarIntegration
from appointment_engine.store import AppointmentStore

log = logging.getLogger("appointment_engine.oauth")

T = TypeVar("T")

DEFAULT_EXPIRES_IN = 3600


class NotConnected(Exception):
    """The account has no usable integration for this provider."""

    def __init__(self, provider: str, reason: str = "not connected") -> None:
        super().__init__(f"{provider}: {reason}")
        self.provider = provider
        self.reason = reason


class ReconnectRequired(Exception):
    """The grant can no longer be refreshed; the account owner must re-authorize."""

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(f"{provider}: {reason}")
        self.provider = provider
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        return {"needs_reconnect": True, "provider": self.provider, "reason": self.reason}


class RefreshFailed(Exception):
    """A single refresh attempt did not produce a new access token."""


@dataclass(frozen=True)
class TokenEndpoint:
    url: str
    client_id: str
    client_secret: str


def default_endpoints() -> dict[str, TokenEndpoint]:
    endpoints = {
        "google": TokenEndpoint(
            settings.google_token_url, settings.google_client_id, settings.google_client_secret
        )
    }
    if settings.ghl_client_id:
        endpoints["ghl"] = TokenEndpoint(
            settings.ghl_token_url, settings.ghl_client_id, settings.ghl_client_secret
        )
    return endpoints


class TokenManager:
    """Keeps per-account provider access tokens fresh."""

    def __init__(
        self,
        store: AppointmentStore,
        endpoints: Optional[dict[str, TokenEndpoint]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        lead_minutes: Optional[int] = None,
    ) -> None:
        self._store = store
        self._endpoints = endpoints if endpoints is not None else default_endpoints()
        self._transport = transport
        self._lead = timedelta(
            minutes=lead_minutes if lead_minutes is not None else settings.token_refresh_lead_minutes
        )

    async def _load(self, account_id: str, provider: str) -> CalendarIntegration:
        integration = await self._store.get_integration(account_id, provider)
        if integration is None or not integration.access_token:
            raise NotConnected(provider)
        if not integration.sync_enabled:
            raise NotConnected(provider, "sync disabled")
        return integration

    def _expiring(self, integration: CalendarIntegration, now: datetime) -> bool:
        return integration.expires_at is not None and integration.expires_at < now + self._lead

    async def refresh(self, integration: CalendarIntegration, now: datetime) -> CalendarIntegration:
        """Exchange the refresh token for a new access token and persist it."""
        provider = integration.provider
        endpoint = self._endpoints.get(provider)
        if not integration.refresh_token:
            raise RefreshFailed("no refresh token stored")
        if endpoint is None or not endpoint.client_id or not endpoint.client_secret:
            raise RefreshFailed(f"no OAuth client configured for {provider}")

        form = {
            "grant_type": "refresh_token",
            "refresh_token": integration.refresh_token,
            "client_id": endpoint.client_id,
            "client_secret": endpoint.client_secret,
        }
        try:
            async with httpx.AsyncClient(
                timeout=settings.http_timeout_seconds, transport=self._transport
            ) as client:
                resp = await client.post(endpoint.url, data=form)
        except httpx.HTTPError as exc:
            raise RefreshFailed(f"token endpoint unreachable: {exc}") from exc

        if not resp.is_success:
            log.warning("%s token refresh failed: %s %s", provider, resp.status_code, resp.text[:200])
            raise RefreshFailed(f"token endpoint returned {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise RefreshFailed("token endpoint returned invalid JSON") from exc
        access_token = payload.get("access_token")
        if not access_token:
            raise RefreshFailed("token endpoint returned no access_token")

        expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        refreshed = integration.model_copy(
            update={
                "access_token": access_token,
                "expires_at": now + timedelta(seconds=expires_in),
                "refresh_token": payload.get("refresh_token") or integration.refresh_token,
            }
        )
        await self._store.save_integration(refreshed)
        log.info("Refreshed %s token for account %s", provider, integration.account_id)
        return refreshed

    async def ensure_fresh(
        self, account_id: str, provider: str, now: datetime
    ) -> CalendarIntegration:
        """Return the integration with an access token usable right now.

        Raises:
            NotConnected: no integration, or sync disabled.
            ReconnectRequired: the token has expired and cannot be refreshed.
        """
        integration = await self._load(account_id, provider)
        if not self._expiring(integration, now):
            return integration

        expired = integration.expires_at is not None and integration.expires_at <= now
        if not integration.refresh_token:
            if expired:
                raise ReconnectRequired(provider, "token expired and no refresh token stored")
            return integration

        try:
            return await self.refresh(integration, now)
        except RefreshFailed as exc:
            if expired:
                raise ReconnectRequired(provider, str(exc)) from exc
            log.warning(
                "Proactive %s refresh failed (%s); current token still valid", provider, exc
            )
            return integration

    async def call(
        self,
        account_id: str,
        provider: str,
        now: datetime,
        operation: Callable[[CalendarIntegration], Awaitable[T]],
    ) -> T:
        """Run ``operation`` with a fresh integration, refreshing once on a 401."""
        integration = await self.ensure_fresh(account_id, provider, now)
        try:
            return await operation(integration)
        except ProviderAuthError:
            log.info("%s rejected the token; refreshing and retrying once", provider)

        try:
            integration = await self.refresh(integration, now)
        except RefreshFailed as exc:
            raise ReconnectRequired(provider, str(exc)) from exc

        try:
            return await operation(integration)
        except ProviderAuthError as exc:
            raise ReconnectRequired(provider, "token rejected after refresh") from exc

    async def status(self, account_id: str, provider: str, now: datetime) -> dict[str, Any]:
        """Report connection health without touching the provider."""
        integration = await self._store.get_integration(account_id, provider)
        if integration is None:
            return {"connected": False, "needs_reconnect": False}
        has_refresh = bool(integration.refresh_token)
        is_expired = integration.expires_at is None or integration.expires_at < now + self._lead
        return {
            "connected": True,
            "needs_reconnect": not has_refresh and is_expired,
            "has_refresh_token": has_refresh,
            "is_expired": is_expired,
            "expires_at": integration.expires_at.isoformat() if integration.expires_at else None,
        }
