"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

log = logging.getLogger("appointment_engine.config")


class Settings(BaseSettings):
    # Persistence
    store_backend: str = "memory"  # "memory" or "supabase"
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # Google Calendar (per-account OAuth2 tokens live in the store)
    google_client_id: str = ""
    google_client_secret: str = ""
    google_token_url: str = "https://oauth2.googleapis.com/token"

    # GoHighLevel / LeadConnector
    ghl_base_url: str = "https://services.leadconnectorhq.com"
    ghl_api_version: str = "2021-07-28"
    ghl_client_id: str = ""
    ghl_client_secret: str = ""
    ghl_token_url: str = "https://services.leadconnectorhq.com/oauth/token"

    # Scheduling behaviour
    default_account_id: str = ""
    default_calendar_preference: str = "both"
    max_slots: int = 5
    token_refresh_lead_minutes: int = 10
    same_day_tolerance_minutes: int = 30
    duplicate_window_seconds: int = 120
    match_window_hours: int = 2
    check_provider_conflicts: bool = True
    http_timeout_seconds: float = 15.0

    # API auth
    api_key: str = ""

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []

        if self.store_backend not in {"memory", "supabase"}:
            raise ValueError(
                f"STORE_BACKEND must be 'memory' or 'supabase', got {self.store_backend!r}."
            )

        if self.store_backend == "supabase":
            if not self.supabase_url or not self.supabase_service_role_key:
                raise ValueError(
                    "STORE_BACKEND=supabase requires SUPABASE_URL and "
                    "SUPABASE_SERVICE_ROLE_KEY in .env."
                )
        else:
            warnings.append(
                "STORE_BACKEND=memory. Appointments are lost when the process exits."
            )

        if self.default_calendar_preference not in {"google", "ghl", "both"}:
            raise ValueError(
                "DEFAULT_CALENDAR_PREFERENCE must be one of google, ghl, both."
            )

        if not self.google_client_id or not self.google_client_secret:
            warnings.append(
                "GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET not set. Google tokens "
                "cannot be refreshed and accounts will need to reconnect on expiry."
            )

        if not self.api_key:
            if self.debug:
                warnings.append("API_KEY not set. The calendar endpoint is open (DEBUG=true).")
            else:
                warnings.append(
                    "API_KEY not set. The calendar endpoint is locked in production. "
                    "Set API_KEY in .env to enable access."
                )

        return warnings


settings = Settings()
