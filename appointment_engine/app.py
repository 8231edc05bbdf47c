"""FastAPI application: the calendar tool endpoint for voice agents.

Endpoints:

  POST /calendar          JSON envelope: {"action": ..., ...} or {"args": {...}} etc.
  GET  /calendar          Same, with action and parameters in the query string
  GET  /health            Health check

Every calendar response is JSON with ``success`` and a ``message`` meant to
be read aloud.  Only unknown actions (400), a missing account (401) and
internal faults (500) use non-2xx codes.
"""

from __future__ import annotations

# Load .env into os.environ before settings are read.
from dotenv import load_dotenv
load_dotenv()

import logging
import time
from typing import Optional

# Configure root logger early so all app loggers have a handler when run
# via `uvicorn appointment_engine.app:app`.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from appointment_engine.auth import require_api_token
from appointment_engine.calendar_providers.ghl import GoHighLevelProvider
from appointment_engine.calendar_providers.google import GoogleCalendarProvider
from appointment_engine.config import settings
from appointment_engine.dispatcher import Dispatcher
from appointment_engine.store import AppointmentStore, InMemoryStore

log = logging.getLogger("appointment_engine.app")

_START_TIME = time.time()


def build_store() -> AppointmentStore:
    """Select the persistence backend from configuration."""
    if settings.store_backend == "supabase":
        from appointment_engine.store.supabase import SupabaseStore

        return SupabaseStore.from_settings(
            settings.supabase_url, settings.supabase_service_role_key
        )
    return InMemoryStore()


def build_dispatcher(store: Optional[AppointmentStore] = None) -> Dispatcher:
    store = store or build_store()
    providers = {
        "google": GoogleCalendarProvider(),
        "ghl": GoHighLevelProvider(),
    }
    return Dispatcher(store, providers)


def create_app(dispatcher: Optional[Dispatcher] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    for warning in settings.validate_startup():
        log.warning(warning)

    app = FastAPI(
        title="Voice Appointment Engine",
        description="Availability and appointment scheduling for voice agents",
        version="0.1.0",
    )
    app.state.dispatcher = dispatcher or build_dispatcher()

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        """Lightweight health check: confirms the event loop is responsive."""
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({"status": "ok", "uptime": uptime})

    # ── Calendar tool endpoint ─────────────────────────────────

    @app.post("/calendar", dependencies=[Depends(require_api_token)])
    async def calendar_post(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse(
                {"success": False, "error": "Request body must be JSON"}, status_code=400
            )
        if not isinstance(body, dict):
            return JSONResponse(
                {"success": False, "error": "Request body must be a JSON object"},
                status_code=400,
            )
        result = await app.state.dispatcher.dispatch(body, dict(request.query_params))
        return JSONResponse(result.body, status_code=result.status_code)

    @app.get("/calendar", dependencies=[Depends(require_api_token)])
    async def calendar_get(request: Request) -> JSONResponse:
        result = await app.state.dispatcher.dispatch(None, dict(request.query_params))
        return JSONResponse(result.body, status_code=result.status_code)

    return app


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "appointment_engine.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )
