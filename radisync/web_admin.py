from __future__ import annotations

import html
import logging
import os
from typing import Any

import requests
from fastapi import Cookie, FastAPI, HTTPException
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel, Field

from radisync.config_manager import ConfigManager
from radisync.google_client import GoogleCalendarError
from radisync.oauth import build_auth_url, complete_authorization
from radisync.scheduler import SyncScheduler
from radisync.state_store import (
    CALDAV_SYNC_TOKEN_KEY,
    GOOGLE_CALENDAR_ID_KEY,
    GOOGLE_OAUTH_TOKEN_KEY,
    GOOGLE_SYNC_TOKEN_KEY,
    StateStore,
)
from radisync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

EMAIL_COOKIE = "email"
LOGOUT_KEYS = (GOOGLE_OAUTH_TOKEN_KEY, GOOGLE_CALENDAR_ID_KEY, GOOGLE_SYNC_TOKEN_KEY, CALDAV_SYNC_TOKEN_KEY)

LOGIN_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>radisync</title>
  <style>
    body {{ min-height: 100vh; display: flex; flex-direction: column; align-items: center;
           padding-top: 140px; margin: 0; background-color: #1a1a1a;
           font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; }}
    .title {{ margin-bottom: 40px; font-family: monospace; font-size: 12pt; color: #fff; text-align: center; }}
    .email {{ display: block; margin-top: 8px; color: #666; font-size: 10pt; }}
    .button {{ padding: 10px 20px; background-color: #333; border: 1px solid #555; border-radius: 6px;
              font-size: 13px; color: #fff; text-decoration: none; }}
    .button:hover {{ background-color: #444; }}
  </style>
</head>
<body>
  <span class="title">radisync{account}</span>
  {action}
</body>
</html>
"""


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def render_login_page(auth_url: str, email: str | None) -> str:
    if email:
        account = f'<span class="email">{html.escape(email)}</span>'
        action = '<a href="/logout" class="button">Logout</a>'
    else:
        account = ""
        action = f'<a href="{html.escape(auth_url, quote=True)}" class="button">Login with Google</a>'
    return LOGIN_PAGE.format(account=account, action=action)


def create_app() -> FastAPI:
    config_path = os.getenv("RADISYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("RADISYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="radisync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/", include_in_schema=False)
    def login_page(email: str | None = Cookie(default=None)) -> HTMLResponse:
        google = app.state.context.config_manager.load().google
        return HTMLResponse(render_login_page(build_auth_url(google.client_id, google.app_host), email))

    @app.get("/oauth", include_in_schema=False)
    def oauth_callback(code: str = "") -> RedirectResponse:
        if not code:
            raise HTTPException(status_code=400, detail="Missing code parameter")
        google = app.state.context.config_manager.load().google
        try:
            email = complete_authorization(code, google, app.state.context.state_store)
        except (GoogleCalendarError, requests.RequestException) as exc:
            logger.error("OAuth callback failed: %s", exc)
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        response = RedirectResponse(url=f"{google.app_host}/", status_code=302)
        response.set_cookie(EMAIL_COOKIE, email, path="/", httponly=True, samesite="lax")
        return response

    @app.get("/logout", include_in_schema=False)
    def logout() -> RedirectResponse:
        for key in LOGOUT_KEYS:
            app.state.context.state_store.delete(key)
        response = RedirectResponse(url="/", status_code=302)
        response.delete_cookie(EMAIL_COOKIE, path="/")
        return response

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        try:
            app.state.context.config_manager.update(request.payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"message": "config updated", "config": app.state.context.config_manager.masked()}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sync/run-now")
    def run_sync_now() -> dict[str, Any]:
        results = app.state.context.sync_engine.run_once(trigger="manual")
        return {"message": "sync completed", "results": [result.to_dict() for result in results]}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        store = app.state.context.state_store
        return {
            "authorized": bool(store.get(GOOGLE_OAUTH_TOKEN_KEY)),
            "calendar_id": store.get(GOOGLE_CALENDAR_ID_KEY),
            "checkpoints": {
                CALDAV_SYNC_TOKEN_KEY: store.get(CALDAV_SYNC_TOKEN_KEY) is not None,
                GOOGLE_SYNC_TOKEN_KEY: store.get(GOOGLE_SYNC_TOKEN_KEY) is not None,
            },
            "runs": store.recent_passes(limit=limit),
        }

    @app.get("/api/sync/runs/{run_id}/errors")
    def run_errors(run_id: int) -> dict[str, Any]:
        return {"run_id": run_id, "errors": app.state.context.state_store.pass_errors(run_id)}

    return app
