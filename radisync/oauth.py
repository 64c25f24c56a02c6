from __future__ import annotations

import json
import logging
import time
from typing import Any
from urllib.parse import urlencode

import requests

from radisync.google_client import GoogleCalendarService, GoogleCredentialError, error_message
from radisync.models import GoogleConfig
from radisync.state_store import GOOGLE_CALENDAR_ID_KEY, GOOGLE_OAUTH_TOKEN_KEY, StateStore

logger = logging.getLogger(__name__)

AUTH_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
USERINFO_ENDPOINT = "https://www.googleapis.com/oauth2/v2/userinfo"
SCOPES = "https://www.googleapis.com/auth/calendar email"
EXPIRY_SKEW_SECONDS = 60


class OAuthError(GoogleCredentialError):
    """Raised when Google's OAuth endpoints reject a request."""


def redirect_uri(app_host: str) -> str:
    return f"{app_host.rstrip('/')}/oauth"


def build_auth_url(client_id: str, app_host: str) -> str:
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri(app_host),
        "response_type": "code",
        "scope": SCOPES,
        "access_type": "offline",
        "prompt": "consent",
    }
    return f"{AUTH_ENDPOINT}?{urlencode(params)}"


def _stamp_expiry(token: dict[str, Any], now: float | None = None) -> dict[str, Any]:
    expires_in = token.get("expires_in")
    if expires_in:
        issued = time.time() if now is None else now
        token["expires_at"] = int(issued + int(expires_in) - EXPIRY_SKEW_SECONDS)
    return token


def _token_request(session: requests.Session, data: dict[str, str], timeout: int) -> dict[str, Any]:
    response = session.post(TOKEN_ENDPOINT, data=data, timeout=timeout)
    if not response.ok:
        raise OAuthError(f"Token endpoint failed ({response.status_code}): {error_message(response)}")
    try:
        payload = response.json()
    except ValueError as exc:
        raise OAuthError("Token endpoint returned invalid JSON") from exc
    if not isinstance(payload, dict) or not payload.get("access_token"):
        raise OAuthError("Token endpoint response has no access_token")
    return _stamp_expiry(payload)


def exchange_code_for_token(
    code: str,
    config: GoogleConfig,
    session: requests.Session | None = None,
) -> dict[str, Any]:
    return _token_request(
        session or requests.Session(),
        {
            "code": code,
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "redirect_uri": redirect_uri(config.app_host),
            "grant_type": "authorization_code",
        },
        config.timeout_seconds,
    )


def refresh_access_token(
    token: dict[str, Any],
    config: GoogleConfig,
    session: requests.Session | None = None,
) -> dict[str, Any]:
    refreshed = _token_request(
        session or requests.Session(),
        {
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "refresh_token": str(token["refresh_token"]),
            "grant_type": "refresh_token",
        },
        config.timeout_seconds,
    )
    # Google omits the refresh token from refresh responses.
    refreshed.setdefault("refresh_token", token["refresh_token"])
    return refreshed


def fetch_user_email(access_token: str, session: requests.Session | None = None, timeout: int = 30) -> str:
    response = (session or requests.Session()).get(
        USERINFO_ENDPOINT,
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=timeout,
    )
    if not response.ok:
        raise OAuthError(f"Userinfo request failed ({response.status_code}): {error_message(response)}")
    try:
        payload = response.json()
    except ValueError as exc:
        raise OAuthError("Userinfo endpoint returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise OAuthError("Userinfo endpoint returned an unexpected payload")
    return str(payload.get("email", "")).strip()


class StaticToken:
    def __init__(self, token: str) -> None:
        self.token = token

    def access_token(self) -> str:
        return self.token


class TokenProvider:
    """Hands out the stored bearer token, refreshing it once it has expired."""

    def __init__(
        self,
        store: StateStore,
        config: GoogleConfig,
        session: requests.Session | None = None,
        clock: Any = time.time,
    ) -> None:
        self.store = store
        self.config = config
        self.session = session or requests.Session()
        self.clock = clock

    def _load(self) -> dict[str, Any]:
        raw = self.store.get(GOOGLE_OAUTH_TOKEN_KEY)
        if not raw:
            raise GoogleCredentialError("No Google OAuth token found")
        try:
            token = json.loads(raw)
        except ValueError as exc:
            raise GoogleCredentialError("Stored Google OAuth token is not valid JSON") from exc
        if not isinstance(token, dict) or not token.get("access_token"):
            raise GoogleCredentialError("Stored Google OAuth token has no access_token")
        return token

    def _expired(self, token: dict[str, Any]) -> bool:
        expires_at = token.get("expires_at")
        return bool(expires_at) and float(expires_at) <= self.clock()

    def access_token(self) -> str:
        token = self._load()
        if self._expired(token) and token.get("refresh_token"):
            logger.info("Google access token expired, refreshing")
            token = refresh_access_token(token, self.config, self.session)
            self.store.put(GOOGLE_OAUTH_TOKEN_KEY, json.dumps(token))
        return str(token["access_token"])


def complete_authorization(
    code: str,
    config: GoogleConfig,
    store: StateStore,
    session: requests.Session | None = None,
) -> str:
    """Finish the consent flow: store the token and the target calendar id, return the user email."""
    session = session or requests.Session()
    logger.info("Exchanging OAuth code for token")
    token = exchange_code_for_token(code, config, session)
    store.put(GOOGLE_OAUTH_TOKEN_KEY, json.dumps(token))

    email = fetch_user_email(token["access_token"], session, config.timeout_seconds)
    google = GoogleCalendarService(config, StaticToken(token["access_token"]), session=session)
    calendar_id = google.ensure_calendar(config.calendar_name)
    store.put(GOOGLE_CALENDAR_ID_KEY, calendar_id)
    logger.info("Authorized %s, target calendar %s", email or "unknown user", calendar_id)
    return email
