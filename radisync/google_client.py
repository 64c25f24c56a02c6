from __future__ import annotations

import logging
from typing import Any, Callable, Protocol
from urllib.parse import quote

import requests

from radisync.models import GoogleConfig, RemoteEvent, RemoteSyncResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 2


class GoogleCalendarError(RuntimeError):
    """Base error raised by Google Calendar helpers."""


class GoogleCredentialError(GoogleCalendarError):
    """Raised when no usable OAuth token is available."""


class GoogleRequestError(GoogleCalendarError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class GoogleSyncTokenExpiredError(GoogleRequestError):
    """Raised when Google answers 410 Gone for a sync token."""


class GoogleProtocolError(GoogleCalendarError):
    """Raised when a listing response breaks the sync contract."""


class TokenSource(Protocol):
    def access_token(self) -> str: ...


def error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
    text = (response.text or "").strip()
    return text[:300] or (response.reason or "")


class GoogleCalendarService:
    def __init__(
        self,
        config: GoogleConfig,
        token_source: TokenSource,
        calendar_id: str | None = None,
        session: requests.Session | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.token_source = token_source
        self.calendar_id = calendar_id
        self.session = session or requests.Session()
        self.log = log or logger

    def _require_calendar_id(self) -> str:
        if not self.calendar_id:
            raise GoogleCalendarError("No Google Calendar ID configured")
        return self.calendar_id

    def _events_path(self, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(self._require_calendar_id(), safe='')}/events"
        if event_id is not None:
            path += f"/{quote(event_id, safe='')}"
        return path

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> requests.Response:
        token = self.token_source.access_token()
        if not token:
            raise GoogleCredentialError("No Google OAuth token found")
        return self.session.request(
            method,
            f"{self.config.api_base_url}{path}",
            params=params,
            json=json,
            headers={"Authorization": f"Bearer {token}"},
            timeout=self.config.timeout_seconds,
        )

    @staticmethod
    def _payload(response: requests.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise GoogleProtocolError("Google Calendar response returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise GoogleProtocolError("Google Calendar response has unexpected payload shape")
        return payload

    def fetch_changes(
        self,
        sync_token: str | None,
        *,
        on_token_expired: Callable[[], None] | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> RemoteSyncResult:
        """Pull every change since ``sync_token``; a baseline pull when it is empty.

        A 410 on an incremental pull drops the token (``on_token_expired``)
        and restarts as a baseline, at most ``max_attempts`` pulls in total.
        """
        calendar_id = self._require_calendar_id()
        attempts = max(1, int(max_attempts))
        token = sync_token or None
        for attempt in range(1, attempts + 1):
            try:
                return self._pull(calendar_id, token)
            except GoogleSyncTokenExpiredError:
                if token is None or attempt >= attempts:
                    raise
                self.log.warning(
                    "Sync token expired for calendar '%s' (attempt %s of %s); retrying with full sync",
                    calendar_id,
                    attempt,
                    attempts,
                )
                if on_token_expired is not None:
                    on_token_expired()
                token = None
        raise GoogleCalendarError("Google Calendar pull made no attempt")

    def _pull(self, calendar_id: str, sync_token: str | None) -> RemoteSyncResult:
        self.log.info("Fetching Google events, sync token: %s", "present" if sync_token else "none")
        events: list[RemoteEvent] = []
        deleted: list[str] = []
        page_token: str | None = None
        next_sync_token: str | None = None

        while True:
            params: dict[str, str] = {}
            if page_token is not None:
                params["pageToken"] = page_token
            elif sync_token:
                params["syncToken"] = sync_token
            if not sync_token:
                params["maxResults"] = str(self.config.page_size)

            response = self._request("GET", self._events_path(), params=params)
            if response.status_code == 410:
                raise GoogleSyncTokenExpiredError(
                    status_code=410,
                    message=f"Sync token expired for calendar '{calendar_id}'; full re-sync required",
                )
            if not response.ok:
                raise GoogleRequestError(status_code=response.status_code, message=error_message(response))

            payload = self._payload(response)
            for item in payload.get("items") or []:
                if not isinstance(item, dict):
                    continue
                event = RemoteEvent.from_dict(item)
                if event.cancelled:
                    if event.ical_uid:
                        deleted.append(event.ical_uid)
                    else:
                        self.log.debug("Cancelled event %s has no iCalUID, skipping", event.id)
                else:
                    events.append(event)

            candidate = payload.get("nextSyncToken")
            if isinstance(candidate, str) and candidate.strip():
                next_sync_token = candidate.strip()
            page_token = payload.get("nextPageToken") or None
            if page_token is None:
                break

        if next_sync_token is None:
            raise GoogleProtocolError(
                f"Google Calendar sync response for '{calendar_id}' did not return nextSyncToken"
            )
        self.log.info("Google changes fetched: %s events, %s deleted", len(events), len(deleted))
        return RemoteSyncResult(events=events, deleted=deleted, sync_token=next_sync_token)

    def find_by_ical_uid(self, ical_uid: str) -> requests.Response:
        return self._request("GET", self._events_path(), params={"iCalUID": ical_uid})

    def insert_event(self, payload: dict[str, Any]) -> requests.Response:
        return self._request("POST", self._events_path(), json=payload)

    def update_event(self, event_id: str, payload: dict[str, Any]) -> requests.Response:
        return self._request("PUT", self._events_path(event_id), json=payload)

    def delete_event(self, event_id: str) -> requests.Response:
        return self._request("DELETE", self._events_path(event_id))

    def list_calendars(self) -> list[dict[str, Any]]:
        response = self._request("GET", "/users/me/calendarList")
        if not response.ok:
            raise GoogleRequestError(status_code=response.status_code, message=error_message(response))
        items = self._payload(response).get("items") or []
        return [item for item in items if isinstance(item, dict)]

    def create_calendar(self, summary: str) -> str:
        response = self._request("POST", "/calendars", json={"summary": summary})
        if not response.ok:
            raise GoogleRequestError(status_code=response.status_code, message=error_message(response))
        calendar_id = str(self._payload(response).get("id", "")).strip()
        if not calendar_id:
            raise GoogleProtocolError("Created calendar has no id")
        return calendar_id

    def ensure_calendar(self, summary: str) -> str:
        for item in self.list_calendars():
            if item.get("summary") == summary and item.get("id"):
                self.log.info("Found existing calendar '%s': %s", summary, item["id"])
                return str(item["id"])
        calendar_id = self.create_calendar(summary)
        self.log.info("Created calendar '%s': %s", summary, calendar_id)
        return calendar_id
