from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import Any
from urllib.parse import quote, unquote

import requests

from radisync.ical import parse_calendar_events
from radisync.models import CalDAVConfig, CalendarEvent, SyncResult

logger = logging.getLogger(__name__)

NAMESPACES = {"d": "DAV:", "c": "urn:ietf:params:xml:ns:caldav"}

SYNC_COLLECTION_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<d:sync-collection xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:sync-level>1</d:sync-level>
  {sync_token_element}
  <d:prop>
    <d:getetag/>
    <c:calendar-data/>
  </d:prop>
</d:sync-collection>"""


class CalDAVError(RuntimeError):
    """Base error raised by the CalDAV client."""


class CalDAVRequestError(CalDAVError):
    """Raised when the server does not service a sync request."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"CalDAV sync-collection request failed ({status_code}): {message}")


class CalDAVProtocolError(CalDAVError):
    """Raised when a sync response breaks the sync-collection contract."""


def _escape_xml(value: str) -> str:
    return value.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def build_sync_request(sync_token: str | None) -> str:
    if sync_token:
        element = f"<d:sync-token>{_escape_xml(sync_token)}</d:sync-token>"
    else:
        element = "<d:sync-token/>"
    return SYNC_COLLECTION_TEMPLATE.format(sync_token_element=element)


def uid_from_href(href: str) -> str:
    """Return the resource name of ``href`` without its ``.ics`` extension."""
    segment = unquote(href.strip().rstrip("/").rsplit("/", 1)[-1])
    if not segment.lower().endswith(".ics"):
        return ""
    return segment[: -len(".ics")]


def _status_is_not_found(response: ET.Element) -> bool:
    statuses = [node.text or "" for node in response.findall("d:status", NAMESPACES)]
    if statuses:
        return any("404" in status for status in statuses)
    # A 404 propstat next to a 200 propstat only means one property is unsupported.
    statuses = [node.text or "" for node in response.findall("d:propstat/d:status", NAMESPACES)]
    return bool(statuses) and all("404" in status for status in statuses)


def parse_multistatus(xml_text: str | bytes) -> SyncResult:
    """Split a sync-collection multistatus into active events, deletions and the next token."""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        raise CalDAVProtocolError(f"Malformed sync-collection response: {exc}") from exc

    events: list[CalendarEvent] = []
    deleted: list[str] = []
    for response in root.findall("d:response", NAMESPACES):
        if _status_is_not_found(response):
            href = response.findtext("d:href", default="", namespaces=NAMESPACES)
            uid = uid_from_href(href)
            if uid:
                deleted.append(uid)
            continue
        for node in response.iterfind(".//c:calendar-data", NAMESPACES):
            if node.text:
                events.extend(parse_calendar_events(node.text))

    token = (root.findtext("d:sync-token", default="", namespaces=NAMESPACES) or "").strip()
    if not token:
        raise CalDAVProtocolError("No sync-token in sync-collection response")
    return SyncResult(events=events, deleted=deleted, sync_token=token)


class CalDAVService:
    def __init__(
        self,
        config: CalDAVConfig,
        session: requests.Session | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        if not config.base_url:
            raise CalDAVError("CalDAV config is incomplete.")
        self.config = config
        self.log = log or logger
        self.session = session or requests.Session()
        if config.username and session is None:
            self.session.auth = (config.username, config.password)

    @property
    def collection_url(self) -> str:
        return self.config.base_url

    def event_url(self, uid: str) -> str:
        return f"{self.collection_url}{quote(uid, safe='@')}.ics"

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        return self.session.request(method, url, timeout=self.config.timeout_seconds, **kwargs)

    def fetch_changes(self, sync_token: str | None) -> SyncResult:
        self.log.info("Fetching CalDAV changes, sync token: %s", "present" if sync_token else "none")
        response = self._request(
            "REPORT",
            self.collection_url,
            data=build_sync_request(sync_token).encode("utf-8"),
            headers={"Content-Type": "application/xml; charset=utf-8", "Depth": "1"},
        )
        if not response.ok:
            raise CalDAVRequestError(status_code=response.status_code, message=response.reason or "")

        result = parse_multistatus(response.content)
        self.log.info(
            "CalDAV changes fetched: %s events, %s deleted", len(result.events), len(result.deleted)
        )
        return result

    def exists(self, uid: str) -> requests.Response:
        return self._request("HEAD", self.event_url(uid))

    def put_event(self, uid: str, ical_text: str) -> requests.Response:
        return self._request(
            "PUT",
            self.event_url(uid),
            data=ical_text.encode("utf-8"),
            headers={"Content-Type": "text/calendar; charset=utf-8"},
        )

    def delete_event(self, uid: str) -> requests.Response:
        return self._request("DELETE", self.event_url(uid))
