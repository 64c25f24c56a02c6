from __future__ import annotations

import logging
from typing import Any

import requests

from radisync.caldav_client import CalDAVService
from radisync.google_client import GoogleCalendarService, error_message
from radisync.ical import build_ical, to_remote_payload
from radisync.models import CalendarEvent, CreateResult, DeleteResult, RemoteEvent, UpsertResult

logger = logging.getLogger(__name__)

# Failures that belong to a single item. Anything else (missing credentials,
# missing calendar id) aborts the whole batch.
ITEM_ERRORS = (ValueError, requests.RequestException)


def _status_text(response: requests.Response) -> str:
    return f"{response.status_code} {response.reason or ''}".strip()


def _google_failure(response: requests.Response) -> str:
    return f"{response.status_code} {error_message(response)}".strip()


def _record(errors: list[str], message: str, log: logging.Logger) -> None:
    log.warning("%s", message)
    errors.append(message)


def _remote_body(event: CalendarEvent, *, with_uid: bool) -> dict[str, Any]:
    payload = to_remote_payload(event)
    if with_uid:
        payload["iCalUID"] = event.uid
    return payload


def _first_match_id(response: requests.Response) -> str | None:
    payload = response.json()
    items = payload.get("items") if isinstance(payload, dict) else None
    for item in items or []:
        if isinstance(item, dict) and item.get("id"):
            return str(item["id"])
    return None


def create_remote_events(
    google: GoogleCalendarService,
    events: list[CalendarEvent],
    log: logging.Logger | None = None,
) -> CreateResult:
    log = log or logger
    result = CreateResult()
    for event in events:
        try:
            response = google.insert_event(_remote_body(event, with_uid=True))
        except ITEM_ERRORS as exc:
            _record(result.errors, f"Failed to create event {event.uid}: {exc}", log)
            continue
        if response.ok:
            log.info("Created Google event %s", event.uid)
            result.created += 1
        else:
            _record(result.errors, f"Failed to create event {event.uid}: {_google_failure(response)}", log)
    return result


def upsert_remote_events(
    google: GoogleCalendarService,
    events: list[CalendarEvent],
    log: logging.Logger | None = None,
) -> UpsertResult:
    """Update the Google event sharing each event's iCalUID, or create it."""
    log = log or logger
    log.info("Upserting %s events into Google", len(events))
    result = UpsertResult()
    for event in events:
        try:
            search = google.find_by_ical_uid(event.uid)
            if not search.ok:
                _record(
                    result.errors,
                    f"Failed to search for event {event.uid}: {_google_failure(search)}",
                    log,
                )
                continue
            event_id = _first_match_id(search)
        except ITEM_ERRORS as exc:
            _record(result.errors, f"Failed to search for event {event.uid}: {exc}", log)
            continue

        verb = "update" if event_id else "create"
        try:
            if event_id:
                response = google.update_event(event_id, _remote_body(event, with_uid=False))
            else:
                response = google.insert_event(_remote_body(event, with_uid=True))
        except ITEM_ERRORS as exc:
            _record(result.errors, f"Failed to {verb} event {event.uid}: {exc}", log)
            continue

        if not response.ok:
            _record(result.errors, f"Failed to {verb} event {event.uid}: {_google_failure(response)}", log)
        elif event_id:
            log.info("Updated Google event %s", event.uid)
            result.updated += 1
        else:
            log.info("Created Google event %s", event.uid)
            result.created += 1

    log.info(
        "Google upsert complete: %s updated, %s created, %s errors",
        result.updated,
        result.created,
        len(result.errors),
    )
    return result


def delete_remote_events(
    google: GoogleCalendarService,
    uids: list[str],
    log: logging.Logger | None = None,
) -> DeleteResult:
    log = log or logger
    log.info("Deleting %s events from Google", len(uids))
    result = DeleteResult()
    for uid in uids:
        try:
            search = google.find_by_ical_uid(uid)
            if not search.ok:
                _record(result.errors, f"Failed to find event {uid}: {_google_failure(search)}", log)
                continue
            event_id = _first_match_id(search)
            if event_id is None:
                log.info("Google event %s already absent", uid)
                result.deleted += 1
                continue
            response = google.delete_event(event_id)
        except ITEM_ERRORS as exc:
            _record(result.errors, f"Failed to delete event {uid}: {exc}", log)
            continue

        if response.ok or response.status_code == 404:
            log.info("Deleted Google event %s", uid)
            result.deleted += 1
        else:
            _record(result.errors, f"Failed to delete event {uid}: {_google_failure(response)}", log)

    log.info("Google delete complete: %s deleted, %s errors", result.deleted, len(result.errors))
    return result


def upsert_caldav_events(
    caldav: CalDAVService,
    events: list[RemoteEvent],
    log: logging.Logger | None = None,
) -> UpsertResult:
    """PUT each Google event to ``<collection>/<uid>.ics``; HEAD decides created vs updated.

    HEAD 2xx means update and 404 means create. Any other HEAD status is an
    error for that item and nothing is written.
    """
    log = log or logger
    log.info("Upserting %s events into CalDAV", len(events))
    result = UpsertResult()
    for event in events:
        uid = event.stable_uid
        try:
            ical_text = build_ical(event)
            head = caldav.exists(uid)
        except ITEM_ERRORS as exc:
            _record(result.errors, f"Failed to upsert event {uid}: {exc}", log)
            continue
        if not head.ok and head.status_code != 404:
            _record(result.errors, f"Failed to look up event {uid}: {_status_text(head)}", log)
            continue

        exists = head.ok
        try:
            response = caldav.put_event(uid, ical_text)
        except ITEM_ERRORS as exc:
            _record(result.errors, f"Failed to upsert event {uid}: {exc}", log)
            continue

        if not response.ok:
            _record(result.errors, f"Failed to upsert event {uid}: {_status_text(response)}", log)
        elif exists:
            log.info("Updated CalDAV event %s", uid)
            result.updated += 1
        else:
            log.info("Created CalDAV event %s", uid)
            result.created += 1

    log.info(
        "CalDAV upsert complete: %s updated, %s created, %s errors",
        result.updated,
        result.created,
        len(result.errors),
    )
    return result


def delete_caldav_events(
    caldav: CalDAVService,
    uids: list[str],
    log: logging.Logger | None = None,
) -> DeleteResult:
    log = log or logger
    log.info("Deleting %s events from CalDAV", len(uids))
    result = DeleteResult()
    for uid in uids:
        try:
            response = caldav.delete_event(uid)
        except ITEM_ERRORS as exc:
            _record(result.errors, f"Failed to delete event {uid}: {exc}", log)
            continue
        if response.ok or response.status_code == 404:
            log.info("Deleted CalDAV event %s", uid)
            result.deleted += 1
        else:
            _record(result.errors, f"Failed to delete event {uid}: {_status_text(response)}", log)

    log.info("CalDAV delete complete: %s deleted, %s errors", result.deleted, len(result.errors))
    return result
