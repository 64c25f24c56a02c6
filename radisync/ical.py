"""Translation between iCalendar text and Google Calendar event resources.

Everything in this module is pure: no I/O and no logging. Parsing is a
small record builder over icalendar's content-line tokenizer so that
folding, parameter lists and malformed lines are handled in one place.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from icalendar.parser import Contentline, unescape_backslash
from icalendar.prop import vInline

from radisync.models import CalendarEvent, EventDateTime, RemoteEvent


PRODID = "-//radisync//caldav//EN"
FLOATING_ZONE = "UTC"

FOLD_PATTERN = re.compile(r"\r?\n[ \t]")
DATE_PATTERN = re.compile(r"^(\d{4})(\d{2})(\d{2})$")
DATETIME_PATTERN = re.compile(r"^(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})(Z?)$")

TEXT_PROPERTIES = {"SUMMARY", "DESCRIPTION", "LOCATION"}


@dataclass
class ContentLine:
    name: str
    value: str
    params: dict[str, str] = field(default_factory=dict)


def unfold(text: str) -> str:
    return FOLD_PATTERN.sub("", text)


def _param_text(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        value = value[0] if value else ""
    return str(value).strip()


def tokenize(text: str) -> list[ContentLine]:
    """Split an iCalendar document into content lines; unparseable lines are skipped."""
    records: list[ContentLine] = []
    for line in unfold(text).splitlines():
        if not line.strip():
            continue
        try:
            name, params, value = Contentline(line).raw_parts()
        except ValueError:
            continue
        records.append(
            ContentLine(
                name=str(name).upper(),
                value=str(value),
                params={str(key).upper(): _param_text(item) for key, item in params.items()},
            )
        )
    return records


def _component_fields(records: list[ContentLine]) -> tuple[list[dict[str, ContentLine]], str | None]:
    blocks: list[dict[str, ContentLine]] = []
    document_tzid: str | None = None
    stack: list[str] = []
    current: dict[str, ContentLine] | None = None

    for record in records:
        if record.name == "BEGIN":
            component = record.value.strip().upper()
            stack.append(component)
            if component == "VEVENT":
                current = {}
            continue
        if record.name == "END":
            component = record.value.strip().upper()
            if component not in stack:
                continue
            while stack and stack.pop() != component:
                pass
            if component == "VEVENT" and current is not None:
                blocks.append(current)
                current = None
            continue
        if not stack:
            continue
        if stack[-1] == "VTIMEZONE" and record.name == "TZID" and document_tzid is None:
            document_tzid = record.value.strip() or None
        elif stack[-1] == "VEVENT" and current is not None:
            # First match wins, as with a top-down scan of the block.
            current.setdefault(record.name, record)

    return blocks, document_tzid


def _text_value(record: ContentLine | None) -> str:
    if record is None:
        return ""
    if record.name in TEXT_PROPERTIES:
        return unescape_backslash(record.value).strip()
    return record.value.strip()


def _optional_text(record: ContentLine | None) -> str | None:
    return _text_value(record) or None


def _build_event(fields: dict[str, ContentLine], document_tzid: str | None) -> CalendarEvent | None:
    if "RECURRENCE-ID" in fields:
        return None
    uid = _text_value(fields.get("UID"))
    summary = _text_value(fields.get("SUMMARY"))
    dtstart_line = fields.get("DTSTART")
    dtstart = _text_value(dtstart_line)
    if not uid or not summary or not dtstart:
        return None

    dtend_line = fields.get("DTEND")
    dtend = _text_value(dtend_line) or dtstart
    tzid = (
        (dtstart_line.params.get("TZID") if dtstart_line else None)
        or (dtend_line.params.get("TZID") if dtend_line else None)
        or document_tzid
    )
    return CalendarEvent(
        uid=uid,
        summary=summary,
        dtstart=dtstart,
        dtend=dtend,
        timezone=tzid or None,
        description=_optional_text(fields.get("DESCRIPTION")),
        location=_optional_text(fields.get("LOCATION")),
        rrule=_optional_text(fields.get("RRULE")),
    )


def parse_calendar_events(text: str) -> list[CalendarEvent]:
    """Parse every usable VEVENT of an iCalendar document.

    Events missing UID, SUMMARY or DTSTART are dropped. Overrides carrying a
    RECURRENCE-ID are skipped since they share the UID of their master event.
    """
    blocks, document_tzid = _component_fields(tokenize(text))
    events: list[CalendarEvent] = []
    for fields in blocks:
        event = _build_event(fields, document_tzid)
        if event is not None:
            events.append(event)
    return events


def parse_ical_date(value: str, timezone_name: str | None = None) -> EventDateTime:
    """Convert an iCalendar DATE or DATE-TIME value to a Google time field."""
    text = value.strip()
    date_match = DATE_PATTERN.match(text)
    if date_match:
        year, month, day = date_match.groups()
        return EventDateTime(date=f"{year}-{month}-{day}")

    datetime_match = DATETIME_PATTERN.match(text)
    if datetime_match is None:
        raise ValueError(f"Unsupported iCalendar date value: {value!r}")
    year, month, day, hour, minute, second, utc_flag = datetime_match.groups()
    date_time = f"{year}-{month}-{day}T{hour}:{minute}:{second}"
    if utc_flag:
        return EventDateTime(date_time=date_time + "Z")
    return EventDateTime(date_time=date_time, time_zone=timezone_name or None)


def to_remote_payload(event: CalendarEvent, floating_zone: str = FLOATING_ZONE) -> dict[str, Any]:
    """Build the Google event body for a CalDAV event.

    Google rejects an offset-less dateTime without a timeZone, so floating
    times are pinned to ``floating_zone``.
    """
    fields = []
    for raw in (event.dtstart, event.dtend or event.dtstart):
        parsed = parse_ical_date(raw, event.timezone)
        if parsed.date_time and not parsed.date_time.endswith("Z") and not parsed.time_zone:
            parsed.time_zone = floating_zone
        fields.append(parsed)

    payload: dict[str, Any] = {
        "summary": event.summary,
        "start": fields[0].to_dict(),
        "end": fields[1].to_dict(),
    }
    if event.description:
        payload["description"] = event.description
    if event.location:
        payload["location"] = event.location
    if event.rrule:
        payload["recurrence"] = [f"RRULE:{event.rrule}"]
    return payload


def zoned_to_utc(wall_clock: datetime, zone: str) -> datetime:
    """Interpret a naive wall-clock time in ``zone`` and return the UTC instant.

    The offset is the one in force at that wall-clock date. A repeated hour
    resolves to its first occurrence and a skipped hour uses the offset from
    before the transition (``fold=0`` in both cases).
    """
    try:
        tzinfo = ZoneInfo(zone)
    except ZoneInfoNotFoundError as exc:
        raise ValueError(f"Unknown time zone: {zone}") from exc
    localized = wall_clock.replace(tzinfo=tzinfo, fold=0)
    offset = localized.utcoffset()
    naive = wall_clock.replace(tzinfo=None)
    return (naive - offset).replace(tzinfo=timezone.utc)


def _parse_rfc3339(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def normalize_event_time(field: EventDateTime) -> date | datetime:
    """Return a ``date`` for all-day fields, otherwise an aware UTC datetime."""
    if field.date and not field.date_time:
        return date.fromisoformat(field.date)
    if not field.date_time:
        raise ValueError("Event time has neither date nor dateTime")

    parsed = _parse_rfc3339(field.date_time)
    if parsed.tzinfo is not None:
        return parsed.astimezone(timezone.utc).replace(microsecond=0)
    if field.time_zone:
        return zoned_to_utc(parsed, field.time_zone).replace(microsecond=0)
    return parsed.replace(tzinfo=timezone.utc, microsecond=0)


def to_ical_date(field: EventDateTime) -> tuple[str, bool]:
    value = normalize_event_time(field)
    if isinstance(value, datetime):
        return value.strftime("%Y%m%dT%H%M%SZ"), False
    return value.strftime("%Y%m%d"), True


def _recurrence_property(line: str) -> tuple[str, vInline] | None:
    try:
        name, params, value = Contentline(line.strip()).raw_parts()
    except ValueError:
        return None
    return str(name).upper(), vInline(value, params=dict(params))


def build_ical(event: RemoteEvent, now: datetime | None = None) -> str:
    """Compose a single-event VCALENDAR for ``event``.

    Timed values are always written in UTC so the CalDAV server never needs
    zone context; all-day values are written as VALUE=DATE.
    """
    stamp = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).replace(microsecond=0)
    start = normalize_event_time(event.start)
    end = normalize_event_time(event.end) if (event.end.date or event.end.date_time) else start

    calendar_obj = ICalendar()
    calendar_obj.add("VERSION", "2.0")
    calendar_obj.add("PRODID", PRODID)

    vevent = ICEvent()
    vevent.add("UID", event.stable_uid)
    vevent.add("DTSTAMP", stamp)
    vevent.add("SUMMARY", event.summary or "Untitled")
    vevent.add("DTSTART", start)
    vevent.add("DTEND", end)
    for line in event.recurrence:
        prop = _recurrence_property(line)
        if prop is not None:
            vevent.add(prop[0], prop[1], encode=False)
    if event.description:
        vevent.add("DESCRIPTION", event.description)
    if event.location:
        vevent.add("LOCATION", event.location)
    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical(sorted=False).decode("utf-8")
