from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


DEFAULT_GOOGLE_API_BASE = "https://www.googleapis.com/calendar/v3"
DEFAULT_CALENDAR_NAME = "Radicale"
DEFAULT_PAGE_SIZE = 2500


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        base_url = str(data.get("base_url", "")).strip()
        # Item URLs are built by appending "<uid>.ics" to the collection URL.
        if base_url and not base_url.endswith("/"):
            base_url += "/"
        return cls(
            base_url=base_url,
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class GoogleConfig:
    client_id: str = ""
    client_secret: str = ""
    app_host: str = ""
    api_base_url: str = DEFAULT_GOOGLE_API_BASE
    calendar_name: str = DEFAULT_CALENDAR_NAME
    page_size: int = DEFAULT_PAGE_SIZE
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            app_host=str(data.get("app_host", "")).strip().rstrip("/"),
            api_base_url=str(data.get("api_base_url", DEFAULT_GOOGLE_API_BASE)).strip().rstrip("/")
            or DEFAULT_GOOGLE_API_BASE,
            calendar_name=str(data.get("calendar_name", DEFAULT_CALENDAR_NAME)).strip()
            or DEFAULT_CALENDAR_NAME,
            page_size=min(2500, max(1, int(data.get("page_size", DEFAULT_PAGE_SIZE)))),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(interval_seconds=max(30, int(data.get("interval_seconds", 300))))


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            google=GoogleConfig.from_dict(data.get("google")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class CalendarEvent:
    """A VEVENT as read from the CalDAV side, with raw iCalendar date values."""

    uid: str
    summary: str
    dtstart: str
    dtend: str
    timezone: str | None = None
    description: str | None = None
    location: str | None = None
    rrule: str | None = None

    @property
    def all_day(self) -> bool:
        return len(self.dtstart) == 8

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EventDateTime:
    date: str | None = None
    date_time: str | None = None
    time_zone: str | None = None

    @property
    def all_day(self) -> bool:
        return bool(self.date) and not self.date_time

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "EventDateTime":
        data = data or {}
        return cls(
            date=data.get("date") or None,
            date_time=data.get("dateTime") or None,
            time_zone=data.get("timeZone") or None,
        )

    def to_dict(self) -> dict[str, str]:
        payload: dict[str, str] = {}
        if self.date:
            payload["date"] = self.date
        if self.date_time:
            payload["dateTime"] = self.date_time
        if self.time_zone:
            payload["timeZone"] = self.time_zone
        return payload


@dataclass
class RemoteEvent:
    """A Google Calendar event resource, reduced to the synced fields."""

    id: str
    summary: str = ""
    start: EventDateTime = field(default_factory=EventDateTime)
    end: EventDateTime = field(default_factory=EventDateTime)
    description: str | None = None
    location: str | None = None
    status: str = "confirmed"
    ical_uid: str | None = None
    recurrence: list[str] = field(default_factory=list)

    @property
    def stable_uid(self) -> str:
        return self.ical_uid or self.id

    @property
    def cancelled(self) -> bool:
        return self.status.lower() == "cancelled"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteEvent":
        recurrence = data.get("recurrence") or []
        return cls(
            id=str(data.get("id", "")),
            summary=str(data.get("summary", "") or ""),
            start=EventDateTime.from_dict(data.get("start")),
            end=EventDateTime.from_dict(data.get("end")),
            description=data.get("description"),
            location=data.get("location"),
            status=str(data.get("status", "confirmed") or "confirmed"),
            ical_uid=data.get("iCalUID") or None,
            recurrence=[str(line) for line in recurrence if str(line).strip()],
        )


@dataclass
class SyncResult:
    events: list[CalendarEvent]
    deleted: list[str]
    sync_token: str


@dataclass
class RemoteSyncResult:
    events: list[RemoteEvent]
    deleted: list[str]
    sync_token: str


@dataclass
class CreateResult:
    created: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class UpsertResult:
    updated: int = 0
    created: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DeleteResult:
    deleted: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PassResult:
    direction: str
    status: str
    message: str
    duration_ms: int = 0
    sync_token: str = ""
    checkpoint_saved: bool = False
    deleted: DeleteResult = field(default_factory=DeleteResult)
    upserted: UpsertResult = field(default_factory=UpsertResult)
    trigger: str = "manual"
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def errors(self) -> list[str]:
        return [*self.deleted.errors, *self.upserted.errors]

    def to_dict(self) -> dict[str, Any]:
        return {
            "direction": self.direction,
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "checkpoint_saved": self.checkpoint_saved,
            "deleted": self.deleted.to_dict(),
            "upserted": self.upserted.to_dict(),
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }
