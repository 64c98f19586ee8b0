from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


SYNC_STATUSES = {"idle", "syncing", "success", "error"}
ERROR_TYPES = {"network", "parse"}
EVENT_SOURCE = "ical_feed"
UNTITLED_EVENT = "Untitled Event"
DEFAULT_TIMEZONE = "America/New_York"

# Legacy documents used "pending" for calendars that never synced.
_LEGACY_STATUS = {"pending": "idle"}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def _valid_timezone(value: Any) -> str:
    name = str(value or "").strip()
    if not name:
        return DEFAULT_TIMEZONE
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return DEFAULT_TIMEZONE
    return name


def _pick(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _config_section(data: Any, section: str) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{section} must be a mapping, got {type(data).__name__}")
    return data


@dataclass
class FetchConfig:
    timeout_seconds: int = 30
    user_agent: str = "feedsync/0.1"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FetchConfig":
        data = _config_section(data, "fetch")
        return cls(
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            user_agent=str(data.get("user_agent", "feedsync/0.1")).strip() or "feedsync/0.1",
        )


@dataclass
class SyncConfig:
    stale_after_hours: int = 24
    check_interval_seconds: int = 3600
    max_retries: int = 2
    retry_backoff_seconds: float = 1.0
    max_workers: int = 0
    default_timezone: str = DEFAULT_TIMEZONE
    past_months: int = 6
    future_years: int = 1

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = _config_section(data, "sync")
        return cls(
            stale_after_hours=max(1, int(data.get("stale_after_hours", 24))),
            check_interval_seconds=max(60, int(data.get("check_interval_seconds", 3600))),
            max_retries=max(0, int(data.get("max_retries", 2))),
            retry_backoff_seconds=max(0.0, float(data.get("retry_backoff_seconds", 1.0))),
            max_workers=max(0, int(data.get("max_workers", 0))),
            default_timezone=_valid_timezone(data.get("default_timezone", DEFAULT_TIMEZONE)),
            past_months=max(0, int(data.get("past_months", 6))),
            future_years=max(0, int(data.get("future_years", 1))),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = _config_section(data, "logging")
        return cls(level=str(data.get("level", "INFO")).strip().upper() or "INFO")


@dataclass
class AppConfig:
    user_id: str = ""
    fetch: FetchConfig = field(default_factory=FetchConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = _config_section(data, "config")
        return cls(
            user_id=str(data.get("user_id", "") or "").strip(),
            fetch=FetchConfig.from_dict(data.get("fetch")),
            sync=SyncConfig.from_dict(data.get("sync")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class Event:
    event_id: str
    calendar_id: str
    start_time: datetime
    end_time: datetime
    title: str = UNTITLED_EVENT
    description: str = ""
    location: str = ""
    is_all_day: bool = False
    source: str = EVENT_SOURCE

    @classmethod
    def from_dict(cls, event_id: str, data: dict[str, Any], calendar_id: str = "") -> "Event":
        return cls(
            event_id=str(event_id),
            calendar_id=str(_pick(data, "calendar_id", "calendarId", default=calendar_id)),
            start_time=parse_iso_datetime(_pick(data, "start_time", "startTime")),
            end_time=parse_iso_datetime(_pick(data, "end_time", "endTime")),
            title=str(_pick(data, "title", default=UNTITLED_EVENT)),
            description=str(_pick(data, "description", default="")),
            location=str(_pick(data, "location", default="")),
            is_all_day=bool(_pick(data, "is_all_day", "isAllDay", default=False)),
            source=str(_pick(data, "source", default=EVENT_SOURCE)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "start_time": serialize_datetime(self.start_time),
            "end_time": serialize_datetime(self.end_time),
            "is_all_day": self.is_all_day,
            "calendar_id": self.calendar_id,
            "source": self.source,
        }


@dataclass
class SyncState:
    status: str = "idle"
    last_synced_at: datetime | None = None
    error_message: str | None = None
    error_type: str | None = None
    retryable: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncState":
        data = data or {}
        status = str(_pick(data, "status", "syncStatus", default="idle")).strip().lower()
        status = _LEGACY_STATUS.get(status, status)
        if status not in SYNC_STATUSES:
            status = "idle"
        error_type = _pick(data, "error_type", "errorType")
        if error_type is not None and error_type not in ERROR_TYPES:
            error_type = None
        return cls(
            status=status,
            last_synced_at=parse_iso_datetime(_pick(data, "last_synced_at", "lastSyncedAt")),
            error_message=_pick(data, "error_message", "errorMessage"),
            error_type=error_type,
            retryable=bool(_pick(data, "retryable", default=False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "last_synced_at": serialize_datetime(self.last_synced_at),
            "error_message": self.error_message,
            "error_type": self.error_type,
            "retryable": self.retryable,
        }


@dataclass
class CalendarSource:
    feed_address: str = ""
    type: str = "ical"
    provider: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarSource":
        data = data or {}
        source_type = str(_pick(data, "type", default="ical"))
        return cls(
            feed_address=str(_pick(data, "feed_address", "calendarAddress", "feedAddress", default="")).strip(),
            type=source_type,
            provider=str(_pick(data, "provider", default=source_type)),
        )


@dataclass
class Calendar:
    calendar_id: str
    name: str = ""
    color: str = ""
    description: str = ""
    source: CalendarSource = field(default_factory=CalendarSource)
    events: dict[str, Event] = field(default_factory=dict)
    sync: SyncState = field(default_factory=SyncState)
    subscribing_users: list[str] = field(default_factory=list)
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Calendar":
        """Build a calendar from a stored document.

        This is the only place older document layouts are understood:
        camelCase keys, ``source.calendarAddress`` and ``sync.syncStatus``
        are mapped onto the current schema here and nowhere else.
        """
        calendar_id = str(_pick(data, "calendar_id", "calendarId", "id", default="")).strip()
        events: dict[str, Event] = {}
        raw_events = data.get("events") or {}
        if isinstance(raw_events, dict):
            for event_id, payload in raw_events.items():
                if not isinstance(payload, dict):
                    continue
                try:
                    event = Event.from_dict(event_id, payload, calendar_id)
                except (TypeError, ValueError):
                    continue
                if event.start_time is None or event.end_time is None:
                    continue
                events[event.event_id] = event
        return cls(
            calendar_id=calendar_id,
            name=str(_pick(data, "name", default="")),
            color=str(_pick(data, "color", default="")),
            description=str(_pick(data, "description", default="")),
            source=CalendarSource.from_dict(data.get("source")),
            events=events,
            sync=SyncState.from_dict(data.get("sync")),
            subscribing_users=[str(x) for x in _pick(data, "subscribing_users", "subscribingUsers", default=[])],
            is_active=bool(_pick(data, "is_active", "isActive", default=True)),
            created_at=parse_iso_datetime(_pick(data, "created_at", "createdAt")),
            updated_at=parse_iso_datetime(_pick(data, "updated_at", "updatedAt")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "calendar_id": self.calendar_id,
            "name": self.name,
            "color": self.color,
            "description": self.description,
            "source": asdict(self.source),
            "events": {event_id: event.to_dict() for event_id, event in self.events.items()},
            "sync": self.sync.to_dict(),
            "subscribing_users": list(self.subscribing_users),
            "is_active": self.is_active,
            "created_at": serialize_datetime(self.created_at),
            "updated_at": serialize_datetime(self.updated_at),
        }


@dataclass
class StalenessEntry:
    calendar_id: str
    name: str
    last_synced_at: datetime
    hours_since_last_sync: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "calendar_id": self.calendar_id,
            "name": self.name,
            "last_synced_at": serialize_datetime(self.last_synced_at),
            "hours_since_last_sync": round(self.hours_since_last_sync, 2),
        }


@dataclass
class SyncOutcome:
    success: bool
    event_count: int = 0
    error: str | None = None
    error_type: str | None = None
    retryable: bool = False
    attempts: int = 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncBatchResult:
    success_count: int = 0
    error_count: int = 0
    errors: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    trigger: str = "scheduled"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
