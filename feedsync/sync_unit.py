from __future__ import annotations

import logging
import re
import time
from datetime import datetime
from typing import Any, Callable

from feedsync.document_store import DocumentStore
from feedsync.errors import CalendarNotFoundError, NetworkError, ParseError
from feedsync.feed_fetcher import FeedFetcher
from feedsync.ical_parser import parse_feed
from feedsync.models import Calendar, SyncConfig, SyncOutcome, serialize_datetime, utc_now
from feedsync.range_filter import filter_events, retention_window

logger = logging.getLogger(__name__)

CALENDARS = "calendars"
INTERRUPTED_MESSAGE = "Sync interrupted before completion"

RETRYABLE_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"fetch",
        r"timeout",
        r"timed out",
        r"network",
        r"ENOTFOUND",
        r"ECONNREFUSED",
        r"ETIMEDOUT",
        r"\bDNS\b",
        r"name resolution",
        r"connection",
    )
]


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, ParseError):
        return False
    if isinstance(exc, NetworkError):
        return True
    message = str(exc)
    return any(pattern.search(message) for pattern in RETRYABLE_PATTERNS)


def _error_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class CalendarSyncUnit:
    """Fetch, parse, filter and store one calendar's feed.

    Every run replaces the calendar's ``events`` map wholesale, so removed
    source events never linger. Retryable failures are attempted again with
    a linear backoff; the final outcome is written to the calendar's ``sync``
    record and returned, never raised.
    """

    def __init__(
        self,
        store: DocumentStore,
        fetcher: FeedFetcher,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.config = config or SyncConfig()
        self.clock = clock
        self.sleep = sleep

    def load_calendar(self, calendar_id: str) -> Calendar:
        document = self.store.get_document(CALENDARS, calendar_id)
        if document is None:
            raise CalendarNotFoundError(f"Calendar not found: {calendar_id}")
        calendar = Calendar.from_dict(document)
        if not calendar.calendar_id:
            calendar.calendar_id = calendar_id
        return calendar

    def sync_by_id(self, calendar_id: str) -> SyncOutcome:
        return self.sync(self.load_calendar(calendar_id))

    def sync(self, calendar: Calendar) -> SyncOutcome:
        max_attempts = 1 + self.config.max_retries
        attempt = 1
        while True:
            logger.info("Syncing calendar %s (%s), attempt %d", calendar.name, calendar.calendar_id, attempt)
            try:
                event_count = self._run_once(calendar)
            except Exception as exc:
                retryable = is_retryable_error(exc)
                message = _error_text(exc)
                if retryable and attempt < max_attempts:
                    delay = attempt * self.config.retry_backoff_seconds
                    logger.warning(
                        "Sync of %s failed (%s), retrying in %.1fs (%d/%d)",
                        calendar.calendar_id,
                        message,
                        delay,
                        attempt,
                        self.config.max_retries,
                    )
                    self.sleep(delay)
                    attempt += 1
                    continue
                error_type = "network" if retryable else "parse"
                logger.error(
                    "Sync of %s gave up after %d attempt(s): %s", calendar.calendar_id, attempt, message
                )
                self._mark_error(calendar.calendar_id, message, error_type, retryable)
                return SyncOutcome(
                    success=False,
                    error=message,
                    error_type=error_type,
                    retryable=retryable,
                    attempts=attempt,
                )
            logger.info("Calendar %s synced with %d events", calendar.calendar_id, event_count)
            return SyncOutcome(success=True, event_count=event_count, attempts=attempt)

    def _run_once(self, calendar: Calendar) -> int:
        self._set_fields(calendar.calendar_id, {"sync.status": "syncing"})
        raw_text = self.fetcher.fetch(calendar.source.feed_address)
        if "BEGIN:VCALENDAR" not in str(raw_text or "").upper():
            raise ParseError("Response is not an iCalendar document")
        parsed = parse_feed(raw_text, calendar.calendar_id, self.config.default_timezone)
        window = retention_window(self.clock(), self.config.past_months, self.config.future_years)
        events = filter_events(parsed, window)
        finished_at = serialize_datetime(self.clock())
        self._set_fields(
            calendar.calendar_id,
            {
                "events": {event.event_id: event.to_dict() for event in events},
                "sync.status": "success",
                "sync.last_synced_at": finished_at,
                "sync.error_message": None,
                "sync.error_type": None,
                "sync.retryable": False,
                "updated_at": finished_at,
            },
        )
        return len(events)

    def _mark_error(self, calendar_id: str, message: str, error_type: str, retryable: bool) -> None:
        self._set_fields(
            calendar_id,
            {
                "sync.status": "error",
                "sync.error_message": message,
                "sync.error_type": error_type,
                "sync.retryable": retryable,
                "updated_at": serialize_datetime(self.clock()),
            },
        )

    def _set_fields(self, calendar_id: str, fields: dict[str, Any]) -> None:
        self.store.update_document(CALENDARS, calendar_id, fields)

    def recover_interrupted(self, calendar: Calendar) -> bool:
        if calendar.sync.status != "syncing":
            return False
        logger.warning("Calendar %s was left syncing, marking it as failed", calendar.calendar_id)
        self._mark_error(calendar.calendar_id, INTERRUPTED_MESSAGE, "network", True)
        return True
