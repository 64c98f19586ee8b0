from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo

from icalendar.parser import Contentline, Contentlines
from icalendar.prop import vDate, vDatetime

from feedsync.models import DEFAULT_TIMEZONE, EVENT_SOURCE, UNTITLED_EVENT, Event

logger = logging.getLogger(__name__)

EVENT_ID_PREFIX = "event-"

UTC_DATETIME_PATTERN = re.compile(r"^\d{8}T\d{6}Z$")
LOCAL_DATETIME_PATTERN = re.compile(r"^\d{8}T\d{6}$")
DATE_PATTERN = re.compile(r"^\d{8}$")

TEXT_PROPERTIES = {"SUMMARY": "title", "LOCATION": "location", "DESCRIPTION": "description"}


@dataclass
class _RawEvent:
    uid: str = ""
    title: str | None = None
    location: str | None = None
    description: str | None = None
    dtstart: str | None = None
    dtend: str | None = None
    start_is_date: bool = False


def make_event_id(uid: str) -> str:
    return f"{EVENT_ID_PREFIX}{uid}"


def split_content_line(line: str) -> tuple[str, dict[str, str], str] | None:
    """Split ``NAME;PARAM=x:value`` into its parts with the value unescaped.

    Returns None for lines icalendar cannot split, such as lines without a
    name or a value.
    """
    try:
        name, params, value = Contentline(line).parts()
    except ValueError:
        return None
    flat_params = {
        str(key).upper(): param if isinstance(param, str) else ",".join(str(item) for item in param)
        for key, param in params.items()
    }
    return str(name).upper(), flat_params, str(value)


def parse_ical_date(value: str, default_timezone: str = DEFAULT_TIMEZONE) -> datetime | None:
    """Parse one DTSTART/DTEND value into an aware datetime.

    Accepts UTC instants (``20250710T080000Z``), floating local instants
    (``20250710T080000``, read in ``default_timezone``) and all-day dates
    (``20250710``, start of day in ``default_timezone``). Anything else
    returns None.
    """
    text = str(value or "").strip()
    try:
        if UTC_DATETIME_PATTERN.match(text):
            return vDatetime.from_ical(text).astimezone(timezone.utc)
        if LOCAL_DATETIME_PATTERN.match(text):
            return vDatetime.from_ical(text).replace(tzinfo=ZoneInfo(default_timezone))
        if DATE_PATTERN.match(text):
            return datetime.combine(vDate.from_ical(text), time.min, tzinfo=ZoneInfo(default_timezone))
    except ValueError:
        return None
    return None


def _build_event(raw: _RawEvent, calendar_id: str, default_timezone: str) -> Event | None:
    if not raw.uid or not raw.dtstart or not raw.dtend:
        return None
    start_time = parse_ical_date(raw.dtstart, default_timezone)
    end_time = parse_ical_date(raw.dtend, default_timezone)
    if start_time is None or end_time is None:
        return None
    return Event(
        event_id=make_event_id(raw.uid),
        calendar_id=calendar_id,
        start_time=start_time,
        end_time=end_time,
        title=raw.title or UNTITLED_EVENT,
        description=raw.description or "",
        location=raw.location or "",
        is_all_day=raw.start_is_date or bool(DATE_PATTERN.match(raw.dtstart.strip())),
        source=EVENT_SOURCE,
    )


def _apply_property(raw: _RawEvent, name: str, params: dict[str, str], value: str) -> None:
    if name in TEXT_PROPERTIES:
        setattr(raw, TEXT_PROPERTIES[name], value)
    elif name == "DTSTART":
        raw.dtstart = value.strip()
        raw.start_is_date = params.get("VALUE", "").upper() == "DATE"
    elif name == "DTEND":
        raw.dtend = value.strip()
    elif name == "UID":
        raw.uid = value.strip()


def _content_lines(raw_text: str) -> list[str]:
    try:
        return [str(line) for line in Contentlines.from_ical(raw_text) if line]
    except ValueError:
        logger.debug("Content line unfolding failed, falling back to plain line split")
        return [line for line in raw_text.splitlines() if line]


def parse_feed(raw_text: str, calendar_id: str, default_timezone: str = DEFAULT_TIMEZONE) -> list[Event]:
    """Parse feed text into events. Malformed blocks are dropped, never raised."""
    if isinstance(raw_text, bytes):
        raw_text = raw_text.decode("utf-8", errors="replace")
    events: list[Event] = []
    current: _RawEvent | None = None
    nested_depth = 0
    blocks_found = 0
    dropped = 0

    for line in _content_lines(str(raw_text or "")):
        line = line.strip()
        upper = line.upper()
        if upper == "BEGIN:VEVENT":
            if current is not None:
                dropped += 1
            current = _RawEvent()
            nested_depth = 0
            blocks_found += 1
            continue
        if current is None:
            continue
        if upper == "END:VEVENT" and nested_depth == 0:
            event = _build_event(current, calendar_id, default_timezone)
            if event is None:
                dropped += 1
                logger.debug("Dropping VEVENT uid=%r in calendar %s", current.uid, calendar_id)
            else:
                events.append(event)
            current = None
            continue
        if upper.startswith("BEGIN:"):
            nested_depth += 1
            continue
        if upper.startswith("END:"):
            nested_depth = max(0, nested_depth - 1)
            continue
        if nested_depth:
            continue
        parts = split_content_line(line)
        if parts is None:
            continue
        _apply_property(current, *parts)

    if current is not None:
        dropped += 1
    logger.debug(
        "Parsed calendar %s: %d VEVENT blocks, %d events, %d dropped",
        calendar_id,
        blocks_found,
        len(events),
        dropped,
    )
    return events
