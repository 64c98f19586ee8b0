from __future__ import annotations

from datetime import datetime
from typing import Iterable

from feedsync.models import Calendar, StalenessEntry, parse_iso_datetime

STALE_AFTER_HOURS = 24


def hours_since(moment: datetime, now: datetime) -> float:
    return (parse_iso_datetime(now) - parse_iso_datetime(moment)).total_seconds() / 3600.0


def detect_stale(
    calendars: Iterable[Calendar],
    now: datetime,
    threshold_hours: float = STALE_AFTER_HOURS,
) -> list[StalenessEntry]:
    """Return calendars whose last sync is at least ``threshold_hours`` old, most overdue first.

    Calendars that never synced are left out; they are synced once when attached.
    """
    entries: list[StalenessEntry] = []
    for calendar in calendars:
        if not calendar.is_active:
            continue
        last_synced_at = calendar.sync.last_synced_at
        if last_synced_at is None:
            continue
        age = hours_since(last_synced_at, now)
        if age < threshold_hours:
            continue
        entries.append(
            StalenessEntry(
                calendar_id=calendar.calendar_id,
                name=calendar.name,
                last_synced_at=last_synced_at,
                hours_since_last_sync=age,
            )
        )
    entries.sort(key=lambda entry: entry.hours_since_last_sync, reverse=True)
    return entries
