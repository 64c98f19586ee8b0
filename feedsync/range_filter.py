from __future__ import annotations

from datetime import datetime, time
from typing import Iterable

from dateutil.relativedelta import relativedelta

from feedsync.models import Event, parse_iso_datetime


def retention_window(now: datetime, past_months: int = 6, future_years: int = 1) -> tuple[datetime, datetime]:
    now = parse_iso_datetime(now)
    start_day = (now - relativedelta(months=past_months)).date()
    end_day = (now + relativedelta(years=future_years)).date()
    start = datetime.combine(start_day, time.min, tzinfo=now.tzinfo)
    end = datetime.combine(end_day, time.max, tzinfo=now.tzinfo)
    return start, end


def in_window(event: Event, window: tuple[datetime, datetime]) -> bool:
    window_start, window_end = window
    return event.end_time >= window_start and event.start_time <= window_end


def filter_events(events: Iterable[Event], window: tuple[datetime, datetime]) -> list[Event]:
    return [event for event in events if in_window(event, window)]
