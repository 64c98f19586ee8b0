from __future__ import annotations

import logging
import re
import uuid
from typing import Any

from feedsync.document_store import DocumentStore
from feedsync.errors import CalendarNotFoundError
from feedsync.models import Calendar, CalendarSource, serialize_datetime, utc_now
from feedsync.sync_unit import CALENDARS

logger = logging.getLogger(__name__)

USERS = "users"
FEED_ADDRESS_PATTERN = re.compile(r"^(https?|webcals?)://\S+$", re.IGNORECASE)


def _ref_calendar_id(ref: dict[str, Any]) -> str:
    return str(ref.get("calendar_id") or ref.get("calendarId") or "").strip()


def _ref_feed_address(ref: dict[str, Any]) -> str:
    return str(ref.get("feed_address") or ref.get("calendarAddress") or "").strip()


def validate_calendar_data(name: str, feed_address: str) -> None:
    missing = [label for label, value in (("name", name), ("feed_address", feed_address)) if not str(value or "").strip()]
    if missing:
        raise ValueError(f"Missing required fields: {', '.join(missing)}")
    if not FEED_ADDRESS_PATTERN.match(str(feed_address).strip()):
        raise ValueError("Feed address must be a valid http(s) or webcal URL")


def user_calendar_refs(store: DocumentStore, user_id: str) -> list[dict[str, Any]]:
    if not user_id:
        return []
    user_doc = store.get_document(USERS, user_id) or {}
    refs = user_doc.get("calendars") or []
    return [ref for ref in refs if isinstance(ref, dict) and _ref_calendar_id(ref)]


def user_calendar_ids(store: DocumentStore, user_id: str) -> list[str]:
    return [_ref_calendar_id(ref) for ref in user_calendar_refs(store, user_id)]


def attach_calendar(
    store: DocumentStore,
    user_id: str,
    *,
    name: str,
    feed_address: str,
    color: str = "",
    description: str = "",
    provider: str = "",
) -> Calendar:
    validate_calendar_data(name, feed_address)
    feed_address = feed_address.strip()
    refs = user_calendar_refs(store, user_id)
    if any(_ref_feed_address(ref) == feed_address for ref in refs):
        raise ValueError("Calendar already exists in your account")

    now = utc_now()
    calendar = Calendar(
        calendar_id=str(uuid.uuid4()),
        name=name.strip(),
        color=color,
        description=description,
        source=CalendarSource(feed_address=feed_address, type="ical", provider=provider or "ical"),
        subscribing_users=[user_id],
        created_at=now,
        updated_at=now,
    )
    store.set_document(CALENDARS, calendar.calendar_id, calendar.to_dict())

    refs.append(
        {
            "calendar_id": calendar.calendar_id,
            "name": calendar.name,
            "feed_address": feed_address,
            "color": color,
            "description": description,
        }
    )
    if store.get_document(USERS, user_id) is None:
        store.set_document(USERS, user_id, {"user_id": user_id, "calendars": refs})
    else:
        store.update_document(USERS, user_id, {"calendars": refs})
    logger.info("Attached calendar %s (%s) for user %s", calendar.calendar_id, calendar.name, user_id)
    return calendar


def detach_calendar(store: DocumentStore, user_id: str, calendar_id: str) -> None:
    refs = user_calendar_refs(store, user_id)
    remaining = [ref for ref in refs if _ref_calendar_id(ref) != calendar_id]
    if len(remaining) == len(refs):
        raise CalendarNotFoundError(f"Calendar not found: {calendar_id}")
    store.update_document(USERS, user_id, {"calendars": remaining})

    document = store.get_document(CALENDARS, calendar_id)
    if document is None:
        return
    calendar = Calendar.from_dict(document)
    subscribers = [uid for uid in calendar.subscribing_users if uid != user_id]
    fields: dict[str, Any] = {
        "subscribing_users": subscribers,
        "updated_at": serialize_datetime(utc_now()),
    }
    if not subscribers:
        fields["is_active"] = False
        logger.info("Calendar %s has no subscribers left, deactivating", calendar_id)
    store.update_document(CALENDARS, calendar_id, fields)
