import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from feedsync.document_store import SqliteDocumentStore
from feedsync.errors import CalendarNotFoundError, NetworkError
from feedsync.models import Calendar, CalendarSource, SyncConfig, SyncState
from feedsync.sync_unit import CalendarSyncUnit, is_retryable_error

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

FEED = "\r\n".join(
    [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "BEGIN:VEVENT",
        "UID:allday-1",
        "SUMMARY:New Year",
        "DTSTART;VALUE=DATE:20250101",
        "DTEND;VALUE=DATE:20250102",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "UID:timed-1",
        "SUMMARY:Meeting",
        "LOCATION:Room 1",
        "DTSTART:20250102T150000Z",
        "DTEND:20250102T160000Z",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "UID:ancient-1",
        "SUMMARY:Long ago",
        "DTSTART:20200102T150000Z",
        "DTEND:20200102T160000Z",
        "END:VEVENT",
        "END:VCALENDAR",
        "",
    ]
)


class _FakeFetcher:
    def __init__(self, responses) -> None:
        self.responses = list(responses)
        self.calls = []

    def fetch(self, feed_address: str) -> str:
        self.calls.append(feed_address)
        response = self.responses[min(len(self.calls), len(self.responses)) - 1]
        if isinstance(response, Exception):
            raise response
        return response


class CalendarSyncUnitTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = SqliteDocumentStore(str(Path(self.temp_dir.name) / "state.db"))
        self.calendar = Calendar(
            calendar_id="cal-1",
            name="School",
            source=CalendarSource(feed_address="webcal://example.com/school.ics"),
        )
        self.store.set_document("calendars", "cal-1", self.calendar.to_dict())
        self.sleeps = []

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _unit(self, fetcher, **config) -> CalendarSyncUnit:
        return CalendarSyncUnit(
            self.store,
            fetcher,
            SyncConfig.from_dict(config),
            clock=lambda: NOW,
            sleep=self.sleeps.append,
        )

    def _stored(self) -> dict:
        return self.store.get_document("calendars", "cal-1")

    def test_end_to_end_sync_stores_events_in_window(self) -> None:
        fetcher = _FakeFetcher([FEED])
        outcome = self._unit(fetcher).sync(self.calendar)

        self.assertTrue(outcome.success)
        self.assertEqual(outcome.event_count, 2)
        self.assertEqual(fetcher.calls, ["webcal://example.com/school.ics"])
        stored = self._stored()
        self.assertEqual(set(stored["events"]), {"event-allday-1", "event-timed-1"})
        self.assertTrue(stored["events"]["event-allday-1"]["is_all_day"])
        self.assertEqual(stored["events"]["event-timed-1"]["start_time"], "2025-01-02T15:00:00+00:00")
        self.assertEqual(stored["events"]["event-timed-1"]["location"], "Room 1")
        self.assertEqual(stored["sync"]["status"], "success")
        self.assertEqual(stored["sync"]["last_synced_at"], NOW.isoformat())
        self.assertIsNone(stored["sync"]["error_message"])

    def test_status_is_syncing_before_fetch(self) -> None:
        seen_status = []

        class _ObservingFetcher:
            def fetch(inner_self, feed_address: str) -> str:
                seen_status.append(self._stored()["sync"]["status"])
                return FEED

        self._unit(_ObservingFetcher()).sync(self.calendar)
        self.assertEqual(seen_status, ["syncing"])

    def test_syncing_twice_yields_identical_events(self) -> None:
        unit = self._unit(_FakeFetcher([FEED]))
        unit.sync(self.calendar)
        first = self._stored()["events"]
        unit.sync(self.calendar)
        self.assertEqual(self._stored()["events"], first)

    def test_events_removed_at_source_are_dropped(self) -> None:
        smaller = FEED.replace("UID:timed-1", "UID:timed-2")
        unit = self._unit(_FakeFetcher([FEED, smaller]))
        unit.sync(self.calendar)
        unit.sync(self.calendar)
        self.assertEqual(set(self._stored()["events"]), {"event-allday-1", "event-timed-2"})

    def test_retry_then_give_up_on_timeouts(self) -> None:
        fetcher = _FakeFetcher([NetworkError("Request timeout after 30s")])
        outcome = self._unit(fetcher).sync(self.calendar)

        self.assertFalse(outcome.success)
        self.assertEqual(outcome.attempts, 3)
        self.assertEqual(len(fetcher.calls), 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])
        stored = self._stored()["sync"]
        self.assertEqual(stored["status"], "error")
        self.assertEqual(stored["error_type"], "network")
        self.assertTrue(stored["retryable"])
        self.assertEqual(stored["error_message"], "Request timeout after 30s")
        self.assertIsNone(stored["last_synced_at"])

    def test_retry_recovers_after_transient_failure(self) -> None:
        fetcher = _FakeFetcher([NetworkError("HTTP 503: Service Unavailable"), FEED])
        outcome = self._unit(fetcher).sync(self.calendar)
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.attempts, 2)
        self.assertEqual(self.sleeps, [1.0])
        self.assertEqual(self._stored()["sync"]["status"], "success")

    def test_non_network_failure_is_not_retried(self) -> None:
        fetcher = _FakeFetcher([ValueError("feed body is not a calendar")])
        outcome = self._unit(fetcher).sync(self.calendar)
        self.assertFalse(outcome.success)
        self.assertFalse(outcome.retryable)
        self.assertEqual(outcome.error_type, "parse")
        self.assertEqual(len(fetcher.calls), 1)
        self.assertEqual(self.sleeps, [])
        self.assertEqual(self._stored()["sync"]["error_type"], "parse")

    def test_non_calendar_body_is_parse_error(self) -> None:
        fetcher = _FakeFetcher(["<html><body>Network login required</body></html>"])
        outcome = self._unit(fetcher).sync(self.calendar)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error_type, "parse")
        self.assertEqual(outcome.error, "Response is not an iCalendar document")
        self.assertEqual(len(fetcher.calls), 1)

    def test_error_keeps_previous_events_and_timestamp(self) -> None:
        unit = self._unit(_FakeFetcher([FEED, NetworkError("network unreachable")]), max_retries=0)
        unit.sync(self.calendar)
        unit.sync(self.calendar)
        stored = self._stored()
        self.assertEqual(len(stored["events"]), 2)
        self.assertEqual(stored["sync"]["status"], "error")
        self.assertEqual(stored["sync"]["last_synced_at"], NOW.isoformat())

    def test_success_clears_previous_error(self) -> None:
        self.store.update_document(
            "calendars",
            "cal-1",
            {"sync.status": "error", "sync.error_message": "boom", "sync.error_type": "parse"},
        )
        self._unit(_FakeFetcher([FEED])).sync(self.calendar)
        stored = self._stored()["sync"]
        self.assertEqual(stored["status"], "success")
        self.assertIsNone(stored["error_message"])
        self.assertIsNone(stored["error_type"])
        self.assertFalse(stored["retryable"])

    def test_sync_by_id_unknown_calendar(self) -> None:
        with self.assertRaises(CalendarNotFoundError):
            self._unit(_FakeFetcher([FEED])).sync_by_id("missing")

    def test_recover_interrupted(self) -> None:
        unit = self._unit(_FakeFetcher([FEED]))
        stuck = Calendar(calendar_id="cal-1", sync=SyncState(status="syncing"))
        self.assertTrue(unit.recover_interrupted(stuck))
        self.assertFalse(unit.recover_interrupted(Calendar(calendar_id="cal-1")))
        stored = self._stored()["sync"]
        self.assertEqual(stored["status"], "error")
        self.assertTrue(stored["retryable"])


class RetryableErrorTests(unittest.TestCase):
    def test_classification(self) -> None:
        self.assertTrue(is_retryable_error(NetworkError("HTTP 404: Not Found")))
        self.assertTrue(is_retryable_error(RuntimeError("getaddrinfo ENOTFOUND example.com")))
        self.assertTrue(is_retryable_error(OSError("Connection refused")))
        self.assertTrue(is_retryable_error(TimeoutError("operation timed out")))
        self.assertFalse(is_retryable_error(ValueError("unexpected token")))
        self.assertFalse(is_retryable_error(KeyError("events")))


if __name__ == "__main__":
    unittest.main()
