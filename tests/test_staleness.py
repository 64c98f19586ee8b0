import unittest
from datetime import datetime, timedelta, timezone

from feedsync.models import Calendar, SyncState
from feedsync.staleness import detect_stale


class DetectStaleTests(unittest.TestCase):
    def setUp(self) -> None:
        self.now = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

    def _calendar(self, calendar_id: str, hours_ago: float | None, **kwargs) -> Calendar:
        last_synced_at = None if hours_ago is None else self.now - timedelta(hours=hours_ago)
        return Calendar(
            calendar_id=calendar_id,
            name=calendar_id.title(),
            sync=SyncState(status="success", last_synced_at=last_synced_at),
            **kwargs,
        )

    def test_only_overdue_calendars_most_overdue_first(self) -> None:
        calendars = [
            self._calendar("fresh", 10),
            self._calendar("stale", 30),
            self._calendar("oldest", 50),
        ]
        entries = detect_stale(calendars, self.now)
        self.assertEqual([entry.calendar_id for entry in entries], ["oldest", "stale"])
        self.assertAlmostEqual(entries[0].hours_since_last_sync, 50.0)
        self.assertAlmostEqual(entries[1].hours_since_last_sync, 30.0)
        self.assertEqual(entries[0].name, "Oldest")

    def test_never_synced_and_inactive_calendars_are_skipped(self) -> None:
        calendars = [
            self._calendar("never", None),
            self._calendar("inactive", 100, is_active=False),
        ]
        self.assertEqual(detect_stale(calendars, self.now), [])

    def test_threshold_is_inclusive(self) -> None:
        entries = detect_stale([self._calendar("edge", 24)], self.now)
        self.assertEqual([entry.calendar_id for entry in entries], ["edge"])

    def test_custom_threshold(self) -> None:
        entries = detect_stale([self._calendar("a", 3), self._calendar("b", 1)], self.now, threshold_hours=2)
        self.assertEqual([entry.calendar_id for entry in entries], ["a"])

    def test_errored_calendar_stays_eligible(self) -> None:
        calendar = self._calendar("failing", 48)
        calendar.sync.status = "error"
        calendar.sync.error_message = "HTTP 500: Server Error"
        self.assertEqual(len(detect_stale([calendar], self.now)), 1)


if __name__ == "__main__":
    unittest.main()
