from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Iterable

from feedsync.errors import CalendarBusyError, CalendarNotFoundError
from feedsync.models import Calendar, StalenessEntry, SyncBatchResult, SyncOutcome
from feedsync.staleness import detect_stale
from feedsync.sync_unit import CalendarSyncUnit, is_retryable_error

logger = logging.getLogger(__name__)


class AutoSyncOrchestrator:
    """Runs sync units for many calendars at once.

    At most one batch runs at a time, and a calendar id stays in the
    in-flight set for as long as its own sync runs, so no calendar is ever
    synced by two units concurrently.
    """

    def __init__(self, sync_unit: CalendarSyncUnit, max_workers: int = 0) -> None:
        self.sync_unit = sync_unit
        self.max_workers = max(0, int(max_workers))
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._batch_running = False

    @property
    def batch_in_flight(self) -> bool:
        with self._lock:
            return self._batch_running

    def in_flight(self) -> set[str]:
        with self._lock:
            return set(self._in_flight)

    def load_calendars(self, calendar_ids: Iterable[str]) -> list[Calendar]:
        calendars: list[Calendar] = []
        for calendar_id in calendar_ids:
            try:
                calendars.append(self.sync_unit.load_calendar(calendar_id))
            except CalendarNotFoundError:
                logger.warning("Skipping unknown calendar %s", calendar_id)
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable calendar %s: %s", calendar_id, exc)
        return calendars

    def stale_entries(self, calendar_ids: Iterable[str], now: datetime | None = None) -> list[StalenessEntry]:
        return detect_stale(
            self.load_calendars(calendar_ids),
            now or self.sync_unit.clock(),
            self.sync_unit.config.stale_after_hours,
        )

    def run_stale(self, calendar_ids: Iterable[str], trigger: str = "scheduled") -> SyncBatchResult:
        entries = self.stale_entries(calendar_ids)
        logger.info("%d stale calendar(s) found", len(entries))
        return self.run_batch(entries, trigger=trigger)

    def run_batch(self, entries: list[StalenessEntry], trigger: str = "scheduled") -> SyncBatchResult:
        return self._run([(entry.calendar_id, entry.name) for entry in entries], trigger)

    def sync_now(self, calendar_ids: Iterable[str], trigger: str = "manual") -> SyncBatchResult:
        return self._run([(calendar_id, "") for calendar_id in calendar_ids], trigger)

    def sync_one(self, calendar_id: str) -> SyncOutcome:
        with self._lock:
            if calendar_id in self._in_flight:
                raise CalendarBusyError(f"Calendar {calendar_id} is already syncing")
            self._in_flight.add(calendar_id)
        try:
            return self.sync_unit.sync_by_id(calendar_id)
        finally:
            self._release(calendar_id)

    def recover_interrupted(self, calendar_ids: Iterable[str]) -> int:
        in_flight = self.in_flight()
        recovered = 0
        for calendar in self.load_calendars(calendar_ids):
            if calendar.calendar_id in in_flight:
                continue
            if self.sync_unit.recover_interrupted(calendar):
                recovered += 1
        return recovered

    def _release(self, calendar_id: str) -> None:
        with self._lock:
            self._in_flight.discard(calendar_id)

    def _claim(self, targets: list[tuple[str, str]], result: SyncBatchResult) -> list[tuple[str, str]] | None:
        with self._lock:
            if self._batch_running:
                return None
            claimed: list[tuple[str, str]] = []
            seen: set[str] = set()
            for calendar_id, name in targets:
                if calendar_id in seen:
                    continue
                seen.add(calendar_id)
                if calendar_id in self._in_flight:
                    result.skipped.append(calendar_id)
                    continue
                self._in_flight.add(calendar_id)
                claimed.append((calendar_id, name))
            self._batch_running = True
            return claimed

    def _run(self, targets: list[tuple[str, str]], trigger: str) -> SyncBatchResult:
        result = SyncBatchResult(trigger=trigger)
        if not targets:
            return result
        claimed = self._claim(targets, result)
        if claimed is None:
            logger.info("Sync batch already running, ignoring %s trigger", trigger)
            return result

        try:
            if claimed:
                workers = min(self.max_workers or len(claimed), len(claimed))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="feedsync-sync") as pool:
                    futures = {
                        pool.submit(self._sync_claimed, calendar_id, name): calendar_id
                        for calendar_id, name in claimed
                    }
                    for future in as_completed(futures):
                        label, outcome = future.result()
                        if outcome.success:
                            result.success_count += 1
                        else:
                            result.error_count += 1
                            result.errors.append(f"{label}: {outcome.error}")
        finally:
            with self._lock:
                self._batch_running = False

        logger.info(
            "Sync batch (%s) finished: %d succeeded, %d failed, %d skipped",
            trigger,
            result.success_count,
            result.error_count,
            len(result.skipped),
        )
        return result

    def _sync_claimed(self, calendar_id: str, name: str) -> tuple[str, SyncOutcome]:
        label = name or calendar_id
        try:
            calendar = self.sync_unit.load_calendar(calendar_id)
            label = name or calendar.name or calendar_id
            return label, self.sync_unit.sync(calendar)
        except Exception as exc:
            logger.exception("Unexpected failure while syncing %s", calendar_id)
            retryable = is_retryable_error(exc)
            return label, SyncOutcome(
                success=False,
                error=str(exc) or type(exc).__name__,
                error_type="network" if retryable else "parse",
                retryable=retryable,
            )
        finally:
            self._release(calendar_id)
