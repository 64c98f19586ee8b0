from __future__ import annotations

import logging
import threading
from typing import Optional

from feedsync.calendar_service import user_calendar_ids
from feedsync.config_manager import ConfigManager
from feedsync.document_store import DocumentStore
from feedsync.models import SyncBatchResult
from feedsync.orchestrator import AutoSyncOrchestrator

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(
        self,
        orchestrator: AutoSyncOrchestrator,
        store: DocumentStore,
        config_manager: ConfigManager,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = store
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="feedsync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def recover(self) -> int:
        config = self.config_manager.load()
        recovered = self.orchestrator.recover_interrupted(user_calendar_ids(self.store, config.user_id))
        if recovered:
            logger.info("Recovered %d calendar(s) left in syncing state", recovered)
        return recovered

    def tick(self, trigger: str = "scheduled") -> SyncBatchResult:
        config = self.config_manager.load()
        calendar_ids = user_calendar_ids(self.store, config.user_id)
        return self.orchestrator.run_stale(calendar_ids, trigger=trigger)

    def _safe_tick(self, trigger: str) -> None:
        try:
            self.tick(trigger=trigger)
        except Exception:
            logger.exception("Scheduled staleness check failed")

    def _loop(self) -> None:
        try:
            self.recover()
        except Exception:
            logger.exception("Recovering interrupted syncs failed")
        self._safe_tick("startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(60, int(config.sync.check_interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self._safe_tick("manual" if manual else "scheduled")
