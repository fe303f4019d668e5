from __future__ import annotations

import logging
import threading
from typing import Optional

from coursesync.config_manager import ConfigManager
from coursesync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._manual_requested = False

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="coursesync-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        self._thread = None

    def restart(self) -> None:
        """Re-read the interval right away instead of after the current wait."""
        self._wake_event.set()

    def trigger_manual(self) -> None:
        self._manual_requested = True
        self._wake_event.set()

    def _loop(self) -> None:
        # One sync at startup so the store is fresh without waiting a full interval.
        if self.config_manager.load().sync.auto_sync_enabled:
            self.sync_engine.sync_now(trigger="startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(60, int(config.sync.interval_minutes) * 60)
            woken = self._wake_event.wait(timeout=interval_seconds)
            self._wake_event.clear()
            if self._stop_event.is_set():
                break
            if woken and not self._manual_requested:
                continue
            if self._manual_requested:
                self._manual_requested = False
                self.sync_engine.sync_now(trigger="manual")
            elif config.sync.auto_sync_enabled:
                self.sync_engine.sync_now(trigger="scheduled")
            else:
                logger.debug("Auto sync disabled; interval elapsed without a run")
