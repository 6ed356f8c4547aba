from __future__ import annotations

import logging
import threading
from typing import Optional

from plansync.cache_store import CacheStore

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """Daemon timer that refreshes every collection; ticks are dropped while a refresh runs."""

    def __init__(self, cache: CacheStore, interval_seconds: int = 180) -> None:
        self.cache = cache
        self.interval_seconds = max(1, int(interval_seconds))
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="plansync-refresh-scheduler", daemon=True)
        self._thread.start()
        logger.info("Refresh timer started (every %ds)", self.interval_seconds)

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        self._thread = None

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            manual = self._manual_trigger_event.wait(timeout=self.interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.tick(trigger="manual" if manual else "scheduled")

    def tick(self, trigger: str = "scheduled") -> bool:
        if self.cache.refresh_in_progress:
            logger.info("Skipping %s refresh, previous cycle still running", trigger)
            return False
        try:
            return self.cache.refresh_all()
        except Exception:
            logger.exception("%s refresh failed", trigger.capitalize())
            return False
