from __future__ import annotations

import logging
from typing import Any

from plansync.audit_ledger import AuditLedger
from plansync.cache_store import CacheStore
from plansync.caldav_gateway import CalDAVGateway
from plansync.gateway import RemoteCalendarGateway
from plansync.locks import KeyedLocks
from plansync.models import AppConfig
from plansync.mutations import MutationCoordinator
from plansync.scheduler import RefreshScheduler
from plansync.undo import UndoOrchestrator

logger = logging.getLogger(__name__)


class PlanSyncService:
    """Wires gateway, cache, ledger, coordinator, undo and the refresh timer together."""

    def __init__(
        self,
        config: AppConfig,
        gateway: RemoteCalendarGateway | None = None,
        ledger: AuditLedger | None = None,
    ) -> None:
        self.config = config
        self.gateway = gateway or CalDAVGateway(config.caldav)
        self.cache = CacheStore(self.gateway, config.cache, config.calendars)
        self.ledger = ledger or AuditLedger(config.audit.db_path)
        self.coordinator = MutationCoordinator(self.gateway, self.cache, self.ledger, KeyedLocks())
        self.undo = UndoOrchestrator(self.ledger, self.coordinator, self.cache)
        self.scheduler = RefreshScheduler(self.cache, config.cache.refresh_interval_seconds)

    def initialize(self, start_timer: bool = True) -> None:
        self.ledger.initialize()
        try:
            self.cache.initialize()
        except Exception:
            # the timer keeps retrying, the API serves empty results meanwhile
            logger.exception("Initial calendar load failed")
        if start_timer:
            self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        self.cache.stop()
        self.ledger.close()
        logger.info("PlanSync service stopped")

    def refresh_in_background(self) -> None:
        self.cache.run_in_background(self._refresh_quietly, "plansync-post-mutation-refresh")

    def _refresh_quietly(self) -> None:
        try:
            self.cache.refresh_all()
        except Exception:
            logger.exception("Background refresh failed")

    def status(self) -> dict[str, Any]:
        return {
            "cache": self.cache.status(),
            "scheduler_running": self.scheduler.is_running,
            "ledger_ready": self.ledger.is_initialized,
        }
