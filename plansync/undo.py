from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from plansync.audit_ledger import AuditLedger
from plansync.cache_store import CacheStore, normalize_event_id
from plansync.errors import IncompleteAuditData, NothingToUndo, ValidationError
from plansync.models import Actor
from plansync.mutations import MutationCoordinator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UndoResult:
    operation: str
    timestamp: str
    result: Any

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "undone_operation": self.operation,
            "undone_timestamp": self.timestamp,
            "result": self.result,
        }


class UndoOrchestrator:
    """Reverts the most recent successful change to an event from its audit trail."""

    def __init__(
        self,
        ledger: AuditLedger,
        coordinator: MutationCoordinator,
        cache: CacheStore,
        run_in_background: Callable[[Callable[[], Any], str], Any] | None = None,
    ) -> None:
        self.ledger = ledger
        self.coordinator = coordinator
        self.cache = cache
        self._run_in_background = run_in_background or cache.run_in_background

    def undo(self, event_id: str, actor: Actor | None = None) -> UndoResult:
        uid = normalize_event_id(event_id)
        latest = self.ledger.get_latest_record(uid)
        if latest is not None and latest.operation == "CREATE":
            logger.info("Undoing CREATE of %s by deleting it", uid)
            result = self.coordinator.delete_event(uid, actor)
            self._refresh_later(latest.source_collection)
            return UndoResult(operation="CREATE", timestamp=str(latest.timestamp), result=result)

        previous = self.ledger.get_previous_state(uid)
        if previous is None:
            raise NothingToUndo(f"No previous state found for event {uid}. Cannot undo.")
        logger.info("Undoing %s of %s from %s", previous.operation, uid, previous.timestamp)
        state = previous.state

        if previous.operation == "DELETE":
            collection_id = state.get("collection")
            if not collection_id or not state.get("start") or not state.get("end"):
                raise IncompleteAuditData(f"Audit data for {uid} lacks collection, start or end; cannot restore")
            if state.get("all_day") is False:
                raise ValidationError(f"Event {uid} was not an all-day event and cannot be recreated")
            result = self.coordinator.create_all_day_event(
                collection_id=collection_id,
                summary=state.get("summary") or "",
                start=state["start"],
                end=state["end"],
                description=state.get("description") or "",
                location=state.get("location") or "",
                metadata=state.get("metadata"),
                actor=actor,
                uid=uid,
            )
            affected = [collection_id]
        elif previous.operation in ("UPDATE", "MOVE"):
            patch = {
                "summary": state.get("summary"),
                "description": state.get("description"),
                "location": state.get("location"),
                "start": state.get("start"),
                "end": state.get("end"),
                "metadata": state.get("metadata"),
                "collection_id": state.get("collection") or previous.source_collection,
            }
            result = self.coordinator.update_event(uid, patch, actor)
            affected = [previous.source_collection, previous.target_collection or ""]
        else:
            raise ValidationError(f"Cannot undo operation: {previous.operation}")

        self._refresh_later(*affected)
        return UndoResult(operation=previous.operation, timestamp=previous.timestamp, result=result)

    def _refresh_later(self, *collection_ids: str) -> None:
        targets = [item for item in dict.fromkeys(collection_ids) if item]

        def _run() -> None:
            for collection_id in targets:
                try:
                    self.cache.refresh_single(collection_id)
                except Exception as exc:
                    logger.error("Post-undo refresh of %s failed: %s", collection_id, exc)

        self._run_in_background(_run, "plansync-undo-refresh")
