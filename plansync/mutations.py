from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from typing import Any, Callable, Iterable

from plansync import metadata_codec
from plansync.audit_ledger import AuditLedger
from plansync.cache_store import CacheStore, normalize_event_id
from plansync.errors import (
    AuditWriteFailure,
    CacheInvalidationFailure,
    NotFound,
    PartialFailure,
    RemoteUnavailable,
    ValidationError,
)
from plansync.gateway import RemoteCalendarGateway
from plansync.ical import build_ical
from plansync.locks import KeyedLocks
from plansync.models import (
    Actor,
    AuditRecord,
    Occurrence,
    RemoteObject,
    inclusive_to_exclusive_end,
    is_date_only,
    normalize_collection_id,
    parse_date_only,
    parse_iso_datetime,
    serialize_moment,
)

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"summary", "description", "location", "start", "end", "metadata", "collection_id"}


def _new_uid() -> str:
    return str(uuid.uuid4())


def event_state(
    *,
    uid: str,
    collection_id: str,
    start: date | datetime,
    end: date | datetime,
    summary: str = "",
    description: str = "",
    location: str = "",
    all_day: bool = True,
    metadata: dict[str, Any] | None = None,
    rrule: str | None = None,
) -> dict[str, Any]:
    """Snapshot used for audit before/after states and mutation results.

    All-day ``end`` is the inclusive date, so a snapshot can be replayed
    through ``create_all_day_event`` unchanged.
    """
    state: dict[str, Any] = {
        "uid": uid,
        "summary": summary,
        "description": description,
        "location": location,
        "start": serialize_moment(start),
        "end": serialize_moment(end),
        "all_day": all_day,
        "collection": collection_id,
        "metadata": metadata,
    }
    if rrule:
        state["rrule"] = rrule
    return state


def occurrence_state(event: Occurrence) -> dict[str, Any]:
    return event_state(
        uid=event.uid,
        collection_id=event.collection_id,
        start=event.start,
        end=event.end,
        summary=event.summary,
        description=event.description,
        location=event.location,
        all_day=event.all_day,
        metadata=event.metadata,
        rrule=event.rrule,
    )


def _parse_day(value: Any, field_name: str) -> date:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if not is_date_only(value):
        raise ValidationError(f"{field_name} must be in YYYY-MM-DD format for all-day events")
    try:
        return parse_date_only(value)
    except ValueError as exc:
        raise ValidationError(f"{field_name} is not a valid date: {value}") from exc


def _parse_timed(value: Any, field_name: str) -> datetime:
    if isinstance(value, datetime):
        return parse_iso_datetime(value)
    try:
        parsed = parse_iso_datetime(str(value))
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be an ISO-8601 date-time: {value}") from exc
    if parsed is None:
        raise ValidationError(f"{field_name} is required")
    return parsed


def _validate_metadata(value: Any) -> dict[str, Any] | None:
    if value is None or isinstance(value, dict):
        return value
    raise ValidationError("metadata must be an object")


class MutationCoordinator:
    """Every write to the remote store goes through here, one at a time per event id."""

    def __init__(
        self,
        gateway: RemoteCalendarGateway,
        cache: CacheStore,
        ledger: AuditLedger,
        locks: KeyedLocks | None = None,
        uid_factory: Callable[[], str] = _new_uid,
    ) -> None:
        self.gateway = gateway
        self.cache = cache
        self.ledger = ledger
        self.locks = locks or KeyedLocks()
        self._uid_factory = uid_factory

    # reads

    def get_event(self, event_id: str) -> dict[str, Any] | None:
        event = self.cache.find_event(event_id)
        return event.to_dict() if event is not None else None

    def get_events(
        self,
        collection_ids: Iterable[str] | None,
        start: str | date | datetime,
        end: str | date | datetime,
    ) -> dict[str, Any]:
        try:
            result = self.cache.query_events(collection_ids, start, end)
        except ValueError as exc:
            raise ValidationError(f"Invalid date range: {exc}") from exc
        return result.to_dict()

    # best-effort side effects

    def _record(self, record: AuditRecord) -> None:
        try:
            if self.ledger.append(record) is None:
                raise AuditWriteFailure(f"{record.operation} record for {record.event_id} was not stored")
        except Exception as exc:
            logger.error("Audit logging failed (non-critical): %s", exc)

    def _invalidate(self, *collection_ids: str) -> None:
        for collection_id in collection_ids:
            try:
                self.cache.invalidate(collection_id)
            except Exception as exc:
                failure = CacheInvalidationFailure(f"Cache invalidation for {collection_id} failed: {exc}")
                logger.error("%s (non-critical)", failure)

    def _load(self, uid: str) -> Occurrence:
        event = self.cache.find_event(uid)
        if event is None:
            raise NotFound(f"Event {uid} not found")
        return event

    def _resolve_collection(self, collection_id: str) -> str:
        resolved = self.cache.resolve_collection_id(collection_id)
        if resolved is None:
            raise NotFound(f"Calendar not found: {collection_id}")
        return resolved

    # create

    def create_all_day_event(
        self,
        *,
        collection_id: str,
        summary: str,
        start: str | date,
        end: str | date,
        description: str = "",
        location: str = "",
        metadata: dict[str, Any] | None = None,
        actor: Actor | None = None,
        uid: str | None = None,
    ) -> dict[str, Any]:
        missing = [
            name
            for name, value in (("collection_id", collection_id), ("summary", summary), ("start", start), ("end", end))
            if not value or (isinstance(value, str) and not value.strip())
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        start_day = _parse_day(start, "start")
        end_day = _parse_day(end, "end")
        if end_day < start_day:
            raise ValidationError("End date cannot be before start date")
        metadata = _validate_metadata(metadata)
        target_id = self._resolve_collection(collection_id)

        event_uid = uid or self._uid_factory()
        with self.locks.hold(event_uid):
            raw_description = metadata_codec.encode(description, metadata)
            data = build_ical(
                uid=event_uid,
                start=start_day,
                end=inclusive_to_exclusive_end(end_day),
                summary=summary,
                description=raw_description,
                location=location,
                all_day=True,
            )
            try:
                self.gateway.create_object(target_id, data, f"{event_uid}.ics")
            except Exception as exc:
                logger.error("Failed to create event %s in %s: %s", event_uid, target_id, exc)
                self._record(
                    AuditRecord.for_actor(
                        actor,
                        event_id=event_uid,
                        operation="CREATE",
                        source_collection=target_id,
                        status="FAILED",
                        error_message=str(exc),
                    )
                )
                raise

            self._invalidate(target_id)
            state = event_state(
                uid=event_uid,
                collection_id=target_id,
                start=start_day,
                end=end_day,
                summary=summary,
                description=metadata_codec.decode(raw_description).text,
                location=location,
                all_day=True,
                metadata=metadata or None,
            )
            self._record(
                AuditRecord.for_actor(
                    actor, event_id=event_uid, operation="CREATE", source_collection=target_id, after_state=state
                )
            )
            logger.info("Created event %s in %s", event_uid, target_id)
            return {**state, "description_raw": raw_description}

    # update

    def update_event(self, event_id: str, patch: dict[str, Any], actor: Actor | None = None) -> dict[str, Any]:
        if not isinstance(patch, dict):
            raise ValidationError("Update payload must be an object")
        unknown = sorted(set(patch) - UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unsupported fields: {', '.join(unknown)}")
        uid = normalize_event_id(event_id)
        if not uid:
            raise ValidationError("Event UID is required")

        with self.locks.hold(uid):
            current = self._load(uid)
            remaining = dict(patch)
            target = remaining.pop("collection_id", None)
            if target:
                target_id = self._resolve_collection(str(target))
                if normalize_collection_id(target_id) != normalize_collection_id(current.collection_id):
                    moved = self._move_locked(current, target_id, actor)
                    if not remaining:
                        return moved
                    current = self._load(uid)
            return self._update_locked(current, remaining, actor)

    def _update_locked(self, current: Occurrence, patch: dict[str, Any], actor: Actor | None) -> dict[str, Any]:
        before = occurrence_state(current)

        text = current.description
        metadata = current.metadata
        if patch.get("description") is not None:
            decoded = metadata_codec.decode(str(patch["description"]))
            text = decoded.text
            if "metadata" not in patch and decoded.metadata is not None:
                metadata = decoded.metadata
        if "metadata" in patch:
            metadata = _validate_metadata(patch["metadata"])

        if current.all_day:
            start = _parse_day(patch["start"], "start") if patch.get("start") else current.start
            end = _parse_day(patch["end"], "end") if patch.get("end") else current.end
            if end < start:
                raise ValidationError("End date cannot be before start date")
            stored_end: date | datetime = inclusive_to_exclusive_end(end)
        else:
            start = _parse_timed(patch["start"], "start") if patch.get("start") else current.start
            end = _parse_timed(patch["end"], "end") if patch.get("end") else current.end
            if end < start:
                raise ValidationError("End cannot be before start")
            stored_end = end

        summary = str(patch["summary"]) if patch.get("summary") is not None else current.summary
        location = str(patch["location"]) if patch.get("location") is not None else current.location
        raw_description = metadata_codec.encode(text, metadata)
        data = build_ical(
            uid=current.uid,
            start=start,
            end=stored_end,
            summary=summary,
            description=raw_description,
            location=location,
            all_day=current.all_day,
            rrule=current.rrule,
        )
        remote = RemoteObject(href=current.href or f"{current.uid}.ics", etag=current.etag)
        try:
            self.gateway.update_object(remote, data, if_match=current.etag or None)
        except Exception as exc:
            logger.error("Failed to update event %s: %s", current.uid, exc)
            self._record(
                AuditRecord.for_actor(
                    actor,
                    event_id=current.uid,
                    operation="UPDATE",
                    source_collection=current.collection_id,
                    before_state=before,
                    status="FAILED",
                    error_message=str(exc),
                )
            )
            raise

        self._invalidate(current.collection_id)
        after = event_state(
            uid=current.uid,
            collection_id=current.collection_id,
            start=start,
            end=end,
            summary=summary,
            description=metadata_codec.decode(raw_description).text,
            location=location,
            all_day=current.all_day,
            metadata=metadata or None,
            rrule=current.rrule,
        )
        self._record(
            AuditRecord.for_actor(
                actor,
                event_id=current.uid,
                operation="UPDATE",
                source_collection=current.collection_id,
                before_state=before,
                after_state=after,
            )
        )
        logger.info("Updated event %s in %s", current.uid, current.collection_id)
        return {**after, "description_raw": raw_description}

    # delete

    def delete_event(self, event_id: str, actor: Actor | None = None) -> bool:
        uid = normalize_event_id(event_id)
        if not uid:
            raise ValidationError("Event UID is required")
        with self.locks.hold(uid):
            current = self._load(uid)
            before = occurrence_state(current)
            remote = RemoteObject(href=current.href or f"{current.uid}.ics", etag=current.etag)
            try:
                self.gateway.delete_object(remote, version=current.etag or None)
            except Exception as exc:
                logger.error("Failed to delete event %s: %s", uid, exc)
                self._record(
                    AuditRecord.for_actor(
                        actor,
                        event_id=uid,
                        operation="DELETE",
                        source_collection=current.collection_id,
                        before_state=before,
                        status="FAILED",
                        error_message=str(exc),
                    )
                )
                raise
            self._invalidate(current.collection_id)
            self._record(
                AuditRecord.for_actor(
                    actor, event_id=uid, operation="DELETE", source_collection=current.collection_id, before_state=before
                )
            )
            logger.info("Deleted event %s from %s", uid, current.collection_id)
            return True

    # move

    def move_event(self, event_id: str, target_collection_id: str, actor: Actor | None = None) -> dict[str, Any]:
        uid = normalize_event_id(event_id)
        if not uid:
            raise ValidationError("Event UID is required")
        if not target_collection_id:
            raise ValidationError("Missing required fields: target_collection_id")
        with self.locks.hold(uid):
            current = self._load(uid)
            target_id = self._resolve_collection(target_collection_id)
            return self._move_locked(current, target_id, actor)

    def _move_locked(self, current: Occurrence, target_id: str, actor: Actor | None) -> dict[str, Any]:
        source_id = current.collection_id
        before = occurrence_state(current)
        if normalize_collection_id(source_id) == normalize_collection_id(target_id):
            return before
        after = {**before, "collection": target_id}

        def failed(message: str, status: str = "FAILED") -> None:
            self._record(
                AuditRecord.for_actor(
                    actor,
                    event_id=current.uid,
                    operation="MOVE",
                    source_collection=source_id,
                    target_collection=target_id,
                    before_state=before,
                    after_state=after if status == "PARTIAL" else None,
                    status=status,
                    error_message=message,
                )
            )

        try:
            source_obj = self.gateway.get_object(source_id, current.href or f"{current.uid}.ics")
            created = self.gateway.create_object(target_id, source_obj.data, f"{current.uid}.ics")
        except Exception as exc:
            logger.error("Move of %s to %s aborted before any change: %s", current.uid, target_id, exc)
            failed(str(exc))
            raise

        try:
            self.gateway.delete_object(source_obj, version=source_obj.etag or None)
        except Exception as delete_error:
            try:
                self.gateway.delete_object(created, version=created.etag or None)
            except Exception as rollback_error:
                message = (
                    f"Event {current.uid} now exists in both {source_id} and {target_id}: "
                    f"removing the source failed ({delete_error}) and rolling back the target copy "
                    f"failed ({rollback_error}). Manual cleanup required."
                )
                logger.critical(message)
                self._invalidate(source_id, target_id)
                failed(message, status="PARTIAL")
                raise PartialFailure(message, source_collection=source_id, target_collection=target_id) from delete_error

            message = f"Move of {current.uid} failed and was rolled back: {delete_error}"
            logger.error(message)
            self._invalidate(target_id)
            failed(message)
            raise RemoteUnavailable(message) from delete_error

        self._invalidate(source_id, target_id)
        self._record(
            AuditRecord.for_actor(
                actor,
                event_id=current.uid,
                operation="MOVE",
                source_collection=source_id,
                target_collection=target_id,
                before_state=before,
                after_state=after,
            )
        )
        logger.info("Moved event %s from %s to %s", current.uid, source_id, target_id)
        return after
