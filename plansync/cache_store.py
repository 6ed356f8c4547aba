from __future__ import annotations

import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Iterable

from dateutil.relativedelta import relativedelta

from plansync.gateway import RemoteCalendarGateway
from plansync.ical import parse_templates
from plansync.models import (
    CacheConfig,
    CacheEntry,
    CalendarsConfig,
    Collection,
    EventTemplate,
    Occurrence,
    collection_color,
    day_bounds,
    extract_firstname,
    normalize_collection_id,
    planning_window,
    serialize_datetime,
    utc_now,
)
from plansync.recurrence import expand_templates

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)
SEARCH_DEFAULT_YEARS = 5
LARGE_SEARCH_YEARS = 12


def normalize_event_id(value: str) -> str:
    """Reduce an object URL or ``<uid>.ics`` filename to the bare UID."""
    text = str(value or "").strip()
    if "/" in text:
        text = text.rstrip("/").rsplit("/", 1)[-1]
    if text.endswith(".ics"):
        text = text[: -len(".ics")]
    match = UUID_PATTERN.search(text)
    return match.group(0) if match else text


def order_collections(collections: Iterable[Collection], config: CalendarsConfig) -> list[Collection]:
    """Apply exclusions, configured order and colours to the raw collection list."""
    excluded = {item.casefold() for item in config.exclude}
    order = {normalize_collection_id(url): index for index, url in enumerate(config.order)}
    unranked = len(order)

    prepared: list[Collection] = []
    for raw in collections:
        display_name = extract_firstname(raw.name) or raw.collection_id
        keys = {raw.collection_id.casefold(), raw.name.casefold(), display_name.casefold()}
        if keys & excluded:
            continue
        color = (
            config.color_overrides.get(display_name)
            or config.color_overrides.get(raw.collection_id)
            or collection_color(display_name)
        )
        prepared.append(
            Collection(
                collection_id=raw.collection_id,
                name=raw.name,
                display_name=display_name,
                rank=order.get(normalize_collection_id(raw.collection_id), unranked),
                color=color,
                description=raw.description,
            )
        )
    prepared.sort(key=lambda item: (item.rank, item.display_name.casefold()))
    return prepared


@dataclass
class EventQueryResult:
    collections: list[Collection] = field(default_factory=list)
    events: list[Occurrence] = field(default_factory=list)
    last_updated: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "collections": [item.to_dict() for item in self.collections],
            "events": [item.to_dict() for item in self.events],
            "last_updated": self.last_updated,
        }


def _event_matches(event: Occurrence, needle: str) -> bool:
    fields: list[Any] = [event.summary, event.description, event.location]
    fields.extend((event.metadata or {}).values())
    return any(value is not None and needle in str(value).casefold() for value in fields)


def _sort_key(event: Occurrence) -> tuple[datetime, str]:
    start, _ = event.interval()
    return start, event.uid


class CacheStore:
    """Per-collection snapshots of expanded events, replaced whole on refresh."""

    def __init__(
        self,
        gateway: RemoteCalendarGateway,
        cache_config: CacheConfig | None = None,
        calendars_config: CalendarsConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.gateway = gateway
        self.cache_config = cache_config or CacheConfig()
        self.calendars_config = calendars_config or CalendarsConfig()
        self._clock = clock
        self._lock = threading.RLock()
        self._refresh_guard = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}
        self._collections: dict[str, Collection] = {}
        self._revalidating: set[str] = set()
        self._generations: dict[str, int] = {}
        self.is_initialized = False

    def initialize(self) -> None:
        if self.is_initialized:
            return
        self._reload_collections()
        self.refresh_all()
        self.is_initialized = True
        logger.info("Calendar cache initialized with %d collections", len(self._collections))

    def stop(self) -> None:
        self.is_initialized = False

    @property
    def refresh_in_progress(self) -> bool:
        return self._refresh_guard.locked()

    def _reload_collections(self) -> list[Collection]:
        ordered = order_collections(self.gateway.list_collections(), self.calendars_config)
        with self._lock:
            self._collections = {item.collection_id: item for item in ordered}
            for stale_id in set(self._entries) - set(self._collections):
                del self._entries[stale_id]
        return ordered

    def list_collections(self) -> list[Collection]:
        with self._lock:
            return list(self._collections.values())

    def resolve_collection_id(self, collection_id: str) -> str | None:
        with self._lock:
            if collection_id in self._collections:
                return collection_id
            wanted = normalize_collection_id(collection_id)
            if not wanted:
                return None
            for known in self._collections:
                normalized = normalize_collection_id(known)
                if normalized == wanted or normalized.endswith(wanted) or wanted.endswith(normalized):
                    return known
        return None

    def get_collection(self, collection_id: str) -> Collection | None:
        resolved = self.resolve_collection_id(collection_id)
        if resolved is None:
            return None
        with self._lock:
            return self._collections.get(resolved)

    def refresh_collection(self, collection: Collection) -> CacheEntry:
        with self._lock:
            generation = self._generations.get(collection.collection_id, 0)
        window_start, window_end = planning_window(
            self._clock(), self.cache_config.lookback_months, self.cache_config.lookahead_months
        )
        objects = self.gateway.fetch_objects(collection.collection_id, window_start, window_end)
        templates: list[EventTemplate] = []
        for obj in objects:
            try:
                templates.extend(parse_templates(obj.data, collection.collection_id, obj.href, obj.etag))
            except Exception:
                logger.exception("[%s] Skipping unparsable object %s", collection.display_name, obj.href)
        events = expand_templates(
            templates, collection, window_start, window_end, max_iterations=self.cache_config.max_iterations
        )
        events.sort(key=_sort_key)
        entry = CacheEntry(collection=collection, events=tuple(events), last_refreshed=self._clock())
        with self._lock:
            if self._generations.get(collection.collection_id, 0) != generation:
                # an invalidation landed while fetching; this snapshot may predate the mutation
                logger.debug("Discarding superseded refresh of %s", collection.collection_id)
                return entry
            self._entries[collection.collection_id] = entry
        logger.info(
            "[%s] Cache updated with %d events from %d objects",
            collection.display_name or collection.collection_id,
            len(events),
            len(objects),
        )
        return entry

    def refresh_all(self) -> bool:
        """Refresh every collection concurrently; returns False when a refresh was already running."""
        if not self._refresh_guard.acquire(blocking=False):
            logger.info("Refresh already in progress, skipping")
            return False
        started = time.monotonic()
        try:
            try:
                collections = self._reload_collections()
            except Exception:
                logger.exception("Error listing collections for refresh")
                return False
            if not collections:
                return True
            workers = min(self.cache_config.refresh_workers, len(collections))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="plansync-refresh") as pool:
                futures = {pool.submit(self.refresh_collection, item): item for item in collections}
                for future in as_completed(futures):
                    error = future.exception()
                    if error is not None:
                        collection = futures[future]
                        logger.error(
                            "Failed to refresh collection %s: %s", collection.display_name or collection.collection_id, error
                        )
            logger.info("Calendar refresh completed in %.2fs", time.monotonic() - started)
            return True
        finally:
            self._refresh_guard.release()

    def refresh_single(self, collection_id: str) -> bool:
        collection = self.get_collection(collection_id)
        if collection is None:
            return False
        self.refresh_collection(collection)
        return True

    def get(self, collection_id: str) -> CacheEntry | None:
        resolved = self.resolve_collection_id(collection_id) or collection_id
        with self._lock:
            entry = self._entries.get(resolved)
        if entry is not None and entry.is_expired(self.cache_config.ttl_seconds, self._clock()):
            self._revalidate(resolved)
        return entry

    def invalidate(self, collection_id: str) -> None:
        resolved = self.resolve_collection_id(collection_id) or collection_id
        with self._lock:
            removed = self._entries.pop(resolved, None)
            self._generations[resolved] = self._generations.get(resolved, 0) + 1
        if removed is not None:
            logger.debug("Invalidated cache entry for %s", resolved)

    def run_in_background(self, target: Callable[[], Any], name: str) -> threading.Thread:
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        return thread

    def _revalidate(self, collection_id: str) -> None:
        with self._lock:
            collection = self._collections.get(collection_id)
            if collection is None or collection_id in self._revalidating or self.refresh_in_progress:
                return
            self._revalidating.add(collection_id)

        def _run() -> None:
            try:
                self.refresh_collection(collection)
            except Exception as exc:
                logger.warning("Background revalidation of %s failed: %s", collection_id, exc)
            finally:
                with self._lock:
                    self._revalidating.discard(collection_id)

        self.run_in_background(_run, name=f"plansync-revalidate-{collection.display_name}")

    def _ensure_loaded(self, collection_ids: Iterable[str], strict: bool) -> dict[str, CacheEntry]:
        loaded: dict[str, CacheEntry] = {}
        for collection_id in collection_ids:
            with self._lock:
                collection = self._collections.get(collection_id)
                present = collection_id in self._entries
            if collection is None or present:
                continue
            try:
                loaded[collection_id] = self.refresh_collection(collection)
            except Exception:
                if strict:
                    raise
                logger.exception("Read-through load of %s failed", collection_id)
        return loaded

    def query_events(
        self,
        collection_ids: Iterable[str] | None,
        start: str | date | datetime,
        end: str | date | datetime,
    ) -> EventQueryResult:
        range_start, range_end = day_bounds(start, end)
        requested = list(collection_ids or [])
        if requested:
            resolved = [self.resolve_collection_id(item) for item in requested]
            target_ids = list(dict.fromkeys(item for item in resolved if item is not None))
        else:
            target_ids = [item.collection_id for item in self.list_collections()]
        loaded = self._ensure_loaded(target_ids, strict=False)

        result = EventQueryResult(last_updated=serialize_datetime(self._clock()))
        for collection_id in target_ids:
            entry = self.get(collection_id) or loaded.get(collection_id)
            if entry is None:
                logger.debug("No cache entry for %s", collection_id)
                continue
            result.collections.append(entry.collection)
            for event in entry.events:
                event_start, event_end = event.interval()
                # covers inside, spanning, and both partial overlaps
                if event_start <= range_end and event_end >= range_start:
                    result.events.append(event)
        return result

    def search_events(
        self,
        term: str,
        start: str | date | datetime | None = None,
        end: str | date | datetime | None = None,
    ) -> EventQueryResult:
        """Case-insensitive substring search over summary, description, location and metadata values.

        Missing bounds default to five years either side of today.
        """
        needle = str(term or "").strip().casefold()
        if not needle:
            raise ValueError("search term is required")
        today = self._clock().date()
        if start is None:
            start = today - relativedelta(years=SEARCH_DEFAULT_YEARS)
        if end is None:
            end = today + relativedelta(years=SEARCH_DEFAULT_YEARS)
        range_start, range_end = day_bounds(start, end)
        span_years = (range_end - range_start).days / 365.25
        if span_years > LARGE_SEARCH_YEARS:
            logger.warning("Large search range requested: %.1f years", span_years)

        found = self.query_events(None, range_start, range_end)
        found.events = [event for event in found.events if _event_matches(event, needle)]
        return found

    def find_event(self, event_id: str) -> Occurrence | None:
        uid = normalize_event_id(event_id)
        if not uid:
            return None
        loaded = self._ensure_loaded([item.collection_id for item in self.list_collections()], strict=True)
        with self._lock:
            entries = {**loaded, **self._entries}
        for entry in entries.values():
            for event in entry.events:
                if event.uid == uid or normalize_event_id(event.uid) == uid:
                    return event
        return None

    def status(self) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            entries = {
                collection_id: {
                    "events": len(entry.events),
                    "last_refreshed": serialize_datetime(entry.last_refreshed),
                    "age_seconds": round(entry.age_seconds(now), 1),
                    "expired": entry.is_expired(self.cache_config.ttl_seconds, now),
                }
                for collection_id, entry in self._entries.items()
            }
            collection_count = len(self._collections)
        return {
            "is_initialized": self.is_initialized,
            "refresh_in_progress": self.refresh_in_progress,
            "collection_count": collection_count,
            "entries": entries,
        }
