import unittest
from datetime import date, datetime, timedelta, timezone
from unittest import mock

from fake_gateway import CAL_A, CAL_B, FakeGateway

from plansync import metadata_codec
from plansync.cache_store import CacheStore, normalize_event_id, order_collections
from plansync.errors import RemoteUnavailable
from plansync.models import CacheConfig, CalendarsConfig, Collection


class MutableClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class CacheStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = MutableClock(datetime(2025, 10, 1, 12, 0, tzinfo=timezone.utc))
        self.gateway = FakeGateway()
        self.gateway.add_collection(CAL_A, "Travel (Jane Doe)")
        self.gateway.add_collection(CAL_B, "Travel (Omar Diaz)")
        self.gateway.add_event(CAL_A, "trip-1", date(2025, 10, 20), date(2025, 10, 25), summary="Trip")
        self.gateway.add_event(CAL_B, "visit-1", date(2025, 11, 3), date(2025, 11, 4), summary="Visit")
        self.cache = CacheStore(self.gateway, CacheConfig(ttl_seconds=300), CalendarsConfig(), clock=self.clock)
        self.cache.initialize()

    def _query_uids(self, start: str, end: str) -> list[str]:
        return [event.uid for event in self.cache.query_events([CAL_A], start, end).events]

    def test_initialize_loads_every_collection(self) -> None:
        self.assertTrue(self.cache.is_initialized)
        self.assertEqual([item.display_name for item in self.cache.list_collections()], ["Jane", "Omar"])
        self.assertIsNotNone(self.cache.get(CAL_A))
        self.assertIsNotNone(self.cache.get(CAL_B))

    def test_refresh_is_idempotent(self) -> None:
        collection = self.cache.get_collection(CAL_A)
        first = self.cache.refresh_collection(collection)
        second = self.cache.refresh_collection(collection)
        self.assertEqual(first.events, second.events)

    def test_all_day_event_covers_its_inclusive_last_day(self) -> None:
        event = self.cache.find_event("trip-1")
        self.assertEqual(event.start, date(2025, 10, 20))
        self.assertEqual(event.end, date(2025, 10, 24))
        self.assertEqual(self._query_uids("2025-10-24", "2025-10-24"), ["trip-1"])
        self.assertEqual(self._query_uids("2025-10-25", "2025-10-30"), [])
        self.assertEqual(self._query_uids("2025-10-19", "2025-10-19"), [])

    def test_query_overlap_cases(self) -> None:
        self.assertEqual(self._query_uids("2025-10-01", "2025-10-31"), ["trip-1"])
        self.assertEqual(self._query_uids("2025-10-21", "2025-10-22"), ["trip-1"])
        self.assertEqual(self._query_uids("2025-10-15", "2025-10-20"), ["trip-1"])
        self.assertEqual(self._query_uids("2025-10-24", "2025-11-02"), ["trip-1"])

    def test_query_matches_collection_ids_loosely(self) -> None:
        result = self.cache.query_events([CAL_A.rstrip("/").upper()], "2025-10-01", "2025-12-31")
        self.assertEqual([event.uid for event in result.events], ["trip-1"])
        self.assertEqual([item.collection_id for item in result.collections], [CAL_A])
        self.assertIsNotNone(result.last_updated)

    def test_query_without_ids_covers_all_collections(self) -> None:
        result = self.cache.query_events(None, "2025-10-01", "2025-12-31")
        self.assertEqual(sorted(event.uid for event in result.events), ["trip-1", "visit-1"])

    def test_invalidated_entry_is_loaded_through_on_query(self) -> None:
        self.gateway.add_event(CAL_A, "trip-2", date(2025, 10, 27), date(2025, 10, 28))
        self.cache.invalidate(CAL_A)
        self.assertIsNone(self.cache.get(CAL_A))
        self.assertEqual(self._query_uids("2025-10-01", "2025-10-31"), ["trip-1", "trip-2"])

    def test_find_event_accepts_urls_and_filenames(self) -> None:
        self.assertEqual(self.cache.find_event(f"{CAL_A}trip-1.ics").uid, "trip-1")
        self.assertEqual(self.cache.find_event("trip-1.ics").uid, "trip-1")
        self.assertIsNone(self.cache.find_event("missing"))

    def test_search_matches_text_fields_and_metadata(self) -> None:
        self.gateway.add_event(
            CAL_B,
            "install-1",
            date(2025, 11, 10),
            date(2025, 11, 12),
            summary="Installation",
            description=metadata_codec.encode("Site visit", {"orderNumber": "SO-215648", "systemType": "MT100"}),
        )
        self.cache.invalidate(CAL_B)
        self.assertEqual([event.uid for event in self.cache.search_events("trip").events], ["trip-1"])
        self.assertEqual([event.uid for event in self.cache.search_events("215648").events], ["install-1"])
        self.assertEqual([event.uid for event in self.cache.search_events("mt100").events], ["install-1"])
        self.assertEqual([event.uid for event in self.cache.search_events("SITE VISIT").events], ["install-1"])
        self.assertEqual(self.cache.search_events("215648", "2025-10-01", "2025-10-31").events, [])
        self.assertEqual(self.cache.search_events("nothing-like-this").events, [])
        with self.assertRaises(ValueError):
            self.cache.search_events("   ")

    def test_failed_refresh_keeps_previous_entry(self) -> None:
        before = self.cache.get(CAL_A)
        self.gateway.fail("fetch_objects", RemoteUnavailable("down"))
        with self.assertRaises(RemoteUnavailable):
            self.cache.refresh_collection(self.cache.get_collection(CAL_A))
        self.assertIs(self.cache.get(CAL_A), before)

    def test_unparsable_object_is_skipped(self) -> None:
        self.gateway.put_raw(CAL_A, "junk.ics", "this is not a calendar")
        with self.assertLogs("plansync.cache_store", level="ERROR"):
            entry = self.cache.refresh_collection(self.cache.get_collection(CAL_A))
        self.assertEqual([event.uid for event in entry.events], ["trip-1"])

    def test_refresh_all_is_skipped_while_one_is_running(self) -> None:
        self.assertTrue(self.cache._refresh_guard.acquire(blocking=False))
        try:
            self.assertTrue(self.cache.refresh_in_progress)
            self.assertFalse(self.cache.refresh_all())
        finally:
            self.cache._refresh_guard.release()
        self.assertTrue(self.cache.refresh_all())

    def test_refresh_all_logs_per_collection_failures(self) -> None:
        self.gateway.fail("fetch_objects", RemoteUnavailable("down"))
        with self.assertLogs("plansync.cache_store", level="ERROR"):
            self.assertTrue(self.cache.refresh_all())
        self.assertIsNotNone(self.cache.get(CAL_A))
        self.assertIsNotNone(self.cache.get(CAL_B))

    def test_expired_entry_is_served_and_revalidated(self) -> None:
        stale = self.cache.get(CAL_A)
        self.clock.now = self.clock.now + timedelta(seconds=301)

        def run_now(target, name):
            target()

        with mock.patch.object(self.cache, "run_in_background", side_effect=run_now) as background:
            served = self.cache.get(CAL_A)
        self.assertIs(served, stale)
        background.assert_called_once()
        self.assertEqual(self.cache.get(CAL_A).last_refreshed, self.clock.now)

    def test_status_reports_entries(self) -> None:
        status = self.cache.status()
        self.assertTrue(status["is_initialized"])
        self.assertEqual(status["collection_count"], 2)
        self.assertEqual(status["entries"][CAL_A]["events"], 1)
        self.assertFalse(status["entries"][CAL_A]["expired"])


class OrderCollectionsTests(unittest.TestCase):
    def test_order_exclusion_and_colors(self) -> None:
        raw = [
            Collection(collection_id="https://x/cal/a/", name="Travel (Zoe Ray)"),
            Collection(collection_id="https://x/cal/b/", name="Travel (Adam Li)"),
            Collection(collection_id="https://x/cal/c/", name="Holidays"),
            Collection(collection_id="https://x/cal/d/", name="Shared"),
        ]
        config = CalendarsConfig(
            order=["https://x/cal/a"],
            exclude=["holidays"],
            color_overrides={"Adam": "#ff0000"},
        )
        ordered = order_collections(raw, config)
        self.assertEqual([item.display_name for item in ordered], ["Zoe", "Adam", "Shared"])
        self.assertEqual(ordered[0].rank, 0)
        self.assertEqual(ordered[1].color, "#ff0000")
        self.assertRegex(ordered[2].color, r"^#[0-9a-f]{6}$")
        self.assertEqual(order_collections(raw, config)[2].color, ordered[2].color)


class NormalizeEventIdTests(unittest.TestCase):
    def test_uuid_is_extracted_from_paths(self) -> None:
        uid = "0f8fad5b-d9cb-469f-a165-70867728950e"
        self.assertEqual(normalize_event_id(f"https://dav/cal/{uid}.ics"), uid)
        self.assertEqual(normalize_event_id(f"{uid}.ics"), uid)
        self.assertEqual(normalize_event_id("plain-id"), "plain-id")


if __name__ == "__main__":
    unittest.main()
