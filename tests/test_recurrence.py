import unittest
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from plansync.ical import parse_templates
from plansync.models import Collection, EventTemplate
from plansync.recurrence import RecurrenceExpander, expand_templates

COLLECTION = Collection(collection_id="https://dav.example.com/cal/jane/", name="Travel (Jane Doe)", display_name="Jane")
WINDOW_START = datetime(2025, 1, 1, tzinfo=timezone.utc)
WINDOW_END = datetime(2025, 12, 31, tzinfo=timezone.utc)


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class RecurrenceExpanderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.expander = RecurrenceExpander(COLLECTION)

    def test_single_all_day_event_gets_inclusive_end(self) -> None:
        template = EventTemplate(
            uid="trip-1",
            collection_id=COLLECTION.collection_id,
            start=date(2025, 10, 20),
            end=date(2025, 10, 25),
            summary="Trip",
            all_day=True,
        )
        result = self.expander.expand(template, WINDOW_START, WINDOW_END)
        self.assertEqual(len(result.single_events), 1)
        self.assertEqual(result.occurrences, [])
        event = result.single_events[0]
        self.assertEqual(event.kind, "event")
        self.assertEqual(event.start, date(2025, 10, 20))
        self.assertEqual(event.end, date(2025, 10, 24))
        self.assertEqual(event.collection_name, "Jane")
        self.assertEqual(event.collection_id, COLLECTION.collection_id)

    def test_event_outside_window_is_dropped(self) -> None:
        template = EventTemplate(
            uid="old",
            collection_id=COLLECTION.collection_id,
            start=date(2024, 3, 1),
            end=date(2024, 3, 2),
            all_day=True,
        )
        self.assertEqual(self.expander.expand(template, WINDOW_START, WINDOW_END).all, [])

    def test_weekly_rule_expands_into_distinct_occurrences(self) -> None:
        template = EventTemplate(
            uid="standup",
            collection_id=COLLECTION.collection_id,
            start=_utc(2025, 1, 6, 9, 0),
            end=_utc(2025, 1, 6, 9, 30),
            summary="Standup",
            rrule="FREQ=WEEKLY;COUNT=4",
        )
        result = self.expander.expand(template, WINDOW_START, WINDOW_END)
        self.assertEqual(result.single_events, [])
        starts = [item.start for item in result.occurrences]
        self.assertEqual(
            starts,
            [_utc(2025, 1, 6, 9, 0), _utc(2025, 1, 13, 9, 0), _utc(2025, 1, 20, 9, 0), _utc(2025, 1, 27, 9, 0)],
        )
        self.assertTrue(all(item.kind == "occurrence" for item in result.occurrences))
        self.assertTrue(all(item.end - item.start == timedelta(minutes=30) for item in result.occurrences))
        self.assertEqual(len({item.identity for item in result.occurrences}), 4)

    def test_exdate_and_override_are_honoured(self) -> None:
        override = EventTemplate(
            uid="standup",
            collection_id=COLLECTION.collection_id,
            start=_utc(2025, 1, 14, 10, 0),
            end=_utc(2025, 1, 14, 10, 30),
            summary="Standup (moved)",
            recurrence_id=_utc(2025, 1, 13, 9, 0),
        )
        template = EventTemplate(
            uid="standup",
            collection_id=COLLECTION.collection_id,
            start=_utc(2025, 1, 6, 9, 0),
            end=_utc(2025, 1, 6, 9, 30),
            summary="Standup",
            rrule="FREQ=WEEKLY;COUNT=4",
            exdates=[_utc(2025, 1, 20, 9, 0)],
            overrides=[override],
        )
        occurrences = self.expander.expand(template, WINDOW_START, WINDOW_END).occurrences
        self.assertEqual(
            [(item.start, item.summary) for item in occurrences],
            [
                (_utc(2025, 1, 6, 9, 0), "Standup"),
                (_utc(2025, 1, 14, 10, 0), "Standup (moved)"),
                (_utc(2025, 1, 27, 9, 0), "Standup"),
            ],
        )

    def test_zoned_rule_keeps_wall_clock_across_dst(self) -> None:
        berlin = ZoneInfo("Europe/Berlin")
        template = EventTemplate(
            uid="weekly-berlin",
            collection_id=COLLECTION.collection_id,
            start=datetime(2025, 3, 24, 9, 0, tzinfo=berlin),
            end=datetime(2025, 3, 24, 10, 0, tzinfo=berlin),
            rrule="FREQ=WEEKLY;COUNT=3",
            exdates=[datetime(2025, 4, 7, 9, 0, tzinfo=berlin)],
        )
        occurrences = self.expander.expand(template, WINDOW_START, WINDOW_END).occurrences
        self.assertEqual([item.start for item in occurrences], [_utc(2025, 3, 24, 8, 0), _utc(2025, 3, 31, 7, 0)])
        self.assertEqual(occurrences[1].end, _utc(2025, 3, 31, 8, 0))
        self.assertTrue(all(item.start.tzinfo is timezone.utc for item in occurrences))

    def test_tzid_event_from_ical_crosses_dst(self) -> None:
        data = (
            "BEGIN:VCALENDAR\nVERSION:2.0\nPRODID:-//Test//EN\nBEGIN:VEVENT\nUID:berlin\n"
            "DTSTART;TZID=Europe/Berlin:20250106T090000\nDTEND;TZID=Europe/Berlin:20250106T093000\n"
            "RRULE:FREQ=WEEKLY\nEXDATE;TZID=Europe/Berlin:20250407T090000\nSUMMARY:Weekly\n"
            "END:VEVENT\nEND:VCALENDAR\n"
        )
        template = parse_templates(data, COLLECTION.collection_id)[0]
        window_start = _utc(2025, 1, 1)
        window_end = _utc(2025, 4, 20)
        starts = [item.start for item in self.expander.expand(template, window_start, window_end).occurrences]
        self.assertEqual(starts[0], _utc(2025, 1, 6, 8, 0))
        self.assertIn(_utc(2025, 3, 24, 8, 0), starts)
        self.assertIn(_utc(2025, 3, 31, 7, 0), starts)
        self.assertNotIn(_utc(2025, 4, 7, 7, 0), starts)
        self.assertEqual(starts[-1], _utc(2025, 4, 14, 7, 0))

    def test_all_day_recurrence_uses_dates(self) -> None:
        template = EventTemplate(
            uid="oncall",
            collection_id=COLLECTION.collection_id,
            start=date(2025, 2, 3),
            end=date(2025, 2, 8),
            all_day=True,
            rrule="FREQ=WEEKLY;INTERVAL=2;COUNT=2",
        )
        occurrences = self.expander.expand(template, WINDOW_START, WINDOW_END).occurrences
        self.assertEqual([(item.start, item.end) for item in occurrences], [
            (date(2025, 2, 3), date(2025, 2, 7)),
            (date(2025, 2, 17), date(2025, 2, 21)),
        ])

    def test_iteration_cap_truncates_without_raising(self) -> None:
        expander = RecurrenceExpander(COLLECTION, max_iterations=5)
        template = EventTemplate(
            uid="daily",
            collection_id=COLLECTION.collection_id,
            start=_utc(2025, 1, 1, 8, 0),
            end=_utc(2025, 1, 1, 9, 0),
            rrule="FREQ=DAILY",
        )
        with self.assertLogs("plansync.recurrence", level="WARNING"):
            result = expander.expand(template, WINDOW_START, WINDOW_END)
        self.assertEqual(len(result.occurrences), 5)

    def test_unusable_rule_falls_back_to_single_event(self) -> None:
        template = EventTemplate(
            uid="broken",
            collection_id=COLLECTION.collection_id,
            start=_utc(2025, 5, 1, 8, 0),
            end=_utc(2025, 5, 1, 9, 0),
            rrule="FREQ=SOMETIMES",
        )
        with self.assertLogs("plansync.recurrence", level="WARNING"):
            result = self.expander.expand(template, WINDOW_START, WINDOW_END)
        self.assertEqual(len(result.single_events), 1)
        self.assertEqual(result.single_events[0].kind, "event")

    def test_description_metadata_is_decoded(self) -> None:
        template = EventTemplate(
            uid="meta",
            collection_id=COLLECTION.collection_id,
            start=date(2025, 6, 2),
            end=date(2025, 6, 3),
            all_day=True,
            description="Visit\n\n\n```yaml\norderNumber: SO-9\n```\n",
        )
        event = self.expander.expand(template, WINDOW_START, WINDOW_END).single_events[0]
        self.assertEqual(event.description, "Visit")
        self.assertEqual(event.metadata, {"orderNumber": "SO-9"})
        self.assertIn("```yaml", event.description_raw)

    def test_expand_templates_drops_duplicate_identities(self) -> None:
        template = EventTemplate(
            uid="dup",
            collection_id=COLLECTION.collection_id,
            start=date(2025, 7, 1),
            end=date(2025, 7, 2),
            all_day=True,
        )
        events = expand_templates([template, template], COLLECTION, WINDOW_START, WINDOW_END)
        self.assertEqual(len(events), 1)


if __name__ == "__main__":
    unittest.main()
