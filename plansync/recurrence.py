from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Literal

from dateutil.rrule import rrulestr

from plansync import metadata_codec
from plansync.models import Collection, EventTemplate, Occurrence, exclusive_to_inclusive_end

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 1000
UNNAMED_COLLECTION = "Unnamed Calendar"


@dataclass
class ExpansionResult:
    single_events: list[Occurrence] = field(default_factory=list)
    occurrences: list[Occurrence] = field(default_factory=list)

    @property
    def all(self) -> list[Occurrence]:
        return [*self.single_events, *self.occurrences]


def _anchor(value: date | datetime, all_day: bool) -> datetime:
    # all-day rules run on naive midnights so date-valued UNTIL/EXDATE compare cleanly;
    # timed rules run in the event's own zone; callers convert to UTC afterwards
    if all_day:
        day = value.date() if isinstance(value, datetime) else value
        return datetime.combine(day, time.min)
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _overlaps(start: datetime, end: datetime, lower: datetime, upper: datetime) -> bool:
    # ends are exclusive; zero-length events count when they start inside the window
    return start < upper and (end > lower or start >= lower)


def _window_bound(value: datetime, all_day: bool) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None) if all_day else value


class RecurrenceExpander:
    """Expands templates of one collection into concrete events within a window."""

    def __init__(self, collection: Collection, max_iterations: int = DEFAULT_MAX_ITERATIONS) -> None:
        self.collection = collection
        self.max_iterations = max(1, int(max_iterations))

    @property
    def collection_name(self) -> str:
        return self.collection.display_name or self.collection.name or UNNAMED_COLLECTION

    def expand(self, template: EventTemplate, window_start: datetime, window_end: datetime) -> ExpansionResult:
        result = ExpansionResult()
        all_day = template.all_day
        start = _anchor(template.start, all_day)
        end = _anchor(template.end or template.start, all_day)
        lower = _window_bound(window_start, all_day)
        upper = _window_bound(window_end, all_day)

        if not template.is_recurring:
            if _overlaps(start, end, lower, upper):
                result.single_events.append(self._build(template, "event", start, end))
            return result

        try:
            rule_set = rrulestr(template.rrule, dtstart=start, forceset=True)
            for exdate in template.exdates:
                rule_set.exdate(_anchor(exdate, all_day))
        except (ValueError, TypeError) as exc:
            logger.warning("Unusable RRULE %r on %s, treating as single event: %s", template.rrule, template.uid, exc)
            if _overlaps(start, end, lower, upper):
                result.single_events.append(self._build(template, "event", start, end))
            return result

        duration = end - start
        overrides = {
            _anchor(item.recurrence_id, all_day): item for item in template.overrides if item.recurrence_id is not None
        }
        for index, occurrence_start in enumerate(rule_set):
            if index >= self.max_iterations:
                logger.warning(
                    "Recurrence expansion for %s truncated after %d iterations", template.uid, self.max_iterations
                )
                break
            if occurrence_start >= upper:
                break
            source = overrides.get(occurrence_start, template)
            if source is template:
                occurrence_end = occurrence_start + duration
            else:
                occurrence_start = _anchor(source.start, all_day)
                occurrence_end = _anchor(source.end or source.start, all_day)
            if not _overlaps(occurrence_start, occurrence_end, lower, upper):
                continue
            result.occurrences.append(
                self._build(source, "occurrence", occurrence_start, occurrence_end, rrule=template.rrule)
            )
        return result

    def _build(
        self,
        template: EventTemplate,
        kind: Literal["event", "occurrence"],
        start: datetime,
        end: datetime,
        rrule: str | None = None,
    ) -> Occurrence:
        decoded = metadata_codec.decode(template.description)
        if template.all_day:
            start_value: date | datetime = start.date()
            # the store keeps all-day ends exclusive; display them inclusive
            end_value: date | datetime = max(start.date(), exclusive_to_inclusive_end(end.date()))
        else:
            start_value = start.astimezone(timezone.utc)
            end_value = end.astimezone(timezone.utc)
        return Occurrence(
            kind=kind,
            uid=template.uid,
            collection_id=self.collection.collection_id,
            start=start_value,
            end=end_value,
            summary=template.summary,
            description=decoded.text,
            description_raw=template.description,
            metadata=decoded.metadata,
            location=template.location,
            all_day=template.all_day,
            collection_name=self.collection_name,
            rrule=rrule or template.rrule,
            href=template.href,
            etag=template.etag,
        )


def expand_templates(
    templates: list[EventTemplate],
    collection: Collection,
    window_start: datetime,
    window_end: datetime,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> list[Occurrence]:
    expander = RecurrenceExpander(collection, max_iterations=max_iterations)
    events: list[Occurrence] = []
    seen: set[tuple[str, str | None]] = set()
    for template in templates:
        for item in expander.expand(template, window_start, window_end).all:
            if item.identity in seen:
                logger.debug("Dropping duplicate occurrence %s", item.identity)
                continue
            seen.add(item.identity)
            events.append(item)
    return events
