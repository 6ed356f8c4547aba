from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from icalendar.prop import vRecur

from plansync.models import EventTemplate

PRODID = "-//PlanSync//Calendar Cache//EN"


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _coerce_moment(value: Any) -> date | datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return value
    return None


def _decoded(vevent: ICEvent, name: str) -> Any:
    if vevent.get(name) is None:
        return None
    return vevent.decoded(name)


def _exdates(vevent: ICEvent) -> list[date | datetime]:
    raw = vevent.get("EXDATE")
    if raw is None:
        return []
    entries = raw if isinstance(raw, list) else [raw]
    output: list[date | datetime] = []
    for entry in entries:
        for item in getattr(entry, "dts", []):
            moment = _coerce_moment(item.dt)
            if moment is not None:
                output.append(moment)
    return output


def _template_from_vevent(vevent: ICEvent, collection_id: str, href: str, etag: str) -> EventTemplate:
    uid = str(vevent.get("UID", "")).strip()
    start = _coerce_moment(_decoded(vevent, "DTSTART"))
    if start is None:
        raise ValueError(f"VEVENT {uid or '<no uid>'} has no DTSTART")
    all_day = not isinstance(start, datetime)
    end = _coerce_moment(_decoded(vevent, "DTEND"))
    if end is None:
        duration = _decoded(vevent, "DURATION")
        if isinstance(duration, timedelta):
            end = start + duration
        elif all_day:
            end = start + timedelta(days=1)
        else:
            end = start + timedelta(hours=1)
    rrule = vevent.get("RRULE")
    return EventTemplate(
        uid=uid,
        collection_id=collection_id,
        start=start,
        end=end,
        summary=str(vevent.get("SUMMARY", "")).strip(),
        description=str(vevent.get("DESCRIPTION", "")),
        location=str(vevent.get("LOCATION", "")).strip(),
        all_day=all_day,
        rrule=rrule.to_ical().decode("utf-8") if rrule is not None else None,
        exdates=_exdates(vevent),
        recurrence_id=_coerce_moment(_decoded(vevent, "RECURRENCE-ID")),
        href=href,
        etag=etag,
    )


def parse_templates(raw_data: Any, collection_id: str, href: str = "", etag: str = "") -> list[EventTemplate]:
    """Parse one stored object into templates; RECURRENCE-ID instances attach to their master."""
    calendar_obj = ICalendar.from_ical(_decode_raw_ical(raw_data))
    masters: dict[str, EventTemplate] = {}
    overrides: list[EventTemplate] = []
    for component in calendar_obj.walk("VEVENT"):
        template = _template_from_vevent(component, collection_id, href, etag)
        if template.recurrence_id is not None:
            overrides.append(template)
        else:
            masters[template.uid] = template
    for override in overrides:
        master = masters.get(override.uid)
        if master is None:
            # an orphaned instance is still a real event
            masters[f"{override.uid}@{override.recurrence_id}"] = override
            continue
        master.overrides.append(override)
    return list(masters.values())


def extract_uid(raw_data: Any) -> str:
    try:
        calendar_obj = ICalendar.from_ical(_decode_raw_ical(raw_data))
    except ValueError:
        return ""
    for component in calendar_obj.walk("VEVENT"):
        return str(component.get("UID", "")).strip()
    return ""


def build_ical(
    *,
    uid: str,
    start: date | datetime,
    end: date | datetime,
    summary: str = "",
    description: str = "",
    location: str = "",
    all_day: bool = False,
    rrule: str | None = None,
) -> str:
    """Serialize one event; all-day ``end`` must already be exclusive."""
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", PRODID)
    calendar_obj.add("VERSION", "2.0")
    vevent = ICEvent()
    vevent.add("UID", uid)
    vevent.add("DTSTAMP", datetime.now(timezone.utc))
    vevent.add("DTSTART", start)
    vevent.add("DTEND", end)
    vevent.add("SUMMARY", summary or "")
    vevent.add("DESCRIPTION", description or "")
    if location:
        vevent.add("LOCATION", location)
    if rrule:
        vevent.add("RRULE", vRecur.from_ical(rrule))
    if all_day:
        vevent.add("X-MICROSOFT-CDO-ALLDAYEVENT", "TRUE")
    vevent.add("TRANSP", "OPAQUE")
    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")
