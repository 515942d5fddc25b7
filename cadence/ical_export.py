from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from cadence.models import Event


PRODID = "-//Cadence//Event Series//EN"
UID_DOMAIN = "cadence.local"


def _uid(event_id: str) -> str:
    return f"{event_id}@{UID_DOMAIN}"


def _parse_clock(value: str) -> time | None:
    text = (value or "").strip()
    if not text:
        return None
    try:
        return time.fromisoformat(text)
    except ValueError:
        return None


def _event_bounds(event: Event) -> tuple[date | datetime, date | datetime]:
    start_day = event.start_date
    end_day = event.end_date or start_day
    start_clock = _parse_clock(event.start_time)
    if event.is_all_day or start_clock is None:
        # DTEND is exclusive for DATE values.
        return start_day, end_day + timedelta(days=1)
    start = datetime.combine(start_day, start_clock, tzinfo=timezone.utc)
    end_clock = _parse_clock(event.end_time)
    if end_clock is None:
        return start, start + timedelta(hours=1)
    end = datetime.combine(end_day, end_clock, tzinfo=timezone.utc)
    if end <= start:
        end = start + timedelta(hours=1)
    return start, end


def build_vevent(event: Event) -> ICEvent:
    vevent = ICEvent()
    vevent.add("UID", _uid(event.id or "unsaved"))
    vevent.add("SUMMARY", event.title or "")
    if event.description:
        vevent.add("DESCRIPTION", event.description)
    if event.category:
        vevent.add("CATEGORIES", [event.category])
    vevent.add("STATUS", "CANCELLED" if event.status == "Cancelled" else "CONFIRMED")
    start, end = _event_bounds(event)
    vevent.add("DTSTART", start)
    vevent.add("DTEND", end)
    if event.updated_at is not None:
        vevent.add("DTSTAMP", event.updated_at)
    else:
        vevent.add("DTSTAMP", datetime.now(timezone.utc))
    if event.parent_event_id:
        vevent.add("RELATED-TO", _uid(event.parent_event_id), parameters={"RELTYPE": "PARENT"})
    return vevent


def build_calendar(events: Iterable[Event]) -> ICalendar:
    """Build a calendar holding one VEVENT per concrete event.

    Templates are schedule definitions; their dates are already materialized
    as occurrences, so they are left out.
    """
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", PRODID)
    calendar_obj.add("VERSION", "2.0")
    for event in events:
        if event.is_template or event.start_date is None:
            continue
        calendar_obj.add_component(build_vevent(event))
    return calendar_obj


def export_ics(events: Iterable[Event]) -> str:
    return build_calendar(events).to_ical().decode("utf-8")
