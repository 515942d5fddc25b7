import unittest
from datetime import date, datetime, timezone

from icalendar import Calendar

from cadence.ical_export import build_vevent, export_ics
from cadence.models import Event


class ICalExportTests(unittest.TestCase):
    def test_timed_event_uses_utc_datetimes(self) -> None:
        event = Event(
            id="evt-1",
            title="Concert",
            start_date=date(2024, 6, 1),
            end_date=date(2024, 6, 1),
            start_time="19:30",
            end_time="21:00",
        )
        vevent = build_vevent(event)
        self.assertEqual(str(vevent.get("UID")), "evt-1@cadence.local")
        self.assertEqual(vevent.decoded("DTSTART"), datetime(2024, 6, 1, 19, 30, tzinfo=timezone.utc))
        self.assertEqual(vevent.decoded("DTEND"), datetime(2024, 6, 1, 21, 0, tzinfo=timezone.utc))

    def test_all_day_end_is_exclusive(self) -> None:
        event = Event(id="evt-2", title="Fair", start_date=date(2024, 6, 1), end_date=date(2024, 6, 2), is_all_day=True)
        vevent = build_vevent(event)
        self.assertEqual(vevent.decoded("DTSTART"), date(2024, 6, 1))
        self.assertEqual(vevent.decoded("DTEND"), date(2024, 6, 3))

    def test_export_skips_templates_and_links_occurrences(self) -> None:
        events = [
            Event(id="tpl", title="Series", start_date=date(2024, 6, 1), is_template=True),
            Event(id="occ", title="Series", start_date=date(2024, 6, 1), parent_event_id="tpl"),
            Event(id="undated", title="Someday"),
        ]
        calendar = Calendar.from_ical(export_ics(events))
        vevents = list(calendar.walk("VEVENT"))
        self.assertEqual([str(v.get("UID")) for v in vevents], ["occ@cadence.local"])
        self.assertEqual(str(vevents[0].get("RELATED-TO")), "tpl@cadence.local")


if __name__ == "__main__":
    unittest.main()
