import unittest
from datetime import date

from cadence.models import AppConfig, Event, SeriesConfig, TicketTemplate


class ModelsTests(unittest.TestCase):
    def test_event_from_dict_normalizes_fields(self) -> None:
        event = Event.from_dict(
            {
                "id": "evt-1",
                "title": "  Harvest Fair  ",
                "status": "Unknown",
                "tags": ["food", " ", "music "],
                "start_date": "2024-09-14T00:00:00Z",
                "end_date": "2024-09-15",
                "assigned_members": [{"member_id": 7, "role": "host"}, "not-a-member"],
                "recurrence_rule": {
                    "frequency": "WEEKLY",
                    "daysOfWeek": [6],
                    "endCondition": {"type": "count", "value": "4"},
                },
            }
        )
        self.assertEqual(event.title, "Harvest Fair")
        self.assertEqual(event.status, "Pending")
        self.assertEqual(event.tags, ["food", "music"])
        self.assertEqual(event.start_date, date(2024, 9, 14))
        self.assertEqual(event.end_date, date(2024, 9, 15))
        self.assertEqual(event.assigned_members, [{"member_id": "7", "role": "host"}])
        self.assertEqual(event.recurrence_rule.frequency, "weekly")
        self.assertEqual(event.recurrence_rule.end_condition.value, 4)
        self.assertTrue(event.is_persisted)
        self.assertTrue(event.is_standalone)

    def test_event_to_dict_is_readable_by_from_dict(self) -> None:
        event = Event.from_dict({"id": "evt-2", "title": "Fair", "start_date": "2024-09-14", "parent_event_id": "tpl"})
        payload = event.to_dict()
        self.assertEqual(payload["start_date"], "2024-09-14")
        self.assertIsNone(payload["recurrence_rule"])
        self.assertEqual(Event.from_dict(payload), event)

    def test_preserved_requires_parent(self) -> None:
        standalone = Event(id="a", status="Completed")
        occurrence = Event(id="b", status="Completed", parent_event_id="tpl")
        override = Event(id="c", parent_event_id="tpl", is_override=True)
        self.assertFalse(standalone.is_preserved)
        self.assertTrue(occurrence.is_preserved)
        self.assertTrue(override.is_preserved)

    def test_with_updates_does_not_share_lists(self) -> None:
        event = Event(title="Fair", tags=["a"])
        copied = event.with_updates(title="Copy")
        copied.tags.append("b")
        self.assertEqual(event.tags, ["a"])
        self.assertEqual(copied.title, "Copy")

    def test_ticket_template_clamps_negative_numbers(self) -> None:
        ticket = TicketTemplate.from_dict({"name": " VIP ", "price": -3, "capacity": "-1", "sold_count": None})
        self.assertEqual(ticket.name, "VIP")
        self.assertEqual(ticket.price, 0.0)
        self.assertEqual(ticket.capacity, 0)
        self.assertEqual(ticket.sold_count, 0)

    def test_series_config_defaults(self) -> None:
        cfg = AppConfig.from_dict({})
        self.assertEqual(cfg.series, SeriesConfig())
        self.assertTrue(cfg.series.materialize_anchor_occurrence)
        self.assertEqual(cfg.series.max_occurrences, 730)
        self.assertEqual(SeriesConfig.from_dict({"max_occurrences": 0}).max_occurrences, 1)


if __name__ == "__main__":
    unittest.main()
