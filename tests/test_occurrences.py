import unittest
from datetime import date

from cadence.models import EndCondition, Event, RecurrenceRule, TicketTemplate
from cadence.occurrences import build_occurrence, classify, diff, propagate_tickets
from cadence.recurrence import expand


def _child(event_id: str, day: date, status: str = "Pending", is_override: bool = False) -> Event:
    return Event(
        id=event_id,
        title="Workshop",
        status=status,
        start_date=day,
        end_date=day,
        parent_event_id="tpl-1",
        is_override=is_override,
    )


class ClassifyTests(unittest.TestCase):
    def test_completed_and_overrides_are_preserved(self) -> None:
        completed = _child("c-1", date(2024, 1, 1), status="Completed")
        override = _child("c-2", date(2024, 1, 2), is_override=True)
        pending = _child("c-3", date(2024, 1, 3))
        cancelled = _child("c-4", date(2024, 1, 4), status="Cancelled")

        result = classify([completed, override, pending, cancelled])

        self.assertEqual([e.id for e in result.preserved], ["c-1", "c-2"])
        self.assertEqual([e.id for e in result.regenerable], ["c-3", "c-4"])

    def test_empty_input(self) -> None:
        result = classify([])
        self.assertEqual(result.preserved, [])
        self.assertEqual(result.regenerable, [])


class DiffTests(unittest.TestCase):
    def test_fresh_series_creates_every_date(self) -> None:
        rule = RecurrenceRule(frequency="daily", interval=2, end_condition=EndCondition(type="count", value=3))
        expanded = expand(rule, date(2024, 1, 1))

        result = diff(expanded, [], [])

        self.assertEqual(result.dates_to_create, [date(2024, 1, 1), date(2024, 1, 3), date(2024, 1, 5)])
        self.assertEqual(result.ids_to_delete, [])

    def test_interval_change_keeps_completed_day(self) -> None:
        rule = RecurrenceRule(frequency="daily", interval=1, end_condition=EndCondition(type="count", value=5))
        expanded = expand(rule, date(2024, 1, 1))
        existing = [
            _child("old-1", date(2024, 1, 1)),
            _child("old-3", date(2024, 1, 3), status="Completed"),
            _child("old-5", date(2024, 1, 5)),
        ]
        classification = classify(existing)

        result = diff(expanded, classification.preserved, classification.regenerable)

        self.assertEqual(
            result.dates_to_create,
            [date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 4), date(2024, 1, 5)],
        )
        self.assertEqual(result.ids_to_delete, ["old-1", "old-5"])

    def test_preserved_outside_expansion_is_never_deleted(self) -> None:
        preserved = [_child("done", date(2024, 2, 1), status="Completed")]
        regenerable = [_child("stale", date(2024, 2, 2))]

        result = diff([date(2024, 1, 1)], preserved, regenerable)

        self.assertNotIn("done", result.ids_to_delete)
        self.assertEqual(result.ids_to_delete, ["stale"])
        self.assertEqual(result.dates_to_create, [date(2024, 1, 1)])

    def test_regenerable_on_expanded_date_is_replaced(self) -> None:
        regenerable = [_child("same-day", date(2024, 1, 1))]
        result = diff([date(2024, 1, 1)], [], regenerable)
        self.assertEqual(result.dates_to_create, [date(2024, 1, 1)])
        self.assertEqual(result.ids_to_delete, ["same-day"])
        self.assertFalse(result.is_empty)


class BuildOccurrenceTests(unittest.TestCase):
    def test_copies_template_fields(self) -> None:
        template = Event(
            id="tpl-1",
            title="Trail Cleanup",
            description="Bring gloves",
            venue_id="venue-9",
            status="Confirmed",
            tags=["outdoor"],
            start_date=date(2024, 1, 1),
            end_date=date(2024, 1, 2),
            start_time="09:00",
            end_time="12:00",
            assigned_members=[{"member_id": "m-1", "role": "lead"}],
            is_template=True,
            recurrence_rule=RecurrenceRule(
                frequency="daily", interval=1, end_condition=EndCondition(type="count", value=2)
            ),
        )

        child = build_occurrence(template, date(2024, 1, 8))

        self.assertIsNone(child.id)
        self.assertEqual(child.parent_event_id, "tpl-1")
        self.assertFalse(child.is_template)
        self.assertFalse(child.is_override)
        self.assertIsNone(child.recurrence_rule)
        self.assertEqual(child.assigned_members, [])
        self.assertEqual(child.start_date, date(2024, 1, 8))
        self.assertEqual(child.end_date, date(2024, 1, 8))
        self.assertEqual(child.title, "Trail Cleanup")
        self.assertEqual(child.venue_id, "venue-9")
        self.assertEqual(child.start_time, "09:00")
        self.assertEqual(child.status, "Confirmed")
        child.tags.append("changed")
        self.assertEqual(template.tags, ["outdoor"])


class PropagateTicketsTests(unittest.TestCase):
    def test_clones_each_ticket_for_each_occurrence(self) -> None:
        tickets = [
            TicketTemplate(id="t-1", event_id="tpl-1", name="Adult", price=10.0, capacity=50, sold_count=12),
            TicketTemplate(id="t-2", event_id="tpl-1", name="Child", price=5.0, capacity=20, sold_count=3),
        ]
        occurrences = [_child("c-1", date(2024, 1, 1)), _child("c-2", date(2024, 1, 2))]

        pairs = propagate_tickets(tickets, occurrences)

        self.assertEqual(len(pairs), 4)
        self.assertEqual([occurrence_id for occurrence_id, _ in pairs], ["c-1", "c-1", "c-2", "c-2"])
        for occurrence_id, clone in pairs:
            self.assertIsNone(clone.id)
            self.assertEqual(clone.event_id, occurrence_id)
            self.assertEqual(clone.sold_count, 0)
        self.assertEqual(pairs[0][1].name, "Adult")
        self.assertEqual(pairs[0][1].capacity, 50)
        self.assertEqual(tickets[0].sold_count, 12)

    def test_unsaved_occurrences_are_skipped(self) -> None:
        tickets = [TicketTemplate(name="General", capacity=10)]
        unsaved = Event(title="Draft", start_date=date(2024, 1, 1))
        self.assertEqual(propagate_tickets(tickets, [unsaved]), [])


if __name__ == "__main__":
    unittest.main()
