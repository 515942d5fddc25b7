from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable

from cadence.models import Event, TicketTemplate


@dataclass
class Classification:
    preserved: list[Event] = field(default_factory=list)
    regenerable: list[Event] = field(default_factory=list)


@dataclass
class OccurrenceDiff:
    dates_to_create: list[date] = field(default_factory=list)
    ids_to_delete: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.dates_to_create and not self.ids_to_delete


def classify(existing_children: Iterable[Event]) -> Classification:
    """Split a template's children into preserved and regenerable occurrences.

    Completed occurrences and overrides are preserved; everything else is
    regenerated on the next series save.
    """
    result = Classification()
    for child in existing_children:
        if child.is_preserved:
            result.preserved.append(child)
        else:
            result.regenerable.append(child)
    return result


def diff(
    expanded_dates: Iterable[date],
    preserved: Iterable[Event],
    regenerable: Iterable[Event],
) -> OccurrenceDiff:
    # A regenerable child on an expanded date does not cover that date: it is
    # deleted and recreated so that copied template fields stay current.
    preserved_dates = {event.start_date for event in preserved}
    dates_to_create = [day for day in expanded_dates if day not in preserved_dates]
    ids_to_delete = [event.id for event in regenerable if event.id]
    return OccurrenceDiff(dates_to_create=dates_to_create, ids_to_delete=ids_to_delete)


def build_occurrence(template: Event, on_date: date) -> Event:
    return template.with_updates(
        id=None,
        assigned_members=[],
        is_template=False,
        parent_event_id=template.id,
        is_override=False,
        recurrence_rule=None,
        start_date=on_date,
        end_date=on_date,
        created_at=None,
        updated_at=template.updated_at,
    )


def propagate_tickets(
    ticket_templates: Iterable[TicketTemplate],
    new_occurrences: Iterable[Event],
) -> list[tuple[str, TicketTemplate]]:
    templates = list(ticket_templates)
    pairs: list[tuple[str, TicketTemplate]] = []
    for occurrence in new_occurrences:
        if not occurrence.id:
            continue
        for ticket in templates:
            pairs.append(
                (occurrence.id, ticket.with_updates(id=None, event_id=occurrence.id, sold_count=0))
            )
    return pairs
