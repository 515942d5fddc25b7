from __future__ import annotations

import traceback
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Union

from cadence.errors import InvalidRuleError, NotFoundError, PersistenceError, SeriesError
from cadence.event_store import EventPersistence
from cadence.models import Event, RecurrenceRule, SaveOutcome, SeriesConfig, TicketTemplate
from cadence.occurrences import OccurrenceDiff, build_occurrence, classify, diff, propagate_tickets
from cadence.recurrence import expand
from cadence.state_store import StateStore


CREATE_STANDALONE = "create_standalone"
CREATE_SERIES = "create_series"
UPDATE_STANDALONE = "update_standalone"
CONVERT_TO_SERIES = "convert_to_series"
UPDATE_OCCURRENCE = "update_occurrence"
UPDATE_SERIES = "update_series"
DELETE_EVENT = "delete_event"
DELETE_SERIES = "delete_series"


@dataclass(frozen=True)
class NewEvent:
    pass


@dataclass(frozen=True)
class StandaloneEvent:
    stored: Event


@dataclass(frozen=True)
class OccurrenceEvent:
    stored: Event
    parent_id: str


@dataclass(frozen=True)
class TemplateEvent:
    stored: Event
    rule: RecurrenceRule | None


EventRelationship = Union[NewEvent, StandaloneEvent, OccurrenceEvent, TemplateEvent]


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class EventState:
    """In-memory view of events and ticket templates kept current after each save."""

    def __init__(
        self,
        events: list[Event] | None = None,
        tickets: list[TicketTemplate] | None = None,
    ) -> None:
        self.events: dict[str, Event] = {event.id: event for event in events or [] if event.id}
        self.tickets: list[TicketTemplate] = list(tickets or [])

    def get(self, event_id: str) -> Event | None:
        return self.events.get(event_id)

    def upsert(self, *events: Event) -> None:
        for event in events:
            if event.id:
                self.events[event.id] = event

    def remove(self, event_ids: list[str]) -> None:
        for event_id in event_ids:
            self.events.pop(event_id, None)

    def children_of(self, parent_id: str) -> list[Event]:
        children = [event for event in self.events.values() if event.parent_event_id == parent_id]
        return sorted(children, key=lambda item: (item.start_date or date.min, item.id or ""))

    def set_tickets(self, tickets: list[TicketTemplate]) -> None:
        self.tickets = list(tickets)

    def replace(self, events: list[Event], tickets: list[TicketTemplate]) -> None:
        self.events = {event.id: event for event in events if event.id}
        self.set_tickets(tickets)

    def tickets_for(self, event_id: str) -> list[TicketTemplate]:
        return [ticket for ticket in self.tickets if ticket.event_id == event_id]

    def sorted_events(self) -> list[Event]:
        return sorted(self.events.values(), key=lambda item: (item.start_date or date.min, item.id or ""))


class _StagedWrites:
    """Runs persistence calls as named stages and remembers which ones committed."""

    def __init__(
        self,
        *,
        run_id: int | None,
        event_id: str | None,
        on_stage: Callable[["_StagedWrites", str, dict[str, Any]], None],
    ) -> None:
        self.run_id = run_id
        self.event_id = event_id
        self.transition = "unresolved"
        self.completed: list[str] = []
        self._on_stage = on_stage

    async def run(self, stage: str, call: Awaitable[Any], **details: Any) -> Any:
        try:
            result = await call
        except PersistenceError as exc:
            raise exc.at_stage(stage, self.completed)
        except SeriesError:
            raise
        except Exception as exc:
            raise PersistenceError(f"{type(exc).__name__}: {exc}").at_stage(stage, self.completed) from exc
        self.completed.append(stage)
        self._on_stage(self, stage, details)
        return result


class SeriesSynchronizer:
    def __init__(
        self,
        persistence: EventPersistence,
        *,
        config: SeriesConfig | None = None,
        state_store: StateStore | None = None,
        state: EventState | None = None,
    ) -> None:
        self.persistence = persistence
        self.config = config or SeriesConfig()
        self.state_store = state_store
        self.state = state or EventState()

    async def reload(self) -> EventState:
        events = await self.persistence.list_events()
        tickets = await self.persistence.list_event_tickets()
        self.state.replace(events, tickets)
        return self.state

    async def resolve_relationship(self, event: Event) -> EventRelationship:
        if not event.is_persisted:
            return NewEvent()
        stored = await self.persistence.get_event(event.id)
        if stored is None:
            raise NotFoundError("event", event.id)
        if stored.is_template:
            return TemplateEvent(stored=stored, rule=stored.recurrence_rule)
        if stored.parent_event_id:
            return OccurrenceEvent(stored=stored, parent_id=stored.parent_event_id)
        return StandaloneEvent(stored=stored)

    async def save_event(
        self,
        event: Event,
        ticket_templates: list[TicketTemplate],
        rule: RecurrenceRule | None,
    ) -> SaveOutcome:
        """Persist an edited event and bring its series into line with the rule.

        The prior relationship of the event selects one of six transitions.
        Rules are expanded before the first write, so an InvalidRuleError
        never leaves partial writes behind. A failing write raises
        PersistenceError naming the stage it failed in; earlier stages stay
        committed and the in-memory state is reloaded from the store.
        """
        started_at = datetime.now(timezone.utc)
        pipeline = self._pipeline("save", event.id)
        try:
            relationship = await self.resolve_relationship(event)
            if isinstance(relationship, NewEvent):
                if rule is None:
                    pipeline.transition = CREATE_STANDALONE
                    outcome = await self._create_standalone(pipeline, event, ticket_templates)
                else:
                    pipeline.transition = CREATE_SERIES
                    dates = self._expand(rule, event.start_date)
                    outcome = await self._create_series(pipeline, event, ticket_templates, rule, dates)
            elif isinstance(relationship, StandaloneEvent):
                if rule is None:
                    pipeline.transition = UPDATE_STANDALONE
                    outcome = await self._update_standalone(
                        pipeline, event, relationship.stored, ticket_templates
                    )
                else:
                    pipeline.transition = CONVERT_TO_SERIES
                    dates = self._expand(rule, event.start_date)
                    outcome = await self._convert_to_series(
                        pipeline, event, relationship.stored, ticket_templates, rule, dates
                    )
            elif isinstance(relationship, OccurrenceEvent):
                pipeline.transition = UPDATE_OCCURRENCE
                outcome = await self._update_occurrence(pipeline, event, relationship.stored, ticket_templates)
            elif isinstance(relationship, TemplateEvent):
                pipeline.transition = UPDATE_SERIES
                dates = self._expand(rule, event.start_date) if rule is not None else []
                outcome = await self._update_series(
                    pipeline, event, relationship.stored, ticket_templates, rule, dates
                )
            else:
                raise TypeError(f"unhandled event relationship: {relationship!r}")
        except Exception as exc:
            self._fail_run(pipeline, started_at, exc)
            if pipeline.completed:
                await self.reload()
            raise
        self._finish_run(
            pipeline,
            started_at,
            created_count=len(outcome.created_ids),
            deleted_count=len(outcome.deleted_ids),
            message=f"{pipeline.transition}: {len(outcome.created_ids)} created, "
            f"{len(outcome.deleted_ids)} deleted",
        )
        return outcome

    async def delete_event_or_series(self, event: Event) -> list[str]:
        """Delete an event; a template takes all of its current children with it."""
        started_at = datetime.now(timezone.utc)
        pipeline = self._pipeline("delete", event.id)
        pipeline.transition = DELETE_EVENT
        try:
            if not event.is_persisted:
                raise NotFoundError("event", event.id)
            stored = await self.persistence.get_event(event.id)
            if stored is None:
                raise NotFoundError("event", event.id)
            children = await self.persistence.list_children(stored.id)
            if stored.is_template or children:
                pipeline.transition = DELETE_SERIES
            deleted_ids = [stored.id] + [child.id for child in children if child.id]
            await pipeline.run("delete", self.persistence.delete_events(deleted_ids), count=len(deleted_ids))
            tickets = await pipeline.run("refresh", self.persistence.list_event_tickets())
        except Exception as exc:
            self._fail_run(pipeline, started_at, exc)
            if pipeline.completed:
                await self.reload()
            raise
        self.state.remove(deleted_ids)
        self.state.set_tickets(tickets)
        self._finish_run(
            pipeline,
            started_at,
            created_count=0,
            deleted_count=len(deleted_ids),
            message=f"{pipeline.transition}: {len(deleted_ids)} deleted",
        )
        return deleted_ids

    def _expand(self, rule: RecurrenceRule, start_date: date | None) -> list[date]:
        if start_date is None:
            raise InvalidRuleError("a recurring event needs a start date", field="startDate")
        return expand(rule, start_date, max_occurrences=self.config.max_occurrences)

    # ------------------------------------------------------------------ #
    #  Transitions
    # ------------------------------------------------------------------ #

    async def _create_standalone(
        self, pipeline: _StagedWrites, event: Event, tickets: list[TicketTemplate]
    ) -> SaveOutcome:
        to_save = event.with_updates(
            id=None, is_template=False, parent_event_id=None, recurrence_rule=None, is_override=False
        )
        saved = await self._save_parent(pipeline, self.persistence.create_event(to_save))
        saved_tickets = await self._replace_tickets(pipeline, saved, tickets)
        await self._refresh(pipeline, upserted=[saved])
        return SaveOutcome(transition=CREATE_STANDALONE, event=saved, ticket_count=len(saved_tickets))

    async def _create_series(
        self,
        pipeline: _StagedWrites,
        event: Event,
        tickets: list[TicketTemplate],
        rule: RecurrenceRule,
        dates: list[date],
    ) -> SaveOutcome:
        to_save = event.with_updates(
            id=None, is_template=True, parent_event_id=None, recurrence_rule=rule, is_override=False
        )
        saved = await self._save_parent(pipeline, self.persistence.create_event(to_save))
        saved_tickets = await self._replace_tickets(pipeline, saved, tickets)
        return await self._sync_children(pipeline, saved, tickets, rule, dates, [], len(saved_tickets))

    async def _update_standalone(
        self, pipeline: _StagedWrites, event: Event, stored: Event, tickets: list[TicketTemplate]
    ) -> SaveOutcome:
        to_save = event.with_updates(
            id=stored.id, is_template=False, parent_event_id=None, recurrence_rule=None, is_override=False
        )
        saved = await self._save_parent(pipeline, self.persistence.update_event(stored.id, to_save))
        saved_tickets = await self._replace_tickets(pipeline, saved, tickets)
        await self._refresh(pipeline, upserted=[saved])
        return SaveOutcome(transition=UPDATE_STANDALONE, event=saved, ticket_count=len(saved_tickets))

    async def _convert_to_series(
        self,
        pipeline: _StagedWrites,
        event: Event,
        stored: Event,
        tickets: list[TicketTemplate],
        rule: RecurrenceRule,
        dates: list[date],
    ) -> SaveOutcome:
        to_save = event.with_updates(
            id=stored.id, is_template=True, parent_event_id=None, recurrence_rule=rule, is_override=False
        )
        saved = await self._save_parent(pipeline, self.persistence.update_event(stored.id, to_save))
        saved_tickets = await self._replace_tickets(pipeline, saved, tickets)
        # Normally empty; a series collapsed by removing its rule keeps its
        # preserved occurrences, and those must survive the conversion too.
        existing = await pipeline.run("load_children", self.persistence.list_children(saved.id))
        return await self._sync_children(pipeline, saved, tickets, rule, dates, existing, len(saved_tickets))

    async def _update_occurrence(
        self, pipeline: _StagedWrites, event: Event, stored: Event, tickets: list[TicketTemplate]
    ) -> SaveOutcome:
        to_save = event.with_updates(
            id=stored.id,
            parent_event_id=stored.parent_event_id,
            is_override=True,
            is_template=False,
            recurrence_rule=None,
        )
        saved = await self._save_parent(pipeline, self.persistence.update_event(stored.id, to_save))
        saved_tickets = await self._replace_tickets(pipeline, saved, tickets)
        await self._refresh(pipeline, upserted=[saved])
        return SaveOutcome(transition=UPDATE_OCCURRENCE, event=saved, ticket_count=len(saved_tickets))

    async def _update_series(
        self,
        pipeline: _StagedWrites,
        event: Event,
        stored: Event,
        tickets: list[TicketTemplate],
        rule: RecurrenceRule | None,
        dates: list[date],
    ) -> SaveOutcome:
        # Without a rule the row stops being a template; only its preserved
        # occurrences stay linked to it.
        to_save = event.with_updates(
            id=stored.id,
            is_template=rule is not None,
            parent_event_id=None,
            recurrence_rule=rule,
            is_override=False,
        )
        saved = await self._save_parent(pipeline, self.persistence.update_event(stored.id, to_save))
        saved_tickets = await self._replace_tickets(pipeline, saved, tickets)
        existing = await pipeline.run("load_children", self.persistence.list_children(saved.id))
        return await self._sync_children(pipeline, saved, tickets, rule, dates, existing, len(saved_tickets))

    # ------------------------------------------------------------------ #
    #  Shared stages
    # ------------------------------------------------------------------ #

    async def _save_parent(self, pipeline: _StagedWrites, call: Awaitable[Event]) -> Event:
        saved = await pipeline.run("parent", call)
        pipeline.event_id = saved.id
        return saved

    async def _sync_children(
        self,
        pipeline: _StagedWrites,
        template: Event,
        tickets: list[TicketTemplate],
        rule: RecurrenceRule | None,
        dates: list[date],
        existing: list[Event],
        ticket_count: int,
    ) -> SaveOutcome:
        classification = classify(existing)
        if rule is None:
            occurrence_diff = OccurrenceDiff(
                dates_to_create=[],
                ids_to_delete=[child.id for child in classification.regenerable if child.id],
            )
        else:
            occurrence_diff = diff(dates, classification.preserved, classification.regenerable)

        dates_to_create = occurrence_diff.dates_to_create
        if not self.config.materialize_anchor_occurrence:
            dates_to_create = [day for day in dates_to_create if day != template.start_date]
        new_children = [build_occurrence(template, day) for day in dates_to_create]
        ids_to_delete = occurrence_diff.ids_to_delete

        # Stale children go first: a failed delete must not leave new
        # children sitting next to the old ones.
        if ids_to_delete:
            await pipeline.run(
                "delete_children", self.persistence.delete_events(ids_to_delete), count=len(ids_to_delete)
            )
        saved_children: list[Event] = []
        if new_children:
            saved_children = await pipeline.run(
                "create_children", self.persistence.create_events(new_children), count=len(new_children)
            )

        clones = [ticket for _, ticket in propagate_tickets(tickets, saved_children)]
        if clones:
            await pipeline.run(
                "child_tickets", self.persistence.create_ticket_templates(clones), count=len(clones)
            )

        await self._refresh(pipeline, upserted=[template, *saved_children], removed=ids_to_delete)
        return SaveOutcome(
            transition=pipeline.transition,
            event=template,
            created_ids=[child.id for child in saved_children if child.id],
            deleted_ids=list(ids_to_delete),
            ticket_count=ticket_count + len(clones),
        )

    async def _replace_tickets(
        self, pipeline: _StagedWrites, event: Event, tickets: list[TicketTemplate]
    ) -> list[TicketTemplate]:
        owned = [ticket.with_updates(id=None, event_id=event.id) for ticket in tickets]
        return await pipeline.run(
            "parent_tickets",
            self.persistence.replace_ticket_templates_for_event(event.id, owned),
            count=len(owned),
        )

    async def _refresh(
        self,
        pipeline: _StagedWrites,
        *,
        upserted: list[Event],
        removed: list[str] | None = None,
    ) -> None:
        tickets = await pipeline.run("refresh", self.persistence.list_event_tickets())
        self.state.remove(removed or [])
        self.state.upsert(*upserted)
        self.state.set_tickets(tickets)

    # ------------------------------------------------------------------ #
    #  Audit trail
    # ------------------------------------------------------------------ #

    def _pipeline(self, operation: str, event_id: str | None) -> _StagedWrites:
        run_id = None
        if self.state_store is not None:
            run_id = self.state_store.start_save_run(operation=operation, event_id=event_id)
        return _StagedWrites(run_id=run_id, event_id=event_id, on_stage=self._record_stage)

    def _record_stage(self, pipeline: _StagedWrites, stage: str, details: dict[str, Any]) -> None:
        if self.state_store is None:
            return
        self.state_store.record_audit_event(
            event_id=pipeline.event_id or "new",
            action=f"stage_{stage}",
            details={"transition": pipeline.transition, **details},
            run_id=pipeline.run_id,
        )

    def _finish_run(
        self,
        pipeline: _StagedWrites,
        started_at: datetime,
        *,
        created_count: int,
        deleted_count: int,
        message: str,
    ) -> None:
        if self.state_store is None or pipeline.run_id is None:
            return
        self.state_store.finish_save_run(
            run_id=pipeline.run_id,
            transition=pipeline.transition,
            event_id=pipeline.event_id,
            status="success",
            message=message,
            duration_ms=_elapsed_ms(started_at),
            created_count=created_count,
            deleted_count=deleted_count,
        )

    def _fail_run(self, pipeline: _StagedWrites, started_at: datetime, exc: Exception) -> None:
        if self.state_store is None or pipeline.run_id is None:
            return
        error_message = f"{type(exc).__name__}: {exc}"
        self.state_store.finish_save_run(
            run_id=pipeline.run_id,
            transition=pipeline.transition,
            event_id=pipeline.event_id,
            status="error",
            message=error_message,
            duration_ms=_elapsed_ms(started_at),
            created_count=0,
            deleted_count=0,
        )
        self.state_store.record_audit_event(
            event_id=pipeline.event_id or "new",
            action="save_error",
            details={
                "transition": pipeline.transition,
                "error": error_message,
                "stage": getattr(exc, "stage", None),
                "completed_stages": list(pipeline.completed),
                "traceback": traceback.format_exc(limit=5),
            },
            run_id=pipeline.run_id,
        )
