from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel, Field

from cadence.config_manager import ConfigManager
from cadence.errors import ConfigError, InvalidRuleError, NotFoundError, PersistenceError, SeriesError
from cadence.event_store import EventStore, SQLiteEventPersistence
from cadence.ical_export import export_ics
from cadence.models import Event, RecurrenceRule, TicketTemplate, parse_iso_date
from cadence.recurrence import describe_rule
from cadence.series_sync import EventState, SeriesSynchronizer
from cadence.state_store import StateStore


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SaveEventRequest(BaseModel):
    event: dict[str, Any] = Field(default_factory=dict)
    tickets: list[dict[str, Any]] = Field(default_factory=list)
    recurrence_rule: dict[str, Any] | None = None


class RecurrencePreviewRequest(BaseModel):
    start_date: str
    recurrence_rule: dict[str, Any]


class AppContext:
    def __init__(self, config_path: str, events_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.event_store = EventStore(events_path)
        self.persistence = SQLiteEventPersistence(self.event_store)
        self.state_store = StateStore(state_path)
        self.state = EventState(self.event_store.list_events(), self.event_store.list_tickets())

    def synchronizer(self) -> SeriesSynchronizer:
        config = self.config_manager.load()
        return SeriesSynchronizer(
            self.persistence,
            config=config.series,
            state_store=self.state_store,
            state=self.state,
        )


def _http_error(exc: SeriesError) -> HTTPException:
    if isinstance(exc, InvalidRuleError):
        return HTTPException(status_code=400, detail={"message": str(exc), "field": exc.field})
    if isinstance(exc, ConfigError):
        return HTTPException(status_code=400, detail={"message": str(exc), "key": exc.key})
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PersistenceError):
        return HTTPException(
            status_code=502,
            detail={
                "message": str(exc),
                "stage": exc.stage,
                "completed_stages": list(exc.completed_stages),
            },
        )
    return HTTPException(status_code=500, detail=str(exc))


def _event_with_tickets(event: Event, tickets: list[TicketTemplate]) -> dict[str, Any]:
    payload = event.to_dict()
    payload["tickets"] = [ticket.to_dict() for ticket in tickets if ticket.event_id == event.id]
    return payload


def create_app() -> FastAPI:
    config_path = os.getenv("CADENCE_CONFIG_PATH", "config.yaml")
    events_path = os.getenv("CADENCE_EVENTS_PATH", "data/events.db")
    state_path = os.getenv("CADENCE_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, events_path=events_path, state_path=state_path)

    app = FastAPI(title="Cadence Admin", version="0.1.0")
    app.state.context = context

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        try:
            updated = app.state.context.config_manager.update(request.payload)
        except ConfigError as exc:
            raise _http_error(exc) from exc
        return {"message": "config updated", "config": updated.to_dict()}

    @app.get("/api/events")
    async def list_events(parent_id: str | None = None) -> dict[str, Any]:
        state = app.state.context.state
        events = state.sorted_events() if parent_id is None else state.children_of(parent_id)
        return {"events": [event.to_dict() for event in events]}

    @app.post("/api/events/reload")
    async def reload_events() -> dict[str, Any]:
        try:
            state = await app.state.context.synchronizer().reload()
        except SeriesError as exc:
            raise _http_error(exc) from exc
        return {"message": "events reloaded", "count": len(state.events)}

    @app.get("/api/events.ics")
    async def events_ics() -> Response:
        events = await app.state.context.persistence.list_events()
        return Response(content=export_ics(events), media_type="text/calendar")

    @app.get("/api/events/{event_id}")
    async def get_event(event_id: str) -> dict[str, Any]:
        persistence = app.state.context.persistence
        event = await persistence.get_event(event_id)
        if event is None:
            raise HTTPException(status_code=404, detail="event not found")
        tickets = await persistence.list_event_tickets()
        return {"event": _event_with_tickets(event, tickets)}

    @app.post("/api/events/save")
    async def save_event(request: SaveEventRequest) -> dict[str, Any]:
        try:
            event = Event.from_dict(request.event)
            tickets = [TicketTemplate.from_dict(item) for item in request.tickets]
            rule = RecurrenceRule.from_dict(request.recurrence_rule)
        except SeriesError as exc:
            raise _http_error(exc) from exc
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            outcome = await app.state.context.synchronizer().save_event(event, tickets, rule)
        except SeriesError as exc:
            raise _http_error(exc) from exc
        return {"message": "event saved", "result": outcome.to_dict()}

    @app.delete("/api/events/{event_id}")
    async def delete_event(event_id: str) -> dict[str, Any]:
        event = await app.state.context.persistence.get_event(event_id)
        if event is None:
            raise HTTPException(status_code=404, detail="event not found")
        try:
            deleted_ids = await app.state.context.synchronizer().delete_event_or_series(event)
        except SeriesError as exc:
            raise _http_error(exc) from exc
        return {"message": "event deleted", "deleted_ids": deleted_ids}

    @app.post("/api/recurrence/preview")
    def preview_recurrence(request: RecurrencePreviewRequest) -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        try:
            start_date = parse_iso_date(request.start_date)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid start_date") from exc
        try:
            rule = RecurrenceRule.from_dict(request.recurrence_rule)
            return describe_rule(rule, start_date, max_occurrences=config.series.max_occurrences)
        except SeriesError as exc:
            raise _http_error(exc) from exc

    @app.get("/api/saves/status")
    def save_status(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_save_runs(limit=limit)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    return app


app = create_app()
