from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import uuid
from contextlib import closing
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from cadence.errors import NotFoundError, PersistenceError
from cadence.models import Event, TicketTemplate, serialize_datetime, utc_now


class EventPersistence(Protocol):
    """Async persistence contract consumed by the series synchronizer."""

    async def create_event(self, event: Event) -> Event: ...

    async def create_events(self, events: list[Event]) -> list[Event]: ...

    async def update_event(self, event_id: str, event: Event) -> Event: ...

    async def delete_event(self, event_id: str) -> None: ...

    async def delete_events(self, event_ids: list[str]) -> None: ...

    async def get_event(self, event_id: str) -> Event | None: ...

    async def list_children(self, parent_id: str) -> list[Event]: ...

    async def list_events(self) -> list[Event]: ...

    async def replace_ticket_templates_for_event(
        self, event_id: str, tickets: list[TicketTemplate]
    ) -> list[TicketTemplate]: ...

    async def create_ticket_templates(self, tickets: list[TicketTemplate]) -> list[TicketTemplate]: ...

    async def list_event_tickets(self) -> list[TicketTemplate]: ...


def _new_id() -> str:
    return uuid.uuid4().hex


def _event_payload(event: Event) -> str:
    payload = event.to_dict()
    payload.pop("id", None)
    return json.dumps(payload, ensure_ascii=False)


def _ticket_payload(ticket: TicketTemplate) -> str:
    payload = ticket.to_dict()
    payload.pop("id", None)
    payload.pop("event_id", None)
    return json.dumps(payload, ensure_ascii=False)


def _row_to_event(row: sqlite3.Row) -> Event:
    payload = json.loads(row["payload_json"] or "{}")
    payload["id"] = row["id"]
    return Event.from_dict(payload)


def _row_to_ticket(row: sqlite3.Row) -> TicketTemplate:
    payload = json.loads(row["payload_json"] or "{}")
    payload["id"] = row["id"]
    payload["event_id"] = row["event_id"]
    return TicketTemplate.from_dict(payload)


class EventStore:
    """Event and ticket rows kept in a local sqlite file.

    Batch writes run inside a single transaction: either every row of a batch
    is written or none is.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS events (
            id TEXT PRIMARY KEY,
            parent_event_id TEXT,
            is_template INTEGER NOT NULL DEFAULT 0,
            start_date TEXT,
            payload_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_events_parent ON events(parent_event_id);

        CREATE TABLE IF NOT EXISTS event_tickets (
            id TEXT PRIMARY KEY,
            event_id TEXT NOT NULL,
            payload_json TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_event_tickets_event ON event_tickets(event_id);
        """
        with self._lock:
            with closing(self._connect()) as conn:
                conn.executescript(schema_sql)

    @staticmethod
    def _missing_event_ids(conn: sqlite3.Connection, event_ids: Iterable[str]) -> list[str]:
        missing: list[str] = []
        for event_id in event_ids:
            row = conn.execute("SELECT 1 FROM events WHERE id = ?", (event_id,)).fetchone()
            if row is None:
                missing.append(event_id)
        return missing

    def insert_events(self, events: list[Event]) -> list[Event]:
        now = utc_now()
        saved: list[Event] = []
        with self._lock:
            with closing(self._connect()) as conn, conn:
                for event in events:
                    stored = event.with_updates(
                        id=_new_id(),
                        created_at=event.created_at or now,
                        updated_at=now,
                    )
                    conn.execute(
                        """
                        INSERT INTO events(id, parent_event_id, is_template, start_date, payload_json, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            stored.id,
                            stored.parent_event_id,
                            int(stored.is_template),
                            stored.start_date.isoformat() if stored.start_date else None,
                            _event_payload(stored),
                            serialize_datetime(stored.created_at),
                            serialize_datetime(stored.updated_at),
                        ),
                    )
                    saved.append(stored)
        return saved

    def update_event(self, event_id: str, event: Event) -> Event:
        with self._lock:
            with closing(self._connect()) as conn, conn:
                row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
                if row is None:
                    raise NotFoundError("event", event_id)
                previous = _row_to_event(row)
                stored = event.with_updates(
                    id=event_id,
                    created_at=previous.created_at or event.created_at,
                    updated_at=utc_now(),
                )
                conn.execute(
                    """
                    UPDATE events
                    SET parent_event_id = ?, is_template = ?, start_date = ?, payload_json = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        stored.parent_event_id,
                        int(stored.is_template),
                        stored.start_date.isoformat() if stored.start_date else None,
                        _event_payload(stored),
                        serialize_datetime(stored.updated_at),
                        event_id,
                    ),
                )
        return stored

    def delete_events(self, event_ids: list[str]) -> None:
        if not event_ids:
            return
        with self._lock:
            with closing(self._connect()) as conn, conn:
                missing = self._missing_event_ids(conn, event_ids)
                if missing:
                    raise NotFoundError("event", ", ".join(missing))
                for event_id in event_ids:
                    conn.execute("DELETE FROM event_tickets WHERE event_id = ?", (event_id,))
                    conn.execute("DELETE FROM events WHERE id = ?", (event_id,))

    def get_event(self, event_id: str) -> Event | None:
        with self._lock:
            with closing(self._connect()) as conn:
                row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        return _row_to_event(row) if row is not None else None

    def list_children(self, parent_id: str) -> list[Event]:
        with self._lock:
            with closing(self._connect()) as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM events
                    WHERE parent_event_id = ?
                    ORDER BY start_date, created_at
                    """,
                    (parent_id,),
                ).fetchall()
        return [_row_to_event(row) for row in rows]

    def list_events(self) -> list[Event]:
        with self._lock:
            with closing(self._connect()) as conn:
                rows = conn.execute("SELECT * FROM events ORDER BY start_date, created_at").fetchall()
        return [_row_to_event(row) for row in rows]

    def replace_tickets(self, event_id: str, tickets: list[TicketTemplate]) -> list[TicketTemplate]:
        saved: list[TicketTemplate] = []
        with self._lock:
            with closing(self._connect()) as conn, conn:
                if self._missing_event_ids(conn, [event_id]):
                    raise NotFoundError("event", event_id)
                conn.execute("DELETE FROM event_tickets WHERE event_id = ?", (event_id,))
                for ticket in tickets:
                    stored = ticket.with_updates(id=_new_id(), event_id=event_id)
                    conn.execute(
                        "INSERT INTO event_tickets(id, event_id, payload_json) VALUES (?, ?, ?)",
                        (stored.id, event_id, _ticket_payload(stored)),
                    )
                    saved.append(stored)
        return saved

    def insert_tickets(self, tickets: list[TicketTemplate]) -> list[TicketTemplate]:
        saved: list[TicketTemplate] = []
        with self._lock:
            with closing(self._connect()) as conn, conn:
                missing = self._missing_event_ids(conn, {t.event_id or "" for t in tickets})
                if missing:
                    raise NotFoundError("event", ", ".join(sorted(missing)))
                for ticket in tickets:
                    stored = ticket.with_updates(id=_new_id())
                    conn.execute(
                        "INSERT INTO event_tickets(id, event_id, payload_json) VALUES (?, ?, ?)",
                        (stored.id, stored.event_id, _ticket_payload(stored)),
                    )
                    saved.append(stored)
        return saved

    def list_tickets(self, event_id: str | None = None) -> list[TicketTemplate]:
        with self._lock:
            with closing(self._connect()) as conn:
                if event_id is None:
                    rows = conn.execute("SELECT * FROM event_tickets ORDER BY event_id, rowid").fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM event_tickets WHERE event_id = ? ORDER BY rowid",
                        (event_id,),
                    ).fetchall()
        return [_row_to_ticket(row) for row in rows]


class SQLiteEventPersistence:
    """Async facade over EventStore; blocking calls run in worker threads."""

    def __init__(self, store: EventStore) -> None:
        self.store = store

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as exc:
            raise PersistenceError(f"{operation} failed: {exc}") from exc

    async def create_event(self, event: Event) -> Event:
        saved = await self._call("create_event", self.store.insert_events, [event])
        return saved[0]

    async def create_events(self, events: list[Event]) -> list[Event]:
        return await self._call("create_events", self.store.insert_events, list(events))

    async def update_event(self, event_id: str, event: Event) -> Event:
        return await self._call("update_event", self.store.update_event, event_id, event)

    async def delete_event(self, event_id: str) -> None:
        await self._call("delete_event", self.store.delete_events, [event_id])

    async def delete_events(self, event_ids: list[str]) -> None:
        await self._call("delete_events", self.store.delete_events, list(event_ids))

    async def get_event(self, event_id: str) -> Event | None:
        return await self._call("get_event", self.store.get_event, event_id)

    async def list_children(self, parent_id: str) -> list[Event]:
        return await self._call("list_children", self.store.list_children, parent_id)

    async def list_events(self) -> list[Event]:
        return await self._call("list_events", self.store.list_events)

    async def replace_ticket_templates_for_event(
        self, event_id: str, tickets: list[TicketTemplate]
    ) -> list[TicketTemplate]:
        return await self._call(
            "replace_ticket_templates_for_event", self.store.replace_tickets, event_id, list(tickets)
        )

    async def create_ticket_templates(self, tickets: list[TicketTemplate]) -> list[TicketTemplate]:
        return await self._call("create_ticket_templates", self.store.insert_tickets, list(tickets))

    async def list_event_tickets(self) -> list[TicketTemplate]:
        return await self._call("list_event_tickets", self.store.list_tickets)
