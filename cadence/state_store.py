from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    """Audit trail of save and delete operations."""

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
        CREATE TABLE IF NOT EXISTS save_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            operation TEXT NOT NULL,
            transition TEXT NOT NULL,
            event_id TEXT,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            created_count INTEGER NOT NULL,
            deleted_count INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            event_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._lock:
            with closing(self._connect()) as conn:
                conn.executescript(schema_sql)

    def start_save_run(self, *, operation: str, event_id: str | None, message: str = "running") -> int:
        with self._lock:
            with closing(self._connect()) as conn, conn:
                cursor = conn.execute(
                    """
                    INSERT INTO save_runs(run_at, operation, transition, event_id, status, message, duration_ms, created_count, deleted_count)
                    VALUES (?, ?, '', ?, 'running', ?, 0, 0, 0)
                    """,
                    (_utc_now(), operation, event_id, message),
                )
                return int(cursor.lastrowid)

    def finish_save_run(
        self,
        *,
        run_id: int,
        transition: str,
        event_id: str | None,
        status: str,
        message: str,
        duration_ms: int,
        created_count: int,
        deleted_count: int,
    ) -> None:
        with self._lock:
            with closing(self._connect()) as conn, conn:
                conn.execute(
                    """
                    UPDATE save_runs
                    SET transition = ?, event_id = ?, status = ?, message = ?, duration_ms = ?,
                        created_count = ?, deleted_count = ?
                    WHERE id = ?
                    """,
                    (
                        str(transition),
                        event_id,
                        str(status),
                        str(message),
                        int(duration_ms),
                        int(created_count),
                        int(deleted_count),
                        int(run_id),
                    ),
                )

    def recent_save_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with closing(self._connect()) as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, operation, transition, event_id, status, message, duration_ms,
                           created_count, deleted_count
                    FROM save_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        event_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with closing(self._connect()) as conn, conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, event_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), event_id, action, json.dumps(details, ensure_ascii=False, default=str)),
                )

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with closing(self._connect()) as conn:
                if run_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, event_id, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, event_id, action, details_json
                        FROM audit_events
                        WHERE run_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (int(run_id), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
