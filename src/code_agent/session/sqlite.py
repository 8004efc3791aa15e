"""SQLite-backed durable session store."""

import asyncio
import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from ..errors import internal, invalid_input
from .base import (
    Author,
    BaseSessionStore,
    Event,
    EventContent,
    FaultHook,
    Session,
    SessionSummary,
    new_id,
    utc_now,
)
from .state import apply_delta, extract_state_deltas, merge_states, trim_temp_delta

logger = logging.getLogger(__name__)

_SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        app_name TEXT NOT NULL,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        state TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (app_name, user_id, name)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS events (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        invocation_id TEXT,
        author TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        content TEXT NOT NULL,
        state_delta TEXT,
        final INTEGER NOT NULL DEFAULT 0,
        error_code TEXT,
        error_message TEXT
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_events_session ON events(session_id, seq)',
    '''
    CREATE TABLE IF NOT EXISTS app_states (
        app_name TEXT PRIMARY KEY,
        state TEXT NOT NULL DEFAULT '{}',
        updated_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS user_states (
        app_name TEXT NOT NULL,
        user_id TEXT NOT NULL,
        state TEXT NOT NULL DEFAULT '{}',
        updated_at TEXT NOT NULL,
        PRIMARY KEY (app_name, user_id)
    )
    ''',
]


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _loads(value: Optional[str]) -> Dict[str, Any]:
    return json.loads(value) if value else {}


class SQLiteSessionStore(BaseSessionStore):
    """
    Durable store: one row per session, an append-only event table and
    the app/user state layers.

    Every mutation runs inside a single SQLite transaction.
    """

    def __init__(
        self,
        db_path: Optional[Union[str, Path]] = None,
        fault_hook: Optional[FaultHook] = None,
    ):
        super().__init__(fault_hook)
        self.db_path = Path(db_path) if db_path else Path.home() / ".code_agent" / "sessions.db"
        self._connection: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the database and create tables."""
        async with self._lock:
            self._ensure_connection()

    def _ensure_connection(self) -> sqlite3.Connection:
        if self._connection is not None:
            return self._connection
        try:
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            connection = sqlite3.connect(str(self.db_path))
            connection.row_factory = sqlite3.Row
            connection.execute("PRAGMA foreign_keys = ON")
            with connection:
                for statement in _SCHEMA:
                    connection.execute(statement)
        except (OSError, sqlite3.Error) as e:
            raise internal(f"failed to open session database {self.db_path}", e).with_context(
                "db_path", self.db_path
            )
        logger.debug("Opened session database %s", self.db_path)
        self._connection = connection
        return connection

    # Row helpers

    def _layer_state(self, cursor: sqlite3.Cursor, app_name: str, user_id: str) -> Dict[str, Dict[str, Any]]:
        cursor.execute("SELECT state FROM app_states WHERE app_name = ?", (app_name,))
        app_row = cursor.fetchone()
        cursor.execute(
            "SELECT state FROM user_states WHERE app_name = ? AND user_id = ?",
            (app_name, user_id),
        )
        user_row = cursor.fetchone()
        return {
            "app": _loads(app_row["state"]) if app_row else {},
            "user": _loads(user_row["state"]) if user_row else {},
        }

    def _row_to_session(self, cursor: sqlite3.Cursor, row: sqlite3.Row) -> Session:
        layers = self._layer_state(cursor, row["app_name"], row["user_id"])
        return Session(
            id=row["id"],
            app_name=row["app_name"],
            user_id=row["user_id"],
            name=row["name"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            state=merge_states(layers["app"], layers["user"], _loads(row["state"])),
        )

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            session_id=row["session_id"],
            invocation_id=row["invocation_id"] or "",
            author=Author(row["author"]),
            timestamp=datetime.fromisoformat(row["timestamp"]),
            content=EventContent.model_validate_json(row["content"]),
            state_delta=_loads(row["state_delta"]),
            final=bool(row["final"]),
            error_code=row["error_code"],
            error_message=row["error_message"],
        )

    def _merge_layer(self, cursor: sqlite3.Cursor, table: str, keys: Dict[str, str], delta: Dict[str, Any]) -> None:
        """Read-modify-write one state layer row inside the current transaction."""
        where = " AND ".join(f"{column} = ?" for column in keys)
        cursor.execute(f"SELECT state FROM {table} WHERE {where}", tuple(keys.values()))
        row = cursor.fetchone()
        state = apply_delta(_loads(row["state"]) if row else {}, delta)
        now = utc_now().isoformat()
        if row:
            cursor.execute(
                f"UPDATE {table} SET state = ?, updated_at = ? WHERE {where}",
                (_dumps(state), now, *keys.values()),
            )
        else:
            columns = ", ".join(keys)
            placeholders = ", ".join("?" for _ in keys)
            cursor.execute(
                f"INSERT INTO {table} ({columns}, state, updated_at) VALUES ({placeholders}, ?, ?)",
                (*keys.values(), _dumps(state), now),
            )

    # Store operations

    async def create_session(
        self,
        app_name: str,
        user_id: str,
        name: str,
        state: Optional[Dict[str, Any]] = None,
        resume: bool = False,
    ) -> Session:
        """Create a session, or resume the existing one with the same name."""
        if not app_name or not user_id or not name:
            raise invalid_input("app_name, user_id and name are required")

        async with self._lock:
            connection = self._ensure_connection()
            cursor = connection.cursor()
            try:
                cursor.execute(
                    "SELECT * FROM sessions WHERE app_name = ? AND user_id = ? AND name = ?",
                    (app_name, user_id, name),
                )
                existing = cursor.fetchone()
                if existing is not None:
                    if resume:
                        return self._row_to_session(cursor, existing)
                    raise internal(f"session already exists: {name}").with_context("session", name)

                app_delta, user_delta, session_state = extract_state_deltas(state)
                session_id = new_id()
                now = utc_now().isoformat()
                with connection:
                    self._merge_layer(cursor, "app_states", {"app_name": app_name}, app_delta)
                    self._merge_layer(
                        cursor, "user_states", {"app_name": app_name, "user_id": user_id}, user_delta
                    )
                    cursor.execute(
                        '''
                        INSERT INTO sessions (id, app_name, user_id, name, state, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        ''',
                        (session_id, app_name, user_id, name, _dumps(session_state), now, now),
                    )
                cursor.execute("SELECT * FROM sessions WHERE id = ?", (session_id,))
                return self._row_to_session(cursor, cursor.fetchone())
            except sqlite3.Error as e:
                raise internal("failed to create session", e).with_context("session", name)

    async def get_session(self, session_id: str) -> Optional[Session]:
        """Get a session by id."""
        async with self._lock:
            cursor = self._ensure_connection().cursor()
            try:
                cursor.execute("SELECT * FROM sessions WHERE id = ?", (session_id,))
                row = cursor.fetchone()
                return self._row_to_session(cursor, row) if row else None
            except sqlite3.Error as e:
                raise internal("failed to fetch session", e).with_context("session_id", session_id)

    async def find_session(self, app_name: str, user_id: str, name: str) -> Optional[Session]:
        """Get a session by name."""
        async with self._lock:
            cursor = self._ensure_connection().cursor()
            try:
                cursor.execute(
                    "SELECT * FROM sessions WHERE app_name = ? AND user_id = ? AND name = ?",
                    (app_name, user_id, name),
                )
                row = cursor.fetchone()
                return self._row_to_session(cursor, row) if row else None
            except sqlite3.Error as e:
                raise internal("failed to fetch session", e).with_context("session", name)

    async def list_sessions(self, app_name: str, user_id: str) -> List[SessionSummary]:
        """List sessions for a user, most recently updated first."""
        async with self._lock:
            cursor = self._ensure_connection().cursor()
            try:
                cursor.execute(
                    '''
                    SELECT s.*, (SELECT COUNT(*) FROM events e WHERE e.session_id = s.id) AS event_count
                    FROM sessions s
                    WHERE s.app_name = ? AND s.user_id = ?
                    ORDER BY s.updated_at DESC
                    ''',
                    (app_name, user_id),
                )
                rows = cursor.fetchall()
            except sqlite3.Error as e:
                raise internal("failed to list sessions", e)

        return [
            SessionSummary(
                id=row["id"],
                app_name=row["app_name"],
                user_id=row["user_id"],
                name=row["name"],
                created_at=datetime.fromisoformat(row["created_at"]),
                updated_at=datetime.fromisoformat(row["updated_at"]),
                event_count=row["event_count"],
            )
            for row in rows
        ]

    async def append_event(self, session_id: str, event: Event) -> Event:
        """
        Store an event and apply its state delta in one transaction.

        The event row, the three state layers and the session timestamp are
        committed together or not at all. Partial events are not persisted.
        """
        if event.partial:
            return event

        async with self._lock:
            connection = self._ensure_connection()
            cursor = connection.cursor()
            try:
                cursor.execute("SELECT * FROM sessions WHERE id = ?", (session_id,))
                row = cursor.fetchone()
                if row is None:
                    raise invalid_input(f"session not found: {session_id}")

                stored = event.model_copy(update={
                    "session_id": session_id,
                    "state_delta": trim_temp_delta(event.state_delta),
                })
                updated_at = self._next_update_time(datetime.fromisoformat(row["updated_at"]))
                app_delta, user_delta, session_delta = extract_state_deltas(stored.state_delta)

                with connection:
                    cursor.execute(
                        '''
                        INSERT INTO events
                        (id, session_id, invocation_id, author, timestamp, content, state_delta,
                         final, error_code, error_message)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ''',
                        (
                            stored.id,
                            session_id,
                            stored.invocation_id,
                            stored.author.value,
                            stored.timestamp.isoformat(),
                            stored.content.model_dump_json(),
                            _dumps(stored.state_delta),
                            int(stored.final),
                            stored.error_code,
                            stored.error_message,
                        ),
                    )
                    self._checkpoint("event_written")

                    if app_delta:
                        self._merge_layer(cursor, "app_states", {"app_name": row["app_name"]}, app_delta)
                    if user_delta:
                        self._merge_layer(
                            cursor,
                            "user_states",
                            {"app_name": row["app_name"], "user_id": row["user_id"]},
                            user_delta,
                        )
                    session_state = apply_delta(_loads(row["state"]), session_delta)
                    self._checkpoint("state_applied")

                    cursor.execute(
                        "UPDATE sessions SET state = ?, updated_at = ? WHERE id = ?",
                        (_dumps(session_state), updated_at.isoformat(), session_id),
                    )
                return stored
            except sqlite3.Error as e:
                raise internal("failed to append event", e).with_context("session_id", session_id)

    async def delete_session(self, session_id: str) -> None:
        """Delete a session and all of its events."""
        async with self._lock:
            connection = self._ensure_connection()
            cursor = connection.cursor()
            try:
                with connection:
                    cursor.execute("DELETE FROM events WHERE session_id = ?", (session_id,))
                    cursor.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
                    if cursor.rowcount == 0:
                        raise invalid_input(f"session not found: {session_id}")
            except sqlite3.Error as e:
                raise internal("failed to delete session", e).with_context("session_id", session_id)

    async def read_events(
        self,
        session_id: str,
        since_event_id: Optional[str] = None,
        batch_size: int = 100,
    ) -> AsyncIterator[Event]:
        """
        Iterate events in append order, fetching ``batch_size`` rows at a time.

        Each call starts a fresh iteration, so the sequence is restartable.
        """
        async with self._lock:
            cursor = self._ensure_connection().cursor()
            try:
                cursor.execute("SELECT 1 FROM sessions WHERE id = ?", (session_id,))
                if cursor.fetchone() is None:
                    raise invalid_input(f"session not found: {session_id}")
                last_seq = 0
                if since_event_id is not None:
                    cursor.execute(
                        "SELECT seq FROM events WHERE id = ? AND session_id = ?",
                        (since_event_id, session_id),
                    )
                    since_row = cursor.fetchone()
                    if since_row is None:
                        raise invalid_input(f"event not found: {since_event_id}")
                    last_seq = since_row["seq"]
            except sqlite3.Error as e:
                raise internal("failed to read events", e).with_context("session_id", session_id)

        while True:
            async with self._lock:
                cursor = self._ensure_connection().cursor()
                try:
                    cursor.execute(
                        '''
                        SELECT * FROM events
                        WHERE session_id = ? AND seq > ?
                        ORDER BY seq ASC
                        LIMIT ?
                        ''',
                        (session_id, last_seq, batch_size),
                    )
                    rows = cursor.fetchall()
                except sqlite3.Error as e:
                    raise internal("failed to read events", e).with_context("session_id", session_id)

            for row in rows:
                yield self._row_to_event(row)

            if len(rows) < batch_size:
                break
            last_seq = rows[-1]["seq"]

    async def close(self) -> None:
        """Close the database connection."""
        async with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
