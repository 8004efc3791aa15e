"""In-memory session store for headless runs and tests."""

import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from ..errors import internal, invalid_input
from .base import BaseSessionStore, Event, FaultHook, Session, SessionSummary, new_id, utc_now
from .state import apply_delta, extract_state_deltas, merge_states, trim_temp_delta


class InMemorySessionStore(BaseSessionStore):
    """Keeps sessions, event logs and state layers in process memory."""

    def __init__(self, fault_hook: Optional[FaultHook] = None):
        super().__init__(fault_hook)
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.events: Dict[str, List[Event]] = {}
        self.app_states: Dict[str, Dict[str, Any]] = {}
        self.user_states: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def _to_session(self, record: Dict[str, Any]) -> Session:
        return Session(
            id=record["id"],
            app_name=record["app_name"],
            user_id=record["user_id"],
            name=record["name"],
            created_at=record["created_at"],
            updated_at=record["updated_at"],
            state=merge_states(
                self.app_states.get(record["app_name"]),
                self.user_states.get((record["app_name"], record["user_id"])),
                record["state"],
            ),
        )

    def _find_record(self, app_name: str, user_id: str, name: str) -> Optional[Dict[str, Any]]:
        for record in self.sessions.values():
            if (record["app_name"], record["user_id"], record["name"]) == (app_name, user_id, name):
                return record
        return None

    async def create_session(
        self,
        app_name: str,
        user_id: str,
        name: str,
        state: Optional[Dict[str, Any]] = None,
        resume: bool = False,
    ) -> Session:
        """Create a new session."""
        if not app_name or not user_id or not name:
            raise invalid_input("app_name, user_id and name are required")

        async with self._lock:
            existing = self._find_record(app_name, user_id, name)
            if existing is not None:
                if resume:
                    return self._to_session(existing)
                raise internal(f"session already exists: {name}").with_context("session", name)

            app_delta, user_delta, session_state = extract_state_deltas(state)
            self.app_states[app_name] = apply_delta(self.app_states.get(app_name), app_delta)
            user_key = (app_name, user_id)
            self.user_states[user_key] = apply_delta(self.user_states.get(user_key), user_delta)

            now = utc_now()
            record = {
                "id": new_id(),
                "app_name": app_name,
                "user_id": user_id,
                "name": name,
                "state": session_state,
                "created_at": now,
                "updated_at": now,
            }
            self.sessions[record["id"]] = record
            self.events[record["id"]] = []
            return self._to_session(record)

    async def get_session(self, session_id: str) -> Optional[Session]:
        """Get a session by id."""
        async with self._lock:
            record = self.sessions.get(session_id)
            return self._to_session(record) if record else None

    async def find_session(self, app_name: str, user_id: str, name: str) -> Optional[Session]:
        """Get a session by name."""
        async with self._lock:
            record = self._find_record(app_name, user_id, name)
            return self._to_session(record) if record else None

    async def list_sessions(self, app_name: str, user_id: str) -> List[SessionSummary]:
        """List sessions for a user."""
        async with self._lock:
            summaries = [
                SessionSummary(
                    id=record["id"],
                    app_name=record["app_name"],
                    user_id=record["user_id"],
                    name=record["name"],
                    created_at=record["created_at"],
                    updated_at=record["updated_at"],
                    event_count=len(self.events.get(record["id"], [])),
                )
                for record in self.sessions.values()
                if record["app_name"] == app_name and record["user_id"] == user_id
            ]
        summaries.sort(key=lambda s: s.updated_at, reverse=True)
        return summaries

    async def append_event(self, session_id: str, event: Event) -> Event:
        """
        Append an event and apply its state delta.

        New state layers are computed as copies and swapped in only after
        every stage succeeded, so a failure leaves nothing applied.
        """
        if event.partial:
            return event

        async with self._lock:
            record = self.sessions.get(session_id)
            if record is None:
                raise invalid_input(f"session not found: {session_id}")

            updated_at = self._next_update_time(record["updated_at"])
            stored = event.model_copy(update={
                "session_id": session_id,
                "state_delta": trim_temp_delta(event.state_delta),
            })
            new_log = self.events[session_id] + [stored]
            self._checkpoint("event_written")

            app_delta, user_delta, session_delta = extract_state_deltas(stored.state_delta)
            app_name, user_key = record["app_name"], (record["app_name"], record["user_id"])
            new_app = apply_delta(self.app_states.get(app_name), app_delta)
            new_user = apply_delta(self.user_states.get(user_key), user_delta)
            new_session = apply_delta(record["state"], session_delta)
            self._checkpoint("state_applied")

            # Commit
            self.events[session_id] = new_log
            self.app_states[app_name] = new_app
            self.user_states[user_key] = new_user
            record["state"] = new_session
            record["updated_at"] = updated_at
            return stored

    async def delete_session(self, session_id: str) -> None:
        """Delete a session."""
        async with self._lock:
            if session_id not in self.sessions:
                raise invalid_input(f"session not found: {session_id}")
            del self.sessions[session_id]
            self.events.pop(session_id, None)

    async def read_events(
        self,
        session_id: str,
        since_event_id: Optional[str] = None,
        batch_size: int = 100,
    ) -> AsyncIterator[Event]:
        """Iterate events in append order, optionally after ``since_event_id``."""
        async with self._lock:
            if session_id not in self.sessions:
                raise invalid_input(f"session not found: {session_id}")
            log = list(self.events[session_id])

        start = 0
        if since_event_id is not None:
            ids = [event.id for event in log]
            if since_event_id not in ids:
                raise invalid_input(f"event not found: {since_event_id}")
            start = ids.index(since_event_id) + 1

        for event in log[start:]:
            yield event
