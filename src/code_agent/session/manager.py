"""Session manager bound to one store, app and user."""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..errors import invalid_input
from .base import BaseSessionStore, Event, Session, SessionSummary

logger = logging.getLogger(__name__)


class SessionHistory(BaseModel):
    """Replayed view of a session: its events and merged state."""
    session: Session
    events: List[Event] = Field(default_factory=list)
    state: Dict[str, Any] = Field(default_factory=dict)


class SessionManager:
    """
    Coordinates session lookup and lifecycle for one (app, user) pair.

    The active session is returned to the caller rather than kept here,
    so several front ends can share one manager.
    """

    def __init__(self, store: BaseSessionStore, app_name: str = "code_agent", user_id: str = "user"):
        self.store = store
        self.app_name = app_name
        self.user_id = user_id
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the backing store."""
        if self._initialized:
            return
        await self.store.initialize()
        self._initialized = True

    async def open(self, name: str, resume: bool = True, state: Optional[Dict[str, Any]] = None) -> Session:
        """Open a session by name, creating it when missing."""
        await self.initialize()
        session = await self.store.create_session(
            self.app_name, self.user_id, name, state=state, resume=resume
        )
        logger.info("Opened session %s (%s)", session.name, session.id)
        return session

    async def new_session(self, name: str, state: Optional[Dict[str, Any]] = None) -> Session:
        """Create a fresh session; fails if the name is taken."""
        return await self.open(name, resume=False, state=state)

    async def get(self, name: str) -> Optional[Session]:
        """Find a session by name."""
        await self.initialize()
        return await self.store.find_session(self.app_name, self.user_id, name)

    async def list(self) -> List[SessionSummary]:
        """List sessions, most recently updated first."""
        await self.initialize()
        return await self.store.list_sessions(self.app_name, self.user_id)

    async def delete(self, name: str) -> None:
        """Delete a session by name."""
        session = await self.get(name)
        if session is None:
            raise invalid_input(f"session not found: {name}")
        await self.store.delete_session(session.id)
        logger.info("Deleted session %s", name)

    async def refresh(self, session: Session) -> Session:
        """Reload a session to pick up its latest state."""
        fresh = await self.store.get_session(session.id)
        if fresh is None:
            raise invalid_input(f"session not found: {session.id}")
        return fresh

    async def load_history(self, session: Session) -> SessionHistory:
        """Replay a session's events and merged state; safe to repeat."""
        await self.initialize()
        events = await self.store.load_events(session.id)
        fresh = await self.refresh(session)
        return SessionHistory(session=fresh, events=events, state=fresh.state)

    async def close(self) -> None:
        """Close the backing store."""
        await self.store.close()
        self._initialized = False
