"""Base models and store interface for session persistence."""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, AsyncIterator, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..errors import invalid_input


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Author(str, Enum):
    """Who produced an event."""
    USER = "user"
    MODEL = "model"
    TOOL = "tool"


class ToolCall(BaseModel):
    """A model's request to run a tool."""
    id: str = Field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolResponse(BaseModel):
    """Outcome of one tool call, correlated by ``call_id``."""
    call_id: str
    name: str
    output: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolCallPart(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    tool_call: ToolCall


class ToolResultPart(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_result: ToolResponse


Part = Annotated[Union[TextPart, ToolCallPart, ToolResultPart], Field(discriminator="type")]


class EventContent(BaseModel):
    """Ordered parts of an event: text, tool calls and tool results."""
    parts: List[Part] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> List[ToolCall]:
        return [p.tool_call for p in self.parts if isinstance(p, ToolCallPart)]

    @property
    def tool_results(self) -> List[ToolResponse]:
        return [p.tool_result for p in self.parts if isinstance(p, ToolResultPart)]


class Event(BaseModel):
    """
    An immutable record in a session's log.

    Partial events are streaming snapshots; a later event for the same
    response supersedes them and they are never persisted.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    session_id: str = ""
    invocation_id: str = ""
    author: Author
    timestamp: datetime = Field(default_factory=utc_now)
    content: EventContent = Field(default_factory=EventContent)
    state_delta: Dict[str, Any] = Field(default_factory=dict)
    partial: bool = False
    final: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def create(
        cls,
        author: Author,
        text: Optional[str] = None,
        tool_calls: Optional[List[ToolCall]] = None,
        tool_results: Optional[List[ToolResponse]] = None,
        **kwargs: Any,
    ) -> "Event":
        """Build an event from text and tool payloads."""
        parts: List[Any] = []
        if text:
            parts.append(TextPart(text=text))
        for call in tool_calls or []:
            parts.append(ToolCallPart(tool_call=call))
        for result in tool_results or []:
            parts.append(ToolResultPart(tool_result=result))
        return cls(author=author, content=EventContent(parts=parts), **kwargs)

    @property
    def text(self) -> str:
        return self.content.text

    @property
    def tool_calls(self) -> List[ToolCall]:
        return self.content.tool_calls

    @property
    def tool_results(self) -> List[ToolResponse]:
        return self.content.tool_results


class Session(BaseModel):
    """A named conversation and its merged state view."""
    id: str
    app_name: str
    user_id: str
    name: str
    created_at: datetime
    updated_at: datetime
    state: Dict[str, Any] = Field(default_factory=dict)


class SessionSummary(BaseModel):
    """Lightweight listing entry for a session."""
    id: str
    app_name: str
    user_id: str
    name: str
    created_at: datetime
    updated_at: datetime
    event_count: int = 0


FaultHook = Callable[[str], None]


class BaseSessionStore(ABC):
    """Abstract base class for session stores."""

    def __init__(self, fault_hook: Optional[FaultHook] = None):
        # Called with a stage name inside the append transaction.
        self.fault_hook = fault_hook

    def _checkpoint(self, stage: str) -> None:
        if self.fault_hook is not None:
            self.fault_hook(stage)

    @staticmethod
    def _next_update_time(previous: Optional[datetime]) -> datetime:
        """Return a timestamp strictly after ``previous``."""
        now = utc_now()
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
        return now

    async def initialize(self) -> None:
        """Prepare the backing storage."""
        pass

    @abstractmethod
    async def create_session(
        self,
        app_name: str,
        user_id: str,
        name: str,
        state: Optional[Dict[str, Any]] = None,
        resume: bool = False,
    ) -> Session:
        """Create a session, or return the existing one when ``resume`` is set."""
        pass

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[Session]:
        """Get a session by id."""
        pass

    @abstractmethod
    async def find_session(self, app_name: str, user_id: str, name: str) -> Optional[Session]:
        """Get a session by its (app, user, name) triple."""
        pass

    @abstractmethod
    async def list_sessions(self, app_name: str, user_id: str) -> List[SessionSummary]:
        """List sessions, most recently updated first."""
        pass

    @abstractmethod
    async def append_event(self, session_id: str, event: Event) -> Event:
        """Atomically store an event and apply its state delta."""
        pass

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        """Delete a session and its event log."""
        pass

    @abstractmethod
    def read_events(
        self,
        session_id: str,
        since_event_id: Optional[str] = None,
        batch_size: int = 100,
    ) -> AsyncIterator[Event]:
        """Iterate a session's events in append order."""
        pass

    async def get_state(self, session_id: str) -> Dict[str, Any]:
        """Get the merged state of a session."""
        session = await self.get_session(session_id)
        if session is None:
            raise invalid_input(f"session not found: {session_id}")
        return session.state

    async def load_events(self, session_id: str, since_event_id: Optional[str] = None) -> List[Event]:
        """Collect a session's events into a list."""
        return [event async for event in self.read_events(session_id, since_event_id)]

    async def close(self) -> None:
        """Release storage resources."""
        pass
