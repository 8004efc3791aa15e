"""Session persistence: stores, events and layered state."""

from .base import (
    Author,
    BaseSessionStore,
    Event,
    EventContent,
    Session,
    SessionSummary,
    TextPart,
    ToolCall,
    ToolCallPart,
    ToolResponse,
    ToolResultPart,
)
from .manager import SessionHistory, SessionManager
from .memory import InMemorySessionStore
from .sqlite import SQLiteSessionStore
from .state import extract_state_deltas, merge_states, trim_temp_delta

__all__ = [
    "Author",
    "BaseSessionStore",
    "Event",
    "EventContent",
    "Session",
    "SessionSummary",
    "TextPart",
    "ToolCall",
    "ToolCallPart",
    "ToolResponse",
    "ToolResultPart",
    "SessionHistory",
    "SessionManager",
    "InMemorySessionStore",
    "SQLiteSessionStore",
    "extract_state_deltas",
    "merge_states",
    "trim_temp_delta",
]
