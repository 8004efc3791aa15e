"""Base classes for LLM providers."""

import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import BaseModel, Field

from ..session.base import ToolCall


class Message(BaseModel):
    """Represents a conversation message."""
    role: str  # "system", "user", "assistant", "tool"
    content: str = ""
    name: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None


class LLMResponse(BaseModel):
    """
    A response from an LLM.

    While streaming, providers yield ``partial=True`` snapshots holding the
    text so far, then one complete response with ``partial=False``.
    """
    content: str = ""
    finish_reason: Optional[str] = None
    usage: Dict[str, int] = Field(default_factory=dict)
    model: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    partial: bool = False


def parse_arguments(raw: Any) -> Dict[str, Any]:
    """Decode tool-call arguments the way providers send them."""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        # Kept so schema validation reports the bad payload back to the model
        return {"_raw_arguments": str(raw)}
    return value if isinstance(value, dict) else {"_raw_arguments": value}


class BaseLLMProvider(ABC):
    """Abstract base class for LLM providers."""

    default_model = "default"
    api_key_env: Optional[str] = None

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, **kwargs):
        self.api_key = api_key
        self.model = model or self.default_model
        self.kwargs = kwargs
        self.client = None

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the provider (async setup)."""
        pass

    @abstractmethod
    async def generate_response(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ) -> LLMResponse:
        """Generate a response from the LLM."""
        pass

    @abstractmethod
    def stream_response(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ) -> AsyncIterator[LLMResponse]:
        """Stream partial responses, ending with the complete one."""
        pass

    @property
    def name(self) -> str:
        """Get provider name."""
        return self.__class__.__name__.replace("Provider", "").lower()

    @property
    def is_available(self) -> bool:
        """Check if provider is available."""
        return self.api_key is not None

    def format_messages_for_api(self, messages: List[Message]) -> List[Dict[str, Any]]:
        """Format messages for OpenAI-style chat APIs."""
        formatted = []
        for msg in messages:
            formatted_msg: Dict[str, Any] = {
                "role": msg.role,
                "content": msg.content
            }
            if msg.name:
                formatted_msg["name"] = msg.name
            if msg.tool_calls:
                formatted_msg["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": json.dumps(call.arguments),
                        },
                    }
                    for call in msg.tool_calls
                ]
            if msg.tool_call_id:
                formatted_msg["tool_call_id"] = msg.tool_call_id
            formatted.append(formatted_msg)
        return formatted
