"""Builders shared by the test modules."""

from code_agent.llm.base import LLMResponse
from code_agent.session.base import ToolCall


def text_response(text: str) -> LLMResponse:
    """A model answer with no tool calls."""
    return LLMResponse(content=text, finish_reason="stop", model="scripted")


def tool_response(*calls, text: str = "") -> LLMResponse:
    """A model answer requesting tools; each call is (name, arguments[, id])."""
    tool_calls = []
    for call in calls:
        name, arguments = call[0], call[1]
        if len(call) > 2:
            tool_calls.append(ToolCall(id=call[2], name=name, arguments=arguments))
        else:
            tool_calls.append(ToolCall(name=name, arguments=arguments))
    return LLMResponse(content=text, finish_reason="tool_calls", model="scripted", tool_calls=tool_calls)
