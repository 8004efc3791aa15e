"""Tests for the tool registry."""

import asyncio

import pytest

from code_agent.errors import AgentError, ErrorCode
from code_agent.tools import ToolEntry, ToolRegistry, register_builtin_tools
from code_agent.tools.mcp import ProviderTool, register_provider_tools

ECHO_SCHEMA = {
    "type": "object",
    "properties": {"text": {"type": "string"}},
    "required": ["text"],
    "additionalProperties": False,
}


async def echo(arguments, context):
    return {"echo": arguments["text"], "tool": context.tool_name}


def make_entry(name="echo", handler=echo, schema=None, independent=False):
    return ToolEntry(name, "Echo text back", schema or ECHO_SCHEMA, handler, independent=independent)


class TestRegister:
    """Registration rules."""

    def test_register_and_lookup(self):
        registry = ToolRegistry()
        registry.register(make_entry())
        assert registry.lookup("echo").description == "Echo text back"
        assert registry.lookup("missing") is None
        assert registry.list_tools() == ["echo"]

    def test_duplicate_name_rejected(self):
        registry = ToolRegistry()
        registry.register(make_entry())
        with pytest.raises(AgentError) as exc_info:
            registry.register(make_entry())
        assert exc_info.value.code == ErrorCode.INVALID_INPUT
        assert len(registry.entries()) == 1

    def test_empty_name_rejected(self):
        with pytest.raises(AgentError) as exc_info:
            ToolRegistry().register(make_entry(name="  "))
        assert exc_info.value.code == ErrorCode.INVALID_INPUT

    def test_malformed_schema_rejected(self):
        with pytest.raises(AgentError) as exc_info:
            ToolRegistry().register(make_entry(schema={"type": "not-a-type"}))
        assert exc_info.value.code == ErrorCode.INVALID_INPUT

    def test_entries_keep_registration_order(self):
        registry = register_builtin_tools(ToolRegistry())
        assert registry.list_tools() == [
            "read_file", "write_file", "list_directory", "execute_command", "apply_patch",
            "search_files", "grep_search", "replace_in_file",
        ]

    def test_function_definitions(self):
        registry = ToolRegistry()
        registry.register(make_entry())
        (definition,) = registry.get_function_definitions()
        assert definition["type"] == "function"
        assert definition["function"]["name"] == "echo"
        assert definition["function"]["parameters"] == ECHO_SCHEMA


class TestInvoke:
    """Invocation, validation and error mapping."""

    async def test_invoke_runs_handler(self, tool_context):
        registry = ToolRegistry()
        registry.register(make_entry())
        result = await registry.invoke("echo", {"text": "hi"}, tool_context.for_call("echo", "c1"))
        assert result == {"echo": "hi", "tool": "echo"}

    async def test_unknown_tool(self, tool_context):
        with pytest.raises(AgentError) as exc_info:
            await ToolRegistry().invoke("nope", {}, tool_context)
        assert exc_info.value.code == ErrorCode.NOT_SUPPORTED

    async def test_schema_violation(self, tool_context):
        registry = ToolRegistry()
        registry.register(make_entry())
        with pytest.raises(AgentError) as exc_info:
            await registry.invoke("echo", {"text": 3}, tool_context)
        assert exc_info.value.code == ErrorCode.INVALID_INPUT
        assert exc_info.value.context["tool"] == "echo"

    async def test_missing_required_argument(self, tool_context):
        registry = ToolRegistry()
        registry.register(make_entry())
        with pytest.raises(AgentError) as exc_info:
            await registry.invoke("echo", {}, tool_context)
        assert exc_info.value.code == ErrorCode.INVALID_INPUT

    async def test_agent_error_gets_tool_context(self, tool_context):
        async def failing(arguments, context):
            raise AgentError(ErrorCode.FILE_NOT_FOUND, "gone")

        registry = ToolRegistry()
        registry.register(make_entry(handler=failing))
        with pytest.raises(AgentError) as exc_info:
            await registry.invoke("echo", {"text": "x"}, tool_context)
        assert exc_info.value.code == ErrorCode.FILE_NOT_FOUND
        assert exc_info.value.context["tool"] == "echo"

    async def test_unexpected_exception_wrapped(self, tool_context):
        async def broken(arguments, context):
            raise KeyError("oops")

        registry = ToolRegistry()
        registry.register(make_entry(handler=broken))
        with pytest.raises(AgentError) as exc_info:
            await registry.invoke("echo", {"text": "x"}, tool_context)
        assert exc_info.value.code == ErrorCode.EXECUTION_FAILED
        assert isinstance(exc_info.value.cause, KeyError)

    async def test_cancellation_propagates(self, tool_context):
        async def cancelled(arguments, context):
            raise asyncio.CancelledError()

        registry = ToolRegistry()
        registry.register(make_entry(handler=cancelled))
        with pytest.raises(asyncio.CancelledError):
            await registry.invoke("echo", {"text": "x"}, tool_context)


class FakeProvider:
    """In-process tool provider."""

    def __init__(self):
        self.calls = []

    async def list_tools(self):
        return [
            ProviderTool(name="search", description="Search docs", input_schema={
                "type": "object", "properties": {"q": {"type": "string"}}, "required": ["q"],
            }),
            ProviderTool(name="broken", input_schema={"type": 12}),
        ]

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        return {"hits": [arguments["q"]]}


class TestProviderTools:
    """External providers become ordinary registry entries."""

    async def test_register_provider_tools(self, tool_context):
        registry = ToolRegistry()
        provider = FakeProvider()
        entries = await register_provider_tools(registry, provider, prefix="docs")

        assert [entry.name for entry in entries] == ["docs_search"]
        result = await registry.invoke("docs_search", {"q": "sessions"}, tool_context)
        assert result == {"hits": ["sessions"]}
        assert provider.calls == [("search", {"q": "sessions"})]
