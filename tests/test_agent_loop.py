"""Tests for the turn orchestration loop."""

import asyncio
import json
import logging
from unittest.mock import patch


from code_agent.core.agent import TurnState, build_agent
from code_agent.core.cancellation import CancellationToken
from code_agent.core.listener import CompositeToolListener, LoggingToolListener, ToolExecutionListener
from code_agent.errors import ErrorCode, provider_error
from code_agent.session import Author, Event, ToolCall, ToolResponse
from code_agent.tools import ToolEntry, ToolRegistry

from conftest import ScriptedLLM, StreamingLLM
from helpers import text_response, tool_response


async def open_session(agent, name="test"):
    return await agent.store.create_session("code_agent", "user", name)


def assert_no_orphaned_calls(events):
    """Every tool call is answered by tool events before the next model event."""
    pending = []
    for event in events:
        if event.author == Author.MODEL:
            assert not pending, f"model event while calls pending: {pending}"
            pending = [call.id for call in event.tool_calls]
        elif event.author == Author.TOOL:
            for result in event.tool_results:
                assert result.call_id == pending.pop(0)
    assert not pending


class TestEndToEnd:
    """A full turn against a scripted model."""

    async def test_end_to_end_read_file_turn(self, make_agent, scripted_llm):
        scripted_llm.queue(
            tool_response(("read_file", {"path": "README.md"}, "call-1")),
            text_response("The README describes a sample project."),
        )
        agent = make_agent(scripted_llm)
        session = await open_session(agent)

        result = await agent.run_turn(session, "What does the README say?")

        assert result.state == TurnState.DONE
        assert result.ok
        assert result.iterations == 2
        assert result.text == "The README describes a sample project."

        events = await agent.store.load_events(session.id)
        assert [e.author for e in events] == [Author.USER, Author.MODEL, Author.TOOL, Author.MODEL]
        assert events[1].tool_calls[0].id == "call-1"
        tool_result = events[2].tool_results[0]
        assert tool_result.call_id == "call-1"
        assert "Sample Project" in tool_result.output["content"]
        assert events[3].final is True
        assert len({e.invocation_id for e in events}) == 1
        assert [e.id for e in result.events] == [e.id for e in events]

    async def test_list_directory_scenario_against_store(self, store, registry, tool_context):
        session = await store.create_session("code_agent", "user", "demo")
        timestamps = [session.updated_at]

        async def append(event):
            stored = await store.append_event(session.id, event)
            timestamps.append((await store.get_session(session.id)).updated_at)
            return stored

        await append(Event.create(Author.USER, text="list files"))
        call = ToolCall(id="call-1", name="list_directory", arguments={"path": "."})
        await append(Event.create(Author.MODEL, tool_calls=[call]))
        output = await registry.invoke(call.name, call.arguments, tool_context.for_call(call.name, call.id))
        await append(Event.create(
            Author.TOOL,
            tool_results=[ToolResponse(call_id=call.id, name=call.name, output=output)],
        ))
        await append(Event.create(Author.MODEL, text="found 3 files", final=True))

        events = await store.load_events(session.id)
        assert [e.author for e in events] == [Author.USER, Author.MODEL, Author.TOOL, Author.MODEL]
        assert events[0].text == "list files"
        assert events[1].tool_calls[0].arguments == {"path": "."}
        assert events[2].tool_results[0].call_id == "call-1"
        assert {e["name"] for e in events[2].tool_results[0].output["entries"]} == {"src", "README.md"}
        assert events[3].text == "found 3 files"
        assert events[3].final is True
        assert all(later > earlier for earlier, later in zip(timestamps, timestamps[1:]))

    async def test_second_request_contains_tool_result(self, make_agent, scripted_llm):
        scripted_llm.queue(
            tool_response(("read_file", {"path": "README.md"}, "call-1")),
            text_response("done"),
        )
        agent = make_agent(scripted_llm)
        session = await open_session(agent)
        await agent.run_turn(session, "read")

        second = scripted_llm.calls[1]
        assert [m.role for m in second] == ["system", "user", "assistant", "tool"]
        assert second[2].tool_calls[0].id == "call-1"
        assert second[3].tool_call_id == "call-1"
        assert "Sample Project" in json.loads(second[3].content)["output"]["content"]
        assert scripted_llm.tools[0] == agent.registry.get_function_definitions()

    async def test_history_carries_across_turns(self, make_agent, scripted_llm):
        scripted_llm.queue(text_response("first answer"), text_response("second answer"))
        agent = make_agent(scripted_llm)
        session = await open_session(agent)

        await agent.run_turn(session, "one")
        await agent.run_turn(session, "two")

        roles = [(m.role, m.content) for m in scripted_llm.calls[1][1:]]
        assert roles == [("user", "one"), ("assistant", "first answer"), ("user", "two")]

    async def test_state_delta_reaches_prompt(self, make_agent, scripted_llm):
        scripted_llm.queue(text_response("ok"))
        agent = make_agent(scripted_llm)
        session = await open_session(agent)

        await agent.run_turn(session, "hi", state_delta={"task": "refactor", "temp:x": 1})

        system = scripted_llm.calls[0][0].content
        assert '"task": "refactor"' in system
        assert "temp:x" not in system

    async def test_multiple_calls_each_get_a_tool_event(self, make_agent, scripted_llm):
        scripted_llm.queue(
            tool_response(
                ("read_file", {"path": "README.md"}, "a"),
                ("list_directory", {"path": "src"}, "b"),
            ),
            text_response("done"),
        )
        agent = make_agent(scripted_llm)
        session = await open_session(agent)
        await agent.run_turn(session, "look around")

        events = await agent.store.load_events(session.id)
        tool_events = [e for e in events if e.author == Author.TOOL]
        assert [e.tool_results[0].call_id for e in tool_events] == ["a", "b"]
        assert_no_orphaned_calls(events)


class TestToolFailures:
    """Tool errors are fed back to the model instead of ending the turn."""

    async def test_handler_error_becomes_tool_result(self, make_agent, scripted_llm):
        scripted_llm.queue(
            tool_response(("read_file", {"path": "missing.txt"}, "c1")),
            text_response("That file does not exist."),
        )
        agent = make_agent(scripted_llm)
        session = await open_session(agent)

        result = await agent.run_turn(session, "read missing.txt")

        assert result.ok
        tool_event = result.events[2]
        assert tool_event.tool_results[0].error["code"] == "FILE_NOT_FOUND"
        fed_back = json.loads(scripted_llm.calls[1][-1].content)
        assert fed_back["error"]["code"] == "FILE_NOT_FOUND"

    async def test_unknown_tool_and_bad_arguments(self, make_agent, scripted_llm):
        scripted_llm.queue(
            tool_response(("teleport", {}, "u1"), ("read_file", {"path": 42}, "u2")),
            text_response("sorry"),
        )
        agent = make_agent(scripted_llm)
        session = await open_session(agent)

        result = await agent.run_turn(session, "do it")

        assert result.ok
        errors = [e.tool_results[0].error["code"] for e in result.events if e.author == Author.TOOL]
        assert errors == ["NOT_SUPPORTED", "INVALID_INPUT"]

    async def test_unexpected_handler_exception(self, make_agent, scripted_llm):
        async def explode(arguments, context):
            raise RuntimeError("kaboom")

        registry = ToolRegistry()
        registry.register(ToolEntry("explode", "Always fails", {"type": "object"}, explode))
        scripted_llm.queue(tool_response(("explode", {}, "x1")), text_response("it broke"))
        agent = make_agent(scripted_llm, registry=registry)
        session = await open_session(agent)

        result = await agent.run_turn(session, "go")
        assert result.ok
        assert result.events[2].tool_results[0].error["code"] == "EXECUTION_FAILED"


class TestTurnLimit:
    """The turn ends after max_iterations model calls."""

    async def test_limit_aborts_with_execution_failed(self, make_agent):
        llm = ScriptedLLM([tool_response(("list_directory", {})) for _ in range(10)])
        agent = make_agent(llm, config={"max_iterations": 3})
        session = await open_session(agent)

        result = await agent.run_turn(session, "loop forever")

        assert result.state == TurnState.ABORTED
        assert result.error.code == ErrorCode.EXECUTION_FAILED
        assert len(llm.calls) == 3
        assert result.iterations == 3

        events = await agent.store.load_events(session.id)
        assert events[-1].author == Author.MODEL
        assert events[-1].error_code == "EXECUTION_FAILED"
        assert_no_orphaned_calls(events)

    async def test_error_event_not_sent_to_model(self, make_agent):
        llm = ScriptedLLM([tool_response(("list_directory", {}))])
        agent = make_agent(llm, config={"max_iterations": 1})
        session = await open_session(agent)
        await agent.run_turn(session, "first")

        llm.queue(text_response("fresh start"))
        result = await agent.run_turn(session, "second")
        assert result.ok
        assert [m.role for m in llm.calls[-1]] == ["system", "user", "assistant", "tool", "user"]


class TestModelFailures:
    """Model errors, timeouts and cancellation abort the turn."""

    async def test_provider_error(self, make_agent):
        llm = ScriptedLLM([provider_error("scripted", ConnectionError("down"))])
        agent = make_agent(llm)
        session = await open_session(agent)

        result = await agent.run_turn(session, "hello")

        assert result.state == TurnState.ABORTED
        assert result.error.code == ErrorCode.PROVIDER_ERROR
        events = await agent.store.load_events(session.id)
        assert [e.author for e in events] == [Author.USER, Author.MODEL]
        assert events[1].error_code == "PROVIDER_ERROR"

    async def test_unexpected_model_exception_is_provider_error(self, make_agent):
        agent = make_agent(ScriptedLLM([ValueError("bad payload")]))
        session = await open_session(agent)
        result = await agent.run_turn(session, "hello")
        assert result.error.code == ErrorCode.PROVIDER_ERROR

    async def test_model_timeout(self, make_agent):
        async def slow(messages):
            await asyncio.sleep(5)

        agent = make_agent(ScriptedLLM([slow]), config={"model_timeout": 0.1})
        session = await open_session(agent)

        result = await agent.run_turn(session, "hello")

        assert result.state == TurnState.ABORTED
        assert result.error.code == ErrorCode.TIMEOUT

    async def test_cancel_before_turn(self, make_agent, scripted_llm):
        agent = make_agent(scripted_llm)
        session = await open_session(agent)
        cancel = CancellationToken()
        cancel.cancel()

        result = await agent.run_turn(session, "never mind", cancel=cancel)

        assert result.error.code == ErrorCode.CANCELLED
        assert scripted_llm.calls == []

    async def test_cancel_during_model_call(self, make_agent):
        cancel = CancellationToken()

        async def hang(messages):
            cancel.cancel()
            await asyncio.sleep(5)

        agent = make_agent(ScriptedLLM([hang]))
        session = await open_session(agent)

        result = await agent.run_turn(session, "hello", cancel=cancel)
        assert result.state == TurnState.ABORTED
        assert result.error.code == ErrorCode.CANCELLED

    async def test_cancel_during_tool_answers_every_call(self, make_agent, scripted_llm):
        cancel = CancellationToken()

        async def wait_forever(arguments, context):
            cancel.cancel()
            await asyncio.sleep(5)

        registry = ToolRegistry()
        registry.register(ToolEntry("wait", "Waits", {"type": "object"}, wait_forever))
        scripted_llm.queue(tool_response(("wait", {}, "w1"), ("wait", {}, "w2")))
        agent = make_agent(scripted_llm, registry=registry)
        session = await open_session(agent)

        result = await agent.run_turn(session, "wait", cancel=cancel)

        assert result.error.code == ErrorCode.CANCELLED
        events = await agent.store.load_events(session.id)
        codes = [e.tool_results[0].error["code"] for e in events if e.author == Author.TOOL]
        assert codes == ["CANCELLED", "CANCELLED"]
        assert_no_orphaned_calls(events)


class TestParallelTools:
    """Independent calls may run concurrently."""

    def _registry(self, log, independent):
        async def step(arguments, context):
            log.append(("start", arguments["n"]))
            await asyncio.sleep(0.05)
            log.append(("end", arguments["n"]))
            return arguments["n"]

        registry = ToolRegistry()
        registry.register(ToolEntry("step", "Step", {"type": "object"}, step, independent=independent))
        return registry

    async def test_independent_calls_overlap(self, make_agent, scripted_llm):
        log = []
        scripted_llm.queue(
            tool_response(("step", {"n": 1}, "p1"), ("step", {"n": 2}, "p2")),
            text_response("done"),
        )
        agent = make_agent(scripted_llm, registry=self._registry(log, True), config={"parallel_tools": True})
        session = await open_session(agent)

        result = await agent.run_turn(session, "go")

        assert log[:2] == [("start", 1), ("start", 2)]
        outputs = [e.tool_results[0].output for e in result.events if e.author == Author.TOOL]
        assert outputs == [1, 2]

    async def test_dependent_calls_run_in_order(self, make_agent, scripted_llm):
        log = []
        scripted_llm.queue(
            tool_response(("step", {"n": 1}, "p1"), ("step", {"n": 2}, "p2")),
            text_response("done"),
        )
        agent = make_agent(scripted_llm, registry=self._registry(log, False), config={"parallel_tools": True})
        session = await open_session(agent)

        await agent.run_turn(session, "go")
        assert log == [("start", 1), ("end", 1), ("start", 2), ("end", 2)]


class TestListeners:
    """Tool listeners observe execution without affecting it."""

    async def test_listener_sees_start_progress_complete(self, make_agent, scripted_llm, listener):
        scripted_llm.queue(
            tool_response(("write_file", {"path": "out.txt", "content": "hi"}, "w1")),
            text_response("written"),
        )
        agent = make_agent(scripted_llm)
        session = await open_session(agent)

        await agent.run_turn(session, "write")

        assert [call[0] for call in listener.calls] == ["start", "progress", "complete"]
        assert listener.names("complete") == ["write_file"]
        _, _, output, error = listener.calls[-1]
        assert output["size"] == 2
        assert error is None

    async def test_failing_listener_does_not_break_turn(self, make_agent, scripted_llm, listener):
        class Broken(ToolExecutionListener):
            def on_start(self, tool_name, arguments):
                raise RuntimeError("listener bug")

        scripted_llm.queue(tool_response(("list_directory", {}, "l1")), text_response("listed"))
        agent = make_agent(scripted_llm, listener=CompositeToolListener([Broken(), listener]))
        session = await open_session(agent)

        result = await agent.run_turn(session, "list")

        assert result.ok
        assert listener.names("start") == ["list_directory"]
        assert listener.names("complete") == ["list_directory"]


class TestStreaming:
    """Partial events reach observers but never the log."""

    async def test_partial_events_emitted_not_stored(self, make_agent):
        seen = []
        llm = StreamingLLM([text_response("hello streaming world")])
        agent = make_agent(llm, config={"streaming": True}, on_event=seen.append)
        session = await open_session(agent)

        result = await agent.run_turn(session, "stream please")

        partials = [e.text for e in seen if e.partial]
        assert partials == ["hello", "hello streaming", "hello streaming world"]
        assert result.text == "hello streaming world"
        events = await agent.store.load_events(session.id)
        assert not any(e.partial for e in events)
        assert [e.author for e in events] == [Author.USER, Author.MODEL]

    async def test_callback_exception_is_ignored(self, make_agent, scripted_llm):
        def broken(event):
            raise RuntimeError("ui bug")

        scripted_llm.queue(text_response("fine"))
        agent = make_agent(scripted_llm, on_event=broken)
        session = await open_session(agent)
        assert (await agent.run_turn(session, "hi")).ok


class TestHistoryWindow:
    """max_history_events bounds the replayed history."""

    async def test_history_is_trimmed(self, make_agent, scripted_llm):
        scripted_llm.queue(*(text_response(f"answer {i}") for i in range(4)))
        agent = make_agent(scripted_llm, config={"max_history_events": 3})
        session = await open_session(agent)

        for i in range(4):
            await agent.run_turn(session, f"question {i}")

        last_request = scripted_llm.calls[-1]
        assert [m.content for m in last_request[1:]] == ["question 2", "answer 2", "question 3"]

    async def test_window_never_starts_with_tool_results(self, make_agent, scripted_llm):
        scripted_llm.queue(
            tool_response(("list_directory", {}, "l1")),
            text_response("listed"),
            text_response("again"),
        )
        agent = make_agent(scripted_llm, config={"max_history_events": 3})
        session = await open_session(agent)

        await agent.run_turn(session, "list")
        await agent.run_turn(session, "more")

        # The last three events start with an orphaned tool result
        roles = [m.role for m in scripted_llm.calls[-1][1:]]
        assert roles == ["assistant", "user"]


class TestBuildAgent:
    """Assembly from configuration."""

    def test_defaults(self, agent_config, memory_store, scripted_llm):
        agent = build_agent(agent_config, llm=scripted_llm, store=memory_store)
        assert "read_file" in agent.registry.list_tools()
        assert agent.store is memory_store
        assert agent.working_directory == agent_config.working_directory


class TestLoggingListener:
    """LoggingToolListener writes one record per notification."""

    def test_records(self):
        listener = LoggingToolListener(level=logging.INFO)
        with patch("code_agent.core.listener.logger") as logger:
            listener.on_start("read_file", {"path": "a", "offset": 1})
            listener.on_complete("read_file", {"content": ""}, None)

        first, second = logger.log.call_args_list
        assert first.args == (logging.INFO, "Tool %s started with %s", "read_file", ["offset", "path"])
        assert second.args == (logging.INFO, "Tool %s completed", "read_file")
