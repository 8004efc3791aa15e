"""Core code agent: the per-turn model/tool orchestration loop."""

import asyncio
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import (
    AgentError,
    ErrorCode,
    cancelled,
    new,
    provider_error,
    timeout,
)
from ..llm.base import LLMResponse, Message
from ..llm.manager import LLMManager
from ..session.base import Author, BaseSessionStore, Event, Session, ToolCall, ToolResponse, new_id
from ..session.sqlite import SQLiteSessionStore
from ..tools import register_builtin_tools
from ..tools.base import ToolContext, ToolRegistry
from ..utils.config import AgentConfig
from .cancellation import CancellationToken
from .listener import NullToolListener, ToolExecutionListener, notify

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are a coding agent working inside the user's project directory.

Use the available tools to inspect and change files and to run commands:
- read_file and list_directory to explore before editing
- write_file for whole-file writes, apply_patch for targeted unified-diff edits
- execute_command to build, test and inspect the project

Every tool result is returned to you. When a tool fails, read the error
code and message, adjust, and try again or explain what blocked you.
Paths are relative to the working directory and cannot leave it.
When the task is complete, reply with a short summary of what you did."""

EventCallback = Callable[[Event], None]


class TurnState(str, Enum):
    """States of one turn's orchestration."""
    START = "start"
    AWAIT_MODEL = "await_model"
    EXECUTE_TOOLS = "execute_tools"
    APPEND_RESULTS = "append_results"
    APPEND_FINAL = "append_final"
    DONE = "done"
    ABORTED = "aborted"


class TurnResult(BaseModel):
    """Outcome of one turn."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    state: TurnState
    final_event: Optional[Event] = None
    events: List[Event] = Field(default_factory=list)
    iterations: int = 0
    error: Optional[AgentError] = None

    @property
    def ok(self) -> bool:
        return self.state == TurnState.DONE

    @property
    def text(self) -> str:
        return self.final_event.text if self.final_event else ""


class CodeAgent:
    """
    Drives one session turn at a time.

    A turn appends the user input, then alternates model calls and tool
    execution until the model answers without tool calls, the turn limit
    is hit, the caller cancels, or a model call fails. Every model event
    carrying tool calls is followed by one tool event per call before the
    model is asked again.
    """

    def __init__(
        self,
        llm: Any,
        registry: ToolRegistry,
        store: BaseSessionStore,
        config: Optional[AgentConfig] = None,
        listener: Optional[ToolExecutionListener] = None,
        system_prompt: Optional[str] = None,
        on_event: Optional[EventCallback] = None,
    ):
        self.llm = llm
        self.registry = registry
        self.store = store
        self.config = config or AgentConfig()
        self.listener = listener or NullToolListener()
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.on_event = on_event

    @property
    def working_directory(self) -> Path:
        return Path(self.config.working_directory or Path.cwd()).resolve()

    # Event plumbing

    def _emit(self, event: Event) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception:
            logger.exception("Event callback failed for event %s", event.id)

    async def _append(self, session: Session, event: Event, appended: List[Event]) -> Event:
        stored = await self.store.append_event(session.id, event)
        appended.append(stored)
        self._emit(stored)
        return stored

    # Request building

    async def _load_history(self, session: Session) -> List[Event]:
        events = [event async for event in self.store.read_events(session.id)]
        limit = self.config.max_history_events
        if limit and len(events) > limit:
            events = events[-limit:]
            # Never start on tool results whose calls were cut off
            while events and events[0].author == Author.TOOL:
                events.pop(0)
        return events

    async def build_messages(self, session: Session) -> List[Message]:
        """Rebuild the model request from the system prompt, state and history."""
        system = self.system_prompt
        state = await self.store.get_state(session.id)
        if state:
            system += "\n\nSession state:\n" + json.dumps(state, indent=2, sort_keys=True, default=str)

        messages = [Message(role="system", content=system)]
        for event in await self._load_history(session):
            if event.author == Author.USER:
                messages.append(Message(role="user", content=event.text))
            elif event.author == Author.MODEL:
                if event.error_code and not event.content.parts:
                    continue
                messages.append(Message(
                    role="assistant",
                    content=event.text,
                    tool_calls=event.tool_calls or None,
                ))
            else:
                for result in event.tool_results:
                    payload = {"error": result.error} if result.is_error else {"output": result.output}
                    messages.append(Message(
                        role="tool",
                        content=json.dumps(payload, default=str),
                        tool_call_id=result.call_id,
                        name=result.name,
                    ))
        return messages

    # Model calls

    def _provider_name(self) -> str:
        provider = getattr(self.llm, "provider", None)
        return getattr(provider, "name", None) or getattr(self.llm, "name", None) or "llm"

    async def _request_model(self, messages: List[Message], invocation_id: str) -> LLMResponse:
        tools = self.registry.get_function_definitions() or None
        if self.config.streaming and hasattr(self.llm, "stream_response"):
            final: Optional[LLMResponse] = None
            async for chunk in self.llm.stream_response(messages, tools):
                if chunk.partial:
                    self._emit(Event.create(
                        Author.MODEL,
                        text=chunk.content,
                        invocation_id=invocation_id,
                        partial=True,
                    ))
                else:
                    final = chunk
            if final is None:
                raise provider_error(self._provider_name(), ConnectionError("stream ended without a final response"))
            return final
        return await self.llm.generate_response(messages, tools)

    async def _call_model(self, messages: List[Message], cancel: CancellationToken, invocation_id: str) -> LLMResponse:
        """Run one model request, racing the timeout and the cancel token."""
        request = asyncio.ensure_future(
            asyncio.wait_for(self._request_model(messages, invocation_id), self.config.model_timeout)
        )
        cancel_wait = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({request, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
            if not request.done():
                request.cancel()
                await asyncio.gather(request, return_exceptions=True)

        if request.cancelled():
            raise cancelled("model call")
        try:
            return request.result()
        except asyncio.TimeoutError:
            raise timeout("model call").with_context("timeout", self.config.model_timeout)
        except AgentError:
            raise
        except Exception as e:
            raise provider_error(self._provider_name(), e)

    # Tool execution

    def _tool_context(self, call: ToolCall, cancel: CancellationToken) -> ToolContext:
        return ToolContext(
            working_directory=self.working_directory,
            cancel_token=cancel,
            progress_callback=lambda name, info: notify(self.listener, "on_progress", name, info),
            tool_name=call.name,
            call_id=call.id,
            max_file_size=self.config.max_file_size,
            command_timeout=self.config.tool_timeout,
        )

    async def _run_tool(self, call: ToolCall, cancel: CancellationToken) -> ToolResponse:
        """Execute one call; every outcome becomes a ToolResponse."""
        notify(self.listener, "on_start", call.name, call.arguments)
        output: Any = None
        error: Optional[AgentError] = None

        if cancel.cancelled:
            error = cancelled(f"tool {call.name}")
        else:
            task = asyncio.ensure_future(
                self.registry.invoke(call.name, call.arguments, self._tool_context(call, cancel))
            )
            cancel_wait = asyncio.ensure_future(cancel.wait())
            try:
                await asyncio.wait({task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                cancel_wait.cancel()
                if not task.done():
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)

            if task.cancelled():
                error = cancelled(f"tool {call.name}")
            else:
                try:
                    output = task.result()
                except AgentError as e:
                    error = e

        if error is not None:
            logger.debug("Tool %s failed: %s", call.name, error)
        notify(self.listener, "on_complete", call.name, output, error)
        return ToolResponse(
            call_id=call.id,
            name=call.name,
            output=None if error else output,
            error=error.to_dict() if error else None,
        )

    def _can_run_parallel(self, calls: List[ToolCall]) -> bool:
        if not self.config.parallel_tools or len(calls) < 2:
            return False
        for call in calls:
            entry = self.registry.lookup(call.name)
            if entry is None or not entry.independent:
                return False
        return True

    async def _execute_tools(self, calls: List[ToolCall], cancel: CancellationToken) -> List[ToolResponse]:
        if self._can_run_parallel(calls):
            return list(await asyncio.gather(*(self._run_tool(call, cancel) for call in calls)))
        return [await self._run_tool(call, cancel) for call in calls]

    # Turn driver

    async def _abort(
        self,
        session: Session,
        error: AgentError,
        appended: List[Event],
        invocation_id: str,
        iterations: int,
    ) -> TurnResult:
        logger.warning("Turn %s aborted: %s", invocation_id, error)
        await self._append(session, Event(
            author=Author.MODEL,
            invocation_id=invocation_id,
            error_code=error.code.value,
            error_message=str(error),
        ), appended)
        return TurnResult(state=TurnState.ABORTED, events=appended, iterations=iterations, error=error)

    async def run_turn(
        self,
        session: Session,
        user_input: str,
        cancel: Optional[CancellationToken] = None,
        state_delta: Optional[Dict[str, Any]] = None,
    ) -> TurnResult:
        """
        Process one user input to completion.

        Model, timeout, cancellation and turn-limit failures end the turn in
        ABORTED with the error recorded in the log. Session store failures
        are raised to the caller.
        """
        cancel = cancel or CancellationToken()
        invocation_id = new_id()
        appended: List[Event] = []
        iterations = 0
        state = TurnState.START

        await self._append(session, Event.create(
            Author.USER,
            text=user_input,
            invocation_id=invocation_id,
            state_delta=state_delta or {},
        ), appended)

        while True:
            state = TurnState.AWAIT_MODEL
            if cancel.cancelled:
                return await self._abort(session, cancelled("turn"), appended, invocation_id, iterations)
            if iterations >= self.config.max_iterations:
                error = new(
                    ErrorCode.EXECUTION_FAILED,
                    f"turn exceeded {self.config.max_iterations} model calls",
                ).with_context("max_iterations", self.config.max_iterations)
                return await self._abort(session, error, appended, invocation_id, iterations)

            messages = await self.build_messages(session)
            iterations += 1
            logger.debug("Turn %s: model call %d", invocation_id, iterations)
            try:
                response = await self._call_model(messages, cancel, invocation_id)
            except AgentError as e:
                return await self._abort(session, e, appended, invocation_id, iterations)

            if not response.tool_calls:
                break

            await self._append(session, Event.create(
                Author.MODEL,
                text=response.content,
                tool_calls=response.tool_calls,
                invocation_id=invocation_id,
            ), appended)

            state = TurnState.EXECUTE_TOOLS
            results = await self._execute_tools(response.tool_calls, cancel)

            state = TurnState.APPEND_RESULTS
            for result in results:
                await self._append(session, Event.create(
                    Author.TOOL,
                    tool_results=[result],
                    invocation_id=invocation_id,
                ), appended)

        state = TurnState.APPEND_FINAL
        final_event = await self._append(session, Event.create(
            Author.MODEL,
            text=response.content,
            invocation_id=invocation_id,
            final=True,
        ), appended)

        state = TurnState.DONE
        return TurnResult(state=state, final_event=final_event, events=appended, iterations=iterations)


def build_agent(
    config: AgentConfig,
    llm: Any = None,
    store: Optional[BaseSessionStore] = None,
    registry: Optional[ToolRegistry] = None,
    listener: Optional[ToolExecutionListener] = None,
    on_event: Optional[EventCallback] = None,
) -> CodeAgent:
    """Assemble an agent from configuration, filling in default components."""
    if registry is None:
        registry = register_builtin_tools(ToolRegistry())
    return CodeAgent(
        llm=llm or LLMManager(config.llm),
        registry=registry,
        store=store or SQLiteSessionStore(config.session.db_path),
        config=config,
        listener=listener,
        on_event=on_event,
    )
