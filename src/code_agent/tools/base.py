"""Base classes and registry for agent tools."""

import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, best_match

from ..core.cancellation import CancellationToken
from ..errors import AgentError, execution_failed, invalid_input, not_supported

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, Dict[str, Any]], None]


class ToolContext:
    """Per-call environment handed to a tool handler."""

    def __init__(
        self,
        working_directory: Union[str, Path, None] = None,
        cancel_token: Optional[CancellationToken] = None,
        progress_callback: Optional[ProgressCallback] = None,
        tool_name: str = "",
        call_id: str = "",
        max_file_size: int = 10 * 1024 * 1024,
        command_timeout: float = 300.0,
    ):
        self.working_directory = Path(working_directory or Path.cwd()).resolve()
        self.cancel_token = cancel_token or CancellationToken()
        self.progress_callback = progress_callback
        self.tool_name = tool_name
        self.call_id = call_id
        self.max_file_size = max_file_size
        self.command_timeout = command_timeout

    def for_call(self, tool_name: str, call_id: str) -> "ToolContext":
        """Copy this context for one specific tool call."""
        return ToolContext(
            working_directory=self.working_directory,
            cancel_token=self.cancel_token,
            progress_callback=self.progress_callback,
            tool_name=tool_name,
            call_id=call_id,
            max_file_size=self.max_file_size,
            command_timeout=self.command_timeout,
        )

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled

    def report_progress(self, **info: Any) -> None:
        """Forward intermediate progress to the listener, if any."""
        if self.progress_callback is not None:
            self.progress_callback(self.tool_name, info)


ToolHandler = Callable[[Dict[str, Any], ToolContext], Awaitable[Any]]


class ToolEntry:
    """A registered tool: name, description, input schema and handler."""

    def __init__(
        self,
        name: str,
        description: str,
        input_schema: Dict[str, Any],
        handler: ToolHandler,
        independent: bool = False,
    ):
        self.name = name
        self.description = description
        self.input_schema = input_schema
        self.handler = handler
        # Safe to run concurrently with other independent calls
        self.independent = independent

    def to_function_definition(self) -> Dict[str, Any]:
        """Convert the entry to an OpenAI function definition."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }

    def __repr__(self) -> str:
        return f"ToolEntry(name={self.name!r}, independent={self.independent})"


class BaseTool(ABC):
    """Abstract base class for class-style tools."""

    name: str = ""
    independent: bool = False

    def __init__(self):
        if not self.name:
            self.name = self.__class__.__name__.replace("Tool", "").lower()

    @property
    @abstractmethod
    def description(self) -> str:
        """Tool description for the LLM."""
        pass

    @property
    @abstractmethod
    def parameters(self) -> Dict[str, Any]:
        """JSON schema for tool parameters."""
        pass

    @abstractmethod
    async def execute(self, context: ToolContext, **kwargs) -> Any:
        """Run the tool. Failures are raised as AgentError."""
        pass

    async def _handle(self, arguments: Dict[str, Any], context: ToolContext) -> Any:
        return await self.execute(context, **arguments)

    def to_entry(self) -> ToolEntry:
        """Wrap this tool as a registry entry."""
        return ToolEntry(
            name=self.name,
            description=self.description,
            input_schema=self.parameters,
            handler=self._handle,
            independent=self.independent,
        )


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self):
        self._tools: Dict[str, ToolEntry] = {}
        self._validators: Dict[str, Draft202012Validator] = {}
        self._lock = threading.Lock()

    def register(self, tool: Union[ToolEntry, BaseTool]) -> ToolEntry:
        """Register a tool. Names must be unique and schemas well formed."""
        entry = tool.to_entry() if isinstance(tool, BaseTool) else tool

        if not entry.name or not entry.name.strip():
            raise invalid_input("tool name must not be empty")
        if not isinstance(entry.input_schema, dict):
            raise invalid_input(f"input schema for tool {entry.name} must be an object")
        try:
            Draft202012Validator.check_schema(entry.input_schema)
        except SchemaError as e:
            raise invalid_input(f"malformed input schema for tool {entry.name}: {e.message}").with_context(
                "tool", entry.name
            )

        with self._lock:
            if entry.name in self._tools:
                raise invalid_input(f"tool already registered: {entry.name}").with_context("tool", entry.name)
            self._tools[entry.name] = entry
            self._validators[entry.name] = Draft202012Validator(entry.input_schema)

        logger.debug("Registered tool %s", entry.name)
        return entry

    def unregister(self, tool_name: str) -> None:
        """Unregister a tool."""
        with self._lock:
            self._tools.pop(tool_name, None)
            self._validators.pop(tool_name, None)

    def lookup(self, tool_name: str) -> Optional[ToolEntry]:
        """Get a tool by name."""
        return self._tools.get(tool_name)

    def entries(self) -> List[ToolEntry]:
        """All entries in registration order."""
        return list(self._tools.values())

    def list_tools(self) -> List[str]:
        """List all registered tool names."""
        return list(self._tools.keys())

    def get_function_definitions(self) -> List[Dict[str, Any]]:
        """Get function definitions for all tools."""
        return [entry.to_function_definition() for entry in self._tools.values()]

    def validate_arguments(self, tool_name: str, arguments: Dict[str, Any]) -> None:
        """Check arguments against the tool's schema."""
        validator = self._validators[tool_name]
        error = best_match(validator.iter_errors(arguments))
        if error is not None:
            location = "/".join(str(p) for p in error.absolute_path) or "arguments"
            raise invalid_input(f"{tool_name}: {location}: {error.message}").with_context("tool", tool_name)

    async def invoke(self, tool_name: str, arguments: Dict[str, Any], context: ToolContext) -> Any:
        """
        Validate arguments and run a tool's handler.

        Unknown tools raise NOT_SUPPORTED and bad arguments INVALID_INPUT.
        Handler AgentErrors propagate with the tool name attached; any other
        exception is wrapped as EXECUTION_FAILED. Cancellation propagates.
        """
        entry = self.lookup(tool_name)
        if entry is None:
            raise not_supported(f"tool {tool_name}").with_suggestion(
                f"available tools: {', '.join(self.list_tools())}"
            )

        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise invalid_input(f"{tool_name}: arguments must be an object").with_context("tool", tool_name)
        self.validate_arguments(tool_name, arguments)

        try:
            return await entry.handler(arguments, context)
        except AgentError as e:
            raise e.with_context("tool", tool_name)
        except Exception as e:
            raise execution_failed(f"tool {tool_name}", e).with_context("tool", tool_name) from e

    def get_tool_info(self) -> Dict[str, Dict[str, Any]]:
        """Get detailed information about all tools."""
        return {
            name: {
                "description": entry.description,
                "parameters": entry.input_schema,
                "independent": entry.independent,
            }
            for name, entry in self._tools.items()
        }
