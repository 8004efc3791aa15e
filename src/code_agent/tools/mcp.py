"""Adapters for external tool providers such as MCP servers."""

import logging
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from ..errors import AgentError, ErrorCode
from .base import ToolContext, ToolEntry, ToolRegistry

logger = logging.getLogger(__name__)


class ProviderTool(BaseModel):
    """A tool description advertised by a provider."""
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


@runtime_checkable
class ToolProvider(Protocol):
    """Anything that can list tools and call them by name."""

    async def list_tools(self) -> List[ProviderTool]:
        ...

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        ...


def _make_handler(provider: ToolProvider, remote_name: str):
    async def handler(arguments: Dict[str, Any], context: ToolContext) -> Any:
        context.cancel_token.raise_if_cancelled(remote_name)
        return await provider.call_tool(remote_name, arguments)
    return handler


async def register_provider_tools(
    registry: ToolRegistry,
    provider: ToolProvider,
    prefix: Optional[str] = None,
) -> List[ToolEntry]:
    """
    Register every tool a provider advertises as an ordinary registry entry.

    Names become ``<prefix>_<name>`` when a prefix is given. A tool whose
    name or schema the registry rejects is skipped with a warning so one
    bad advertisement does not hide the rest.
    """
    registered: List[ToolEntry] = []
    for tool in await provider.list_tools():
        name = f"{prefix}_{tool.name}" if prefix else tool.name
        entry = ToolEntry(
            name=name,
            description=tool.description,
            input_schema=tool.input_schema,
            handler=_make_handler(provider, tool.name),
        )
        try:
            registered.append(registry.register(entry))
        except AgentError as e:
            if e.code != ErrorCode.INVALID_INPUT:
                raise
            logger.warning("Skipping provider tool %s: %s", name, e)
    return registered
