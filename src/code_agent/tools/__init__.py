"""Tool registry and built-in tools."""

from .base import BaseTool, ToolContext, ToolEntry, ToolRegistry
from .execution import ExecuteCommandTool
from .filesystem import ListDirectoryTool, ReadFileTool, ReplaceInFileTool, WriteFileTool, resolve_path
from .mcp import ProviderTool, ToolProvider, register_provider_tools
from .patch import ApplyPatchTool
from .search import GrepSearchTool, SearchFilesTool

BUILTIN_TOOLS = [
    ReadFileTool,
    WriteFileTool,
    ListDirectoryTool,
    ExecuteCommandTool,
    ApplyPatchTool,
    SearchFilesTool,
    GrepSearchTool,
    ReplaceInFileTool,
]


def register_builtin_tools(registry: ToolRegistry) -> ToolRegistry:
    """Register the built-in tools in a fixed order."""
    for tool_class in BUILTIN_TOOLS:
        registry.register(tool_class())
    return registry


__all__ = [
    "BaseTool",
    "ToolContext",
    "ToolEntry",
    "ToolRegistry",
    "ExecuteCommandTool",
    "GrepSearchTool",
    "ListDirectoryTool",
    "ReadFileTool",
    "ReplaceInFileTool",
    "SearchFilesTool",
    "WriteFileTool",
    "ApplyPatchTool",
    "ProviderTool",
    "ToolProvider",
    "register_provider_tools",
    "register_builtin_tools",
    "resolve_path",
]
