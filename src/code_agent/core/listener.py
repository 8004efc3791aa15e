"""Observers notified around every tool execution."""

import logging
from typing import Any, Dict, Iterable, List, Optional

from ..errors import AgentError

logger = logging.getLogger(__name__)


class ToolExecutionListener:
    """Base listener; every hook is a no-op."""

    def on_start(self, tool_name: str, arguments: Dict[str, Any]) -> None:
        pass

    def on_progress(self, tool_name: str, info: Dict[str, Any]) -> None:
        pass

    def on_complete(self, tool_name: str, output: Any, error: Optional[AgentError]) -> None:
        pass


class NullToolListener(ToolExecutionListener):
    """Listener that ignores everything."""


class LoggingToolListener(ToolExecutionListener):
    """Writes tool activity to the module logger."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def on_start(self, tool_name: str, arguments: Dict[str, Any]) -> None:
        logger.log(self.level, "Tool %s started with %s", tool_name, sorted(arguments))

    def on_progress(self, tool_name: str, info: Dict[str, Any]) -> None:
        logger.log(self.level, "Tool %s progress: %s", tool_name, info)

    def on_complete(self, tool_name: str, output: Any, error: Optional[AgentError]) -> None:
        if error is not None:
            logger.log(self.level, "Tool %s failed: %s", tool_name, error)
        else:
            logger.log(self.level, "Tool %s completed", tool_name)


class CompositeToolListener(ToolExecutionListener):
    """Fans each notification out to several listeners."""

    def __init__(self, listeners: Iterable[ToolExecutionListener] = ()):
        self.listeners: List[ToolExecutionListener] = list(listeners)

    def add(self, listener: ToolExecutionListener) -> None:
        self.listeners.append(listener)

    def on_start(self, tool_name: str, arguments: Dict[str, Any]) -> None:
        for listener in self.listeners:
            notify(listener, "on_start", tool_name, arguments)

    def on_progress(self, tool_name: str, info: Dict[str, Any]) -> None:
        for listener in self.listeners:
            notify(listener, "on_progress", tool_name, info)

    def on_complete(self, tool_name: str, output: Any, error: Optional[AgentError]) -> None:
        for listener in self.listeners:
            notify(listener, "on_complete", tool_name, output, error)


def notify(listener: Optional[ToolExecutionListener], hook: str, *args: Any) -> None:
    """Call a listener hook; a failing listener is logged and otherwise ignored."""
    if listener is None:
        return
    try:
        getattr(listener, hook)(*args)
    except Exception:
        logger.exception("Tool listener %s.%s failed", type(listener).__name__, hook)
