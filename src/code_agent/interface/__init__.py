"""Terminal interface for the code agent."""

from .display import DisplayManager, RichToolListener, display
from .terminal import TerminalInterface

__all__ = ["DisplayManager", "RichToolListener", "TerminalInterface", "display"]
