"""Display manager for rich terminal output."""

import json
from typing import Any, Dict, List, Optional, Union

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from ..core.listener import ToolExecutionListener
from ..errors import AgentError
from ..session.base import SessionSummary


class DisplayManager:
    """Manages rich terminal display and formatting."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self._streamed = ""

    def print(self, *args, **kwargs) -> None:
        """Print with rich formatting."""
        self.console.print(*args, **kwargs)

    def print_panel(
        self,
        content: Union[str, Text],
        title: Optional[str] = None,
        style: str = "blue",
        border_style: str = "blue"
    ) -> None:
        """Print content in a panel."""
        panel = Panel(
            content,
            title=title,
            style=style,
            border_style=border_style,
            padding=(1, 2)
        )
        self.console.print(panel)

    def print_header(self, text: str, style: str = "bold blue") -> None:
        """Print a header."""
        self.console.print(f"\n{text}", style=style)
        self.console.print("─" * len(text), style=style)

    def print_error(self, error: Union[str, BaseException], details: Optional[str] = None) -> None:
        """Print an error, including the code and suggestion of an AgentError."""
        error_text = Text("ERROR: ", style="bold red")
        if isinstance(error, AgentError):
            error_text.append(str(error), style="red")
            details = details or error.suggestion
        else:
            error_text.append(str(error), style="red")

        content = error_text
        if details:
            content = Text.assemble(error_text, "\n\n", details)

        self.print_panel(
            content,
            title="Error",
            style="red",
            border_style="red"
        )

    def print_success(self, message: str) -> None:
        """Print a success message."""
        self.console.print(f"✅ {message}", style="green")

    def print_tree(self, data: Dict[str, Any], title: Optional[str] = None) -> None:
        """Render nested state or configuration as a tree."""
        tree = Tree(title or "State", guide_style="dim")
        if not data:
            tree.add("[dim](empty)[/dim]")
        self._add_branch(tree, data)
        self.console.print(tree)

    def _add_branch(self, node: Tree, value: Any) -> None:
        items = value.items() if isinstance(value, dict) else enumerate(value)
        for key, child in items:
            label = f"[bold]{escape(str(key))}[/bold]" if isinstance(value, dict) else f"[dim]#{key}[/dim]"
            if isinstance(child, (dict, list)) and child:
                self._add_branch(node.add(label), child)
            else:
                node.add(f"{label} = {escape(json.dumps(child, default=str))}")

    def print_help(self, commands: Dict[str, str]) -> None:
        """List REPL commands."""
        table = Table(title="Commands", show_header=False, box=None, padding=(0, 2))
        table.add_column(style="cyan", no_wrap=True)
        table.add_column()
        for usage, description in commands.items():
            table.add_row(usage, description)
        self.console.print(table)
        self.console.print("Ctrl-C cancels a running turn.", style="dim")

    def print_sessions(self, sessions: List[SessionSummary], current: Optional[str] = None) -> None:
        """Print a session listing."""
        if not sessions:
            self.print("No sessions yet", style="dim")
            return

        table = Table(title="Sessions")
        table.add_column("", style="green")
        table.add_column("Name", style="cyan")
        table.add_column("Events", justify="right")
        table.add_column("Updated", style="dim")
        for summary in sessions:
            table.add_row(
                "●" if summary.name == current else "",
                summary.name,
                str(summary.event_count),
                summary.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
            )
        self.console.print(table)

    def print_tools(self, tool_info: Dict[str, Dict[str, Any]]) -> None:
        """Print registered tools."""
        if not tool_info:
            self.print("No tools available", style="yellow")
            return

        self.print_header("🔧 Available Tools")
        for tool_name, info in tool_info.items():
            self.print(f"\n[bold cyan]{tool_name}[/bold cyan]")
            self.print(f"  {info['description']}")

    def print_agent_response(self, response: str) -> None:
        """Print an agent response with formatting."""
        if response:
            self.print_panel(
                Markdown(response),
                title="🤖 Agent",
                style="green",
                border_style="green"
            )

    def print_streaming_response(self, snapshot: str) -> None:
        """Print the part of a streaming snapshot not shown yet."""
        if snapshot.startswith(self._streamed):
            delta = snapshot[len(self._streamed):]
        else:
            self.console.print()
            delta = snapshot
        self.console.print(delta, end="", highlight=False, markup=False)
        self._streamed = snapshot

    def end_stream(self) -> bool:
        """Finish a streamed response. Returns True if anything was streamed."""
        streamed = bool(self._streamed)
        if streamed:
            self.console.print()
        self._streamed = ""
        return streamed

    def print_separator(self, char: str = "─", style: str = "dim") -> None:
        """Print a separator line."""
        width = self.console.size.width
        self.console.print(char * width, style=style)

    def print_thinking(self, message: str = "Thinking...") -> None:
        """Print a thinking indicator."""
        self.console.print(f"💭 {message}", style="dim italic")


def _short(value: Any, limit: int = 120) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text if len(text) <= limit else text[:limit] + "..."


class RichToolListener(ToolExecutionListener):
    """Shows tool activity in the terminal."""

    def __init__(self, display_manager: Optional[DisplayManager] = None):
        self.display = display_manager or display

    def on_start(self, tool_name: str, arguments: Dict[str, Any]) -> None:
        self.display.end_stream()
        self.display.print(f"🔧 [bold cyan]{tool_name}[/bold cyan] [dim]{_short(arguments)}[/dim]")

    def on_progress(self, tool_name: str, info: Dict[str, Any]) -> None:
        self.display.print(f"   … {_short(info)}", style="dim", markup=False)

    def on_complete(self, tool_name: str, output: Any, error: Optional[AgentError]) -> None:
        if error is not None:
            self.display.print(f"   ❌ {error}", style="red", markup=False)
        else:
            self.display.print(f"   ✅ {tool_name} done", style="green", markup=False)


# Global display manager instance
display = DisplayManager()
