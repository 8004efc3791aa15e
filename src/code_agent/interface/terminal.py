"""Interactive terminal loop for the code agent."""

import asyncio
import logging
import signal
import uuid
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.auto_suggest import AutoSuggestFromHistory
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.history import InMemoryHistory

from ..core.agent import CodeAgent
from ..core.cancellation import CancellationToken
from ..errors import AgentError, ErrorCode
from ..session.base import Author, Event, Session
from ..session.manager import SessionManager
from .display import DisplayManager, display

logger = logging.getLogger(__name__)


class TerminalInterface:
    """REPL over one agent and one session manager."""

    def __init__(
        self,
        agent: CodeAgent,
        sessions: SessionManager,
        session: Session,
        display_manager: Optional[DisplayManager] = None,
    ):
        self.agent = agent
        self.sessions = sessions
        self.session = session
        self.display = display_manager or display
        self.prompt = PromptSession(
            history=InMemoryHistory(),
            auto_suggest=AutoSuggestFromHistory(),
            complete_style="column"
        )
        self.running = False
        self.commands = {
            "/help": "Show available commands",
            "/new [name]": "Start a new session",
            "/sessions": "List sessions",
            "/resume <name>": "Switch to an existing session",
            "/delete <name>": "Delete a session",
            "/tools": "List available tools",
            "/state": "Show the current session state",
            "/quit": "Exit the agent",
        }
        self.agent.on_event = self._on_event

    async def start(self) -> None:
        """Run the interaction loop until /quit or EOF."""
        self.running = True
        self._show_welcome()

        while self.running:
            try:
                user_input = await self._get_user_input()
            except KeyboardInterrupt:
                self.display.print("Use /quit to exit", style="yellow")
                continue
            except EOFError:
                break

            user_input = user_input.strip()
            if not user_input:
                continue
            try:
                if user_input.startswith("/"):
                    await self._handle_command(user_input)
                else:
                    await self._process_user_input(user_input)
            except AgentError as e:
                self.display.print_error(e)

    def _show_welcome(self) -> None:
        info = self.agent.llm.provider_info() if hasattr(self.agent.llm, "provider_info") else {}
        self.display.print_panel(
            "Type a request to start, or /help for commands.\n"
            "Ctrl-C cancels the running turn.",
            title="🤖 Code Agent",
            style="bold cyan",
            border_style="cyan"
        )
        self.display.print(f"📁 Session: {self.session.name}")
        self.display.print(f"🔧 Tools available: {len(self.agent.registry.list_tools())}")
        if info:
            self.display.print(f"🤖 LLM provider: {info.get('provider')} ({info.get('model') or 'default model'})")
        self.display.print_separator()

    async def _get_user_input(self) -> str:
        completer = WordCompleter(
            [command.split()[0] for command in self.commands],
            ignore_case=True,
            sentence=True,
        )
        return await self.prompt.prompt_async(f"[{self.session.name}] 💬 ", completer=completer)

    async def _handle_command(self, user_input: str) -> None:
        parts = user_input.split(maxsplit=1)
        command = parts[0].lower()
        argument = parts[1].strip() if len(parts) > 1 else ""

        if command == "/help":
            self.display.print_help(self.commands)
        elif command in ("/quit", "/exit"):
            self.display.print("👋 Goodbye!", style="cyan")
            self.running = False
        elif command == "/new":
            name = argument or f"session-{uuid.uuid4().hex[:8]}"
            self.session = await self.sessions.new_session(name)
            self.display.print_success(f"Started session {name}")
        elif command == "/sessions":
            self.display.print_sessions(await self.sessions.list(), current=self.session.name)
        elif command == "/resume":
            await self._resume(argument)
        elif command == "/delete":
            await self._delete(argument)
        elif command == "/tools":
            self.display.print_tools(self.agent.registry.get_tool_info())
        elif command == "/state":
            state = await self.agent.store.get_state(self.session.id)
            self.display.print_tree(state, title=f"State of {self.session.name}")
        else:
            self.display.print(f"Unknown command {command}. Type /help.", style="yellow")

    async def _resume(self, name: str) -> None:
        if not name:
            self.display.print("Usage: /resume <name>", style="yellow")
            return
        session = await self.sessions.get(name)
        if session is None:
            self.display.print(f"No session named {name}", style="yellow")
            return
        self.session = session
        history = await self.sessions.load_history(session)
        self.display.print_success(f"Resumed {name} ({len(history.events)} events)")

    async def _delete(self, name: str) -> None:
        if not name:
            self.display.print("Usage: /delete <name>", style="yellow")
            return
        if name == self.session.name:
            self.display.print("Cannot delete the active session", style="yellow")
            return
        await self.sessions.delete(name)
        self.display.print_success(f"Deleted session {name}")

    def _on_event(self, event: Event) -> None:
        if event.partial:
            self.display.print_streaming_response(event.text)
            return
        streamed = self.display.end_stream()
        if event.author != Author.MODEL:
            return
        if event.error_code:
            return
        if event.text and not streamed:
            self.display.print_agent_response(event.text)

    async def _process_user_input(self, user_input: str) -> None:
        """Run one turn; Ctrl-C cancels it through the token."""
        cancel = CancellationToken()
        loop = asyncio.get_running_loop()
        handler_installed = False
        try:
            loop.add_signal_handler(signal.SIGINT, cancel.cancel)
            handler_installed = True
        except (NotImplementedError, RuntimeError, ValueError):
            logger.debug("SIGINT handler unavailable; Ctrl-C will not cancel turns")

        self.display.print_thinking()
        try:
            result = await self.agent.run_turn(self.session, user_input, cancel=cancel)
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)
            self.display.end_stream()

        if result.error is not None:
            if result.error.code == ErrorCode.CANCELLED:
                self.display.print("⏹  Turn cancelled", style="yellow")
            else:
                self.display.print_error(result.error)
        self.display.print_separator()
