"""Command-line interface for the code agent."""

import asyncio
import sys
from typing import Optional, Tuple

import click

from .core.agent import CodeAgent, build_agent
from .errors import AgentError
from .interface.display import RichToolListener, display
from .interface.terminal import TerminalInterface
from .session.manager import SessionManager
from .session.sqlite import SQLiteSessionStore
from .tools import ToolRegistry, register_builtin_tools
from .utils.config import AgentConfig, config_manager
from .utils.logging import setup_logging


def _session_manager(config: AgentConfig) -> SessionManager:
    store = SQLiteSessionStore(config.session.db_path)
    return SessionManager(store, config.session.app_name, config.session.user_id)


def _build(config: AgentConfig) -> Tuple[CodeAgent, SessionManager]:
    sessions = _session_manager(config)
    agent = build_agent(config, store=sessions.store, listener=RichToolListener(display))
    return agent, sessions


def _run(coro) -> None:
    """Run a coroutine, rendering AgentErrors and exiting non-zero."""
    try:
        asyncio.run(coro)
    except AgentError as e:
        display.print_error(e)
        sys.exit(1)


@click.group()
@click.version_option(version="1.0.0")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--provider", "-p", help="LLM provider (gemini, openai, anthropic, local)")
@click.option("--model", "-m", help="Model name")
def cli(verbose, provider, model):
    """Code Agent - a terminal coding assistant with persistent sessions."""
    try:
        config = config_manager.config
    except AgentError as e:
        display.print_error(e)
        sys.exit(1)
    if verbose:
        config.verbose = True
    if provider:
        config.llm.provider = provider
    if model:
        config.llm.model = model
    setup_logging(config.verbose)


@cli.command()
@click.option("--session", "-s", "session_name", help="Session to open (created if missing)")
@click.option("--new", "new_session", is_flag=True, help="Fail instead of resuming an existing session")
def start(session_name: Optional[str], new_session: bool):
    """Start the interactive terminal interface."""
    config = config_manager.config

    async def run():
        agent, sessions = _build(config)
        try:
            name = session_name or config.session.default_session
            session = await sessions.open(name, resume=not new_session)
            interface = TerminalInterface(agent, sessions, session)
            await interface.start()
        finally:
            await sessions.close()

    _run(run())


@cli.command()
@click.argument("message")
@click.option("--session", "-s", "session_name", help="Session to use")
def chat(message: str, session_name: Optional[str]):
    """Send a single message to the agent (non-interactive mode)."""
    config = config_manager.config

    async def run():
        agent, sessions = _build(config)
        try:
            session = await sessions.open(session_name or config.session.default_session)
            agent.on_event = lambda event: display.print_streaming_response(event.text) if event.partial else None
            result = await agent.run_turn(session, message)
            if not display.end_stream() and result.text:
                display.print_agent_response(result.text)
            if result.error is not None:
                display.print_error(result.error)
                sys.exit(1)
        finally:
            await sessions.close()

    _run(run())


@cli.group()
def sessions():
    """Manage stored sessions."""
    pass


@sessions.command("list")
def list_sessions():
    """List sessions, most recent first."""
    async def run():
        manager = _session_manager(config_manager.config)
        try:
            display.print_sessions(await manager.list())
        finally:
            await manager.close()

    _run(run())


@sessions.command("new")
@click.argument("name")
def new_session(name: str):
    """Create an empty session."""
    async def run():
        manager = _session_manager(config_manager.config)
        try:
            await manager.new_session(name)
            display.print_success(f"Created session {name}")
        finally:
            await manager.close()

    _run(run())


@sessions.command("delete")
@click.argument("name")
@click.confirmation_option(prompt="Delete this session and all of its events?")
def delete_session(name: str):
    """Delete a session and its history."""
    async def run():
        manager = _session_manager(config_manager.config)
        try:
            await manager.delete(name)
            display.print_success(f"Deleted session {name}")
        finally:
            await manager.close()

    _run(run())


@cli.command()
def tools():
    """Show available tools."""
    registry = register_builtin_tools(ToolRegistry())
    display.print_tools(registry.get_tool_info())


@cli.command()
def config():
    """Show current configuration."""
    config_dict = config_manager.config.model_dump(mode="json", exclude={"llm": {"api_key"}})
    display.print_header("⚙️ Current Configuration")
    display.print_tree(config_dict)


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
