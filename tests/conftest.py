"""
Pytest configuration and shared fixtures for the code agent test suite.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add src to path for imports during testing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from code_agent.core.agent import CodeAgent
from code_agent.core.listener import ToolExecutionListener
from code_agent.llm.base import LLMResponse
from code_agent.session.memory import InMemorySessionStore
from code_agent.session.sqlite import SQLiteSessionStore
from code_agent.tools import ToolContext, ToolRegistry, register_builtin_tools
from code_agent.utils.config import AgentConfig

# Disable logging during tests to reduce noise
logging.getLogger("code_agent").setLevel(logging.CRITICAL)


class ScriptedLLM:
    """LLM double that replays queued responses and records each request."""

    name = "scripted"

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.calls: List[List[Any]] = []
        self.tools: List[Optional[List[Dict[str, Any]]]] = []

    def queue(self, *responses: Any) -> "ScriptedLLM":
        self.responses.extend(responses)
        return self

    async def generate_response(self, messages, tools=None, **kwargs) -> LLMResponse:
        self.calls.append(list(messages))
        self.tools.append(tools)
        if not self.responses:
            raise AssertionError("ScriptedLLM ran out of responses")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return await item(messages)
        return item


class StreamingLLM(ScriptedLLM):
    """Scripted LLM that streams each text response word by word."""

    async def stream_response(self, messages, tools=None, **kwargs):
        response = await self.generate_response(messages, tools, **kwargs)
        text = ""
        for word in response.content.split(" "):
            text = f"{text} {word}" if text else word
            yield LLMResponse(content=text, partial=True)
        yield response


class RecordingListener(ToolExecutionListener):
    """Collects every listener notification in order."""

    def __init__(self):
        self.calls: List[tuple] = []

    def on_start(self, tool_name, arguments):
        self.calls.append(("start", tool_name, dict(arguments)))

    def on_progress(self, tool_name, info):
        self.calls.append(("progress", tool_name, dict(info)))

    def on_complete(self, tool_name, output, error):
        self.calls.append(("complete", tool_name, output, error))

    def names(self, kind: str) -> List[str]:
        return [call[1] for call in self.calls if call[0] == kind]


@pytest.fixture
def workspace(tmp_path):
    """A project directory used as the tool sandbox."""
    root = tmp_path / "workspace"
    root.mkdir()
    (root / "README.md").write_text("# Sample Project\n\nThis is a test project.\n")
    src_dir = root / "src"
    src_dir.mkdir()
    (src_dir / "main.py").write_text("def main():\n    return 1\n")
    return root.resolve()


@pytest.fixture
def tool_context(workspace):
    """Tool context rooted at the workspace."""
    return ToolContext(working_directory=workspace)


@pytest.fixture
def registry():
    """Registry with the built-in tools."""
    return register_builtin_tools(ToolRegistry())


@pytest.fixture
def memory_store():
    return InMemorySessionStore()


@pytest.fixture
async def sqlite_store(tmp_path):
    store = SQLiteSessionStore(tmp_path / "sessions.db")
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    """Each session-store implementation in turn."""
    if request.param == "memory":
        yield InMemorySessionStore()
        return
    sqlite = SQLiteSessionStore(tmp_path / "sessions.db")
    await sqlite.initialize()
    yield sqlite
    await sqlite.close()


@pytest.fixture
def agent_config(workspace):
    """Test-friendly agent configuration."""
    return AgentConfig(
        working_directory=workspace,
        streaming=False,
        max_iterations=5,
        model_timeout=5,
        tool_timeout=10,
    )


@pytest.fixture
def scripted_llm():
    return ScriptedLLM()


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def make_agent(registry, memory_store, agent_config, listener):
    """Factory building an agent over the in-memory store."""
    def _make(llm, **overrides):
        config = agent_config.model_copy(update=overrides.pop("config", {}))
        return CodeAgent(
            llm=llm,
            registry=overrides.pop("registry", registry),
            store=overrides.pop("store", memory_store),
            config=config,
            listener=overrides.pop("listener", listener),
            **overrides,
        )
    return _make


@pytest.fixture
def clean_environment(monkeypatch):
    """Ensure clean environment variables for testing."""
    for var in (
        "GOOGLE_API_KEY",
        "GEMINI_API_KEY",
        "OPENAI_API_KEY",
        "ANTHROPIC_API_KEY",
        "LLM_PROVIDER",
        "LLM_MODEL",
        "LLM_BASE_URL",
        "CODE_AGENT_DB",
        "CODE_AGENT_MAX_ITERATIONS",
    ):
        monkeypatch.delenv(var, raising=False)


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers automatically."""
    for item in items:
        if "integration" in str(item.fspath) or "end_to_end" in item.name:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
