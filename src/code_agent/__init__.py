"""
Code Agent

A terminal coding assistant that runs a model/tool loop over persistent,
replayable sessions.
"""

__version__ = "1.0.0"

from .core.agent import CodeAgent, TurnResult, TurnState, build_agent
from .errors import AgentError, ErrorCode

__all__ = ["CodeAgent", "TurnResult", "TurnState", "build_agent", "AgentError", "ErrorCode"]
