"""LLM provider layer."""

from .base import BaseLLMProvider, LLMResponse, Message
from .manager import LLMManager

__all__ = ["BaseLLMProvider", "LLMResponse", "Message", "LLMManager"]
