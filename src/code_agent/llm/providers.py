"""Concrete LLM provider implementations."""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import anthropic
import openai
import requests

from ..errors import missing_credential, provider_error
from ..session.base import ToolCall
from .base import BaseLLMProvider, LLMResponse, Message, parse_arguments

logger = logging.getLogger(__name__)


class OpenAIProvider(BaseLLMProvider):
    """OpenAI API provider."""

    default_model = "gpt-4o"
    api_key_env = "OPENAI_API_KEY"
    base_url: Optional[str] = None

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        super().__init__(api_key, model, **kwargs)
        if base_url:
            self.base_url = base_url

    async def initialize(self) -> None:
        """Initialize the OpenAI client."""
        if not self.api_key:
            raise missing_credential(self.name, self.api_key_env)
        self.client = openai.AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)

    def _request_params(self, messages: List[Message], tools: Optional[List[Dict[str, Any]]], **kwargs) -> Dict[str, Any]:
        request_params = {
            "model": self.model,
            "messages": self.format_messages_for_api(messages),
            "temperature": kwargs.get("temperature", 0.1),
            "max_tokens": kwargs.get("max_tokens", 4096),
        }
        if tools:
            request_params["tools"] = tools
            request_params["tool_choice"] = "auto"
        return request_params

    async def generate_response(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ) -> LLMResponse:
        """Generate a response using the chat completions API."""
        if not self.client:
            await self.initialize()

        try:
            response = await self.client.chat.completions.create(**self._request_params(messages, tools, **kwargs))
        except openai.OpenAIError as e:
            raise provider_error(self.name, e)

        choice = response.choices[0]
        tool_calls = [
            ToolCall(
                id=tool_call.id,
                name=tool_call.function.name,
                arguments=parse_arguments(tool_call.function.arguments),
            )
            for tool_call in choice.message.tool_calls or []
        ]
        usage = {}
        if response.usage:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens
            }

        return LLMResponse(
            content=choice.message.content or "",
            finish_reason=choice.finish_reason,
            usage=usage,
            model=response.model,
            tool_calls=tool_calls,
        )

    async def stream_response(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ) -> AsyncIterator[LLMResponse]:
        """Stream a response, accumulating tool-call deltas by index."""
        if not self.client:
            await self.initialize()

        request_params = self._request_params(messages, tools, **kwargs)
        request_params["stream"] = True

        content = ""
        finish_reason = None
        accumulated: Dict[int, Dict[str, str]] = {}
        try:
            stream = await self.client.chat.completions.create(**request_params)
            async for chunk in stream:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
                for call_delta in delta.tool_calls or []:
                    slot = accumulated.setdefault(call_delta.index, {"id": "", "name": "", "arguments": ""})
                    if call_delta.id:
                        slot["id"] = call_delta.id
                    if call_delta.function and call_delta.function.name:
                        slot["name"] += call_delta.function.name
                    if call_delta.function and call_delta.function.arguments:
                        slot["arguments"] += call_delta.function.arguments
                if delta.content:
                    content += delta.content
                    yield LLMResponse(content=content, model=self.model, partial=True)
        except openai.OpenAIError as e:
            raise provider_error(self.name, e)

        tool_calls = []
        for index in sorted(accumulated):
            slot = accumulated[index]
            call = ToolCall(name=slot["name"], arguments=parse_arguments(slot["arguments"]))
            if slot["id"]:
                call.id = slot["id"]
            tool_calls.append(call)

        yield LLMResponse(content=content, finish_reason=finish_reason, model=self.model, tool_calls=tool_calls)


class GeminiProvider(OpenAIProvider):
    """Google Gemini through its OpenAI-compatible endpoint."""

    default_model = "gemini-2.5-flash"
    api_key_env = "GOOGLE_API_KEY"
    base_url = "https://generativelanguage.googleapis.com/v1beta/openai/"


class AnthropicProvider(BaseLLMProvider):
    """Anthropic Claude API provider."""

    default_model = "claude-sonnet-4-5"
    api_key_env = "ANTHROPIC_API_KEY"

    async def initialize(self) -> None:
        """Initialize the Anthropic client."""
        if not self.api_key:
            raise missing_credential(self.name, self.api_key_env)
        self.client = anthropic.AsyncAnthropic(api_key=self.api_key)

    def _format_messages_for_anthropic(self, messages: List[Message]) -> Tuple[str, List[Dict[str, Any]]]:
        """Split out the system prompt and map tool traffic to content blocks."""
        system_message = ""
        formatted_messages: List[Dict[str, Any]] = []

        for msg in messages:
            if msg.role == "system":
                system_message += msg.content + "\n"
            elif msg.role == "tool":
                block = {"type": "tool_result", "tool_use_id": msg.tool_call_id, "content": msg.content}
                previous = formatted_messages[-1] if formatted_messages else None
                # Consecutive results share one user turn
                if previous and previous["role"] == "user" and isinstance(previous["content"], list):
                    previous["content"].append(block)
                else:
                    formatted_messages.append({"role": "user", "content": [block]})
            elif msg.role == "assistant" and msg.tool_calls:
                blocks: List[Dict[str, Any]] = []
                if msg.content:
                    blocks.append({"type": "text", "text": msg.content})
                for call in msg.tool_calls:
                    blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments})
                formatted_messages.append({"role": "assistant", "content": blocks})
            elif msg.role in ["user", "assistant"]:
                formatted_messages.append({"role": msg.role, "content": msg.content})

        return system_message.strip(), formatted_messages

    def _request_params(self, messages: List[Message], tools: Optional[List[Dict[str, Any]]], **kwargs) -> Dict[str, Any]:
        system_message, formatted_messages = self._format_messages_for_anthropic(messages)
        request_params = {
            "model": self.model,
            "messages": formatted_messages,
            "temperature": kwargs.get("temperature", 0.1),
            "max_tokens": kwargs.get("max_tokens", 4096),
        }
        if system_message:
            request_params["system"] = system_message
        if tools:
            # Convert tools to Anthropic format
            request_params["tools"] = [
                {
                    "name": tool["function"]["name"],
                    "description": tool["function"]["description"],
                    "input_schema": tool["function"]["parameters"]
                }
                for tool in tools
            ]
        return request_params

    @staticmethod
    def _to_response(message: Any) -> LLMResponse:
        content = ""
        tool_calls = []
        for content_block in message.content:
            if content_block.type == "text":
                content += content_block.text
            elif content_block.type == "tool_use":
                tool_calls.append(ToolCall(
                    id=content_block.id,
                    name=content_block.name,
                    arguments=parse_arguments(content_block.input),
                ))

        return LLMResponse(
            content=content,
            finish_reason=message.stop_reason,
            usage={
                "prompt_tokens": message.usage.input_tokens,
                "completion_tokens": message.usage.output_tokens,
                "total_tokens": message.usage.input_tokens + message.usage.output_tokens
            },
            model=message.model,
            tool_calls=tool_calls,
        )

    async def generate_response(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ) -> LLMResponse:
        """Generate a response using Anthropic."""
        if not self.client:
            await self.initialize()

        try:
            response = await self.client.messages.create(**self._request_params(messages, tools, **kwargs))
        except anthropic.AnthropicError as e:
            raise provider_error(self.name, e)
        return self._to_response(response)

    async def stream_response(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ) -> AsyncIterator[LLMResponse]:
        """Stream a response using Anthropic."""
        if not self.client:
            await self.initialize()

        content = ""
        try:
            async with self.client.messages.stream(**self._request_params(messages, tools, **kwargs)) as stream:
                async for text in stream.text_stream:
                    content += text
                    yield LLMResponse(content=content, model=self.model, partial=True)
                final = await stream.get_final_message()
        except anthropic.AnthropicError as e:
            raise provider_error(self.name, e)

        yield self._to_response(final)


class LocalProvider(BaseLLMProvider):
    """Local model provider (Ollama chat API)."""

    default_model = "llama3.1"

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        super().__init__(api_key, model, **kwargs)
        self.base_url = (base_url or "http://localhost:11434").rstrip('/')
        self.timeout = kwargs.get("timeout", 120)

    @property
    def is_available(self) -> bool:
        return True

    async def initialize(self) -> None:
        """Check that the local model server is reachable."""
        try:
            response = await asyncio.to_thread(requests.get, f"{self.base_url}/api/tags", timeout=5)
            response.raise_for_status()
        except requests.RequestException as e:
            raise provider_error(self.name, e).with_context("base_url", self.base_url).with_suggestion(
                "start the Ollama server or set LLM_BASE_URL"
            )
        self.client = True

    def _messages_for_ollama(self, messages: List[Message]) -> List[Dict[str, Any]]:
        formatted = []
        for msg in messages:
            entry: Dict[str, Any] = {"role": msg.role, "content": msg.content}
            if msg.tool_calls:
                entry["tool_calls"] = [
                    {"function": {"name": call.name, "arguments": call.arguments}} for call in msg.tool_calls
                ]
            formatted.append(entry)
        return formatted

    def _payload(self, messages: List[Message], tools: Optional[List[Dict[str, Any]]], stream: bool, **kwargs) -> Dict[str, Any]:
        payload = {
            "model": self.model,
            "messages": self._messages_for_ollama(messages),
            "stream": stream,
            "options": {
                "temperature": kwargs.get("temperature", 0.1),
            }
        }
        if tools:
            payload["tools"] = tools
        return payload

    def _to_response(self, result: Dict[str, Any], content: Optional[str] = None) -> LLMResponse:
        message = result.get("message", {})
        tool_calls = [
            ToolCall(
                name=call.get("function", {}).get("name", ""),
                arguments=parse_arguments(call.get("function", {}).get("arguments")),
            )
            for call in message.get("tool_calls") or []
        ]
        return LLMResponse(
            content=content if content is not None else message.get("content", ""),
            finish_reason=result.get("done_reason", "stop"),
            usage={
                "prompt_tokens": result.get("prompt_eval_count", 0),
                "completion_tokens": result.get("eval_count", 0),
                "total_tokens": result.get("prompt_eval_count", 0) + result.get("eval_count", 0)
            },
            model=self.model,
            tool_calls=tool_calls,
        )

    async def generate_response(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ) -> LLMResponse:
        """Generate a response using the local model."""
        try:
            response = await asyncio.to_thread(
                requests.post,
                f"{self.base_url}/api/chat",
                json=self._payload(messages, tools, stream=False, **kwargs),
                timeout=self.timeout,
            )
            response.raise_for_status()
            result = response.json()
        except (requests.RequestException, ValueError) as e:
            raise provider_error(self.name, e)
        return self._to_response(result)

    async def stream_response(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ) -> AsyncIterator[LLMResponse]:
        """Stream a response using the local model; lines are read in a worker thread."""
        content = ""
        tool_calls: List[Dict[str, Any]] = []
        try:
            response = await asyncio.to_thread(
                requests.post,
                f"{self.base_url}/api/chat",
                json=self._payload(messages, tools, stream=True, **kwargs),
                stream=True,
                timeout=self.timeout,
            )
            response.raise_for_status()
            lines = response.iter_lines()
            while True:
                line = await asyncio.to_thread(next, lines, None)
                if line is None:
                    break
                if not line:
                    continue
                try:
                    data = json.loads(line.decode('utf-8'))
                except json.JSONDecodeError:
                    logger.debug("Skipping malformed stream line from %s", self.base_url)
                    continue
                message = data.get("message", {})
                tool_calls.extend(message.get("tool_calls") or [])
                if message.get("content"):
                    content += message["content"]
                    yield LLMResponse(content=content, model=self.model, partial=True)
                if data.get("done", False):
                    data.setdefault("message", {})["tool_calls"] = tool_calls
                    yield self._to_response(data, content=content)
                    return
        except requests.RequestException as e:
            raise provider_error(self.name, e)

        raise provider_error(self.name, ConnectionError("stream ended before completion"))
