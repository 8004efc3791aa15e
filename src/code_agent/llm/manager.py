"""LLM manager: builds the configured provider and forwards requests."""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Type

from ..errors import model_not_found
from ..utils.config import LLMConfig, config_manager
from .base import BaseLLMProvider, LLMResponse, Message
from .providers import AnthropicProvider, GeminiProvider, LocalProvider, OpenAIProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: Dict[str, Type[BaseLLMProvider]] = {
    "gemini": GeminiProvider,
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "local": LocalProvider,
}


class LLMManager:
    """
    Owns one provider built from configuration.

    Failures surface to the caller unchanged; there is no fallback chain
    and no retry here.
    """

    def __init__(self, config: Optional[LLMConfig] = None, provider: Optional[BaseLLMProvider] = None):
        self._config = config
        self.provider = provider
        self._initialized = False

    @property
    def config(self) -> LLMConfig:
        return self._config or config_manager.config.llm

    def _build_provider(self) -> BaseLLMProvider:
        config = self.config
        provider_class = PROVIDER_CLASSES.get(config.provider)
        if provider_class is None:
            raise model_not_found(f"{config.provider}/{config.model or 'default'}").with_suggestion(
                f"choose one of: {', '.join(PROVIDER_CLASSES)}"
            )
        return provider_class(api_key=config.api_key, model=config.model, base_url=config.base_url)

    async def initialize(self) -> None:
        """Create and initialize the configured provider."""
        if self._initialized:
            return
        if self.provider is None:
            self.provider = self._build_provider()
        await self.provider.initialize()
        logger.info("Using %s provider with model %s", self.provider.name, self.provider.model)
        self._initialized = True

    def _request_kwargs(self, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        merged = {"temperature": self.config.temperature, "max_tokens": self.config.max_tokens}
        merged.update(kwargs)
        return merged

    async def generate_response(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ) -> LLMResponse:
        """Generate a response with the configured provider."""
        await self.initialize()
        return await self.provider.generate_response(messages, tools, **self._request_kwargs(kwargs))

    async def stream_response(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ) -> AsyncIterator[LLMResponse]:
        """Stream a response with the configured provider."""
        await self.initialize()
        async for chunk in self.provider.stream_response(messages, tools, **self._request_kwargs(kwargs)):
            yield chunk

    def provider_info(self) -> Dict[str, Any]:
        """Describe the active provider."""
        config = self.config
        provider = self.provider
        return {
            "provider": provider.name if provider else config.provider,
            "model": provider.model if provider else config.model,
            "base_url": config.base_url,
            "initialized": self._initialized,
            "available": list(PROVIDER_CLASSES),
        }
