"""Reasoning engine factory.

Creates the ReasoningEngine selected by application settings.
"""

from typing import Any

from ..exceptions import ConfigurationError
from .anthropic_engine import AnthropicEngine
from .interface import ReasoningEngine
from .openai_engine import OpenAIEngine


def create_reasoning_engine(settings: Any) -> ReasoningEngine:
    """Create a reasoning engine based on settings.

    Args:
        settings: Application settings with an ``llm_provider`` attribute.
            Supported values: "anthropic", "openai".

    Returns:
        A ReasoningEngine implementation.

    Raises:
        ConfigurationError: If the provider is unknown or its API key is missing.
    """
    provider_name = getattr(settings, "llm_provider", "anthropic")

    if provider_name == "anthropic":
        api_key = settings.anthropic_api_key_str
        if not api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY is required for llm_provider=anthropic")
        return AnthropicEngine(model=settings.anthropic_model, api_key=api_key)

    if provider_name == "openai":
        api_key = settings.openai_api_key_str
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY is required for llm_provider=openai")
        return OpenAIEngine(model=settings.openai_chat_model, api_key=api_key)

    raise ConfigurationError(
        f"Unknown LLM provider: '{provider_name}'. "
        f"Supported providers: 'anthropic', 'openai'"
    )
