"""LLM backends for answer generation.

This package provides:
- LLMClient: Abstract base for LLM backends
- OllamaClient: Local models through Ollama's OpenAI-compatible API
- OpenRouterClient: Hosted models through OpenRouter
- AnthropicClient: Claude through the anthropic SDK
- get_llm_client: Factory mapping the configured backend to a client
"""

from zotero_chat.config import Settings
from zotero_chat.llm.base_client import LLMClient
from zotero_chat.llm.ollama_client import OllamaClient
from zotero_chat.llm.openrouter_client import OpenRouterClient


def get_llm_client(settings: Settings) -> LLMClient:
    """Create the LLM client selected by ``settings.llm_backend``.

    Args:
        settings: Application settings

    Returns:
        LLMClient instance for the configured backend

    Raises:
        ValueError: If the backend is unknown or its API key is missing

    Example:
        >>> client = get_llm_client(get_settings().model_copy(update={"llm_backend": "ollama"}))
    """
    backend = settings.llm_backend
    if backend == "ollama":
        return OllamaClient(
            model=settings.ollama_model,
            base_url=settings.ollama_base_url,
            timeout=settings.request_timeout,
        )
    elif backend == "openrouter":
        return OpenRouterClient(
            model=settings.openrouter_model,
            api_key=settings.openrouter_api_key,
            timeout=settings.request_timeout,
        )
    elif backend == "anthropic":
        # Import here so the SDK is only loaded when Claude is selected
        from zotero_chat.llm.anthropic_client import AnthropicClient

        return AnthropicClient(
            model=settings.anthropic_model,
            api_key=settings.anthropic_api_key,
        )
    else:
        raise ValueError(
            f"Unknown LLM backend: {backend}. Use 'ollama', 'openrouter', or 'anthropic'."
        )


__all__ = [
    "LLMClient",
    "OllamaClient",
    "OpenRouterClient",
    "get_llm_client",
]
