"""Ollama backend via its OpenAI-compatible endpoint."""

from __future__ import annotations

from typing import Optional

import httpx

from zotero_chat.llm.chat_completions import ChatCompletionsClient


class OllamaClient(ChatCompletionsClient):
    """Local Ollama server.

    Example:
        >>> client = OllamaClient(model="deepseek-r1:8b")
        >>> reply = await client.chat([LLMMessage(role="user", content="hi")])
    """

    backend = "ollama"
    completions_path = "/v1/chat/completions"
    health_path = "/api/tags"

    def __init__(
        self,
        model: str = "deepseek-r1:8b",
        base_url: str = "http://localhost:11434",
        timeout: float = 120.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(base_url, model, timeout=timeout, http_client=http_client)
