"""OpenRouter backend."""

from __future__ import annotations

import os
from typing import Optional

import httpx

from zotero_chat.llm.chat_completions import ChatCompletionsClient

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
APP_REFERER = "https://github.com/hughesgm8/zotero-mcp-chat"
APP_TITLE = "Zotero MCP Chat"


class OpenRouterClient(ChatCompletionsClient):
    """Hosted models through OpenRouter's chat completions API."""

    backend = "openrouter"

    def __init__(
        self,
        model: str = "deepseek/deepseek-r1",
        api_key: Optional[str] = None,
        base_url: str = OPENROUTER_BASE_URL,
        timeout: float = 120.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Initialize OpenRouter client.

        Args:
            model: OpenRouter model ID
            api_key: API key (default: from OPENROUTER_API_KEY env)
            base_url: API root
            timeout: Request timeout in seconds
            http_client: Optional shared httpx client
        """
        raw_key = api_key or os.environ.get("OPENROUTER_API_KEY")
        self._api_key = raw_key.strip() if raw_key else None
        if not self._api_key:
            raise ValueError(
                "OPENROUTER_API_KEY environment variable not set and no api_key provided"
            )
        super().__init__(base_url, model, timeout=timeout, http_client=http_client)

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
            "HTTP-Referer": APP_REFERER,
            "X-Title": APP_TITLE,
        }
