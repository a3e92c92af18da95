"""Shared client for OpenAI-compatible ``/chat/completions`` endpoints.

Ollama and OpenRouter both speak this format; they differ only in base URL,
authentication headers and how connectivity is checked.
"""

from __future__ import annotations

from typing import Optional, Sequence

import httpx

from zotero_chat.errors import LLMError
from zotero_chat.llm.base_client import LLMClient
from zotero_chat.logging_config import get_logger
from zotero_chat.models import LLMMessage, LLMResponse

logger = get_logger(__name__)


class ChatCompletionsClient(LLMClient):
    """Non-streaming chat completions over httpx."""

    backend = "openai-compatible"
    completions_path = "/chat/completions"
    health_path = "/models"

    def __init__(
        self,
        base_url: str,
        model: str,
        timeout: float = 120.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._owns_http = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    @property
    def completions_url(self) -> str:
        return f"{self.base_url}{self.completions_path}"

    @property
    def health_url(self) -> str:
        return f"{self.base_url}{self.health_path}"

    def get_model_name(self) -> str:
        return self.model

    async def chat(self, messages: Sequence[LLMMessage]) -> LLMResponse:
        payload = {
            "model": self.model,
            "messages": [m.model_dump() for m in messages],
            "stream": False,
        }
        logger.debug("llm_request", backend=self.backend, model=self.model, messages=len(messages))

        try:
            response = await self._client.post(
                self.completions_url, json=payload, headers=self._headers()
            )
        except httpx.HTTPError as e:
            logger.error("llm_request_failed", backend=self.backend, error=str(e))
            raise LLMError(f"{self.backend} request failed: {e}") from e

        if response.status_code >= 400:
            logger.error(
                "llm_http_error",
                backend=self.backend,
                status=response.status_code,
                body=response.text[:200],
            )
            raise LLMError(
                f"{self.backend} returned HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise LLMError(f"{self.backend} returned invalid JSON") from e

        choices = data.get("choices") if isinstance(data, dict) else None
        content = ""
        if choices and isinstance(choices[0], dict):
            content = (choices[0].get("message") or {}).get("content") or ""

        logger.info("llm_response", backend=self.backend, model=self.model, length=len(content))
        return LLMResponse(content=content)

    async def test_connection(self) -> bool:
        try:
            response = await self._client.get(self.health_url, headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning("llm_connection_check_failed", backend=self.backend, error=str(e))
            return False
        return response.status_code == 200

    async def close(self) -> None:
        if self._owns_http:
            await self._client.aclose()
