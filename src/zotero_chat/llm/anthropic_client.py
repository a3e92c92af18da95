"""Anthropic Claude backend.

Wraps the synchronous SDK client and runs calls in the default executor so
the event loop stays free while Claude generates.
"""

import asyncio
import os
from typing import Optional, Sequence

import anthropic

from zotero_chat.errors import LLMError
from zotero_chat.llm.base_client import LLMClient
from zotero_chat.logging_config import get_logger
from zotero_chat.models import LLMMessage, LLMResponse

logger = get_logger(__name__)


class AnthropicClient(LLMClient):
    """Anthropic Messages API client.

    Example:
        >>> client = AnthropicClient(model="sonnet")
        >>> reply = await client.chat([LLMMessage(role="user", content="Summarize...")])
    """

    # Model name -> API model ID mapping
    MODELS = {
        "haiku": "claude-haiku-4-5-20251001",
        "sonnet": "claude-sonnet-4-5-20250929",
        "opus": "claude-opus-4-5-20251101",
    }

    def __init__(
        self,
        model: str = "claude-sonnet-4-5-20250929",
        api_key: Optional[str] = None,
        max_tokens: int = 4096,
    ):
        """Initialize Anthropic client.

        Args:
            model: Model alias (haiku, sonnet, opus) or full model ID
            api_key: Anthropic API key (default: from ANTHROPIC_API_KEY env)
            max_tokens: Maximum tokens in response
        """
        self.model_name = model
        self.model_id = self.MODELS.get(model, model)
        self.max_tokens = max_tokens

        raw_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        self._api_key = raw_key.strip() if raw_key else None
        if not self._api_key:
            raise ValueError(
                "ANTHROPIC_API_KEY environment variable not set and no api_key provided"
            )

        self._client = anthropic.Anthropic(api_key=self._api_key)
        logger.info(
            "anthropic_client_initialized",
            model=self.model_name,
            model_id=self.model_id,
        )

    def get_model_name(self) -> str:
        return self.model_id

    def _call_api(self, system: Optional[str], messages: list[dict]) -> str:
        """Synchronous Messages API call returning the joined text blocks.

        Raises:
            LLMError: If the API call fails
        """
        kwargs = {
            "model": self.model_id,
            "max_tokens": self.max_tokens,
            "messages": messages,
        }
        if system:
            kwargs["system"] = system

        try:
            message = self._client.messages.create(**kwargs)
        except anthropic.APIError as e:
            logger.error("anthropic_api_error", error=str(e), model=self.model_id)
            raise LLMError(f"Anthropic API error: {e}") from e

        return "".join(block.text for block in message.content if block.type == "text")

    async def chat(self, messages: Sequence[LLMMessage]) -> LLMResponse:
        # Anthropic takes the system prompt as a separate parameter
        system_parts = [m.content for m in messages if m.role == "system"]
        conversation = [
            {"role": m.role, "content": m.content} for m in messages if m.role != "system"
        ]
        system = "\n\n".join(system_parts) or None

        logger.debug("llm_request", backend="anthropic", model=self.model_id, messages=len(conversation))

        loop = asyncio.get_running_loop()
        content = await loop.run_in_executor(None, self._call_api, system, conversation)

        logger.info("llm_response", backend="anthropic", model=self.model_id, length=len(content))
        return LLMResponse(content=content)

    async def test_connection(self) -> bool:
        """Check that the API key is accepted.

        Uses messages.count_tokens, which is cheaper than a completion.
        """
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None,
                lambda: self._client.messages.count_tokens(
                    model=self.model_id,
                    messages=[{"role": "user", "content": "test"}],
                ),
            )
            return True
        except Exception as e:
            logger.warning("anthropic_connection_check_failed", error=str(e))
            return False
