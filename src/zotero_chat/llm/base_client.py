"""Abstract base for LLM backends.

Every backend exposes the same three capabilities so the orchestrator never
needs to know which provider it is talking to.
"""

from abc import ABC, abstractmethod
from typing import Sequence

from zotero_chat.models import LLMMessage, LLMResponse


class LLMClient(ABC):
    """Provider-neutral chat interface."""

    @abstractmethod
    async def chat(self, messages: Sequence[LLMMessage]) -> LLMResponse:
        """Generate a reply to an ordered list of messages.

        Raises:
            LLMError: The backend could not produce a reply
        """

    @abstractmethod
    async def test_connection(self) -> bool:
        """Return True if the backend is reachable and accepts our credentials."""

    @abstractmethod
    def get_model_name(self) -> str:
        """Return the configured model identifier."""

    async def close(self) -> None:
        """Release backend resources."""
        pass

    async def __aenter__(self) -> "LLMClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
