"""Retrieval-augmented answering over a Zotero library.

One query runs these steps strictly in order:

1. semantic search with the raw question
2. item key extraction from the search output
3. carry-forward keys from the previous answer's sources
4. metadata fetch for each extracted key
5. metadata fetch for carry-forward keys the search did not return
6. full text for the top candidates (carry-forward sources first)
7. context assembly
8. prompt assembly
9. generation

Search and generation failures end the query. A failed metadata or full-text
fetch only drops that candidate.
"""

from __future__ import annotations

from typing import Optional, Sequence

from zotero_chat.config import Settings
from zotero_chat.errors import RetrievalError, ZoteroChatError
from zotero_chat.llm.base_client import LLMClient
from zotero_chat.logging_config import get_logger
from zotero_chat.models import ChatTurn, FullText, NoteAttachment, QueryResult, Source
from zotero_chat.parsing import extract_item_keys, looks_like_tool_error, parse_metadata
from zotero_chat.prompts import build_context, build_messages
from zotero_chat.transport import McpClient

logger = get_logger(__name__)


def carry_forward_keys(history: Sequence[ChatTurn]) -> list[str]:
    """Return the source keys of the newest assistant turn that has sources."""
    for turn in reversed(history):
        if turn.role == "assistant" and turn.sources:
            return [source.key for source in turn.sources]
    return []


class RetrievalOrchestrator:
    """Runs the search, enrichment and generation pipeline for one question at a time.

    Example:
        >>> orchestrator = RetrievalOrchestrator(mcp_client, llm, settings)
        >>> result = await orchestrator.query("What did Smith find?", history=[])
        >>> print(result.content, [s.key for s in result.sources])
    """

    def __init__(self, client: McpClient, llm: LLMClient, settings: Settings) -> None:
        self.client = client
        self.llm = llm
        self.settings = settings

    async def query(
        self,
        question: str,
        history: Sequence[ChatTurn],
        attachment: Optional[NoteAttachment] = None,
    ) -> QueryResult:
        """Answer ``question`` grounded in the library.

        Args:
            question: User question, passed to search unchanged
            history: Prior turns, oldest first
            attachment: Optional note included in the final prompt

        Returns:
            QueryResult with the generated text and the sources shown to the model

        Raises:
            RetrievalError: Search returned error-shaped text
            TransportError: Search failed at the HTTP layer
            RpcError: Search returned a JSON-RPC error
            LLMError: Generation failed
        """
        search_text = await self.search(question)

        keys = extract_item_keys(search_text)
        carried = carry_forward_keys(history)
        logger.info(
            "retrieval_keys",
            found=len(keys),
            carried=len(carried),
        )

        sources = await self.fetch_sources(keys)

        extra_keys = [key for key in carried if key not in keys]
        if extra_keys:
            sources.extend(await self.fetch_sources(extra_keys))

        full_texts = await self.fetch_full_texts(self._full_text_order(sources, carried))

        context = build_context(sources, search_text, full_texts)
        messages = build_messages(
            self.settings.system_prompt,
            question,
            context,
            history,
            self.settings.max_conversation_history,
            attachment,
        )

        response = await self.llm.chat(messages)
        logger.info(
            "query_answered",
            sources=len(sources),
            full_texts=len(full_texts),
            model=self.llm.get_model_name(),
        )
        return QueryResult(content=response.content, sources=sources)

    async def search(self, question: str) -> str:
        text = await self.client.call_tool(self.settings.search_tool, {"query": question})
        if looks_like_tool_error(text):
            logger.error("search_returned_error", result=text[:200])
            raise RetrievalError(f"Zotero search failed: {text.strip()}")
        return text

    async def fetch_sources(self, keys: Sequence[str]) -> list[Source]:
        """Fetch and parse metadata for each key, dropping keys that fail."""
        sources = []
        for key in keys:
            try:
                text = await self.client.call_tool(self.settings.metadata_tool, {"item_key": key})
            except ZoteroChatError as e:
                logger.warning("metadata_fetch_failed", key=key, error=str(e))
                continue
            parsed = parse_metadata(key, text)
            logger.debug("metadata_parsed", key=key, origin=parsed.origin)
            sources.append(parsed.source)
        return sources

    def _full_text_order(self, sources: list[Source], carried: list[str]) -> list[Source]:
        carried_set = set(carried)
        prioritized = [s for s in sources if s.key in carried_set]
        rest = [s for s in sources if s.key not in carried_set]
        return (prioritized + rest)[: self.settings.full_text_top_n]

    async def fetch_full_texts(self, sources: Sequence[Source]) -> dict[str, FullText]:
        """Fetch full text for ``sources``, cut to the configured character cap."""
        cap = self.settings.full_text_max_chars
        full_texts: dict[str, FullText] = {}
        for source in sources:
            try:
                text = await self.client.call_tool(
                    self.settings.fulltext_tool, {"item_key": source.key}
                )
            except ZoteroChatError as e:
                logger.warning("fulltext_fetch_failed", key=source.key, error=str(e))
                continue

            if not text.strip():
                logger.warning("fulltext_fetch_failed", key=source.key, error="empty full text")
                continue

            full_texts[source.key] = FullText(text=text[:cap], truncated=len(text) >= cap)
        return full_texts
