"""Context and message assembly for grounded answers.

The final user message always has the same layout::

    Context from Zotero library:

    <numbered source blocks, or the raw search text>

    ---

    Attached note (<name>):        <- only when a note is attached

    <note content>

    ---

    Question: <question>
"""

from __future__ import annotations

from typing import Optional, Sequence

from zotero_chat.models import ChatTurn, FullText, LLMMessage, NoteAttachment, Source

CONTEXT_HEADER = "Papers from the user's Zotero library:"
SECTION_SEPARATOR = "\n\n---\n\n"


def format_source_block(index: int, source: Source, full_text: Optional[FullText] = None) -> str:
    """Render one source as a numbered context block."""
    lines = [
        f"[{index}] {source.title}",
        f"   Authors: {source.authors or 'Unknown'}",
        f"   Year: {source.year}",
        f"   Type: {source.item_type}",
    ]
    if source.abstract:
        lines.append(f"   Abstract: {source.abstract}")
    if full_text is not None and full_text.text:
        label = "Full text (truncated)" if full_text.truncated else "Full text"
        lines.append(f"   {label}:")
        lines.append(full_text.text)
    return "\n".join(lines)


def build_context(
    sources: Sequence[Source],
    search_text: str,
    full_texts: Optional[dict[str, FullText]] = None,
) -> str:
    """Build the context section.

    Without resolved sources the raw search output is passed through
    unchanged so the model still sees whatever the library returned.
    """
    if not sources:
        return search_text

    full_texts = full_texts or {}
    blocks = [
        format_source_block(i, source, full_texts.get(source.key))
        for i, source in enumerate(sources, 1)
    ]
    return f"{CONTEXT_HEADER}\n\n" + "\n\n".join(blocks)


def build_messages(
    system_prompt: str,
    question: str,
    context: str,
    history: Sequence[ChatTurn],
    max_history: int,
    attachment: Optional[NoteAttachment] = None,
) -> list[LLMMessage]:
    """Assemble the message list sent to the LLM backend.

    Args:
        system_prompt: Instruction for the system message
        question: The user's question, verbatim
        context: Output of ``build_context``
        history: Prior turns, oldest first
        max_history: How many of the most recent turns to include
        attachment: Optional note to include between context and question
    """
    messages = [LLMMessage(role="system", content=system_prompt)]

    recent = list(history)[-max_history:] if max_history > 0 else []
    for turn in recent:
        messages.append(LLMMessage(role=turn.role, content=turn.content))

    parts = [f"Context from Zotero library:\n\n{context}"]
    if attachment is not None and attachment.content.strip():
        parts.append(f"Attached note ({attachment.name}):\n\n{attachment.content}")
    parts.append(f"Question: {question}")

    messages.append(LLMMessage(role="user", content=SECTION_SEPARATOR.join(parts)))
    return messages
