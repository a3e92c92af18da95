"""Pydantic models shared across the supervisor, transport and orchestrator."""

from __future__ import annotations

import time
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ServerState(str, Enum):
    """Lifecycle of the supervised zotero-mcp process."""

    NOT_STARTED = "not-started"
    STARTING = "starting"
    READY = "ready"
    CRASHED = "crashed"
    STOPPED = "stopped"


class Source(BaseModel):
    """A Zotero item used to ground an answer."""

    model_config = ConfigDict(frozen=True)

    key: str = Field(description="Zotero item key (8 characters)")
    title: str = Field(default="Untitled", description="Item title")
    authors: str = Field(default="", description='Formatted as "Last, First; Last, First"')
    year: str = Field(default="n.d.", description='4-digit year or "n.d."')
    item_type: str = Field(default="unknown", description="Zotero item type")
    abstract: Optional[str] = Field(default=None, description="Abstract, if any")


class ParsedMetadata(BaseModel):
    """Result of parsing a metadata tool response, tagged by which parser produced it."""

    model_config = ConfigDict(frozen=True)

    origin: Literal["json", "text"]
    source: Source


class ChatTurn(BaseModel):
    """One message of a conversation, owned by the caller."""

    role: Literal["user", "assistant"]
    content: str
    sources: list[Source] = Field(default_factory=list)
    timestamp: float = Field(default_factory=time.time)


class NoteAttachment(BaseModel):
    """Free-form note text attached to a single question."""

    name: str
    content: str
    path: Optional[str] = None


class FullText(BaseModel):
    """Full text fetched for one source, already cut to the configured cap."""

    text: str
    truncated: bool = False


class LLMMessage(BaseModel):
    """Chat message in the provider-neutral format."""

    role: Literal["system", "user", "assistant"]
    content: str


class LLMResponse(BaseModel):
    """Generated text returned by an LLM backend."""

    content: str


class QueryResult(BaseModel):
    """Answer plus the sources that were put in front of the model."""

    content: str
    sources: list[Source] = Field(default_factory=list)
