"""Configuration management for zotero-chat.

Settings are read from environment variables (case-insensitive) and an
optional ``.env`` file. A ``Settings`` value is immutable: changing
configuration means building a new value with ``model_copy(update=...)``
and handing it to the components that need it.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LLMBackend = Literal["ollama", "openrouter", "anthropic"]

DEFAULT_SYSTEM_PROMPT = (
    "You are a research assistant with access to the user's Zotero library. "
    "Answer questions using the provided paper metadata and context. "
    "Always cite sources by title and author when referencing specific papers. "
    "If no relevant papers are found, say so honestly."
)

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_LOG_FORMATS = {"console", "json"}


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # zotero-mcp server
    mcp_executable_path: str = "zotero-mcp"
    mcp_server_port: int = Field(default=8000, ge=1, le=65535)
    server_ready_timeout: float = Field(default=30.0, gt=0.0)
    server_poll_interval: float = Field(default=0.5, gt=0.0)
    resolve_shell_path: bool = True
    request_timeout: float = Field(default=120.0, gt=0.0)

    # LLM backend
    llm_backend: LLMBackend = "ollama"
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "deepseek-r1:8b"
    openrouter_api_key: Optional[str] = None
    openrouter_model: str = "deepseek/deepseek-r1"
    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-sonnet-4-5-20250929"

    # Retrieval behaviour
    max_conversation_history: int = Field(default=6, ge=0)
    full_text_top_n: int = Field(default=3, ge=0)
    full_text_max_chars: int = Field(default=4000, ge=1)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Tool names exposed by zotero-mcp
    search_tool: str = "zotero_semantic_search"
    metadata_tool: str = "zotero_get_item_metadata"
    fulltext_tool: str = "zotero_get_item_fulltext"

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}")
        return upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        lower = v.lower()
        if lower not in _LOG_FORMATS:
            raise ValueError(f"log_format must be one of {sorted(_LOG_FORMATS)}")
        return lower

    @property
    def server_base_url(self) -> str:
        """Loopback URL of the supervised zotero-mcp server."""
        return f"http://127.0.0.1:{self.mcp_server_port}"


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings, loaded once."""
    return Settings()
