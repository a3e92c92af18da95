"""Shared fixtures for zotero-chat tests."""

from __future__ import annotations

import json
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from zotero_chat.config import Settings, get_settings
from zotero_chat.llm.base_client import LLMClient
from zotero_chat.models import LLMResponse

CONFIG_ENV_VARS = [name.upper() for name in Settings.model_fields]


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every config-related variable from the environment."""
    for var in CONFIG_ENV_VARS + ["OPENROUTER_API_KEY", "ANTHROPIC_API_KEY"]:
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(autouse=True)
def reset_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(clean_env) -> Settings:
    """Settings with defaults, no .env file and no login-shell PATH lookup."""
    return Settings(_env_file=None, resolve_shell_path=False)


# -----------------------------------------------------------------------------
# MCP and LLM doubles
# -----------------------------------------------------------------------------


class FakeMcpClient:
    """Records tool calls and answers from a per-tool script.

    ``responses`` maps a tool name to either a fixed string, a dict keyed by
    ``item_key``, or an exception to raise.
    """

    def __init__(self, responses: dict[str, Any]):
        self.responses = responses
        self.calls: list[tuple[str, dict]] = []

    async def call_tool(self, name: str, arguments: dict) -> str:
        self.calls.append((name, arguments))
        response = self.responses.get(name, "")
        if isinstance(response, dict):
            response = response.get(arguments.get("item_key"), "")
        if isinstance(response, Exception):
            raise response
        return response

    def tools_called(self, name: str) -> list[dict]:
        return [args for tool, args in self.calls if tool == name]


@pytest.fixture
def fake_llm() -> MagicMock:
    """LLM client double whose chat() returns a fixed answer."""
    llm = MagicMock(spec=LLMClient)
    llm.chat = AsyncMock(return_value=LLMResponse(content="Grounded answer."))
    llm.test_connection = AsyncMock(return_value=True)
    llm.get_model_name.return_value = "test-model"
    llm.close = AsyncMock()
    return llm


def metadata_json(
    title: str = "Foo",
    last: str = "Smith",
    first: str = "J",
    date: str = "2021-05-01",
    item_type: str = "journalArticle",
    abstract: Optional[str] = None,
) -> str:
    data = {
        "title": title,
        "creators": [{"lastName": last, "firstName": first}],
        "date": date,
        "itemType": item_type,
    }
    if abstract is not None:
        data["abstractNote"] = abstract
    return json.dumps(data)


@pytest.fixture
def make_mcp():
    """Factory for FakeMcpClient instances."""
    return FakeMcpClient


@pytest.fixture
def make_metadata():
    """Factory for JSON metadata tool output."""
    return metadata_json


@pytest.fixture
def cli_runner():
    """Typer CLI runner."""
    from typer.testing import CliRunner

    return CliRunner()
