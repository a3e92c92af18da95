"""Tests for the retrieval orchestrator.

Tests cover:
- Search and the tool-error abort
- Metadata enrichment and per-source failure isolation
- Carry-forward of previous sources
- Full-text selection, truncation and skipping
- Prompt contents handed to the LLM
"""

import json

import pytest
from structlog.testing import capture_logs

from zotero_chat.errors import LLMError, RetrievalError, TransportError
from zotero_chat.models import ChatTurn, NoteAttachment, Source
from zotero_chat.orchestrator import RetrievalOrchestrator, carry_forward_keys

pytestmark = pytest.mark.unit

SEARCH = "zotero_semantic_search"
METADATA = "zotero_get_item_metadata"
FULLTEXT = "zotero_get_item_fulltext"


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def build(settings, fake_llm):
    """Build an orchestrator around a scripted MCP client."""

    def _build(client, **overrides):
        config = settings.model_copy(update=overrides) if overrides else settings
        return RetrievalOrchestrator(client, fake_llm, config)

    return _build


def prompt_of(llm) -> str:
    """Return the final user message sent to the LLM."""
    messages = llm.chat.await_args.args[0]
    return messages[-1].content


def search_json(*keys: str) -> str:
    return json.dumps([{"key": key, "title": f"Paper {key}"} for key in keys])


# -----------------------------------------------------------------------------
# Reference scenarios
# -----------------------------------------------------------------------------


class TestReferenceScenarios:
    """End-to-end behaviour on canonical tool outputs."""

    @pytest.mark.asyncio
    async def test_json_search_and_metadata(self, build, make_mcp, make_metadata, fake_llm):
        client = make_mcp(
            {
                SEARCH: '[{"key":"ABCD1234"}]',
                METADATA: {"ABCD1234": make_metadata()},
                FULLTEXT: {"ABCD1234": "Full body of Foo."},
            }
        )

        result = await build(client).query("What is foo?", [])

        assert result.content == "Grounded answer."
        assert result.sources == [
            Source(
                key="ABCD1234",
                title="Foo",
                authors="Smith, J",
                year="2021",
                item_type="journalArticle",
            )
        ]
        assert "[1] Foo" in prompt_of(fake_llm)
        assert "Full text:\nFull body of Foo." in prompt_of(fake_llm)

    @pytest.mark.asyncio
    async def test_error_text_aborts_query(self, build, make_mcp, fake_llm):
        client = make_mcp({SEARCH: "semantic search error: collection [papers] not found"})

        with pytest.raises(RetrievalError, match="collection"):
            await build(client).query("anything", [])

        assert [name for name, _ in client.calls] == [SEARCH]
        fake_llm.chat.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_full_text_disabled(self, build, make_mcp, make_metadata, fake_llm):
        client = make_mcp(
            {
                SEARCH: search_json("AAAA1111", "BBBB2222"),
                METADATA: {"AAAA1111": make_metadata("A"), "BBBB2222": make_metadata("B")},
                FULLTEXT: "should not be fetched",
            }
        )

        result = await build(client, full_text_top_n=0).query("q", [])

        assert len(result.sources) == 2
        assert client.tools_called(FULLTEXT) == []
        assert "Full text" not in prompt_of(fake_llm)


# -----------------------------------------------------------------------------
# Search
# -----------------------------------------------------------------------------


class TestSearch:
    """Tests for the search step."""

    @pytest.mark.asyncio
    async def test_raw_question_is_the_query(self, build, make_mcp):
        client = make_mcp({SEARCH: "nothing"})

        await build(client).query("  Exact question?  ", [])

        assert client.tools_called(SEARCH) == [{"query": "  Exact question?  "}]

    @pytest.mark.asyncio
    async def test_transport_failure_propagates(self, build, make_mcp):
        client = make_mcp({SEARCH: TransportError("MCP connection error: refused")})

        with pytest.raises(TransportError):
            await build(client).query("q", [])

    @pytest.mark.asyncio
    async def test_no_keys_uses_raw_search_text(self, build, make_mcp, fake_llm):
        client = make_mcp({SEARCH: "No papers matched your query."})

        result = await build(client).query("q", [])

        assert result.sources == []
        assert client.tools_called(METADATA) == []
        assert "Context from Zotero library:\n\nNo papers matched your query." in prompt_of(
            fake_llm
        )

    @pytest.mark.asyncio
    async def test_configured_tool_names(self, build, make_mcp):
        client = make_mcp({"custom_search": "nothing"})

        await build(client, search_tool="custom_search").query("q", [])

        assert client.calls[0][0] == "custom_search"


# -----------------------------------------------------------------------------
# Metadata
# -----------------------------------------------------------------------------


class TestMetadataFetch:
    """Tests for per-source metadata enrichment."""

    @pytest.mark.asyncio
    async def test_failed_fetch_is_dropped_and_logged(self, build, make_mcp, make_metadata):
        client = make_mcp(
            {
                SEARCH: search_json("AAAA1111", "BBBB2222", "CCCC3333"),
                METADATA: {
                    "AAAA1111": make_metadata("A"),
                    "BBBB2222": TransportError("boom"),
                    "CCCC3333": make_metadata("C"),
                },
            }
        )

        with capture_logs() as logs:
            result = await build(client, full_text_top_n=0).query("q", [])

        assert [s.key for s in result.sources] == ["AAAA1111", "CCCC3333"]
        failures = [e for e in logs if e["event"] == "metadata_fetch_failed"]
        assert len(failures) == 1
        assert failures[0]["key"] == "BBBB2222"
        assert failures[0]["log_level"] == "warning"

    @pytest.mark.asyncio
    async def test_abstract_with_error_phrase_is_kept(self, build, make_mcp, make_metadata):
        abstract = "We show that a closed form already exists for the general case."
        client = make_mcp(
            {
                SEARCH: search_json("ABCD1234"),
                METADATA: {"ABCD1234": make_metadata("Closed Forms", abstract=abstract)},
            }
        )

        with capture_logs() as logs:
            result = await build(client, full_text_top_n=0).query("q", [])

        assert [s.key for s in result.sources] == ["ABCD1234"]
        assert result.sources[0].title == "Closed Forms"
        assert not [e for e in logs if e["event"] == "metadata_fetch_failed"]

    @pytest.mark.asyncio
    async def test_markdown_metadata(self, build, make_mcp):
        client = make_mcp(
            {
                SEARCH: "Results: QWER1234",
                METADATA: {"QWER1234": "# Markdown Title\n**Date:** 2019\n**Type:** book"},
            }
        )

        result = await build(client, full_text_top_n=0).query("q", [])

        assert result.sources[0].title == "Markdown Title"
        assert result.sources[0].year == "2019"
        assert result.sources[0].item_type == "book"

    @pytest.mark.asyncio
    async def test_fetches_in_search_order(self, build, make_mcp, make_metadata):
        keys = ["CCCC3333", "AAAA1111", "BBBB2222"]
        client = make_mcp(
            {SEARCH: search_json(*keys), METADATA: {k: make_metadata(k) for k in keys}}
        )

        await build(client, full_text_top_n=0).query("q", [])

        assert [args["item_key"] for args in client.tools_called(METADATA)] == keys


# -----------------------------------------------------------------------------
# Carry-forward
# -----------------------------------------------------------------------------


class TestCarryForward:
    """Tests for reuse of the previous answer's sources."""

    def test_newest_assistant_turn_with_sources(self):
        history = [
            ChatTurn(role="assistant", content="a", sources=[Source(key="OLD00001")]),
            ChatTurn(role="user", content="u"),
            ChatTurn(role="assistant", content="b", sources=[Source(key="NEW00001")]),
            ChatTurn(role="assistant", content="c"),
        ]

        assert carry_forward_keys(history) == ["NEW00001"]

    def test_empty_history(self):
        assert carry_forward_keys([]) == []

    @pytest.mark.asyncio
    async def test_carried_keys_appended_and_not_refetched(
        self, build, make_mcp, make_metadata
    ):
        history = [
            ChatTurn(role="user", content="first"),
            ChatTurn(
                role="assistant",
                content="answer",
                sources=[Source(key="BBBB2222"), Source(key="ZZZZ9999")],
            ),
        ]
        client = make_mcp(
            {
                SEARCH: search_json("AAAA1111", "BBBB2222"),
                METADATA: {
                    "AAAA1111": make_metadata("A"),
                    "BBBB2222": make_metadata("B"),
                    "ZZZZ9999": make_metadata("Z"),
                },
            }
        )

        result = await build(client, full_text_top_n=0).query("follow-up", history)

        assert [s.key for s in result.sources] == ["AAAA1111", "BBBB2222", "ZZZZ9999"]
        fetched = [args["item_key"] for args in client.tools_called(METADATA)]
        assert fetched == ["AAAA1111", "BBBB2222", "ZZZZ9999"]

    @pytest.mark.asyncio
    async def test_carried_sources_get_full_text_first(self, build, make_mcp, make_metadata):
        history = [
            ChatTurn(role="assistant", content="answer", sources=[Source(key="ZZZZ9999")]),
        ]
        client = make_mcp(
            {
                SEARCH: search_json("AAAA1111", "BBBB2222"),
                METADATA: {
                    "AAAA1111": make_metadata("A"),
                    "BBBB2222": make_metadata("B"),
                    "ZZZZ9999": make_metadata("Z"),
                },
                FULLTEXT: {"AAAA1111": "a", "BBBB2222": "b", "ZZZZ9999": "z"},
            }
        )

        await build(client, full_text_top_n=2).query("follow-up", history)

        fetched = [args["item_key"] for args in client.tools_called(FULLTEXT)]
        assert fetched == ["ZZZZ9999", "AAAA1111"]


# -----------------------------------------------------------------------------
# Full text
# -----------------------------------------------------------------------------


class TestFullText:
    """Tests for full-text enrichment."""

    @pytest.mark.asyncio
    async def test_top_n_limit(self, build, make_mcp, make_metadata):
        keys = ["AAAA1111", "BBBB2222", "CCCC3333", "DDDD4444"]
        client = make_mcp(
            {
                SEARCH: search_json(*keys),
                METADATA: {k: make_metadata(k) for k in keys},
                FULLTEXT: {k: f"text {k}" for k in keys},
            }
        )

        await build(client).query("q", [])

        fetched = [args["item_key"] for args in client.tools_called(FULLTEXT)]
        assert fetched == keys[:3]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "length,truncated",
        [(99, False), (100, True), (250, True)],
    )
    async def test_truncation_marker(
        self, build, make_mcp, make_metadata, fake_llm, length, truncated
    ):
        client = make_mcp(
            {
                SEARCH: search_json("AAAA1111"),
                METADATA: {"AAAA1111": make_metadata()},
                FULLTEXT: {"AAAA1111": "x" * length},
            }
        )

        await build(client, full_text_max_chars=100).query("q", [])

        prompt = prompt_of(fake_llm)
        assert ("Full text (truncated):" in prompt) is truncated
        assert "x" * min(length, 100) in prompt
        assert "x" * 101 not in prompt

    @pytest.mark.asyncio
    async def test_failures_skipped(self, build, make_mcp, make_metadata, fake_llm):
        keys = ["AAAA1111", "BBBB2222", "CCCC3333"]
        client = make_mcp(
            {
                SEARCH: search_json(*keys),
                METADATA: {k: make_metadata(k) for k in keys},
                FULLTEXT: {
                    "AAAA1111": TransportError("timeout"),
                    "BBBB2222": "   ",
                    "CCCC3333": "real text",
                },
            }
        )

        with capture_logs() as logs:
            result = await build(client).query("q", [])

        assert len(result.sources) == 3
        failures = [e["key"] for e in logs if e["event"] == "fulltext_fetch_failed"]
        assert failures == ["AAAA1111", "BBBB2222"]
        assert prompt_of(fake_llm).count("Full text") == 1

    @pytest.mark.asyncio
    async def test_text_starting_with_error_is_kept(self, build, make_mcp, make_metadata, fake_llm):
        client = make_mcp(
            {
                SEARCH: search_json("ABCD1234"),
                METADATA: {"ABCD1234": make_metadata()},
                FULLTEXT: {"ABCD1234": "Error-correcting codes are widely used. Body text."},
            }
        )

        with capture_logs() as logs:
            await build(client).query("q", [])

        assert not [e for e in logs if e["event"] == "fulltext_fetch_failed"]
        assert "Error-correcting codes are widely used." in prompt_of(fake_llm)


# -----------------------------------------------------------------------------
# Prompt and generation
# -----------------------------------------------------------------------------


class TestGeneration:
    """Tests for prompt assembly and the LLM call."""

    @pytest.mark.asyncio
    async def test_history_and_attachment(self, build, make_mcp, fake_llm):
        history = []
        for i in range(0, 8, 2):
            history.append(ChatTurn(role="user", content=f"u{i}"))
            history.append(ChatTurn(role="assistant", content=f"a{i + 1}"))
        note = NoteAttachment(name="draft", content="note body")
        client = make_mcp({SEARCH: "plain results"})

        await build(client, max_conversation_history=2).query("Q?", history, attachment=note)

        messages = fake_llm.chat.await_args.args[0]
        assert messages[0].role == "system"
        assert [m.content for m in messages[1:-1]] == ["u6", "a7"]
        final = messages[-1].content
        assert final.index("plain results") < final.index("note body") < final.index("Q?")

    @pytest.mark.asyncio
    async def test_note_not_used_for_search(self, build, make_mcp):
        client = make_mcp({SEARCH: "plain"})

        await build(client).query("Q?", [], attachment=NoteAttachment(name="n", content="NOTE"))

        assert client.tools_called(SEARCH) == [{"query": "Q?"}]

    @pytest.mark.asyncio
    async def test_llm_failure_propagates(self, build, make_mcp, fake_llm):
        fake_llm.chat.side_effect = LLMError("ollama request failed")
        client = make_mcp({SEARCH: "plain"})

        with pytest.raises(LLMError):
            await build(client).query("q", [])
