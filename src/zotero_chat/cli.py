"""zotero-chat CLI - Main entry point.

Provides the ``zotero-chat`` command-line interface.

Usage:
    zotero-chat ask "What do my papers say about attention?" --note notes/draft.md
    zotero-chat chat
    zotero-chat tools
    zotero-chat check-llm
"""

import asyncio
import json
from enum import Enum
from pathlib import Path
from typing import Optional

import typer

from zotero_chat.config import get_settings
from zotero_chat.errors import ProcessError, ZoteroChatError
from zotero_chat.llm import get_llm_client
from zotero_chat.logging_config import configure_logging
from zotero_chat.models import ChatTurn, NoteAttachment, QueryResult, Source
from zotero_chat.service import ChatService, load_note

EXIT_COMMANDS = {"exit", "quit", "/exit", "/quit"}
NO_SOURCES_NOTICE = "(No matching papers were found in your Zotero library.)"

# ---------------------------------------------------------------------------
# Root Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="zotero-chat",
    help="Ask questions answered from your Zotero library via zotero-mcp.",
    add_completion=False,
)


class OutputFormat(str, Enum):
    """Output format options."""

    markdown = "markdown"
    json = "json"


@app.callback()
def root(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Override LOG_LEVEL (DEBUG, INFO, WARNING, ERROR)"
    ),
):
    """Chat with your Zotero library."""
    configure_logging(level=log_level)


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def format_source(index: int, source: Source) -> str:
    authors = source.authors or "Unknown"
    return f"[{index}] {source.title} ({authors}, {source.year}) [{source.key}]"


def format_answer(result: QueryResult) -> str:
    lines = [result.content.strip()]
    if result.sources:
        lines.append("")
        lines.append("Sources:")
        lines.extend(format_source(i, s) for i, s in enumerate(result.sources, 1))
    else:
        lines.append("")
        lines.append(NO_SOURCES_NOTICE)
    return "\n".join(lines)


def _fail(message: str) -> typer.Exit:
    typer.echo(f"Error: {message}", err=True)
    return typer.Exit(1)


def _describe_error(error: Exception) -> str:
    if isinstance(error, ProcessError):
        return f"zotero-mcp server failed: {error}"
    return str(error)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _ask(question: str, attachment: Optional[NoteAttachment]) -> QueryResult:
    async with ChatService(get_settings()) as service:
        return await service.ask(question, attachment=attachment)


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question about your library"),
    note: Optional[Path] = typer.Option(
        None, "--note", "-n", help="Attach a note file to the question"
    ),
    format: OutputFormat = typer.Option(
        OutputFormat.markdown, "--format", "-f", help="Output format"
    ),
):
    """Answer one question from your Zotero library.

    Examples:

        zotero-chat ask "Which papers compare BERT and GPT?"

        zotero-chat ask "Does my draft miss related work?" --note draft.md
    """
    attachment = None
    if note is not None:
        try:
            attachment = load_note(note)
        except OSError as e:
            raise _fail(f"Could not read note {note}: {e}")

    try:
        result = asyncio.run(_ask(question, attachment))
    except (ZoteroChatError, ValueError) as e:
        raise _fail(_describe_error(e))

    if format == OutputFormat.json:
        typer.echo(json.dumps(result.model_dump(), indent=2))
    else:
        typer.echo(format_answer(result))


async def _chat_loop() -> None:
    history: list[ChatTurn] = []
    async with ChatService(get_settings()) as service:
        typer.echo("Connected to zotero-mcp. Type 'exit' to quit.")
        while True:
            try:
                question = typer.prompt("You").strip()
            except (typer.Abort, EOFError):
                typer.echo()
                return
            if not question:
                continue
            if question.lower() in EXIT_COMMANDS:
                return

            try:
                result = await service.ask(question, history)
            except ZoteroChatError as e:
                if not service.is_server_running():
                    raise
                typer.echo(f"Error: {_describe_error(e)}", err=True)
                continue

            typer.echo(format_answer(result))
            history.append(ChatTurn(role="user", content=question))
            history.append(ChatTurn(role="assistant", content=result.content, sources=result.sources))


@app.command()
def chat():
    """Interactive conversation; follow-up questions reuse the previous answer's sources."""
    try:
        asyncio.run(_chat_loop())
    except (ZoteroChatError, ValueError) as e:
        raise _fail(_describe_error(e))


async def _list_tools() -> list[dict]:
    async with ChatService(get_settings()) as service:
        return await service.list_tools()


@app.command()
def tools():
    """List the tools exposed by the zotero-mcp server."""
    try:
        tool_list = asyncio.run(_list_tools())
    except (ZoteroChatError, ValueError) as e:
        raise _fail(_describe_error(e))

    if not tool_list:
        typer.echo("No tools reported by zotero-mcp.")
        return
    for tool in tool_list:
        description = (tool.get("description") or "").strip().splitlines()
        summary = description[0] if description else ""
        name = tool.get("name", "?")
        typer.echo(f"{name}: {summary}" if summary else name)


async def _check_llm() -> tuple[str, bool]:
    async with get_llm_client(get_settings()) as client:
        return client.get_model_name(), await client.test_connection()


@app.command(name="check-llm")
def check_llm():
    """Test connectivity to the configured LLM backend."""
    backend = get_settings().llm_backend
    try:
        model, ok = asyncio.run(_check_llm())
    except ValueError as e:
        raise _fail(str(e))

    if not ok:
        raise _fail(f"{backend} backend is not reachable (model {model})")
    typer.echo(f"{backend} backend reachable (model {model})")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
