"""Parsers for zotero-mcp tool output.

zotero-mcp returns plain text from every tool. Depending on the tool and
server version that text is JSON or a labelled markdown block, so every
parser here tries JSON first and falls back to text. None of them raise.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional

from zotero_chat.models import ParsedMetadata, Source

MAX_ITEM_KEYS = 10

ITEM_KEY_PATTERN = re.compile(r"\b([A-Z0-9]{8})\b")
YEAR_PATTERN = re.compile(r"\b(\d{4})\b")

# zotero-mcp reports some failures as ordinary tool text with HTTP 200.
# These markers are heuristic and known to be incomplete; review before
# adding or removing entries.
TOOL_ERROR_PREFIXES = ("error",)
TOOL_ERROR_PHRASES = (
    "already exists",
    "collection not found",
    "collection does not exist",
    "no such collection",
)
TOOL_ERROR_PATTERNS = (
    re.compile(r"^\d{3}\b"),
    re.compile(r"collection\s+\S+\s+(?:not found|does not exist)"),
)

_METADATA_FIELDS = {"title", "creators", "authors", "date", "year", "itemType", "abstractNote", "abstract"}
_LABEL_PATTERN = re.compile(r"^\*\*(?P<label>[^*]+?):?\*\*:?\s*(?P<value>.*)$")

_NOT_JSON = object()


def load_json(text: str) -> Any:
    """Return the decoded JSON value, or ``_NOT_JSON`` if ``text`` is not JSON."""
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return _NOT_JSON


def looks_like_tool_error(text: str) -> bool:
    """Return True if a tool's text output is an error report rather than content."""
    stripped = text.strip()
    if not stripped:
        return False
    lowered = stripped.lower()
    if lowered.startswith(TOOL_ERROR_PREFIXES):
        return True
    if any(phrase in lowered for phrase in TOOL_ERROR_PHRASES):
        return True
    return any(pattern.search(lowered) for pattern in TOOL_ERROR_PATTERNS)


def _dedupe(keys: list[str]) -> list[str]:
    unique: list[str] = []
    for key in keys:
        if key not in unique:
            unique.append(key)
    return unique


def extract_item_keys(search_result: str, limit: int = MAX_ITEM_KEYS) -> list[str]:
    """Pull Zotero item keys out of a search tool response.

    A JSON array contributes the ``key`` and ``itemKey`` fields of its
    objects. Anything else (or an array without keys) is scanned for
    8-character uppercase alphanumeric tokens.

    Returns:
        Keys in first-seen order, without duplicates, at most ``limit``
    """
    parsed = load_json(search_result)
    if isinstance(parsed, list):
        keys: list[str] = []
        for item in parsed:
            if not isinstance(item, dict):
                continue
            for field in ("key", "itemKey"):
                value = item.get(field)
                if isinstance(value, str) and value:
                    keys.append(value)
        keys = _dedupe(keys)
        if keys:
            return keys[:limit]

    return _dedupe(ITEM_KEY_PATTERN.findall(search_result))[:limit]


def format_authors(creators: Any) -> str:
    """Format creators as "Last, First" pairs joined by "; ".

    Accepts Zotero creator dicts, plain name strings, or an already
    formatted string.
    """
    if isinstance(creators, str):
        return creators.strip()
    if not isinstance(creators, list):
        return ""

    names: list[str] = []
    for creator in creators:
        if isinstance(creator, str):
            name = creator.strip()
        elif isinstance(creator, dict):
            last = creator.get("lastName") or ""
            first = creator.get("firstName") or ""
            if creator.get("name"):
                name = str(creator["name"])
            elif last and first:
                name = f"{last}, {first}"
            else:
                name = last or first
        else:
            name = ""
        if name:
            names.append(name)
    return "; ".join(names)


def _year_from(value: Any) -> Optional[str]:
    if value is None:
        return None
    match = YEAR_PATTERN.search(str(value))
    return match.group(1) if match else None


def _source_from_json(key: str, data: dict[str, Any]) -> Source:
    year = _year_from(data.get("date")) or _year_from(data.get("year")) or "n.d."
    abstract = data.get("abstractNote") or data.get("abstract")
    return Source(
        key=key,
        title=str(data.get("title") or "Untitled"),
        authors=format_authors(data.get("creators") or data.get("authors")),
        year=year,
        item_type=str(data.get("itemType") or "unknown"),
        abstract=str(abstract) if abstract else None,
    )


def _source_from_text(key: str, text: str) -> Source:
    """Parse zotero-mcp's markdown metadata block.

    Expected shape::

        # Title
        **Type:** journalArticle
        **Authors:** Smith, J; Doe, A
        **Date:** 2021-05-01
        ## Abstract
        Abstract text ...
        ## Tags
    """
    title: Optional[str] = None
    item_type: Optional[str] = None
    authors = ""
    year: Optional[str] = None
    abstract_lines: list[str] = []
    in_abstract = False

    for raw_line in text.splitlines():
        line = raw_line.strip()

        if line.startswith("#"):
            heading = line.lstrip("#").strip()
            in_abstract = line.startswith("## ") and heading.lower() == "abstract"
            if title is None and line.startswith("# "):
                title = heading
            continue

        if in_abstract:
            if line:
                abstract_lines.append(line)
            continue

        if line.startswith("- "):
            line = line[2:].strip()
        match = _LABEL_PATTERN.match(line)
        if not match:
            continue
        label = match.group("label").strip().lower()
        value = match.group("value").strip()
        if label in ("type", "item type"):
            item_type = value or None
        elif label in ("authors", "author", "creators"):
            authors = value
        elif label in ("date", "year"):
            year = _year_from(value)

    return Source(
        key=key,
        title=title or "Untitled",
        authors=authors,
        year=year or "n.d.",
        item_type=item_type or "unknown",
        abstract=" ".join(abstract_lines) or None,
    )


def parse_metadata(key: str, metadata: str) -> ParsedMetadata:
    """Parse a metadata tool response into a Source.

    JSON objects with at least one known Zotero field use the JSON parser;
    everything else goes through the markdown parser. Missing fields fall
    back to "Untitled", "n.d." and "unknown".
    """
    data = load_json(metadata)
    if isinstance(data, dict) and _METADATA_FIELDS.intersection(data):
        return ParsedMetadata(origin="json", source=_source_from_json(key, data))
    return ParsedMetadata(origin="text", source=_source_from_text(key, metadata))
