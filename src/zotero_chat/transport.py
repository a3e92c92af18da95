"""JSON-RPC 2.0 client for the zotero-mcp streamable HTTP endpoint.

Implements only the part of MCP that zotero-chat needs: the initialize
handshake, tool listing and tool invocation.

Protocol:
    POST /mcp with a JSON-RPC envelope.

    Request:
        {"jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": {...}}

    The server answers one of two ways:
        Content-Type: application/json      -> the response envelope
        Content-Type: text/event-stream     -> "data: {envelope}" lines

    Once the server hands out an ``Mcp-Session-Id`` header it must be sent
    back on every request and notification.
"""

from __future__ import annotations

import contextlib
import itertools
import json
from typing import Any, Optional

import httpx

from zotero_chat.errors import RpcError, TransportError
from zotero_chat.logging_config import get_logger

logger = get_logger(__name__)

PROTOCOL_VERSION = "2025-03-26"
CLIENT_INFO = {"name": "zotero-chat", "version": "0.1.0"}

MCP_PATH = "/mcp"
SESSION_HEADER = "Mcp-Session-Id"
ACCEPT = "application/json, text/event-stream"
SSE_DATA_FIELD = "data:"


def parse_envelope(data: str) -> Optional[dict[str, Any]]:
    """Parse one SSE data payload into a JSON-RPC response envelope.

    Returns:
        The envelope, or None when the payload is not JSON or is not a
        response (requests and notifications from the server carry neither
        ``result`` nor ``error``).
    """
    if not data:
        return None
    try:
        parsed = json.loads(data)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    if "result" not in parsed and "error" not in parsed:
        return None
    return parsed


def unwrap_envelope(envelope: dict[str, Any]) -> Any:
    """Return ``result`` or raise RpcError for an ``error`` envelope."""
    error = envelope.get("error")
    if error:
        if not isinstance(error, dict):
            raise RpcError(-32603, str(error))
        code = error.get("code", -32603)
        raise RpcError(
            int(code) if isinstance(code, (int, float)) else -32603,
            str(error.get("message", "Unknown error")),
            error.get("data"),
        )
    return envelope.get("result")


class McpClient:
    """Client for a zotero-mcp server speaking MCP over streamable HTTP.

    Parameters
    ----------
    base_url : str
        Server root, e.g. ``http://127.0.0.1:8000``
    timeout : float
        Per-request timeout in seconds (default: 120.0)
    http_client : httpx.AsyncClient, optional
        Client to issue requests with. When omitted the McpClient creates
        and owns one.

    Examples
    --------
    >>> async with McpClient("http://127.0.0.1:8000") as client:
    ...     await client.initialize()
    ...     text = await client.call_tool("zotero_semantic_search", {"query": "IV"})
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 120.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.endpoint = f"{self.base_url}{MCP_PATH}"
        self.session_id: Optional[str] = None
        self._ids = itertools.count(1)
        self._initialized = False
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Perform the MCP handshake. A second call is a no-op.

        Raises:
            TransportError: Server unreachable or returned no result
            RpcError: Server rejected the handshake
        """
        if self._initialized:
            return

        result = await self.send(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            },
        )
        if not result:
            raise TransportError("MCP initialize returned no result")

        await self.send_notification("notifications/initialized", {})
        self._initialized = True

        server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
        logger.info(
            "mcp_client_initialized",
            server=server_info.get("name"),
            server_version=server_info.get("version"),
            session_id=self.session_id,
        )

    async def list_tools(self) -> list[dict[str, Any]]:
        """Return the tool descriptors the server exposes."""
        result = await self.send("tools/list", {})
        if not isinstance(result, dict):
            return []
        return result.get("tools") or []

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        """Invoke a server tool and return its text output.

        All ``text`` content blocks are joined with newlines; a result without
        content yields an empty string.
        """
        result = await self.send("tools/call", {"name": name, "arguments": arguments})
        if not isinstance(result, dict) or not result.get("content"):
            return ""

        if result.get("isError"):
            logger.warning("mcp_tool_reported_error", tool=name)

        texts = [
            block["text"]
            for block in result["content"]
            if isinstance(block, dict) and block.get("type") == "text" and block.get("text")
        ]
        return "\n".join(texts)

    async def close(self) -> None:
        """Forget the handshake and session; the next use must initialize again."""
        self._initialized = False
        self.session_id = None

    async def aclose(self) -> None:
        """Reset state and release the HTTP client if this instance owns it."""
        await self.close()
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "McpClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": ACCEPT}
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
        return headers

    def _adopt_session(self, response: httpx.Response) -> None:
        session_id = response.headers.get(SESSION_HEADER)
        if session_id:
            self.session_id = session_id

    async def send(self, method: str, params: dict[str, Any]) -> Any:
        """Send a JSON-RPC request and return its ``result``.

        Args:
            method: RPC method name
            params: Named parameters

        Returns:
            The ``result`` member, or None when an event stream ended
            without a response line

        Raises:
            TransportError: Connection failure, HTTP status >= 400, malformed body
            RpcError: The response envelope carried an ``error``
        """
        request_id = next(self._ids)
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        logger.debug("mcp_request", method=method, id=request_id)

        try:
            async with self._http.stream(
                "POST", self.endpoint, json=payload, headers=self._headers()
            ) as response:
                self._adopt_session(response)

                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(
                        f"MCP request failed ({response.status_code}): {body}",
                        status_code=response.status_code,
                        body=body,
                    )

                content_type = response.headers.get("content-type", "")
                if "text/event-stream" in content_type:
                    envelope = await self._read_event_stream(response)
                else:
                    envelope = self._parse_json_body(await response.aread())

        except httpx.HTTPError as e:
            raise TransportError(f"MCP connection error: {e}") from e

        if envelope is None:
            logger.debug("mcp_empty_response", method=method, id=request_id)
            return None
        return unwrap_envelope(envelope)

    async def _read_event_stream(self, response: httpx.Response) -> Optional[dict[str, Any]]:
        """Return the first response envelope on an event stream.

        The stream is long-lived, so it is abandoned as soon as the answer
        arrives; leaving the caller's ``stream()`` block closes the connection.
        """
        async with contextlib.aclosing(response.aiter_lines()) as lines:
            async for line in lines:
                if not line.startswith(SSE_DATA_FIELD):
                    continue
                envelope = parse_envelope(line[len(SSE_DATA_FIELD):].strip())
                if envelope is not None:
                    return envelope
        return None

    @staticmethod
    def _parse_json_body(raw: bytes) -> dict[str, Any]:
        text = raw.decode("utf-8", errors="replace")
        if not text.strip():
            raise TransportError("Failed to parse MCP response: empty body")
        try:
            parsed = json.loads(text)
        except ValueError as e:
            raise TransportError(f"Failed to parse MCP response: {text[:200]}") from e
        if not isinstance(parsed, dict):
            raise TransportError(f"Unexpected MCP response: {text[:200]}")
        return parsed

    async def send_notification(self, method: str, params: dict[str, Any]) -> None:
        """Send a JSON-RPC notification. Never raises; the body is discarded."""
        payload = {"jsonrpc": "2.0", "method": method, "params": params}
        try:
            async with self._http.stream(
                "POST", self.endpoint, json=payload, headers=self._headers()
            ) as response:
                self._adopt_session(response)
        except httpx.HTTPError as e:
            logger.debug("mcp_notification_failed", method=method, error=str(e))
