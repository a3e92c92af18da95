"""Custom error types for zotero-chat.

All errors follow the "fail fast" principle with explicit messages.
Per-source enrichment failures are deliberately absent: they are logged
and the source is dropped, never raised to the caller.
"""

from typing import Any, Optional


class ZoteroChatError(Exception):
    """Base exception for all zotero-chat errors."""

    pass


class ProcessError(ZoteroChatError):
    """The zotero-mcp process failed to launch, exited, or never became ready."""

    pass


class TransportError(ZoteroChatError):
    """Connection failure, HTTP error status, or malformed response body.

    Attributes:
        status_code: HTTP status when the server answered with >= 400
        body: Response body text for HTTP failures
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RpcError(ZoteroChatError):
    """A well-formed JSON-RPC response carrying an ``error`` object."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"MCP error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data


class RetrievalError(ZoteroChatError):
    """The search tool answered successfully but its text reports an error."""

    pass


class LLMError(ZoteroChatError):
    """Error from a language-model backend."""

    pass


class ServiceNotReadyError(ZoteroChatError):
    """The chat service was used before startup completed."""

    pass
