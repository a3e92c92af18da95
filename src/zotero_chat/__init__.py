"""zotero-chat - answer questions from a Zotero library through zotero-mcp.

This package provides:
- ProcessSupervisor: Launches and monitors the zotero-mcp server
- McpClient: JSON-RPC client for MCP over streamable HTTP
- RetrievalOrchestrator: Search, enrichment, prompt assembly and generation
- ChatService: Owner that wires the three together
- get_llm_client: Factory for the Ollama, OpenRouter and Anthropic backends
"""

from zotero_chat.config import Settings, get_settings
from zotero_chat.errors import (
    LLMError,
    ProcessError,
    RetrievalError,
    RpcError,
    ServiceNotReadyError,
    TransportError,
    ZoteroChatError,
)
from zotero_chat.llm import LLMClient, get_llm_client
from zotero_chat.logging_config import configure_logging, get_logger
from zotero_chat.models import (
    ChatTurn,
    NoteAttachment,
    QueryResult,
    ServerState,
    Source,
)
from zotero_chat.orchestrator import RetrievalOrchestrator
from zotero_chat.service import ChatService
from zotero_chat.supervisor import ProcessSupervisor
from zotero_chat.transport import McpClient

__version__ = "0.1.0"

__all__ = [
    "ChatService",
    "ChatTurn",
    "LLMClient",
    "LLMError",
    "McpClient",
    "NoteAttachment",
    "ProcessError",
    "ProcessSupervisor",
    "QueryResult",
    "RetrievalError",
    "RetrievalOrchestrator",
    "RpcError",
    "ServerState",
    "ServiceNotReadyError",
    "Settings",
    "Source",
    "TransportError",
    "ZoteroChatError",
    "configure_logging",
    "get_llm_client",
    "get_logger",
    "get_settings",
]
