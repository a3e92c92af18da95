"""Chat service: owns the zotero-mcp process, the MCP client and the orchestrator.

Usage:
    async with ChatService(get_settings()) as service:
        result = await service.ask("Which papers discuss transformers?")
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from zotero_chat.config import Settings, get_settings
from zotero_chat.errors import ProcessError, ServiceNotReadyError
from zotero_chat.llm import LLMClient, get_llm_client
from zotero_chat.logging_config import get_logger
from zotero_chat.models import ChatTurn, NoteAttachment, QueryResult
from zotero_chat.orchestrator import RetrievalOrchestrator
from zotero_chat.supervisor import STDERR_TAIL_LINES, ProcessSupervisor
from zotero_chat.transport import McpClient

logger = get_logger(__name__)

LLMFactory = Callable[[Settings], LLMClient]


def load_note(path: Path) -> NoteAttachment:
    """Read a note file to attach to a question.

    Raises:
        OSError: If the file cannot be read
    """
    return NoteAttachment(
        name=path.stem,
        content=path.read_text(encoding="utf-8"),
        path=str(path),
    )


class ChatService:
    """Wires supervisor, MCP client and orchestrator together.

    The crash listener is registered once here. Settings changes replace the
    LLM client and orchestrator; the running server and MCP session are kept.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        client: Optional[McpClient] = None,
        llm_factory: LLMFactory = get_llm_client,
    ) -> None:
        self.settings = settings or get_settings()
        self.supervisor = supervisor or ProcessSupervisor(self.settings)
        self._client = client
        self._owns_client = client is None
        self._llm_factory = llm_factory
        self._llm: Optional[LLMClient] = None
        self._orchestrator: Optional[RetrievalOrchestrator] = None
        self.crash_error: Optional[ProcessError] = None

        self.supervisor.add_crash_listener(self._on_server_crash)

    @property
    def orchestrator(self) -> RetrievalOrchestrator:
        if self._orchestrator is None:
            if self.crash_error is not None:
                raise ServiceNotReadyError(f"zotero-mcp is not running: {self.crash_error}")
            raise ServiceNotReadyError("Chat service has not been started")
        return self._orchestrator

    @property
    def client(self) -> McpClient:
        if self._client is None or not self._client.initialized:
            raise ServiceNotReadyError("Chat service has not been started")
        return self._client

    @property
    def llm(self) -> Optional[LLMClient]:
        return self._llm

    async def start(self) -> None:
        """Start the server, open the MCP session and build the orchestrator.

        Raises:
            ProcessError: zotero-mcp could not be launched or never became ready
            TransportError: The MCP handshake failed
            ValueError: The configured LLM backend is unknown or lacks an API key
        """
        self.crash_error = None
        await self.supervisor.start()

        if self._client is None:
            self._client = McpClient(
                self.supervisor.base_url, timeout=self.settings.request_timeout
            )

        try:
            await self._client.initialize()
            self._llm = self._llm_factory(self.settings)
        except Exception:
            await self.stop()
            raise

        self._orchestrator = RetrievalOrchestrator(self._client, self._llm, self.settings)
        logger.info(
            "chat_service_started",
            base_url=self.supervisor.base_url,
            backend=self.settings.llm_backend,
            model=self._llm.get_model_name(),
        )

    async def stop(self) -> None:
        """Tear down orchestrator, MCP client, LLM client and server. Idempotent."""
        self._orchestrator = None
        if self._client is not None:
            if self._owns_client:
                await self._client.aclose()
                self._client = None
            else:
                await self._client.close()
        if self._llm is not None:
            await self._llm.close()
            self._llm = None
        self.supervisor.stop()
        logger.info("chat_service_stopped")

    async def update_settings(self, settings: Settings) -> None:
        """Adopt new settings by building a fresh LLM client and orchestrator.

        Server settings (executable, port, timeouts) apply on the next service
        that is started with them.
        """
        old_llm = self._llm
        self.settings = settings

        if self._client is not None and self._client.initialized:
            self._llm = self._llm_factory(settings)
            self._orchestrator = RetrievalOrchestrator(self._client, self._llm, settings)
        else:
            self._llm = None

        if old_llm is not None:
            await old_llm.close()
        logger.info("chat_service_settings_updated", backend=settings.llm_backend)

    async def ask(
        self,
        question: str,
        history: Sequence[ChatTurn] = (),
        attachment: Optional[NoteAttachment] = None,
    ) -> QueryResult:
        return await self.orchestrator.query(question, history, attachment)

    async def list_tools(self) -> list[dict[str, Any]]:
        return await self.client.list_tools()

    def is_server_running(self) -> bool:
        return self.supervisor.is_running()

    def _on_server_crash(self, error: ProcessError) -> None:
        self.crash_error = error
        self._orchestrator = None
        logger.error(
            "zotero_mcp_crashed",
            error=str(error),
            stderr_tail=self.supervisor.get_stderr_log()[-STDERR_TAIL_LINES:],
        )

    async def __aenter__(self) -> "ChatService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
