"""Supervisor for the zotero-mcp server process.

Launches ``zotero-mcp serve --transport streamable-http --port <port>``,
waits until it answers HTTP, keeps the tail of its stderr for diagnostics,
and notifies registered listeners when a ready server dies.

Usage:
    supervisor = ProcessSupervisor(settings)
    supervisor.add_crash_listener(lambda err: print(err))
    await supervisor.start()        # raises ProcessError on launch failure/timeout
    client = McpClient(supervisor.base_url)
    ...
    supervisor.stop()
"""

from __future__ import annotations

import asyncio
import os
import re
import shutil
import signal
from collections import deque
from pathlib import Path
from typing import Callable, NoReturn, Optional

import httpx

from zotero_chat.config import Settings
from zotero_chat.errors import ProcessError
from zotero_chat.logging_config import get_logger
from zotero_chat.models import ServerState

logger = get_logger(__name__)

SERVE_ARGS = ("serve", "--transport", "streamable-http", "--port")

STDERR_CAPACITY = 50
STDERR_TAIL_LINES = 5
PROBE_TIMEOUT = 2.0
SHELL_PATH_TIMEOUT = 5.0
EXIT_FLUSH_TIMEOUT = 1.0

# Searched when the login shell cannot tell us the user's PATH.
COMMON_PATH_DIRS = (
    "/opt/homebrew/bin",
    "/usr/local/bin",
    "~/.local/bin",
    "~/.cargo/bin",
    "~/.pyenv/shims",
    "/usr/bin",
    "/bin",
    "/usr/sbin",
    "/sbin",
)

_PATH_MARKER = "__ZOTERO_CHAT_PATH__"

CrashListener = Callable[[ProcessError], None]


def merge_paths(*paths: str) -> str:
    """Join PATH strings, keeping the first occurrence of each entry."""
    entries: list[str] = []
    for path in paths:
        for entry in path.split(os.pathsep):
            if entry and entry not in entries:
                entries.append(entry)
    return os.pathsep.join(entries)


async def query_shell_path(
    shell: Optional[str] = None, timeout: float = SHELL_PATH_TIMEOUT
) -> Optional[str]:
    """Ask the user's interactive login shell for its PATH.

    Apps started from a desktop launcher inherit a minimal PATH that misses
    Homebrew, pipx and similar install locations. The value is wrapped in
    markers because interactive shells may print banners around it.

    Returns:
        The shell's PATH, or None if the shell is unknown, fails or times out
    """
    shell = shell or os.environ.get("SHELL")
    if not shell:
        return None

    command = f'printf "{_PATH_MARKER}%s{_PATH_MARKER}" "$PATH"'
    try:
        process = await asyncio.create_subprocess_exec(
            shell,
            "-ilc",
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as e:
        logger.debug("shell_path_query_failed", shell=shell, error=str(e))
        return None

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.debug("shell_path_query_timeout", shell=shell, timeout=timeout)
        await _kill_session(process)
        return None

    match = re.search(
        f"{_PATH_MARKER}(.*?){_PATH_MARKER}",
        stdout.decode("utf-8", errors="replace"),
        re.DOTALL,
    )
    if not match or not match.group(1).strip():
        return None
    return match.group(1).strip()


async def _kill_session(process: asyncio.subprocess.Process) -> None:
    """Kill a process started with its own session, along with its children.

    Children that inherited the stdout pipe would otherwise keep it open, and
    ``process.wait()`` does not return until every pipe is closed.
    """
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    try:
        await asyncio.wait_for(process.wait(), timeout=EXIT_FLUSH_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning("shell_path_query_unreaped", pid=process.pid)


async def resolve_environment(use_shell: bool = True) -> dict[str, str]:
    """Build the environment for the server process with a usable PATH."""
    env = dict(os.environ)
    if os.name == "nt":
        return env

    current = env.get("PATH", "")
    shell_path = await query_shell_path() if use_shell else None
    if shell_path:
        env["PATH"] = merge_paths(shell_path, current)
        logger.debug("path_resolved", source="shell")
    else:
        fallback = os.pathsep.join(str(Path(d).expanduser()) for d in COMMON_PATH_DIRS)
        env["PATH"] = merge_paths(current, fallback)
        logger.debug("path_resolved", source="fallback")
    return env


class ProcessSupervisor:
    """Owns the zotero-mcp subprocess from launch to exit.

    Launch failures and readiness timeouts raise from ``start()``. A crash
    after the server became ready is not raised anywhere; it is reported to
    crash listeners and visible through ``is_running()`` and ``state``.

    Parameters
    ----------
    settings : Settings
        Supplies executable path, port, readiness timeout and poll interval
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.executable = settings.mcp_executable_path
        self.port = settings.mcp_server_port
        self.ready_timeout = settings.server_ready_timeout
        self.poll_interval = settings.server_poll_interval

        self.state = ServerState.NOT_STARTED
        self.last_error: Optional[str] = None

        self._stderr: deque[str] = deque(maxlen=STDERR_CAPACITY)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._current: Optional[asyncio.subprocess.Process] = None
        self._watcher: Optional[asyncio.Task] = None
        self._stop_requested: set[int] = set()
        self._tasks: set[asyncio.Task] = set()
        self._listeners: list[CrashListener] = []

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def get_base_url(self) -> str:
        return self.base_url

    def get_stderr_log(self) -> list[str]:
        return list(self._stderr)

    def get_last_error(self) -> Optional[str]:
        return self.last_error

    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def add_crash_listener(self, listener: CrashListener) -> None:
        """Register a callback invoked once for each crash of a ready server."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_crash_listener(self, listener: CrashListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def start(self) -> None:
        """Launch the server and wait until it answers HTTP.

        Does nothing while a live process is held.

        Raises:
            ProcessError: Executable missing, process exited during startup,
                or no answer within ``ready_timeout`` seconds
        """
        if self.is_running():
            return

        self._stderr.clear()
        self.last_error = None
        self.state = ServerState.STARTING

        env = await resolve_environment(self.settings.resolve_shell_path)
        executable = shutil.which(self.executable, path=env.get("PATH"))
        if executable is None:
            self._launch_failed(
                f"zotero-mcp executable not found or not executable: '{self.executable}'. "
                "Install zotero-mcp or set MCP_EXECUTABLE_PATH."
            )

        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *SERVE_ARGS,
                str(self.port),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            self._launch_failed(f"Failed to launch {executable}: {e}")

        self._process = process
        self._current = process
        logger.info(
            "server_process_started",
            pid=process.pid,
            executable=executable,
            port=self.port,
        )

        stderr_task = self._spawn(self._drain_stderr(process))
        self._spawn(self._drain_stdout(process))
        self._watcher = self._spawn(self._watch_exit(process, stderr_task))

        await self._wait_for_ready(process)

    def stop(self) -> None:
        """Send SIGTERM to the server and drop the handle. Safe to call repeatedly."""
        process = self._process
        self._process = None
        if process is None:
            return

        if process.returncode is None:
            self._stop_requested.add(process.pid)
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            logger.info("server_process_terminating", pid=process.pid)
        self.state = ServerState.STOPPED

    def _launch_failed(self, message: str) -> NoReturn:
        self._process = None
        self.last_error = message
        self.state = ServerState.CRASHED
        logger.error("server_launch_failed", error=message)
        raise ProcessError(message)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _stderr_tail(self) -> str:
        return "\n".join(list(self._stderr)[-STDERR_TAIL_LINES:])

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        try:
            async for raw in process.stderr:
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    self._stderr.append(line)
                    logger.debug("server_stderr", line=line)
        except ValueError as e:
            # Line longer than the stream limit
            logger.warning("server_stderr_unreadable", error=str(e))

    async def _drain_stdout(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        try:
            async for raw in process.stdout:
                logger.debug("server_stdout", line=raw.decode("utf-8", errors="replace").rstrip())
        except ValueError as e:
            logger.warning("server_stdout_unreadable", error=str(e))

    async def _watch_exit(
        self, process: asyncio.subprocess.Process, stderr_task: asyncio.Task
    ) -> None:
        returncode = await process.wait()
        await asyncio.wait({stderr_task}, timeout=EXIT_FLUSH_TIMEOUT)

        if self._process is process:
            self._process = None

        if process.pid in self._stop_requested:
            self._stop_requested.discard(process.pid)
            logger.info("server_process_stopped", pid=process.pid, returncode=returncode)
            return

        if process is not self._current:
            return

        if returncode == 0:
            logger.info("server_process_exited", pid=process.pid, returncode=returncode)
            self.state = ServerState.STOPPED
            return

        was_ready = self.state == ServerState.READY
        message = f"zotero-mcp exited with code {returncode}"
        tail = self._stderr_tail()
        if tail:
            message = f"{message}\n{tail}"

        self.last_error = message
        self.state = ServerState.CRASHED
        logger.error(
            "server_process_crashed",
            pid=process.pid,
            returncode=returncode,
            was_ready=was_ready,
            stderr_tail=tail,
        )

        if was_ready:
            self._notify_crash(ProcessError(message))

    def _notify_crash(self, error: ProcessError) -> None:
        for listener in list(self._listeners):
            try:
                listener(error)
            except Exception as e:
                logger.exception("crash_listener_failed", error=str(e))

    async def _wait_for_ready(self, process: asyncio.subprocess.Process) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.ready_timeout

        async with httpx.AsyncClient(timeout=PROBE_TIMEOUT) as client:
            while True:
                if process.returncode is not None or self._process is not process:
                    await self._raise_exited_during_startup(process)

                if await self._probe(client):
                    self.state = ServerState.READY
                    logger.info(
                        "server_ready",
                        port=self.port,
                        elapsed=round(loop.time() - started, 2),
                    )
                    return

                remaining = deadline - loop.time()
                if remaining <= 0:
                    message = f"zotero-mcp did not become ready within {self.ready_timeout:g}s"
                    self.stop()
                    self.last_error = message
                    logger.error("server_ready_timeout", timeout=self.ready_timeout)
                    raise ProcessError(message)

                await asyncio.sleep(min(self.poll_interval, remaining))

    async def _raise_exited_during_startup(self, process: asyncio.subprocess.Process) -> NoReturn:
        if process.pid in self._stop_requested:
            raise ProcessError("zotero-mcp was stopped before it became ready")

        # Let the exit watcher record the return code and flush stderr first
        if self._watcher is not None:
            await asyncio.wait({self._watcher}, timeout=EXIT_FLUSH_TIMEOUT * 2)

        message = self.last_error
        if not message:
            message = "zotero-mcp process exited unexpectedly"
            tail = self._stderr_tail()
            if tail:
                message = f"{message}\n{tail}"
            self.last_error = message
        raise ProcessError(message)

    async def _probe(self, client: httpx.AsyncClient) -> bool:
        """Return True once the server answers at all.

        The GET deliberately omits a session header: the server rejects it
        with a fast 4xx instead of opening an event stream, and any status
        proves the HTTP listener is up.
        """
        try:
            async with client.stream(
                "GET", f"{self.base_url}/mcp", headers={"Accept": "text/event-stream"}
            ) as response:
                logger.debug("readiness_probe_answered", status=response.status_code)
                return True
        except httpx.HTTPError:
            return False
