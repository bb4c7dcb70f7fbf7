"""
Codex Runtime Client

Thread-oriented interface to the Codex agent runtime, plus the default
implementation that drives the ``codex`` CLI.

Architecture:
    CodexClient
    ├── start_thread(options)            -> CodexThread (no id until thread.started)
    └── resume_thread(thread_id, options)-> CodexThread
    CodexThread
    ├── run_streamed(prompt)             -> async iterator of raw event dicts
    └── send_control_command(command)    -> runs the command as a turn, drains it

``CodexExecClient`` spawns ``codex exec --json`` once per turn. The runtime
reads ``$CODEX_HOME/config.toml`` when the process starts, so configuration
changes take effect on the next turn; the engine still recreates the client
after every config write so any client implementation with a long-lived
process picks them up.
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional, Set

from ..errors import TurnFailedError
from .events import render_error
from ...utils.logger import get_logger

logger = get_logger(__name__)

TERMINAL_EVENT_TYPES = ("turn.completed", "turn.failed", "error")


# =============================================================================
# Options
# =============================================================================


@dataclass
class ThreadOptions:
    """Per-thread options passed to the runtime on every turn."""

    working_directory: str
    sandbox_mode: str = "workspace-write"
    skip_git_repo_check: bool = False
    model: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class ClientOptions:
    api_key: str = ""
    codex_home: Optional[str] = None
    binary: str = "codex"
    stdout_limit: int = 8 * 1024 * 1024
    terminate_timeout: float = 5.0


# =============================================================================
# Interfaces
# =============================================================================


class CodexThread(ABC):
    """A runtime conversation thread."""

    @property
    @abstractmethod
    def id(self) -> Optional[str]:
        """Thread id; ``None`` for a new thread until the runtime assigns one."""

    @abstractmethod
    def run_streamed(self, prompt: str) -> AsyncIterator[Dict[str, Any]]:
        """Run one turn and yield raw event dicts as they arrive."""

    async def send_control_command(self, command: str) -> None:
        """
        Send a control command (e.g. ``/approvals never``) as its own turn.

        The turn's events are drained and discarded.

        Raises:
            TurnFailedError: If the runtime reports the turn as failed
        """
        stream = self.run_streamed(command)
        try:
            async for raw in stream:
                event_type = raw.get("type")
                if event_type == "turn.failed":
                    raise TurnFailedError(render_error(raw.get("error")))
                if event_type == "error":
                    raise TurnFailedError(str(raw.get("message", "")))
                if event_type == "turn.completed":
                    break
        finally:
            await stream.aclose()


class CodexClient(ABC):
    """Process-wide handle on the runtime, bound to one credential."""

    @abstractmethod
    def start_thread(self, options: ThreadOptions) -> CodexThread:
        ...

    @abstractmethod
    def resume_thread(self, thread_id: str, options: ThreadOptions) -> CodexThread:
        ...

    async def close(self) -> None:
        """Release runtime resources held by this client."""


ClientFactory = Callable[[str], CodexClient]


# =============================================================================
# codex exec implementation
# =============================================================================


def build_exec_command(
    binary: str,
    prompt: str,
    options: ThreadOptions,
    thread_id: Optional[str] = None,
) -> List[str]:
    """
    Build the ``codex exec`` argv for one turn.

    Args:
        binary: Codex executable
        prompt: Prompt text (last positional argument, after ``--``)
        options: Thread options
        thread_id: Existing thread to resume, if any

    Returns:
        Argument vector
    """
    cmd = [binary, "exec", "--json", "--sandbox", options.sandbox_mode, "--cd", options.working_directory]
    if options.model:
        cmd.extend(["--model", options.model])
    if options.skip_git_repo_check:
        cmd.append("--skip-git-repo-check")
    if thread_id:
        cmd.extend(["resume", thread_id])
    # Prompts starting with "-" must not be parsed as options
    cmd.extend(["--", prompt])
    return cmd


class ExecThread(CodexThread):
    """Thread backed by one ``codex exec`` process per turn."""

    def __init__(self, client: "CodexExecClient", thread_id: Optional[str], options: ThreadOptions):
        self._client = client
        self._thread_id = thread_id
        self._options = options

    @property
    def id(self) -> Optional[str]:
        return self._thread_id

    def _build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self._options.env)
        client_options = self._client.options
        if client_options.codex_home:
            env["CODEX_HOME"] = client_options.codex_home
        if client_options.api_key:
            env["CODEX_API_KEY"] = client_options.api_key
            env["OPENAI_API_KEY"] = client_options.api_key
        else:
            env.pop("CODEX_API_KEY", None)
        return env

    async def run_streamed(self, prompt: str) -> AsyncIterator[Dict[str, Any]]:
        client_options = self._client.options
        cmd = build_exec_command(client_options.binary, prompt, self._options, self._thread_id)
        logger.debug(
            "Spawning codex exec",
            resume=bool(self._thread_id),
            cwd=self._options.working_directory,
            sandbox=self._options.sandbox_mode,
        )

        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=self._options.working_directory,
            env=self._build_env(),
            limit=client_options.stdout_limit,
        )
        self._client.track(process)

        diagnostics: Deque[str] = deque(maxlen=20)
        saw_terminal = False
        try:
            while True:
                try:
                    line_bytes = await process.stdout.readline()
                except (ValueError, asyncio.LimitOverrunError) as e:
                    logger.error(
                        "codex output line exceeds stdout limit",
                        limit=client_options.stdout_limit,
                        error=str(e),
                    )
                    if not saw_terminal:
                        yield {
                            "type": "turn.failed",
                            "error": {
                                "message": f"codex output line exceeded {client_options.stdout_limit} bytes"
                            },
                        }
                    return
                if not line_bytes:
                    break

                line = line_bytes.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    raw = json.loads(line)
                except json.JSONDecodeError:
                    diagnostics.append(line)
                    logger.debug("Non-JSON output from codex", line=line[:200])
                    continue
                if not isinstance(raw, dict):
                    continue

                if raw.get("type") == "thread.started" and raw.get("thread_id"):
                    self._thread_id = str(raw["thread_id"])
                if raw.get("type") in TERMINAL_EVENT_TYPES:
                    saw_terminal = True
                yield raw

            returncode = await process.wait()
            if returncode != 0 and not saw_terminal:
                detail = "\n".join(diagnostics) or f"codex exited with status {returncode}"
                yield {"type": "turn.failed", "error": {"message": detail}}
        finally:
            await self._client.release(process)


class CodexExecClient(CodexClient):
    """
    Client driving the ``codex`` CLI.

    Holds no long-lived process; it tracks the per-turn processes it spawned
    so ``close()`` and abandoned streams never leave orphans behind.
    """

    def __init__(self, options: ClientOptions):
        self.options = options
        self._processes: Set[asyncio.subprocess.Process] = set()

    def start_thread(self, options: ThreadOptions) -> CodexThread:
        return ExecThread(self, None, options)

    def resume_thread(self, thread_id: str, options: ThreadOptions) -> CodexThread:
        return ExecThread(self, thread_id, options)

    def track(self, process: asyncio.subprocess.Process) -> None:
        self._processes.add(process)

    async def release(self, process: asyncio.subprocess.Process) -> None:
        """Terminate ``process`` if still running (SIGTERM, then SIGKILL)."""
        self._processes.discard(process)
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.options.terminate_timeout)
        except asyncio.TimeoutError:
            logger.warning("codex exec did not exit after SIGTERM, killing", pid=process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                pass

    async def close(self) -> None:
        for process in list(self._processes):
            await self.release(process)

    @classmethod
    def factory(
        cls,
        codex_home: Optional[str],
        binary: str = "codex",
        stdout_limit: int = 8 * 1024 * 1024,
    ) -> ClientFactory:
        """Build a ``ClientFactory`` producing exec clients for a credential."""

        def create(api_key: str) -> CodexClient:
            return cls(
                ClientOptions(
                    api_key=api_key,
                    codex_home=codex_home,
                    binary=binary,
                    stdout_limit=stdout_limit,
                )
            )

        return create
