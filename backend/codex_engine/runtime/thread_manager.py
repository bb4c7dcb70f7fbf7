"""
Thread Lifecycle Manager

Decides between starting and resuming a Codex thread and owns the cached
runtime client.

Per-session state machine (persisted as ``Session.external_thread_id``):
    NoThread --start_thread--> Active
    Active   --resume_thread--> Active
    Active + approval policy changed --> control command, then the prompt

The client is bound to one credential. It is recreated only when the
credential changes by value, or after the config synthesizer rewrote
config.toml (``invalidate_client``).
"""

from dataclasses import dataclass, field
from typing import List, Optional

from .codex_client import ClientFactory, CodexClient, CodexThread, ThreadOptions
from .ports import Repository
from .types import Session
from ...utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_APPROVAL_POLICY = "on-request"


@dataclass
class ThreadHandle:
    """An opened thread plus what happened while opening it."""

    thread: CodexThread
    resumed: bool = False
    approval_policy: Optional[str] = None
    control_command_sent: bool = False
    control_command_error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def id(self) -> Optional[str]:
        return self.thread.id

    @property
    def policy_applied(self) -> bool:
        """Whether ``approval_policy`` is now live on the thread."""
        return self.control_command_error is None


class ThreadLifecycleManager:
    """
    Args:
        client_factory: Builds a client for a credential
        repository: Used for the new-server thread reset (optional)
        control_command_template: Command sent on approval policy changes
        reset_thread_on_new_servers: Drop threads older than newly added servers
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        repository: Optional[Repository] = None,
        control_command_template: str = "/approvals {policy}",
        reset_thread_on_new_servers: bool = False,
    ):
        self._client_factory = client_factory
        self.repository = repository
        self.control_command_template = control_command_template
        self.reset_thread_on_new_servers = reset_thread_on_new_servers

        self._client: Optional[CodexClient] = None
        self._last_api_key: Optional[str] = None
        self._stale = False
        self.client_creations = 0

    # =========================================================================
    # Client
    # =========================================================================

    @property
    def client(self) -> CodexClient:
        """The shared client, created lazily and after invalidation."""
        if self._client is None or self._stale:
            self._create_client(self._last_api_key or "")
        return self._client

    def _create_client(self, api_key: str) -> None:
        # Replaced clients are not closed; turns still running on them
        # release their own processes.
        self._client = self._client_factory(api_key)
        self._last_api_key = api_key
        self._stale = False
        self.client_creations += 1

    def refresh_client(self, api_key: Optional[str]) -> CodexClient:
        """
        Client bound to ``api_key``, recreated iff the credential differs from
        the last one or the client was invalidated.

        Returns:
            The client valid for ``api_key``
        """
        key = api_key or ""
        if self._client is not None and not self._stale and key == self._last_api_key:
            return self._client
        if self._client is not None and key != self._last_api_key:
            logger.info("Credential changed, recreating Codex client")
        self._create_client(key)
        return self._client

    def invalidate_client(self) -> None:
        """Mark the client stale so the next access picks up the new config."""
        if self._client is not None:
            logger.debug("Codex client invalidated")
            self._stale = True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    # =========================================================================
    # Threads
    # =========================================================================

    async def open_thread(
        self,
        session: Session,
        options: ThreadOptions,
        approval_policy: str,
        mcp_server_count: int = 0,
        api_key: Optional[str] = None,
    ) -> ThreadHandle:
        """
        Start or resume the session's thread.

        Args:
            session: Session (``external_thread_id`` selects resume)
            options: Working directory, sandbox mode and environment
            approval_policy: Policy the next prompt must run under
            mcp_server_count: Stdio servers currently in config.toml
            api_key: Credential the thread must run under; the shared client
                is re-validated for it before the thread is created

        Returns:
            ThreadHandle; control command failures are recorded, not raised
        """
        client = self.client if api_key is None else self.refresh_client(api_key)

        if not session.external_thread_id:
            logger.info("Starting new Codex thread", session_id=session.session_id, mcp_servers=mcp_server_count)
            return ThreadHandle(
                thread=client.start_thread(options),
                resumed=False,
                approval_policy=approval_policy,
            )

        thread_id = session.external_thread_id
        logger.info("Resuming Codex thread", session_id=session.session_id, thread_id=thread_id)
        handle = ThreadHandle(
            thread=client.resume_thread(thread_id, options),
            resumed=True,
            approval_policy=approval_policy,
        )

        if mcp_server_count > 0:
            warning = (
                f"Resumed thread {thread_id} keeps the MCP servers it was created with; "
                f"servers added since then are only visible on a new thread"
            )
            logger.warning(warning, session_id=session.session_id, mcp_servers=mcp_server_count)
            handle.warnings.append(warning)

        previous_policy = session.last_approval_policy or DEFAULT_APPROVAL_POLICY
        if approval_policy != previous_policy:
            command = self.control_command_template.format(policy=approval_policy)
            logger.info(
                "Approval policy changed, updating thread",
                session_id=session.session_id,
                previous=previous_policy,
                current=approval_policy,
            )
            try:
                await handle.thread.send_control_command(command)
                handle.control_command_sent = True
            except Exception as e:
                logger.error(
                    "Failed to update thread settings, sending prompt anyway",
                    session_id=session.session_id,
                    command=command,
                    error=str(e),
                )
                handle.control_command_error = str(e)

        return handle

    async def reset_thread_if_servers_added(self, session: Session) -> bool:
        """
        Forget the session's thread when a stdio MCP server was added after it.

        Only active with ``reset_thread_on_new_servers``. Returns True when the
        thread id was cleared.
        """
        if not self.reset_thread_on_new_servers or not session.external_thread_id:
            return False
        if self.repository is None:
            return False

        try:
            servers = await self.repository.list_enabled_mcp_servers(session.session_id)
        except Exception as e:
            logger.warning("Failed to check MCP server timestamps", session_id=session.session_id, error=str(e))
            return False

        reference = max(session.created_at, session.updated_at)
        added = [s for s in servers if s.is_stdio and s.added_at is not None and s.added_at > reference]
        if not added:
            return False

        logger.warning(
            "MCP servers added after the thread was last used, starting a fresh thread",
            session_id=session.session_id,
            thread_id=session.external_thread_id,
            servers=",".join(s.name for s in added),
        )
        await self.repository.update_session(session.session_id, {"external_thread_id": None})
        session.external_thread_id = None
        return True
