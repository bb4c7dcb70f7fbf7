"""
Codex Execution Orchestrator

Facade that runs one prompt against a session:

    find_session -> worktree -> credential/refresh_client -> ensure_config
      -> user message (index = count of existing messages)
      -> open/resume thread (control command on policy change)
      -> stream -> translate -> persist assistant/tool messages in order
      -> stamp thread id, model, task usage

Streaming mode persists one tool message per ``tool_complete`` and one
text message per ``complete``; sync mode persists a single message per
``complete`` holding the full content. At most one execution per session runs
at a time (per-session ``asyncio.Lock``).
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from ..config import APPROVAL_POLICIES, SANDBOX_MODES, EngineConfig
from ..errors import EngineNotConfiguredError, SessionNotFoundError, TurnFailedError, WorktreeNotFoundError
from .callbacks import StreamingCallbacks
from .cancellation import CancellationController
from .codex_client import ClientFactory, CodexExecClient, ThreadOptions
from .config_synthesizer import ConfigSynthesizer
from .ports import CredentialResolver, EnvCredentialResolver, Repository, WorktreeResolver
from .thread_manager import ThreadHandle, ThreadLifecycleManager
from .translator import EventTranslator, filter_flushed_blocks
from .types import (
    CodexPermissions,
    CompleteEvent,
    ExecutionResult,
    ExecutionStatus,
    Message,
    MessageRole,
    PartialEvent,
    Session,
    StopResult,
    StreamEvent,
    TokenUsage,
    ToolCompleteEvent,
    ToolStartEvent,
    tool_blocks,
)
from .usage import UsageAccountant
from ...utils.logger import get_logger

logger = get_logger(__name__)

API_KEY_NAME = "OPENAI_API_KEY"
PREVIEW_LENGTH = 200

# Generic permission modes -> Codex approval policy
PERMISSION_MODE_POLICIES = {
    "ask": "untrusted",
    "auto": "on-request",
    "allow-all": "never",
}


def content_preview(content: Any) -> str:
    if isinstance(content, str):
        return content[:PREVIEW_LENGTH]
    text = "".join(b.get("text", "") for b in content or [] if b.get("type") == "text")
    return text[:PREVIEW_LENGTH]


@dataclass
class _TurnState:
    """Bookkeeping for one execution."""

    next_index: int
    assistant_message_ids: List[str] = field(default_factory=list)
    flushed_tool_ids: Set[str] = field(default_factory=set)
    resolved_model: Optional[str] = None
    stream_message_id: Optional[str] = None
    usage: Optional[TokenUsage] = None
    model: Optional[str] = None
    completed: bool = False

    def take_index(self) -> int:
        index = self.next_index
        self.next_index += 1
        return index


class ExecutionOrchestrator:
    """
    Runs prompts for sessions.

    Args:
        repository: Sessions, messages, tasks and the MCP registry
        worktrees: Resolves a session's working directory
        credentials: API key and user environment (env fallback by default)
        config: Engine configuration
        client_factory: Client per credential (``codex exec`` by default)
    """

    def __init__(
        self,
        repository: Optional[Repository],
        worktrees: Optional[WorktreeResolver],
        credentials: Optional[CredentialResolver] = None,
        config: Optional[EngineConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        thread_manager: Optional[ThreadLifecycleManager] = None,
        config_synthesizer: Optional[ConfigSynthesizer] = None,
        cancellation: Optional[CancellationController] = None,
    ):
        self.config = config or EngineConfig()
        self.repository = repository
        self.worktrees = worktrees
        self.credentials = credentials or EnvCredentialResolver(self.config.openai_api_key)

        if client_factory is None:
            client_factory = CodexExecClient.factory(
                self.config.codex_home,
                binary=self.config.codex_binary,
                stdout_limit=self.config.stdout_limit,
            )

        self.threads = thread_manager or ThreadLifecycleManager(
            client_factory,
            repository=repository,
            control_command_template=self.config.control_command_template,
            reset_thread_on_new_servers=self.config.reset_thread_on_new_servers,
        )
        self.config_synthesizer = config_synthesizer or ConfigSynthesizer(
            repository,
            self.config.codex_home,
            on_change=self.threads.invalidate_client,
        )
        self.cancellation = cancellation or CancellationController()

        self._locks: Dict[str, asyncio.Lock] = {}

        logger.info("Execution orchestrator initialized", codex_home=self.config.codex_home)

    # =========================================================================
    # Public API
    # =========================================================================

    async def execute_prompt(
        self,
        session_id: str,
        prompt: str,
        task_id: Optional[str] = None,
        permission_mode: Optional[str] = None,
        callbacks: Optional[StreamingCallbacks] = None,
    ) -> ExecutionResult:
        """
        Run a prompt, streaming notifications to ``callbacks``.

        Raises:
            SessionNotFoundError: Unknown session
            WorktreeNotFoundError: Session's worktree cannot be resolved
            TurnFailedError: The runtime failed the turn
        """
        return await self._execute(
            session_id, prompt, task_id, permission_mode, callbacks or StreamingCallbacks(), streaming=True
        )

    async def execute_prompt_sync(
        self,
        session_id: str,
        prompt: str,
        task_id: Optional[str] = None,
        permission_mode: Optional[str] = None,
    ) -> ExecutionResult:
        """Run a prompt without intermediate notifications."""
        return await self._execute(
            session_id, prompt, task_id, permission_mode, StreamingCallbacks(), streaming=False
        )

    def stop(self, session_id: str) -> StopResult:
        return self.cancellation.request_stop(session_id)

    def close_session(self, session_id: str) -> None:
        self.cancellation.end(session_id)
        self._locks.pop(session_id, None)

    async def close(self) -> None:
        await self.threads.close()

    def resolve_permissions(self, session: Session, permission_mode: Optional[str] = None) -> CodexPermissions:
        """
        Effective Codex permissions for a prompt.

        Session-level codex settings win; ``permission_mode`` only fills in
        a missing approval policy.
        """
        codex = session.codex_config

        approval_policy = codex.get("approval_policy") or codex.get("approvalPolicy")
        if not approval_policy and permission_mode:
            approval_policy = PERMISSION_MODE_POLICIES.get(permission_mode)
        if approval_policy not in APPROVAL_POLICIES:
            if approval_policy:
                logger.warning("Unknown approval policy, using default", approval_policy=approval_policy)
            approval_policy = self.config.default_approval_policy

        sandbox_mode = codex.get("sandbox_mode") or codex.get("sandboxMode")
        if sandbox_mode not in SANDBOX_MODES:
            if sandbox_mode:
                logger.warning("Unknown sandbox mode, using default", sandbox_mode=sandbox_mode)
            sandbox_mode = self.config.default_sandbox_mode

        network_access = codex.get("network_access", codex.get("networkAccess"))
        if network_access is None:
            network_access = self.config.default_network_access

        return CodexPermissions(
            sandbox_mode=sandbox_mode,
            approval_policy=approval_policy,
            network_access=bool(network_access),
        )

    # =========================================================================
    # Execution
    # =========================================================================

    def _get_lock(self, session_id: str) -> asyncio.Lock:
        if session_id not in self._locks:
            self._locks[session_id] = asyncio.Lock()
        return self._locks[session_id]

    async def _execute(
        self,
        session_id: str,
        prompt: str,
        task_id: Optional[str],
        permission_mode: Optional[str],
        callbacks: StreamingCallbacks,
        streaming: bool,
    ) -> ExecutionResult:
        if self.repository is None or self.worktrees is None:
            raise EngineNotConfiguredError("ExecutionOrchestrator needs a repository and a worktree resolver")

        async with self._get_lock(session_id):
            # Stops are accepted from here on, including during thread setup
            self.cancellation.begin(session_id)
            try:
                return await self._execute_locked(
                    session_id, prompt, task_id, permission_mode, callbacks, streaming
                )
            finally:
                self.cancellation.end(session_id)

    async def _execute_locked(
        self,
        session_id: str,
        prompt: str,
        task_id: Optional[str],
        permission_mode: Optional[str],
        callbacks: StreamingCallbacks,
        streaming: bool,
    ) -> ExecutionResult:
        session = await self.repository.find_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        worktree_path = await self.worktrees.resolve_worktree_path(session.worktree_id)
        if not worktree_path:
            raise WorktreeNotFoundError(session.worktree_id, session_id)

        context_user = await self._context_user(session, task_id)
        api_key = await self.credentials.resolve_api_key(API_KEY_NAME, context_user)
        credential = api_key or self.config.openai_api_key or ""
        self.threads.refresh_client(credential)

        permissions = self.resolve_permissions(session, permission_mode)
        mcp_server_count = await self.config_synthesizer.ensure_config(
            permissions.approval_policy, permissions.network_access, session_id
        )
        user_env = await self._user_environment(context_user)

        existing = await self.repository.find_messages_by_session(session_id)
        state = _TurnState(
            next_index=len(existing),
            resolved_model=session.model or self.config.default_model,
        )

        user_message = Message(
            message_id=str(uuid.uuid4()),
            session_id=session_id,
            task_id=task_id,
            role=MessageRole.USER,
            index=state.take_index(),
            content=prompt,
            content_preview=content_preview(prompt),
        )
        await self.repository.create_message(user_message)

        await self.threads.reset_thread_if_servers_added(session)

        options = ThreadOptions(
            working_directory=worktree_path,
            sandbox_mode=permissions.sandbox_mode,
            model=session.model,
            env=user_env,
        )
        handle = await self.threads.open_thread(
            session, options, permissions.approval_policy, mcp_server_count, api_key=credential
        )
        for warning in handle.warnings:
            await callbacks.notify("on_warning", session_id, warning)
        await self._record_approval_policy(session, handle)

        logger.info(
            "Running prompt",
            session_id=session_id,
            resumed=handle.resumed,
            prompt=prompt[:50],
            streaming=streaming,
        )

        translator = EventTranslator(
            thread_id=handle.id,
            resolved_model=state.resolved_model,
        )
        status = await self._consume(
            session, handle, translator, prompt, task_id, state, callbacks, streaming
        )

        thread_id = translator.thread_id or handle.id
        cost_usd = UsageAccountant.estimate_cost(state.usage)

        if status == ExecutionStatus.COMPLETED:
            await self._record_outcome(session, task_id, state, cost_usd)

        logger.info(
            "Prompt finished",
            session_id=session_id,
            status=status.value,
            messages=len(state.assistant_message_ids),
            thread_id=thread_id,
            cost=UsageAccountant.format_cost(cost_usd),
        )

        return ExecutionResult(
            user_message_id=user_message.message_id,
            assistant_message_ids=state.assistant_message_ids,
            token_usage=state.usage,
            model=state.model,
            thread_id=thread_id,
            status=status,
            cost_usd=cost_usd,
            warnings=list(handle.warnings),
        )

    async def _consume(
        self,
        session: Session,
        handle: ThreadHandle,
        translator: EventTranslator,
        prompt: str,
        task_id: Optional[str],
        state: _TurnState,
        callbacks: StreamingCallbacks,
        streaming: bool,
    ) -> ExecutionStatus:
        session_id = session.session_id
        status = ExecutionStatus.COMPLETED

        if self.cancellation.should_stop(session_id):
            logger.info("Stop requested before the turn started", session_id=session_id)
            await callbacks.notify("on_stopped", session_id)
            return ExecutionStatus.CANCELLED

        stream = handle.thread.run_streamed(prompt)
        try:
            async for raw in stream:
                if self.cancellation.should_stop(session_id):
                    logger.info("Stop requested, abandoning turn", session_id=session_id)
                    status = ExecutionStatus.CANCELLED
                    break

                notifications = translator.feed(raw)
                if translator.thread_id and translator.thread_id != session.external_thread_id:
                    await self._record_thread_id(session, translator.thread_id)

                for notification in notifications:
                    await self._dispatch(session_id, task_id, notification, state, callbacks, streaming)

                if state.completed:
                    break
        except TurnFailedError as e:
            logger.error("Codex turn failed", session_id=session_id, error=e.detail)
            await callbacks.notify("on_error", session_id, e)
            raise
        finally:
            await stream.aclose()

        if handle.id and handle.id != session.external_thread_id:
            await self._record_thread_id(session, handle.id)

        if status == ExecutionStatus.CANCELLED:
            await callbacks.notify("on_stopped", session_id)
        elif not state.completed:
            logger.warning("Stream ended without turn completion", session_id=session_id)

        return status

    async def _dispatch(
        self,
        session_id: str,
        task_id: Optional[str],
        notification: StreamEvent,
        state: _TurnState,
        callbacks: StreamingCallbacks,
        streaming: bool,
    ) -> None:
        if isinstance(notification, ToolStartEvent):
            if streaming:
                await callbacks.notify("on_tool_start", session_id, notification.tool_use)
            return

        if isinstance(notification, PartialEvent):
            if streaming:
                if state.stream_message_id is None:
                    state.stream_message_id = str(uuid.uuid4())
                    await callbacks.notify("on_stream_start", session_id, state.stream_message_id)
                await callbacks.notify(
                    "on_text_chunk", session_id, state.stream_message_id, notification.text_chunk
                )
            return

        if isinstance(notification, ToolCompleteEvent):
            if streaming:
                tool_use = notification.tool_use
                message = await self._persist_assistant(
                    session_id,
                    task_id,
                    state,
                    content=tool_blocks(tool_use),
                    tool_uses=[tool_use.summary()],
                    metadata={"model": state.resolved_model},
                )
                state.flushed_tool_ids.add(tool_use.id)
                await callbacks.notify("on_tool_complete", session_id, tool_use, message)
            return

        if isinstance(notification, CompleteEvent):
            await self._on_complete(session_id, task_id, notification, state, callbacks, streaming)

    async def _on_complete(
        self,
        session_id: str,
        task_id: Optional[str],
        complete: CompleteEvent,
        state: _TurnState,
        callbacks: StreamingCallbacks,
        streaming: bool,
    ) -> None:
        state.completed = True
        state.usage = complete.usage
        state.model = complete.resolved_model

        tool_uses = complete.tool_uses or []
        if streaming:
            content = filter_flushed_blocks(complete.content, state.flushed_tool_ids)
            tool_uses = [tu for tu in tool_uses if tu.id not in state.flushed_tool_ids]
        else:
            content = list(complete.content)

        message = None
        if content:
            message = await self._persist_assistant(
                session_id,
                task_id,
                state,
                content=content,
                tool_uses=[tu.summary() for tu in tool_uses] or None,
                metadata={
                    "model": complete.resolved_model,
                    "tokens": {
                        "input": complete.usage.input_tokens,
                        "output": complete.usage.output_tokens,
                    },
                },
                message_id=state.stream_message_id,
            )
        else:
            logger.debug("Nothing left to persist for turn completion", session_id=session_id)

        state.stream_message_id = None
        if streaming:
            await callbacks.notify("on_complete", session_id, complete, message)

    async def _persist_assistant(
        self,
        session_id: str,
        task_id: Optional[str],
        state: _TurnState,
        content: List[Dict[str, Any]],
        tool_uses: Optional[List[Dict[str, Any]]],
        metadata: Dict[str, Any],
        message_id: Optional[str] = None,
    ) -> Message:
        message = Message(
            message_id=message_id or str(uuid.uuid4()),
            session_id=session_id,
            task_id=task_id,
            role=MessageRole.ASSISTANT,
            index=state.take_index(),
            content=content,
            tool_uses=tool_uses,
            metadata={k: v for k, v in metadata.items() if v is not None},
            content_preview=content_preview(content),
        )
        await self.repository.create_message(message)
        state.assistant_message_ids.append(message.message_id)
        return message

    # =========================================================================
    # Session bookkeeping
    # =========================================================================

    async def _context_user(self, session: Session, task_id: Optional[str]) -> Optional[str]:
        """Task creator when known, otherwise the session owner."""
        if task_id:
            task = await self.repository.find_task(task_id)
            if task and task.get("created_by"):
                return task["created_by"]
        return session.created_by

    async def _user_environment(self, user_id: Optional[str]) -> Dict[str, str]:
        if not user_id:
            return {}
        try:
            env = await self.credentials.resolve_user_environment(user_id)
        except Exception as e:
            logger.error("Failed to resolve user environment", user_id=user_id, error=str(e))
            return {}
        return {str(k): str(v) for k, v in (env or {}).items()}

    async def _record_thread_id(self, session: Session, thread_id: str) -> None:
        logger.info("Recording Codex thread id", session_id=session.session_id, thread_id=thread_id)
        await self.repository.update_session(session.session_id, {"external_thread_id": thread_id})
        session.external_thread_id = thread_id

    async def _record_approval_policy(self, session: Session, handle: ThreadHandle) -> None:
        if not handle.policy_applied or session.last_approval_policy == handle.approval_policy:
            return
        await self.repository.update_session(
            session.session_id, {"last_approval_policy": handle.approval_policy}
        )
        session.last_approval_policy = handle.approval_policy

    async def _record_outcome(
        self,
        session: Session,
        task_id: Optional[str],
        state: _TurnState,
        cost_usd: float,
    ) -> None:
        if state.model and state.model != session.model:
            await self.repository.update_session(session.session_id, {"model": state.model})
            session.model = state.model

        if task_id and state.completed:
            patch: Dict[str, Any] = {"cost_usd": cost_usd}
            if state.model:
                patch["model"] = state.model
            if state.usage:
                patch["token_usage"] = state.usage.to_dict()
            await self.repository.update_task(task_id, patch)
