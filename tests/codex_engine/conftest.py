"""
Shared fixtures for codex engine tests.

In-memory fakes for the repository, resolvers and the Codex runtime client.
"""

import asyncio
from collections import deque
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest

from backend.codex_engine.config import EngineConfig
from backend.codex_engine.errors import DuplicateMessageError
from backend.codex_engine.runtime.callbacks import StreamingCallbacks
from backend.codex_engine.runtime.codex_client import CodexClient, CodexThread, ThreadOptions
from backend.codex_engine.runtime.orchestrator import ExecutionOrchestrator
from backend.codex_engine.runtime.types import MCPServer, Message, Session


# ============================================
# Repository / resolvers
# ============================================


class FakeRepository:
    def __init__(self):
        self.sessions: Dict[str, Session] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.tasks: Dict[str, Dict[str, Any]] = {}
        self.servers: Dict[str, List[MCPServer]] = {}
        self.session_updates: List[tuple] = []
        self.task_updates: List[tuple] = []

    def add_session(self, session: Session) -> Session:
        self.sessions[session.session_id] = session
        return session

    async def find_session(self, session_id):
        return self.sessions.get(session_id)

    async def update_session(self, session_id, patch):
        session = self.sessions.get(session_id)
        if session is None:
            return None
        for key, value in patch.items():
            setattr(session, key, value)
        session.updated_at = datetime.utcnow()
        self.session_updates.append((session_id, dict(patch)))
        return session

    async def find_messages_by_session(self, session_id):
        return sorted(self.messages.get(session_id, []), key=lambda m: m.index)

    async def create_message(self, message):
        for existing in self.messages.get(message.session_id, []):
            if existing.message_id == message.message_id:
                raise DuplicateMessageError(message.message_id)
        self.messages.setdefault(message.session_id, []).append(message)
        return message

    async def update_task(self, task_id, patch):
        self.tasks.setdefault(task_id, {}).update(patch)
        self.task_updates.append((task_id, dict(patch)))

    async def find_task(self, task_id):
        return self.tasks.get(task_id)

    async def list_enabled_mcp_servers(self, session_id):
        return [s for s in self.servers.get(session_id, []) if s.enabled]


class FakeCredentialResolver:
    def __init__(self, api_key: Optional[str] = "sk-test"):
        self.api_key = api_key
        self.user_keys: Dict[str, str] = {}
        self.environment: Dict[str, str] = {}
        self.environment_error: Optional[Exception] = None
        self.api_key_requests: List[tuple] = []
        self.environment_requests: List[Optional[str]] = []

    async def resolve_api_key(self, provider_key, user_id):
        self.api_key_requests.append((provider_key, user_id))
        return self.user_keys.get(user_id, self.api_key)

    async def resolve_user_environment(self, user_id):
        self.environment_requests.append(user_id)
        if self.environment_error:
            raise self.environment_error
        return dict(self.environment)


class FakeWorktreeResolver:
    def __init__(self, paths: Optional[Dict[str, str]] = None):
        self.paths = paths or {}

    async def resolve_worktree_path(self, worktree_id):
        return self.paths.get(worktree_id)


# ============================================
# Codex runtime
# ============================================


class FakeThread(CodexThread):
    def __init__(self, client: "FakeClient", thread_id: Optional[str], options: ThreadOptions):
        self.client = client
        self.runtime = client.runtime
        self._id = thread_id
        self.options = options

    @property
    def id(self):
        return self._id

    async def run_streamed(self, prompt):
        self.runtime.prompts.append(prompt)
        events = self.runtime.next_turn()
        for event in events:
            if isinstance(event, Exception):
                raise event
            if event.get("type") == "thread.started":
                self._id = event["thread_id"]
            yield event
            await asyncio.sleep(0)

    async def send_control_command(self, command):
        self.runtime.control_commands.append(command)
        if self.runtime.control_error is not None:
            raise self.runtime.control_error


class FakeClient(CodexClient):
    def __init__(self, runtime: "FakeRuntime", api_key: str):
        self.runtime = runtime
        self.api_key = api_key
        self.closed = False

    def start_thread(self, options):
        self.runtime.started.append(options)
        self.runtime.opened.append((self.api_key, options.working_directory))
        return FakeThread(self, None, options)

    def resume_thread(self, thread_id, options):
        self.runtime.resumed.append((thread_id, options))
        self.runtime.opened.append((self.api_key, options.working_directory))
        return FakeThread(self, thread_id, options)

    async def close(self):
        self.closed = True


class FakeRuntime:
    """Scripted Codex runtime: each prompt consumes one queued turn."""

    def __init__(self):
        self.turns: deque = deque()
        self.prompts: List[str] = []
        self.control_commands: List[str] = []
        self.control_error: Optional[Exception] = None
        self.started: List[ThreadOptions] = []
        self.resumed: List[tuple] = []
        self.opened: List[tuple] = []
        self.clients: List[FakeClient] = []

    def queue_turn(self, *events):
        self.turns.append(list(events))

    def next_turn(self):
        if self.turns:
            return self.turns.popleft()
        return [{"type": "turn.started"}, {"type": "turn.completed", "usage": {}}]

    def factory(self, api_key):
        client = FakeClient(self, api_key)
        self.clients.append(client)
        return client


class EventFactory:
    """Builders for raw ``codex exec --json`` events."""

    @staticmethod
    def thread_started(thread_id="th_1"):
        return {"type": "thread.started", "thread_id": thread_id}

    @staticmethod
    def turn_started():
        return {"type": "turn.started"}

    @staticmethod
    def command_started(item_id, command):
        return {
            "type": "item.started",
            "item": {"id": item_id, "type": "command_execution", "command": command, "status": "in_progress"},
        }

    @staticmethod
    def command_completed(item_id, command, output="", status="completed", exit_code=0):
        return {
            "type": "item.completed",
            "item": {
                "id": item_id,
                "type": "command_execution",
                "command": command,
                "aggregated_output": output,
                "exit_code": exit_code,
                "status": status,
            },
        }

    @staticmethod
    def agent_message(item_id, text):
        return {"type": "item.completed", "item": {"id": item_id, "type": "agent_message", "text": text}}

    @staticmethod
    def turn_completed(input_tokens=0, output_tokens=0, **extra):
        usage = {"input_tokens": input_tokens, "output_tokens": output_tokens}
        usage.update(extra)
        return {"type": "turn.completed", "usage": usage}

    @staticmethod
    def turn_failed(error):
        return {"type": "turn.failed", "error": error}


class RecordingCallbacks:
    """Collects every streaming notification as ``(hook, args)``."""

    HOOKS = (
        "on_stream_start",
        "on_text_chunk",
        "on_tool_start",
        "on_tool_complete",
        "on_complete",
        "on_error",
        "on_warning",
        "on_stopped",
    )

    def __init__(self):
        self.calls: List[tuple] = []
        self.hooks: Dict[str, Any] = {}

    def build(self, **overrides) -> StreamingCallbacks:
        def recorder(name):
            def record(*args):
                self.calls.append((name, args))
                if name in overrides:
                    return overrides[name](*args)
            return record

        return StreamingCallbacks(**{name: recorder(name) for name in self.HOOKS})

    def names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def args(self, hook: str) -> List[tuple]:
        return [args for name, args in self.calls if name == hook]


# ============================================
# Fixtures
# ============================================


@pytest.fixture
def repository():
    return FakeRepository()


@pytest.fixture
def credentials():
    return FakeCredentialResolver()


@pytest.fixture
def worktrees(tmp_path):
    workdir = tmp_path / "worktree"
    workdir.mkdir()
    return FakeWorktreeResolver({"wt-1": str(workdir)})


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def ev():
    return EventFactory()


@pytest.fixture
def recorder():
    return RecordingCallbacks()


@pytest.fixture
def session(repository):
    return repository.add_session(
        Session(
            session_id="sess-1",
            worktree_id="wt-1",
            permission_config={
                "codex": {
                    "sandbox_mode": "workspace-write",
                    "approval_policy": "on-request",
                    "network_access": False,
                }
            },
            created_by="user-1",
        )
    )


@pytest.fixture
def engine_config(tmp_path):
    return EngineConfig(codex_home=str(tmp_path / "codex_home"))


@pytest.fixture
def orchestrator(repository, worktrees, credentials, runtime, engine_config):
    return ExecutionOrchestrator(
        repository,
        worktrees,
        credentials=credentials,
        config=engine_config,
        client_factory=runtime.factory,
    )
