"""
Unit tests for ThreadLifecycleManager
"""

from datetime import datetime, timedelta

import pytest
from backend.codex_engine.runtime.codex_client import ThreadOptions
from backend.codex_engine.runtime.thread_manager import ThreadLifecycleManager
from backend.codex_engine.runtime.types import MCPServer


@pytest.fixture
def manager(runtime, repository):
    return ThreadLifecycleManager(runtime.factory, repository=repository)


@pytest.fixture
def options(tmp_path):
    return ThreadOptions(working_directory=str(tmp_path), sandbox_mode="workspace-write")


def test_client_created_lazily_once(manager, runtime):
    first = manager.client
    second = manager.client

    assert first is second
    assert manager.client_creations == 1
    assert len(runtime.clients) == 1


def test_refresh_client_only_on_credential_change(manager, runtime):
    first = manager.refresh_client("sk-a")
    assert manager.refresh_client("sk-a") is first
    assert manager.refresh_client("sk-a") is first
    assert manager.client_creations == 1

    second = manager.refresh_client("sk-b")
    assert second is not first
    assert second.api_key == "sk-b"
    assert manager.client_creations == 2


def test_missing_credential_compares_as_empty(manager):
    client = manager.refresh_client(None)
    assert manager.refresh_client("") is client
    assert manager.client_creations == 1


def test_invalidate_recreates_on_next_access(manager, runtime):
    manager.refresh_client("sk-a")
    manager.invalidate_client()

    client = manager.client

    assert manager.client_creations == 2
    assert client.api_key == "sk-a"
    # No further recreation until the next invalidation
    manager.refresh_client("sk-a")
    assert manager.client_creations == 2


@pytest.mark.asyncio
async def test_new_session_starts_thread(manager, runtime, session, options):
    handle = await manager.open_thread(session, options, "on-request", mcp_server_count=2)

    assert handle.resumed is False
    assert handle.warnings == []
    assert runtime.started == [options]
    assert runtime.control_commands == []


@pytest.mark.asyncio
async def test_existing_thread_resumed(manager, runtime, session, options):
    session.external_thread_id = "th_1"
    session.last_approval_policy = "on-request"

    handle = await manager.open_thread(session, options, "on-request")

    assert handle.resumed is True
    assert handle.id == "th_1"
    assert runtime.resumed == [("th_1", options)]
    assert runtime.control_commands == []


@pytest.mark.asyncio
async def test_resume_with_servers_warns(manager, session, options):
    session.external_thread_id = "th_1"

    handle = await manager.open_thread(session, options, "on-request", mcp_server_count=1)

    assert len(handle.warnings) == 1
    assert "th_1" in handle.warnings[0]


@pytest.mark.asyncio
async def test_policy_change_sends_control_command(manager, runtime, session, options):
    session.external_thread_id = "th_1"
    session.last_approval_policy = "on-request"

    handle = await manager.open_thread(session, options, "never")

    assert runtime.control_commands == ["/approvals never"]
    assert handle.control_command_sent is True
    assert handle.policy_applied is True


@pytest.mark.asyncio
async def test_unknown_previous_policy_defaults_to_on_request(manager, runtime, session, options):
    session.external_thread_id = "th_1"
    session.last_approval_policy = None

    await manager.open_thread(session, options, "on-request")
    assert runtime.control_commands == []

    await manager.open_thread(session, options, "untrusted")
    assert runtime.control_commands == ["/approvals untrusted"]


@pytest.mark.asyncio
async def test_control_command_failure_is_swallowed(manager, runtime, session, options):
    session.external_thread_id = "th_1"
    runtime.control_error = RuntimeError("thread busy")

    handle = await manager.open_thread(session, options, "never")

    assert handle.control_command_sent is False
    assert handle.control_command_error == "thread busy"
    assert handle.policy_applied is False
    assert handle.thread is not None


@pytest.mark.asyncio
async def test_reset_thread_disabled_by_default(manager, repository, session):
    session.external_thread_id = "th_1"
    repository.servers["sess-1"] = [
        MCPServer(server_id="s", name="late", added_at=datetime.utcnow() + timedelta(minutes=5))
    ]

    assert await manager.reset_thread_if_servers_added(session) is False
    assert session.external_thread_id == "th_1"


@pytest.mark.asyncio
async def test_reset_thread_when_server_added_later(runtime, repository, session):
    manager = ThreadLifecycleManager(runtime.factory, repository=repository, reset_thread_on_new_servers=True)
    session.external_thread_id = "th_1"
    repository.servers["sess-1"] = [
        MCPServer(server_id="s", name="late", added_at=session.updated_at + timedelta(minutes=5))
    ]

    assert await manager.reset_thread_if_servers_added(session) is True
    assert session.external_thread_id is None
    assert repository.session_updates[-1] == ("sess-1", {"external_thread_id": None})


@pytest.mark.asyncio
async def test_reset_thread_ignores_older_servers(runtime, repository, session):
    manager = ThreadLifecycleManager(runtime.factory, repository=repository, reset_thread_on_new_servers=True)
    session.external_thread_id = "th_1"
    repository.servers["sess-1"] = [
        MCPServer(server_id="s", name="old", added_at=session.created_at - timedelta(days=1))
    ]

    assert await manager.reset_thread_if_servers_added(session) is False
    assert session.external_thread_id == "th_1"


@pytest.mark.asyncio
async def test_close_closes_client(manager, runtime):
    client = manager.client
    await manager.close()
    assert client.closed is True


@pytest.mark.asyncio
async def test_open_thread_uses_callers_credential(manager, runtime, session, options):
    manager.refresh_client("sk-alice")
    # Another session swaps the shared client before this one opens its thread
    manager.refresh_client("sk-bob")

    handle = await manager.open_thread(session, options, "on-request", api_key="sk-alice")

    assert handle.thread.client.api_key == "sk-alice"
    assert manager.client_creations == 3


@pytest.mark.asyncio
async def test_open_thread_after_invalidation_keeps_callers_credential(manager, session, options):
    manager.refresh_client("sk-bob")
    manager.invalidate_client()

    handle = await manager.open_thread(session, options, "on-request", api_key="sk-alice")

    assert handle.thread.client.api_key == "sk-alice"
