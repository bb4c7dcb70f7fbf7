"""
Unit tests for ConfigSynthesizer
"""

import asyncio
import json
import os
import threading
import tomllib
from datetime import datetime

import pytest
from backend.codex_engine.runtime.config_synthesizer import (
    MANIFEST_FILENAME,
    ConfigSynthesizer,
    compute_config_hash,
    normalize_server_name,
)
from backend.codex_engine.runtime.types import MCPServer


def stdio_server(name, command="npx", args=None, env=None, server_id=None):
    return MCPServer(
        server_id=server_id or f"srv-{name}",
        name=name,
        transport="stdio",
        command=command,
        args=args or [],
        env=env or {},
        added_at=datetime.utcnow(),
    )


def read_config(codex_home):
    with open(os.path.join(codex_home, "config.toml"), "rb") as f:
        return tomllib.load(f)


@pytest.fixture
def codex_home(tmp_path):
    return str(tmp_path / "codex")


@pytest.fixture
def invalidations():
    return []


@pytest.fixture
def synthesizer(repository, codex_home, invalidations):
    return ConfigSynthesizer(repository, codex_home, on_change=lambda: invalidations.append(1))


@pytest.mark.asyncio
async def test_first_call_writes_config(synthesizer, codex_home, invalidations):
    count = await synthesizer.ensure_config("on-request", False, "sess-1")

    assert count == 0
    assert synthesizer.write_count == 1
    assert invalidations == [1]

    data = read_config(codex_home)
    assert data["approval_policy"] == "on-request"
    assert data["sandbox_workspace_write"] == {"network_access": False}
    assert "mcp_servers" not in data


@pytest.mark.asyncio
async def test_identical_inputs_write_once(synthesizer, invalidations):
    await synthesizer.ensure_config("never", True, "sess-1")
    await synthesizer.ensure_config("never", True, "sess-1")

    assert synthesizer.write_count == 1
    assert invalidations == [1]


@pytest.mark.asyncio
async def test_network_change_alone_triggers_write_and_invalidation(synthesizer, codex_home, invalidations):
    await synthesizer.ensure_config("on-request", False, "sess-1")
    await synthesizer.ensure_config("on-request", True, "sess-1")

    assert synthesizer.write_count == 2
    assert len(invalidations) == 2
    assert read_config(codex_home)["sandbox_workspace_write"]["network_access"] is True


@pytest.mark.asyncio
async def test_stdio_servers_written_and_others_skipped(repository, synthesizer, codex_home):
    repository.servers["sess-1"] = [
        stdio_server("GitHub Tools", args=["-y", "@mcp/github"], env={"GITHUB_TOKEN": "t"}),
        MCPServer(server_id="srv-remote", name="remote", transport="http", url="https://mcp.example.com"),
    ]

    count = await synthesizer.ensure_config("on-request", False, "sess-1")

    assert count == 1
    data = read_config(codex_home)
    assert data["mcp_servers"] == {
        "github_tools": {"command": "npx", "args": ["-y", "@mcp/github"], "env": {"GITHUB_TOKEN": "t"}}
    }

    with open(os.path.join(codex_home, MANIFEST_FILENAME)) as f:
        assert json.load(f) == {"mcp_servers": ["github_tools"]}


@pytest.mark.asyncio
async def test_unmanaged_keys_and_header_preserved(repository, synthesizer, codex_home):
    os.makedirs(codex_home)
    with open(os.path.join(codex_home, "config.toml"), "w") as f:
        f.write(
            "# my personal codex config\n"
            "model = \"o3\"\n"
            "approval_policy = \"untrusted\"\n"
            "\n"
            "[mcp_servers.handmade]\n"
            "command = \"my-server\"\n"
        )

    repository.servers["sess-1"] = [stdio_server("docs")]
    await synthesizer.ensure_config("never", False, "sess-1")

    with open(os.path.join(codex_home, "config.toml")) as f:
        raw = f.read()
    assert raw.startswith("# my personal codex config\n")

    data = tomllib.loads(raw)
    assert data["model"] == "o3"
    assert data["approval_policy"] == "never"
    assert set(data["mcp_servers"]) == {"handmade", "docs"}


@pytest.mark.asyncio
async def test_previously_managed_servers_removed(repository, synthesizer, codex_home):
    repository.servers["sess-1"] = [stdio_server("docs"), stdio_server("search")]
    await synthesizer.ensure_config("on-request", False, "sess-1")

    repository.servers["sess-1"] = [stdio_server("docs")]
    await synthesizer.ensure_config("on-request", False, "sess-1")

    data = read_config(codex_home)
    assert set(data["mcp_servers"]) == {"docs"}


@pytest.mark.asyncio
async def test_invalid_existing_config_treated_as_empty(synthesizer, codex_home):
    os.makedirs(codex_home)
    with open(os.path.join(codex_home, "config.toml"), "w") as f:
        f.write("this is = = not toml")

    await synthesizer.ensure_config("on-failure", False, "sess-1")

    assert read_config(codex_home)["approval_policy"] == "on-failure"


@pytest.mark.asyncio
async def test_write_failure_is_not_raised_and_hash_not_recorded(repository, tmp_path, invalidations):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file in the way")
    synthesizer = ConfigSynthesizer(
        repository, str(blocker / "codex"), on_change=lambda: invalidations.append(1)
    )

    count = await synthesizer.ensure_config("on-request", False, "sess-1")

    assert count == 0
    assert synthesizer.write_count == 0
    assert synthesizer.last_hash is None
    assert invalidations == []


def test_normalize_server_name():
    assert normalize_server_name("My Server.v2") == "my_server_v2"
    assert normalize_server_name("ok-name_1") == "ok-name_1"


def test_hash_depends_on_every_input():
    base = compute_config_hash("on-request", False, {"a": {"command": "x"}}, "/h")

    assert base == compute_config_hash("on-request", False, {"a": {"command": "x"}}, "/h")
    assert base != compute_config_hash("never", False, {"a": {"command": "x"}}, "/h")
    assert base != compute_config_hash("on-request", True, {"a": {"command": "x"}}, "/h")
    assert base != compute_config_hash("on-request", False, {"a": {"command": "y"}}, "/h")
    assert base != compute_config_hash("on-request", False, {"a": {"command": "x"}}, "/other")


@pytest.mark.asyncio
async def test_forget_forces_rewrite(synthesizer, codex_home):
    await synthesizer.ensure_config("on-request", False, "sess-1")
    os.remove(os.path.join(codex_home, "config.toml"))

    synthesizer.forget()
    await synthesizer.ensure_config("on-request", False, "sess-1")

    assert synthesizer.write_count == 2
    assert read_config(codex_home)["approval_policy"] == "on-request"


@pytest.mark.asyncio
async def test_concurrent_sessions_share_one_write(repository, synthesizer, invalidations):
    await asyncio.gather(
        synthesizer.ensure_config("on-request", False, "sess-a"),
        synthesizer.ensure_config("on-request", False, "sess-b"),
        synthesizer.ensure_config("on-request", False, "sess-c"),
    )

    assert synthesizer.write_count == 1
    assert invalidations == [1]


@pytest.mark.asyncio
async def test_concurrent_different_configs_leave_valid_file(repository, synthesizer, codex_home):
    repository.servers["sess-a"] = [stdio_server("docs")]
    repository.servers["sess-b"] = [stdio_server("search")]

    await asyncio.gather(
        synthesizer.ensure_config("never", False, "sess-a"),
        synthesizer.ensure_config("untrusted", True, "sess-b"),
    )

    assert synthesizer.write_count == 2
    data = read_config(codex_home)
    assert data["approval_policy"] in ("never", "untrusted")
    with open(os.path.join(codex_home, MANIFEST_FILENAME)) as f:
        assert json.load(f)["mcp_servers"] in (["docs"], ["search"])


@pytest.mark.asyncio
async def test_artifact_written_off_the_event_loop(synthesizer, monkeypatch):
    write_artifact = synthesizer._write_artifact
    writer_threads = []

    def recording_write(*args):
        writer_threads.append(threading.get_ident())
        return write_artifact(*args)

    monkeypatch.setattr(synthesizer, "_write_artifact", recording_write)

    await synthesizer.ensure_config("on-request", False, "sess-1")

    assert writer_threads and writer_threads[0] != threading.get_ident()
