"""
Unit tests for the codex exec client

A small shell script stands in for the ``codex`` binary and prints JSONL.
"""

import os
import stat
import sys

import pytest
from backend.codex_engine.errors import TurnFailedError
from backend.codex_engine.runtime.codex_client import (
    ClientOptions,
    CodexExecClient,
    ThreadOptions,
    build_exec_command,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")


def write_fake_codex(directory, body: str, exit_code: int = 0) -> str:
    path = os.path.join(str(directory), "codex")
    with open(path, "w") as f:
        f.write("#!/bin/sh\n")
        f.write('DIR="$(dirname "$0")"\n')
        f.write('printf "%s\\n" "$@" > "$DIR/args.txt"\n')
        f.write('echo "$CODEX_HOME|$CODEX_API_KEY|$GITHUB_TOKEN" > "$DIR/env.txt"\n')
        f.write(body)
        f.write(f"exit {exit_code}\n")
    os.chmod(path, os.stat(path).st_mode | stat.S_IXUSR)
    return path


def jsonl(*lines: str) -> str:
    return "".join(f"echo '{line}'\n" for line in lines)


@pytest.fixture
def bin_dir(tmp_path):
    directory = tmp_path / "bin"
    directory.mkdir()
    return directory


@pytest.fixture
def options(tmp_path):
    workdir = tmp_path / "work"
    workdir.mkdir()
    return ThreadOptions(working_directory=str(workdir), env={"GITHUB_TOKEN": "ghp_x"})


def make_client(binary, codex_home="/tmp/codex-home", api_key="sk-test", **extra):
    return CodexExecClient(ClientOptions(api_key=api_key, codex_home=codex_home, binary=binary, **extra))


async def collect(thread, prompt):
    return [event async for event in thread.run_streamed(prompt)]


def test_build_exec_command_new_thread():
    options = ThreadOptions(working_directory="/repo", sandbox_mode="read-only")

    assert build_exec_command("codex", "hello", options) == [
        "codex", "exec", "--json", "--sandbox", "read-only", "--cd", "/repo", "--", "hello",
    ]


def test_build_exec_command_resume_with_model():
    options = ThreadOptions(working_directory="/repo", model="gpt-5", skip_git_repo_check=True)

    cmd = build_exec_command("codex", "next", options, thread_id="th_1")

    assert cmd[-4:] == ["resume", "th_1", "--", "next"]
    assert cmd[cmd.index("--model") + 1] == "gpt-5"
    assert "--skip-git-repo-check" in cmd


def test_build_exec_command_dash_prompt_not_an_option():
    options = ThreadOptions(working_directory="/repo")

    cmd = build_exec_command("codex", "--help me", options)

    assert cmd[-2:] == ["--", "--help me"]
    assert cmd.count("--help me") == 1


@pytest.mark.asyncio
async def test_run_streamed_yields_events_and_captures_thread_id(bin_dir, options):
    binary = write_fake_codex(
        bin_dir,
        "echo 'Reading prompt from stdin...'\n"
        + jsonl(
            '{"type":"thread.started","thread_id":"th_exec"}',
            '{"type":"turn.started"}',
            '{"type":"item.completed","item":{"id":"i1","type":"agent_message","text":"hi"}}',
            '{"type":"turn.completed","usage":{"input_tokens":3,"output_tokens":1}}',
        ),
    )
    client = make_client(binary)
    thread = client.start_thread(options)

    events = await collect(thread, "say hi")

    assert [e["type"] for e in events] == ["thread.started", "turn.started", "item.completed", "turn.completed"]
    assert thread.id == "th_exec"

    args = (bin_dir / "args.txt").read_text().splitlines()
    assert args[:3] == ["exec", "--json", "--sandbox"]
    assert args[-1] == "say hi"
    assert (bin_dir / "env.txt").read_text().strip() == "/tmp/codex-home|sk-test|ghp_x"


@pytest.mark.asyncio
async def test_resumed_thread_passes_thread_id(bin_dir, options):
    binary = write_fake_codex(bin_dir, jsonl('{"type":"turn.completed","usage":{}}'))
    thread = make_client(binary).resume_thread("th_old", options)

    await collect(thread, "continue")

    args = (bin_dir / "args.txt").read_text().splitlines()
    assert args[-4:] == ["resume", "th_old", "--", "continue"]
    assert thread.id == "th_old"


@pytest.mark.asyncio
async def test_nonzero_exit_without_terminal_event_becomes_turn_failed(bin_dir, options):
    binary = write_fake_codex(bin_dir, "echo 'error: not logged in'\n", exit_code=1)
    thread = make_client(binary).start_thread(options)

    events = await collect(thread, "hi")

    assert events == [{"type": "turn.failed", "error": {"message": "error: not logged in"}}]


@pytest.mark.asyncio
async def test_send_control_command_raises_on_failed_turn(bin_dir, options):
    binary = write_fake_codex(
        bin_dir, jsonl('{"type":"turn.failed","error":{"message":"unknown command"}}')
    )
    thread = make_client(binary).resume_thread("th_1", options)

    with pytest.raises(TurnFailedError, match="unknown command"):
        await thread.send_control_command("/approvals never")


@pytest.mark.asyncio
async def test_abandoned_stream_terminates_process(bin_dir, options):
    binary = write_fake_codex(
        bin_dir,
        jsonl('{"type":"turn.started"}') + "sleep 30\n",
    )
    client = make_client(binary)
    stream = client.start_thread(options).run_streamed("long")

    first = await stream.__anext__()
    assert first == {"type": "turn.started"}
    assert len(client._processes) == 1

    await stream.aclose()

    assert client._processes == set()


@pytest.mark.asyncio
async def test_oversized_output_line_becomes_turn_failed(bin_dir, options):
    binary = write_fake_codex(
        bin_dir,
        jsonl('{"type":"turn.started"}')
        + "head -c 300000 /dev/zero | tr '\\0' 'a'\necho\n"
        + jsonl('{"type":"turn.completed","usage":{}}'),
    )
    client = make_client(binary, stdout_limit=65536)
    thread = client.start_thread(options)

    events = await collect(thread, "cat big.log")

    assert events[0] == {"type": "turn.started"}
    assert events[1]["type"] == "turn.failed"
    assert "65536" in events[1]["error"]["message"]
    assert len(events) == 2
    assert client._processes == set()


@pytest.mark.asyncio
async def test_dash_prompt_reaches_codex_as_positional(bin_dir, options):
    binary = write_fake_codex(bin_dir, jsonl('{"type":"turn.completed","usage":{}}'))
    thread = make_client(binary).start_thread(options)

    await collect(thread, "-v explain the flags")

    args = (bin_dir / "args.txt").read_text().splitlines()
    assert args[-2:] == ["--", "-v explain the flags"]
