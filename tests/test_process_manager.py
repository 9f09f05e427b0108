from __future__ import annotations

import asyncio
import os
import sys
import time
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from channelcoder.config import ProcessSettings
from channelcoder.process import (
    ClaudeCommandBuilder,
    ExecutionMode,
    ExecutionOptions,
    FailureKind,
    OutputFormat,
    ProcessManager,
)
from channelcoder.process.manager import NO_JSON_WARNING
from channelcoder.stream_parser import (
    ChunkKind,
    ErrorEvent,
    InitEvent,
    ResultEvent,
    parse_log_file,
)

pytestmark = [
    allure.epic("Process Execution"),
    allure.feature("Process Manager"),
]


class _RawCommandBuilder:
    """Spawns a fixed argument vector regardless of options."""

    def __init__(self, *argv: str) -> None:
        self.argv = list(argv)

    def build(self, options: ExecutionOptions, prompt: str = "") -> list[str]:
        del options, prompt
        return list(self.argv)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


@pytest.mark.asyncio
async def test_execute_returns_envelope_result_and_session_id(echo_manager: ProcessManager) -> None:
    result = await echo_manager.execute("hello there")

    assert result.success is True
    assert result.exit_code == 0
    assert result.text == "echo: hello there"
    assert result.data == "echo: hello there"
    assert result.session_id is not None
    assert result.session_id.startswith("session-")
    assert result.warnings == []


@pytest.mark.asyncio
async def test_execute_text_output_downgrades_missing_payload_to_warning(
    echo_manager: ProcessManager,
) -> None:
    result = await echo_manager.execute(
        "plain",
        ExecutionOptions(output_format=OutputFormat.TEXT),
    )

    assert result.success is True
    assert result.data is None
    assert result.text == "echo: plain"
    assert result.warnings == [NO_JSON_WARNING]


@pytest.mark.asyncio
async def test_execute_resume_passes_flag(echo_manager: ProcessManager) -> None:
    result = await echo_manager.execute("next", ExecutionOptions(resume="abc-1"))

    assert result.text == "[resumed abc-1] echo: next"


@pytest.mark.asyncio
async def test_execute_non_zero_exit_with_raw_stderr(
    make_echo_manager: Callable[..., ProcessManager],
) -> None:
    manager = make_echo_manager("--exit-code", "3", "--stderr-text", "rate limit reached")

    result = await manager.execute("hi")

    assert result.success is False
    assert result.exit_code == 3
    assert result.error is not None
    assert result.error.kind == FailureKind.NON_ZERO_EXIT
    assert result.error.structured is False
    assert "rate limit reached" in result.error.message
    assert result.error.reason == "rate_limited"


@pytest.mark.asyncio
async def test_execute_non_zero_exit_with_structured_error(
    make_echo_manager: Callable[..., ProcessManager],
) -> None:
    manager = make_echo_manager("--exit-code", "1", "--error-result", "Credit balance is too low")

    result = await manager.execute("hi")

    assert result.success is False
    assert result.error is not None
    assert result.error.structured is True
    assert result.error.message == "Process exited with code 1: Credit balance is too low"
    assert result.error.reason == "billing_or_quota"


@pytest.mark.asyncio
async def test_execute_timeout_kills_never_exiting_child(monkeypatch: pytest.MonkeyPatch) -> None:
    spawned: list[asyncio.subprocess.Process] = []
    original_spawn = asyncio.create_subprocess_exec

    async def _capture(*args: object, **kwargs: object) -> asyncio.subprocess.Process:
        process = await original_spawn(*args, **kwargs)
        spawned.append(process)
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", _capture)
    manager = ProcessManager(
        ProcessSettings(graceful_shutdown_seconds=0.5),
        _RawCommandBuilder(sys.executable, "-c", "import time; time.sleep(60)"),
    )

    started = time.monotonic()
    result = await manager.execute("", ExecutionOptions(timeout_seconds=0.05))

    assert time.monotonic() - started < 10
    assert result.success is False
    assert result.error is not None
    assert result.error.kind == FailureKind.TIMEOUT
    assert result.error.message == "Process timed out after 0.05s"
    assert len(spawned) == 1
    assert spawned[0].returncode is not None
    assert not _pid_alive(spawned[0].pid)


@pytest.mark.asyncio
async def test_execute_escalates_to_kill_when_sigterm_ignored(
    make_echo_manager: Callable[..., ProcessManager],
) -> None:
    manager = make_echo_manager("--ignore-sigterm", "--sleep-seconds", "30")

    started = time.monotonic()
    result = await manager.execute("hi", ExecutionOptions(timeout_seconds=1))

    assert result.error is not None
    assert result.error.kind == FailureKind.TIMEOUT
    assert time.monotonic() - started < 10


@pytest.mark.asyncio
async def test_missing_tool_is_reported_before_spawn(tmp_path: Path) -> None:
    manager = ProcessManager(
        ProcessSettings(command=(str(tmp_path / "no-such-claude"),)),
    )

    assert manager.is_available() is False
    result = await manager.execute("hi")
    chunks = [chunk async for chunk in manager.stream("hi")]
    detached = manager.execute_detached("hi")

    assert result.error is not None
    assert result.error.kind == FailureKind.TOOL_UNAVAILABLE
    assert [chunk.kind for chunk in chunks] == [ChunkKind.ERROR]
    assert chunks[0].metadata["code"] == FailureKind.TOOL_UNAVAILABLE.value
    assert detached.error is not None
    assert detached.error.kind == FailureKind.TOOL_UNAVAILABLE


@pytest.mark.asyncio
async def test_spawn_failure_for_missing_working_directory(
    echo_manager: ProcessManager,
    tmp_path: Path,
) -> None:
    result = await echo_manager.execute("hi", ExecutionOptions(cwd=tmp_path / "missing"))

    assert result.error is not None
    assert result.error.kind == FailureKind.SPAWN_FAILURE


@pytest.mark.asyncio
async def test_stream_yields_content_chunks(echo_manager: ProcessManager) -> None:
    chunks = [chunk async for chunk in echo_manager.stream("stream me")]

    assert [(chunk.kind, chunk.text) for chunk in chunks] == [
        (ChunkKind.CONTENT, "echo: stream me"),
    ]


@pytest.mark.asyncio
async def test_stream_events_reveal_session_id(
    make_echo_manager: Callable[..., ProcessManager],
) -> None:
    manager = make_echo_manager("--session-id", "real-1")

    events = [event async for event in manager.stream_events("hi")]

    assert isinstance(events[0], InitEvent)
    assert isinstance(events[-1], ResultEvent)
    assert {event.session_id for event in events} == {"real-1"}


@pytest.mark.asyncio
async def test_stream_non_zero_exit_appends_error_chunk(
    make_echo_manager: Callable[..., ProcessManager],
) -> None:
    manager = make_echo_manager("--exit-code", "2", "--stderr-text", "crashed")

    chunks = [chunk async for chunk in manager.stream("hi")]
    events = [event async for event in manager.stream_events("hi")]

    assert chunks[0].kind == ChunkKind.CONTENT
    assert chunks[-1].kind == ChunkKind.ERROR
    assert "crashed" in chunks[-1].text
    # the tool already closed the turn with a result event
    assert not any(isinstance(event, ErrorEvent) for event in events)


@pytest.mark.asyncio
async def test_stream_timeout_ends_with_timeout_error(
    make_echo_manager: Callable[..., ProcessManager],
) -> None:
    manager = make_echo_manager("--sleep-seconds", "30")

    events = [
        event async for event in manager.stream_events("hi", ExecutionOptions(timeout_seconds=0.2))
    ]

    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert events[0].code == FailureKind.TIMEOUT.value


@pytest.mark.asyncio
async def test_leaving_stream_early_terminates_child(tmp_path: Path) -> None:
    pid_file = tmp_path / "pid"
    script = (
        "import json, os, pathlib, sys, time\n"
        f"pathlib.Path({str(pid_file)!r}).write_text(str(os.getpid()))\n"
        "print(json.dumps({'type': 'assistant', 'message': "
        "{'content': [{'type': 'text', 'text': 'first'}]}}), flush=True)\n"
        "time.sleep(60)\n"
    )
    manager = ProcessManager(
        ProcessSettings(graceful_shutdown_seconds=0.5),
        _RawCommandBuilder(sys.executable, "-c", script),
    )

    stream = manager.stream("hi")
    first = await anext(stream)
    await stream.aclose()

    assert first.text == "first"
    assert not _pid_alive(int(pid_file.read_text()))


@pytest.mark.asyncio
async def test_execute_detached_writes_stream_json_log(
    make_echo_manager: Callable[..., ProcessManager],
    tmp_path: Path,
) -> None:
    manager = make_echo_manager("--session-id", "abc-1")
    log_file = tmp_path / "logs" / "detached.log"

    result = manager.execute_detached(
        "background",
        ExecutionOptions(mode=ExecutionMode.DETACHED, log_file=log_file),
    )

    assert result.success is True
    assert result.detachment is not None
    assert result.detachment.log_path == log_file
    exit_code = None
    async with asyncio.timeout(10):
        while (exit_code := manager.poll_detached(result.detachment.pid)) is None:
            await asyncio.sleep(0.05)
    assert exit_code == 0
    with pytest.raises(KeyError):
        manager.poll_detached(result.detachment.pid)

    parsed = parse_log_file(log_file)
    assert parsed.session_id == "abc-1"
    assert parsed.content == "echo: background"
    assert parsed.completed is True


def test_poll_detached_rejects_unknown_pid(echo_manager: ProcessManager) -> None:
    with pytest.raises(KeyError):
        echo_manager.poll_detached(1)


def test_dry_run_renders_command_without_spawning() -> None:
    manager = ProcessManager(
        ProcessSettings(command=("claude",)),
        ClaudeCommandBuilder(("claude",)),
    )

    result = manager.dry_run("say 'hi'", ExecutionOptions(max_turns=2))

    assert result.success is True
    assert result.data["command"] == "claude"
    assert result.data["args"] == ["-p", "--max-turns", "2", "--output-format", "json"]
    assert result.data["fullCommand"] == (
        "printf '%s' 'say '\"'\"'hi'\"'\"'' | claude -p --max-turns 2 --output-format json"
    )


def test_finished_detached_children_are_reaped_on_next_start(
    make_echo_manager: Callable[..., ProcessManager],
    tmp_path: Path,
) -> None:
    manager = make_echo_manager()
    first = manager.execute_detached("one", ExecutionOptions(log_file=tmp_path / "one.log"))
    assert first.detachment is not None
    manager._detached[first.detachment.pid].wait(timeout=10)

    second = manager.execute_detached("two", ExecutionOptions(log_file=tmp_path / "two.log"))

    assert second.detachment is not None
    assert list(manager._detached) == [second.detachment.pid]
    with pytest.raises(KeyError):
        manager.poll_detached(first.detachment.pid)
    manager._detached[second.detachment.pid].wait(timeout=10)


STDIN_REPORT = "import sys; print(f'stdin={sys.stdin.read()!r} last={sys.argv[-1]}')"


@pytest.mark.parametrize(
    ("options", "expected"),
    [
        (ExecutionOptions(output_format=OutputFormat.TEXT), "stdin='new question' last=text"),
        (
            ExecutionOptions(resume="abc", output_format=OutputFormat.TEXT),
            "stdin='' last=new question",
        ),
        (
            ExecutionOptions(continue_session=True, output_format=OutputFormat.TEXT),
            "stdin='' last=new question",
        ),
    ],
)
@pytest.mark.asyncio
async def test_resumed_runs_take_prompt_from_argv_not_stdin(
    options: ExecutionOptions,
    expected: str,
) -> None:
    command = (sys.executable, "-c", STDIN_REPORT)
    manager = ProcessManager(ProcessSettings(command=command), ClaudeCommandBuilder(command))

    result = await manager.execute("new question", options)

    assert result.success is True, result.error
    assert result.text == expected


@pytest.mark.asyncio
async def test_resumed_echo_run_sees_prompt_once(echo_manager: ProcessManager) -> None:
    result = await echo_manager.execute("new question", ExecutionOptions(resume="abc"))

    assert result.text == "[resumed abc] echo: new question"


def test_dry_run_of_resumed_turn_has_no_stdin_pipe() -> None:
    manager = ProcessManager(
        ProcessSettings(command=("claude",)),
        ClaudeCommandBuilder(("claude",)),
    )

    result = manager.dry_run("go on", ExecutionOptions(resume="abc-1"))

    assert result.data["fullCommand"] == (
        "claude -p --resume abc-1 --output-format json 'go on'"
    )
