"""Shared test fixtures."""

from __future__ import annotations

import json
import shlex
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from channelcoder.config import ProcessSettings
from channelcoder.process.command import ClaudeCommandBuilder
from channelcoder.process.manager import ProcessManager

ECHO_AGENT_COMMAND = (sys.executable, "-m", "channelcoder.process.echo_agent")


def _echo_process_manager(
    *extra_args: str,
    timeout_seconds: float | None = None,
    log_dir: Path | None = None,
) -> ProcessManager:
    """Process manager spawning the echo agent with extra behaviour flags."""

    settings = ProcessSettings(
        command=(*ECHO_AGENT_COMMAND, *extra_args),
        timeout_seconds=timeout_seconds,
        graceful_shutdown_seconds=0.5,
    )
    if log_dir is not None:
        settings.log_dir = log_dir
    return ProcessManager(settings, ClaudeCommandBuilder(settings.command))


@pytest.fixture()
def make_echo_manager() -> Callable[..., ProcessManager]:
    return _echo_process_manager


@pytest.fixture()
def echo_manager() -> ProcessManager:
    return _echo_process_manager()


@pytest.fixture()
def write_log(tmp_path: Path) -> Callable[..., Path]:
    """Write events (dicts or raw strings) as a line-delimited log file."""

    def _write(*events: dict | str, name: str = "run.log") -> Path:
        path = tmp_path / name
        lines = [event if isinstance(event, str) else json.dumps(event) for event in events]
        path.write_text("".join(f"{line}\n" for line in lines), "utf-8")
        return path

    return _write


@pytest.fixture()
def channelcoder_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate settings read from the environment under a temp directory."""

    home = tmp_path / "home"
    monkeypatch.setenv("CHANNELCODER_HOME", str(home))
    monkeypatch.setenv("CHANNELCODER_CLAUDE_COMMAND", shlex.join(ECHO_AGENT_COMMAND))
    for name in (
        "CHANNELCODER_LOG_DIR",
        "CHANNELCODER_SESSIONS_DIR",
        "CHANNELCODER_TIMEOUT_SECONDS",
        "CHANNELCODER_MONITOR_USE_WATCH",
    ):
        monkeypatch.delenv(name, raising=False)
    return home
