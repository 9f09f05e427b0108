"""Argument vector construction for the external tool."""

from __future__ import annotations

import shlex
from typing import Protocol

from channelcoder.process.base import ExecutionMode, ExecutionOptions, OutputFormat


class CommandBuilder(Protocol):
    """Maps an options record to the argument vector spawned verbatim."""

    def build(self, options: ExecutionOptions, prompt: str = "") -> list[str]:
        """Return the full argument vector, executable first.

        `prompt` is only placed in the vector when it cannot go to stdin.
        """


class ClaudeCommandBuilder:
    """Render options as `claude -p` command-line flags.

    A follow-up prompt for a resumed or continued session is passed as the
    trailing positional argument.
    """

    def __init__(self, executable: tuple[str, ...] = ("claude",)) -> None:
        if not executable:
            raise ValueError("Tool executable must not be empty.")
        self.executable = executable

    def build(self, options: ExecutionOptions, prompt: str = "") -> list[str]:  # noqa: C901
        argv = [*self.executable, "-p"]

        if options.system_prompt:
            argv.extend(["--system-prompt", options.system_prompt])
        if options.append_system_prompt:
            argv.extend(["--append-system-prompt", options.append_system_prompt])
        if options.allowed_tools:
            argv.extend(["--allowedTools", " ".join(options.allowed_tools)])
        if options.disallowed_tools:
            argv.extend(["--disallowedTools", " ".join(options.disallowed_tools)])
        if options.mcp_config:
            argv.extend(["--mcp-config", options.mcp_config])
        if options.permission_tool:
            argv.extend(["--permission-prompt-tool", options.permission_tool])
        if options.resume:
            argv.extend(["--resume", options.resume])
        elif options.continue_session:
            argv.append("--continue")
        if options.max_turns is not None:
            argv.extend(["--max-turns", str(options.max_turns)])

        output_format = options.output_format
        if options.mode == ExecutionMode.STREAM:
            output_format = OutputFormat.STREAM_JSON
        if output_format is not None:
            argv.extend(["--output-format", output_format.value])
        # stream-json output is only emitted together with --verbose
        if output_format == OutputFormat.STREAM_JSON or options.verbose:
            argv.append("--verbose")
        if prompt and options.resumes_session:
            argv.append(prompt)
        return argv


def render_shell_command(argv: list[str], prompt: str, *, pipe_prompt: bool) -> str:
    """Shell rendering of an invocation, the prompt piped to stdin."""

    command = shlex.join(argv)
    if not pipe_prompt:
        return command
    return f"printf '%s' {shlex.quote(prompt)} | {command}"
