"""Requests, results and errors of tool executions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class ExecutionMode(str, Enum):
    RUN = "run"
    STREAM = "stream"
    DETACHED = "detached"


class OutputFormat(str, Enum):
    JSON = "json"
    STREAM_JSON = "stream-json"
    TEXT = "text"


class FailureKind(str, Enum):
    """Error taxonomy shared by every execution mode."""

    SPAWN_FAILURE = "spawn_failure"
    NON_ZERO_EXIT = "non_zero_exit"
    TIMEOUT = "timeout"
    TOOL_UNAVAILABLE = "tool_unavailable"


@dataclass(slots=True)
class ExecutionOptions:
    """Per-call options mapped onto tool flags and process parameters."""

    resume: str | None = None
    continue_session: bool = False
    timeout_seconds: float | None = None
    mode: ExecutionMode = ExecutionMode.RUN
    output_format: OutputFormat | None = OutputFormat.JSON
    env: dict[str, str] | None = None
    cwd: Path | None = None
    verbose: bool = False
    system_prompt: str | None = None
    append_system_prompt: str | None = None
    allowed_tools: tuple[str, ...] = ()
    disallowed_tools: tuple[str, ...] = ()
    max_turns: int | None = None
    mcp_config: str | None = None
    permission_tool: str | None = None
    log_file: Path | None = None

    @property
    def resumes_session(self) -> bool:
        """Resumed and continued runs get no prompt on stdin."""

        return bool(self.resume) or self.continue_session


@dataclass(slots=True)
class ExecutionRequest:
    prompt: str
    options: ExecutionOptions = field(default_factory=ExecutionOptions)


@dataclass(slots=True)
class ExecutionError:
    """Why an execution did not succeed.

    `structured` is set for non-zero exits whose stdout carried an error
    payload from the tool, as opposed to a raw stderr dump.
    """

    kind: FailureKind
    message: str
    exit_code: int | None = None
    structured: bool = False
    payload: dict[str, Any] | None = None
    reason: str | None = None


@dataclass(slots=True)
class Detachment:
    pid: int
    log_path: Path | None


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one execution."""

    success: bool
    stdout: str = ""
    stderr: str = ""
    data: Any = None
    text: str | None = None
    warnings: list[str] = field(default_factory=list)
    session_id: str | None = None
    error: ExecutionError | None = None
    exit_code: int | None = None
    detachment: Detachment | None = None

    @classmethod
    def failure(cls, error: ExecutionError, *, stdout: str = "", stderr: str = "") -> ExecutionResult:
        return cls(
            success=False,
            stdout=stdout,
            stderr=stderr,
            error=error,
            exit_code=error.exit_code,
        )


class ProcessError(RuntimeError):
    """Execution could not start."""

    def __init__(self, message: str, *, kind: FailureKind) -> None:
        super().__init__(message)
        self.kind = kind

    def to_execution_error(self) -> ExecutionError:
        return ExecutionError(kind=self.kind, message=str(self))
