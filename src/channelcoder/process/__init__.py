"""Tool process execution in run, stream and detached modes."""

from channelcoder.process.base import (
    Detachment,
    ExecutionError,
    ExecutionMode,
    ExecutionOptions,
    ExecutionRequest,
    ExecutionResult,
    FailureKind,
    OutputFormat,
    ProcessError,
)
from channelcoder.process.command import ClaudeCommandBuilder, CommandBuilder
from channelcoder.process.manager import ProcessManager

__all__ = [
    "ClaudeCommandBuilder",
    "CommandBuilder",
    "Detachment",
    "ExecutionError",
    "ExecutionMode",
    "ExecutionOptions",
    "ExecutionRequest",
    "ExecutionResult",
    "FailureKind",
    "OutputFormat",
    "ProcessError",
    "ProcessManager",
]
