"""Orchestration of Claude Code CLI runs: processes, event streams, logs and sessions."""

__version__ = "0.1.0"
