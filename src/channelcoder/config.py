"""Runtime configuration for process execution, log monitoring and sessions."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

_DEFAULT_HOME = Path.home() / ".channelcoder"


@dataclass(slots=True)
class ProcessSettings:
    """External tool invocation settings."""

    command: tuple[str, ...] = ("claude",)
    timeout_seconds: float | None = None
    graceful_shutdown_seconds: float = 2.0
    stream_poll_seconds: float = 0.01
    log_dir: Path = _DEFAULT_HOME / "logs"


@dataclass(slots=True)
class MonitorSettings:
    """Log monitor settings."""

    poll_seconds: float = 0.1
    debounce_ms: int = 100
    use_watch: bool = False


@dataclass(slots=True)
class SessionSettings:
    """Session persistence and detached reconciliation settings."""

    sessions_dir: Path = _DEFAULT_HOME / "sessions"
    detached_poll_seconds: float = 1.0
    detached_max_wait_seconds: float = 60.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    process: ProcessSettings = field(default_factory=ProcessSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    sessions: SessionSettings = field(default_factory=SessionSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from `CHANNELCODER_*` environment variables."""

        home = Path(os.getenv("CHANNELCODER_HOME", str(_DEFAULT_HOME))).expanduser()
        return cls(
            process=ProcessSettings(
                command=_command_from_env("CHANNELCODER_CLAUDE_COMMAND", default=("claude",)),
                timeout_seconds=_optional_float("CHANNELCODER_TIMEOUT_SECONDS"),
                graceful_shutdown_seconds=float(
                    os.getenv("CHANNELCODER_GRACEFUL_SHUTDOWN_SECONDS", "2.0"),
                ),
                stream_poll_seconds=float(os.getenv("CHANNELCODER_STREAM_POLL_SECONDS", "0.01")),
                log_dir=Path(os.getenv("CHANNELCODER_LOG_DIR", str(home / "logs"))).expanduser(),
            ),
            monitor=MonitorSettings(
                poll_seconds=float(os.getenv("CHANNELCODER_MONITOR_POLL_SECONDS", "0.1")),
                debounce_ms=int(os.getenv("CHANNELCODER_MONITOR_DEBOUNCE_MS", "100")),
                use_watch=_env_bool("CHANNELCODER_MONITOR_USE_WATCH", default=False),
            ),
            sessions=SessionSettings(
                sessions_dir=Path(
                    os.getenv("CHANNELCODER_SESSIONS_DIR", str(home / "sessions")),
                ).expanduser(),
                detached_poll_seconds=float(
                    os.getenv("CHANNELCODER_DETACHED_POLL_SECONDS", "1.0"),
                ),
                detached_max_wait_seconds=float(
                    os.getenv("CHANNELCODER_DETACHED_MAX_WAIT_SECONDS", "60.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on unusable values."""

        if not self.process.command:
            raise ValueError("CHANNELCODER_CLAUDE_COMMAND must not be empty.")
        if self.process.timeout_seconds is not None and self.process.timeout_seconds <= 0:
            raise ValueError("CHANNELCODER_TIMEOUT_SECONDS must be > 0.")
        if self.process.graceful_shutdown_seconds < 0:
            raise ValueError("CHANNELCODER_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.process.stream_poll_seconds <= 0:
            raise ValueError("CHANNELCODER_STREAM_POLL_SECONDS must be > 0.")
        if self.monitor.poll_seconds <= 0:
            raise ValueError("CHANNELCODER_MONITOR_POLL_SECONDS must be > 0.")
        if self.monitor.debounce_ms < 0:
            raise ValueError("CHANNELCODER_MONITOR_DEBOUNCE_MS must be >= 0.")
        if self.sessions.detached_poll_seconds <= 0:
            raise ValueError("CHANNELCODER_DETACHED_POLL_SECONDS must be > 0.")
        if self.sessions.detached_max_wait_seconds < 0:
            raise ValueError("CHANNELCODER_DETACHED_MAX_WAIT_SECONDS must be >= 0.")


def _command_from_env(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    argv = tuple(shlex.split(raw))
    if not argv:
        raise ValueError(f"{name} rendered an empty command.")
    return argv


def _optional_float(name: str) -> float | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {raw!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
