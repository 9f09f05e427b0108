"""Controllers for channelcoder CLI commands."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from channelcoder.config import Settings
from channelcoder.process import (
    ExecutionMode,
    ExecutionOptions,
    ExecutionRequest,
    ExecutionResult,
    ProcessManager,
)
from channelcoder.session.detached import monitor_detached_session, reconcile_detached
from channelcoder.session.manager import SessionManager
from channelcoder.session.models import Message
from channelcoder.session.storage import FileSessionStorage, SessionStorageError
from channelcoder.stream_parser import (
    ChunkKind,
    MonitorOptions,
    OutputChunk,
    create_async_monitor,
    get_log_summary,
    is_terminal,
    is_valid_log_file,
    parse_log_file,
    to_chunk,
)

logger = logging.getLogger(__name__)

Emit = Callable[[str], None]


@dataclass(slots=True)
class ExecuteCommand:
    """CLI input for `run` and `stream`."""

    prompt: str
    resume: str | None = None
    continue_session: bool = False
    timeout_seconds: float | None = None
    system_prompt: str | None = None
    allowed_tools: tuple[str, ...] = ()
    max_turns: int | None = None
    session: str | None = None
    dry_run: bool = False
    verbose: bool = False


@dataclass(slots=True)
class DetachedCommand:
    """CLI input for `detached`."""

    prompt: str
    log_file: Path | None = None
    resume: str | None = None
    session: str | None = None
    wait: bool = False


@dataclass(slots=True)
class LogFollowCommand:
    """CLI input for `log follow`."""

    path: Path
    initial_lines: int | None = None
    until_terminal: bool = False
    timeout_seconds: float | None = None
    use_watch: bool | None = None


@dataclass(slots=True)
class SessionReconcileCommand:
    name: str
    log_path: Path


@dataclass(slots=True)
class CommandResult:
    lines: list[str] = field(default_factory=list)
    success: bool = True


class ChannelCoderCliController:
    """Coordinates execution, log and session CLI operations."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings

    @property
    def settings(self) -> Settings:
        """Explicit settings, else a fresh read of the environment."""

        if self._settings is not None:
            return self._settings
        settings = Settings.from_env()
        settings.validate()
        return settings

    def run(self, command: ExecuteCommand) -> CommandResult:
        request = _execution_request(command, ExecutionMode.RUN)
        process_manager = ProcessManager(self.settings.process)
        if command.dry_run:
            return _render_dry_run(process_manager.dry_run(request.prompt, request.options))
        return asyncio.run(self._run(process_manager, request, command.session))

    def stream(self, command: ExecuteCommand, emit: Emit) -> CommandResult:
        """Print content as it arrives; tool activity goes to the log."""

        request = _execution_request(command, ExecutionMode.STREAM)
        process_manager = ProcessManager(self.settings.process)
        if command.dry_run:
            return _render_dry_run(process_manager.dry_run(request.prompt, request.options))
        return asyncio.run(self._stream(process_manager, request, command.session, emit))

    def detached(self, command: DetachedCommand) -> CommandResult:
        process_manager = ProcessManager(self.settings.process)
        options = ExecutionOptions(
            resume=command.resume,
            mode=ExecutionMode.DETACHED,
            log_file=command.log_file,
        )
        return asyncio.run(self._detached(process_manager, command, options))

    def log_parse(self, path: Path) -> CommandResult:
        if not is_valid_log_file(path):
            return CommandResult(lines=[f"Not a valid log file: {path}"], success=False)
        parsed = parse_log_file(path)
        metadata = parsed.metadata
        lines = [
            f"Session: {parsed.session_id or '-'}",
            f"Events: {len(parsed.events)} completed={parsed.completed}",
            f"Model: {metadata.model or '-'}",
            f"Tools used: {', '.join(metadata.tools_used) or '-'}",
            f"Cost: {_format_cost(metadata.total_cost)} duration_ms={metadata.duration_ms or '-'}"
            f" turns={metadata.turns or '-'}",
        ]
        if parsed.content:
            lines.extend(["", parsed.content])
        return CommandResult(lines=lines)

    def log_summary(self, path: Path) -> CommandResult:
        if not path.is_file():
            return CommandResult(lines=[f"Log file not found: {path}"], success=False)
        summary = asyncio.run(get_log_summary(path))
        return CommandResult(
            lines=[
                json.dumps(
                    {
                        "session_id": summary.session_id,
                        "event_count": summary.event_count,
                        "message_count": summary.message_count,
                        "has_errors": summary.has_errors,
                        "total_cost": summary.total_cost,
                        "duration_ms": summary.duration_ms,
                    },
                    indent=2,
                ),
            ],
        )

    def log_follow(self, command: LogFollowCommand, emit: Emit) -> CommandResult:
        monitor_settings = self.settings.monitor
        options = MonitorOptions(
            use_watch=(
                monitor_settings.use_watch if command.use_watch is None else command.use_watch
            ),
            initial_lines=command.initial_lines,
            debounce_ms=monitor_settings.debounce_ms,
            poll_seconds=monitor_settings.poll_seconds,
        )
        return asyncio.run(_follow(command, options, emit))

    def session_list(self) -> CommandResult:
        sessions = asyncio.run(self._storage().list())
        if not sessions:
            return CommandResult(lines=["No saved sessions."])
        lines = ["name | messages | last active | created"]
        lines.extend(
            f"{info.name} | {info.message_count} | "
            f"{info.last_active.isoformat(timespec='seconds')} | "
            f"{info.created.isoformat(timespec='seconds')}"
            for info in sessions
        )
        return CommandResult(lines=lines)

    def session_show(self, name: str) -> CommandResult:
        try:
            state = asyncio.run(self._storage().load(name))
        except SessionStorageError as error:
            return CommandResult(lines=[str(error)], success=False)
        lines = [
            f"Session: {state.metadata.name or name}",
            f"Chain: {' -> '.join(str(ref) for ref in state.session_chain) or '-'}",
            f"Current: {state.current_session_id or '-'}",
            f"Messages: {len(state.messages)}",
        ]
        lines.extend(_render_message(message) for message in state.messages)
        return CommandResult(lines=lines)

    def session_remove(self, name: str) -> CommandResult:
        try:
            asyncio.run(self._storage().delete(name))
        except SessionStorageError as error:
            return CommandResult(lines=[str(error)], success=False)
        return CommandResult(lines=[f"Session removed: {name}"])

    def session_reconcile(self, command: SessionReconcileCommand) -> CommandResult:
        return asyncio.run(self._reconcile(command))

    async def _run(
        self,
        process_manager: ProcessManager,
        request: ExecutionRequest,
        session_name: str | None,
    ) -> CommandResult:
        if session_name is None:
            result = await process_manager.execute(request.prompt, request.options)
            return _render_result(result)
        manager = await self._session_manager(session_name, process_manager)
        result = await manager.run(request.prompt, request.options)
        rendered = _render_result(result)
        rendered.lines.extend(_session_footer(manager))
        return rendered

    async def _stream(
        self,
        process_manager: ProcessManager,
        request: ExecutionRequest,
        session_name: str | None,
        emit: Emit,
    ) -> CommandResult:
        manager: SessionManager | None = None
        if session_name is None:
            chunks = process_manager.stream(request.prompt, request.options)
        else:
            manager = await self._session_manager(session_name, process_manager)
            chunks = manager.stream_with_session(request.prompt, request.options)

        success = True
        async for chunk in chunks:
            success = _emit_chunk(chunk, emit) and success
        result = CommandResult(success=success)
        if manager is not None:
            result.lines.extend(_session_footer(manager))
        return result

    async def _detached(
        self,
        process_manager: ProcessManager,
        command: DetachedCommand,
        options: ExecutionOptions,
    ) -> CommandResult:
        manager: SessionManager | None = None
        if command.session is None:
            result = process_manager.execute_detached(command.prompt, options)
        else:
            manager = await self._session_manager(command.session, process_manager)
            result = await manager.detach(command.prompt, options)
        if not result.success or result.detachment is None:
            return _render_result(result)

        detachment = result.detachment
        lines = [
            f"Detached: pid={detachment.pid}",
            f"Log: {detachment.log_path or 'discarded'}",
        ]
        if manager is not None and command.wait and detachment.log_path is not None:
            sessions = self.settings.sessions
            finished = await monitor_detached_session(
                manager,
                detachment.log_path,
                poll_interval=sessions.detached_poll_seconds,
                max_wait=sessions.detached_max_wait_seconds,
            )
            lines.append("Detached run finished." if finished else "Detached run still running.")
        if manager is not None:
            lines.extend(_session_footer(manager))
        return CommandResult(lines=lines)

    async def _reconcile(self, command: SessionReconcileCommand) -> CommandResult:
        storage = self._storage()
        try:
            manager = await SessionManager.load(
                command.name,
                storage,
                ProcessManager(self.settings.process),
            )
        except SessionStorageError as error:
            return CommandResult(lines=[str(error)], success=False)
        if not reconcile_detached(manager.state, command.log_path):
            return CommandResult(
                lines=[f"Nothing to reconcile yet from {command.log_path}"],
                success=False,
            )
        path = await manager.save()
        return CommandResult(
            lines=[f"Session reconciled: current={manager.current_id}", f"Saved: {path}"],
        )

    async def _session_manager(
        self,
        name: str,
        process_manager: ProcessManager,
    ) -> SessionManager:
        storage = self._storage()
        if await storage.exists(name):
            return await SessionManager.load(name, storage, process_manager)
        return SessionManager(process_manager, storage, name=name)

    def _storage(self) -> FileSessionStorage:
        return FileSessionStorage(self.settings.sessions.sessions_dir)


async def _follow(command: LogFollowCommand, options: MonitorOptions, emit: Emit) -> CommandResult:
    success = True
    async with create_async_monitor(command.path, options) as monitor:
        try:
            async with asyncio.timeout(command.timeout_seconds):
                async for event in monitor.events:
                    chunk = to_chunk(event)
                    if chunk is not None:
                        success = _emit_chunk(chunk, emit) and success
                    if command.until_terminal and is_terminal(event):
                        break
        except TimeoutError:
            return CommandResult(
                lines=[f"Stopped following after {command.timeout_seconds:g}s"],
                success=success,
            )
    return CommandResult(success=success)


def _execution_request(command: ExecuteCommand, mode: ExecutionMode) -> ExecutionRequest:
    return ExecutionRequest(
        prompt=command.prompt,
        options=ExecutionOptions(
            resume=command.resume,
            continue_session=command.continue_session,
            timeout_seconds=command.timeout_seconds,
            mode=mode,
            system_prompt=command.system_prompt,
            allowed_tools=command.allowed_tools,
            max_turns=command.max_turns,
            verbose=command.verbose,
        ),
    )


def _emit_chunk(chunk: OutputChunk, emit: Emit) -> bool:
    if chunk.kind == ChunkKind.CONTENT:
        emit(chunk.text)
        return True
    if chunk.kind == ChunkKind.ERROR:
        emit(f"Error: {chunk.text}")
        return False
    logger.info("%s %s: %.200s", chunk.kind.value, chunk.tool or "-", chunk.text)
    return True


def _render_result(result: ExecutionResult) -> CommandResult:
    if not result.success:
        error = result.error
        lines = [f"Error: {error.message if error else 'execution failed'}"]
        if error is not None and error.reason:
            lines.append(f"Reason: {error.reason}")
        return CommandResult(lines=lines, success=False)

    lines: list[str] = []
    if result.text is not None:
        lines.append(result.text)
    elif result.data is not None:
        lines.append(json.dumps(result.data, ensure_ascii=False, indent=2))
    lines.extend(f"Warning: {warning}" for warning in result.warnings)
    return CommandResult(lines=lines)


def _render_dry_run(result: ExecutionResult) -> CommandResult:
    return CommandResult(lines=[result.data["fullCommand"]])


def _session_footer(manager: SessionManager) -> list[str]:
    lines = [f"Session: {manager.state.metadata.name} current={manager.current_id or '-'}"]
    lines.extend(f"Warning: {warning}" for warning in manager.warnings)
    return lines


def _render_message(message: Message) -> str:
    preview = message.content.replace("\n", " ")
    if len(preview) > 120:
        preview = f"{preview[:117]}..."
    return f"[{message.role.value} @ {message.session_id}] {preview}"


def _format_cost(cost: float | None) -> str:
    return "-" if cost is None else f"${cost:.4f}"
