"""Conversation sessions chained across resumed tool runs."""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from dataclasses import replace
from pathlib import Path

from channelcoder.process.base import ExecutionOptions, ExecutionResult
from channelcoder.process.manager import ProcessManager
from channelcoder.session.models import (
    Message,
    PendingSessionId,
    Role,
    SessionMetadata,
    SessionRef,
    SessionState,
)
from channelcoder.session.storage import SessionStorage, SessionStorageError
from channelcoder.stream_parser.events import ChunkKind, OutputChunk
from channelcoder.stream_parser.parser import extract_session_id, is_terminal, to_chunk

logger = logging.getLogger(__name__)

SESSION_ID_MARKER = re.compile(r"Session ID: ([a-zA-Z0-9-]+)")

ExecuteFn = Callable[[str, ExecutionOptions], Awaitable[ExecutionResult]]


class SessionManager:
    """Keep the session chain and message history of one conversation.

    Every turn resumes the latest real session id in the chain. Calls on one
    instance are expected to be sequential.

    Example:
        manager = SessionManager(ProcessManager(), FileSessionStorage(path), name="review")
        await manager.run("Read src/ and list the modules")
        async for chunk in manager.stream_with_session("Now explain the first one"):
            print(chunk.text, end="")
    """

    def __init__(  # noqa: PLR0913
        self,
        process_manager: ProcessManager,
        storage: SessionStorage | None = None,
        *,
        name: str | None = None,
        auto_save: bool = True,
        state: SessionState | None = None,
    ) -> None:
        self.process_manager = process_manager
        self.storage = storage
        self.auto_save = auto_save
        self.state = state or SessionState(metadata=SessionMetadata(name=name))
        self.warnings: list[str] = []
        self._save_name: str | None = self.state.metadata.name

    @classmethod
    async def load(
        cls,
        name_or_path: str | Path,
        storage: SessionStorage,
        process_manager: ProcessManager,
        *,
        auto_save: bool = True,
    ) -> SessionManager:
        state = await storage.load(name_or_path)
        manager = cls(process_manager, storage, auto_save=auto_save, state=state)
        manager._save_name = state.metadata.name or Path(str(name_or_path)).stem
        return manager

    @property
    def current_id(self) -> SessionRef | None:
        return self.state.current_session_id

    @property
    def messages(self) -> list[Message]:
        return list(self.state.messages)

    async def execute_with_session(
        self,
        fn: ExecuteFn,
        prompt: str,
        options: ExecutionOptions | None = None,
    ) -> ExecutionResult:
        """Run one turn through `fn`, resuming the latest resolved session.

        On success the reported session id is appended to the chain and the
        user and assistant messages are recorded under it.
        """

        options = options or ExecutionOptions()
        resume_id = self.state.last_resolved_id() or options.resume
        result = await fn(prompt, replace(options, resume=resume_id))
        if not result.success:
            return result

        session_id = _extract_session_id(result)
        if session_id is None:
            logger.warning("Tool reported no session id; session chain unchanged")
            return result

        self.state.append_session(session_id)
        self._add_message(Role.USER, prompt, session_id)
        reply = _reply_text(result)
        if reply:
            self._add_message(Role.ASSISTANT, reply, session_id)
        await self.persist()
        return result

    async def run(self, prompt: str, options: ExecutionOptions | None = None) -> ExecutionResult:
        return await self.execute_with_session(self.process_manager.execute, prompt, options)

    async def stream_with_session(
        self,
        prompt: str,
        options: ExecutionOptions | None = None,
    ) -> AsyncIterator[OutputChunk]:
        """Stream one turn while keeping the history current.

        The user message is recorded before the tool starts, tagged with
        the resumed id or a pending placeholder. The assistant message is
        rewritten and persisted on every content chunk. Once the turn ends
        with a reported session id, a placeholder is replaced by it.
        """

        options = options or ExecutionOptions()
        resume_id = self.state.last_resolved_id() or options.resume
        turn_ref: SessionRef = resume_id or PendingSessionId.streaming()
        # Message session ids must name a chain entry, explicit resumes included.
        if isinstance(turn_ref, PendingSessionId) or turn_ref not in self.state.session_chain:
            self.state.append_session(turn_ref)
        self._add_message(Role.USER, prompt, turn_ref)
        await self.persist()

        assistant: Message | None = None
        parts: list[str] = []
        reported_id: str | None = None
        events = self.process_manager.stream_events(prompt, replace(options, resume=resume_id))
        async with aclosing(events) as stream:
            async for event in stream:
                reported_id = reported_id or extract_session_id(event)
                if is_terminal(event) and reported_id is not None:
                    turn_ref = self._resolve_turn(turn_ref, reported_id)
                    await self.persist()

                chunk = to_chunk(event)
                if chunk is None:
                    continue
                if chunk.kind == ChunkKind.CONTENT:
                    parts.append(chunk.text)
                    if assistant is None:
                        assistant = self._add_message(Role.ASSISTANT, "", turn_ref)
                    assistant.content = "".join(parts)
                    await self.persist()
                yield chunk

    async def detach(
        self,
        prompt: str,
        options: ExecutionOptions | None = None,
    ) -> ExecutionResult:
        """Start a detached turn tracked by a `detached-` placeholder.

        Without an explicit log file the run logs under the configured log
        directory, so the turn can be reconciled later.
        """

        options = options or ExecutionOptions()
        resume_id = self.state.last_resolved_id() or options.resume
        placeholder = PendingSessionId.detached()
        log_file = options.log_file or (
            self.process_manager.settings.log_dir / f"{placeholder.token}.jsonl"
        )
        result = self.process_manager.execute_detached(
            prompt,
            replace(options, resume=resume_id, log_file=log_file),
        )
        if not result.success:
            return result

        self.state.append_session(placeholder)
        self._add_message(Role.USER, prompt, placeholder)
        await self.persist()
        return result

    async def save(self, name: str | None = None) -> Path:
        """Save explicitly; unlike auto-save, failures propagate."""

        if self.storage is None:
            raise SessionStorageError("No storage configured for session")
        if name:
            self.state.metadata.name = name
            self._save_name = name
        path = await self.storage.save(self.state, self._save_name)
        self._save_name = path.stem
        return path

    async def persist(self) -> Path | None:
        """Auto-save hook; a failure becomes a warning and never raises."""

        if self.storage is None or not self.auto_save:
            return None
        try:
            return await self.save()
        except Exception as error:  # noqa: BLE001
            warning = f"Failed to save session: {error}"
            logger.warning(warning)
            self.warnings.append(warning)
            return None

    def clear(self) -> None:
        self.state = SessionState(metadata=SessionMetadata(name=self.state.metadata.name))

    def _resolve_turn(self, turn_ref: SessionRef, session_id: str) -> str:
        if isinstance(turn_ref, PendingSessionId):
            self.state.resolve_pending(session_id, lambda ref: ref == turn_ref)
            self.state.current_session_id = session_id
        else:
            self.state.append_session(session_id)
        logger.info("Stream turn resolved to session %s", session_id)
        self.state.touch()
        return session_id if isinstance(turn_ref, PendingSessionId) else turn_ref

    def _add_message(self, role: Role, content: str, session_id: SessionRef) -> Message:
        message = Message(role=role, content=content, session_id=session_id)
        self.state.messages.append(message)
        self.state.touch()
        return message


def _extract_session_id(result: ExecutionResult) -> str | None:
    if result.session_id:
        return result.session_id
    match = SESSION_ID_MARKER.search(result.stderr or "")
    if match:
        return match.group(1)
    if isinstance(result.data, dict):
        for key in ("sessionId", "session_id"):
            value = result.data.get(key)
            if isinstance(value, str) and value:
                return value
    return None


def _reply_text(result: ExecutionResult) -> str | None:
    if isinstance(result.data, str):
        return result.data
    return result.text
