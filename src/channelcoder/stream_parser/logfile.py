"""Reading complete log files written by detached or streamed runs."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path

import aiofiles

from channelcoder.session.models import Message, Role
from channelcoder.stream_parser.events import (
    AssistantMessageEvent,
    ChunkKind,
    ErrorEvent,
    Event,
    OutputChunk,
    ResultEvent,
    ToolInvocationEvent,
)
from channelcoder.stream_parser.parser import (
    extract_assistant_text,
    extract_session_id,
    is_terminal,
    parse_event,
)
from channelcoder.stream_parser.stream import parse_event_stream

logger = logging.getLogger(__name__)

_VALIDITY_PROBE_BYTES = 1024


@dataclass(slots=True)
class LogMetadata:
    """Run metrics collected from result and assistant events."""

    total_cost: float | None = None
    duration_ms: int | None = None
    turns: int | None = None
    model: str | None = None
    tools_used: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ParsedLog:
    """Structured view of one log file."""

    events: list[Event]
    chunks: list[OutputChunk]
    session_id: str | None
    content: str
    messages: list[Message]
    metadata: LogMetadata
    completed: bool


@dataclass(slots=True)
class LogSummary:
    session_id: str | None
    event_count: int
    message_count: int
    has_errors: bool
    total_cost: float | None
    duration_ms: int | None


def parse_log_file(log_path: Path) -> ParsedLog:
    """Parse every line of a log file.

    The session id is the first one reported by any event; assistant text
    becomes one message per event and `content` joins them with newlines.
    """

    text = log_path.read_text("utf-8", errors="replace")
    events: list[Event] = []
    messages: list[Message] = []
    chunks: list[OutputChunk] = []
    metadata = LogMetadata()
    session_id: str | None = None
    completed = False

    for line in text.splitlines():
        event = parse_event(line)
        if event is None:
            continue
        events.append(event)
        if session_id is None:
            session_id = extract_session_id(event)
        if is_terminal(event):
            completed = True

        if isinstance(event, AssistantMessageEvent):
            assistant_text = extract_assistant_text(event)
            if metadata.model is None and event.model:
                metadata.model = event.model
            if assistant_text:
                messages.append(
                    Message(
                        role=Role.ASSISTANT,
                        content=assistant_text,
                        session_id=event.session_id or session_id or "",
                    ),
                )
                chunks.append(
                    OutputChunk(
                        kind=ChunkKind.CONTENT,
                        text=assistant_text,
                        metadata={
                            "session_id": event.session_id,
                            "message_id": event.message_id,
                        },
                    ),
                )
        elif isinstance(event, ToolInvocationEvent):
            if event.tool and event.tool not in metadata.tools_used:
                metadata.tools_used.append(event.tool)
        elif isinstance(event, ResultEvent):
            _merge_result_metrics(metadata, event)

    return ParsedLog(
        events=events,
        chunks=chunks,
        session_id=session_id,
        content="\n".join(message.content for message in messages),
        messages=messages,
        metadata=metadata,
        completed=completed,
    )


async def read_log_lines(log_path: Path) -> AsyncIterator[str]:
    """Yield lines lazily, without trailing newlines."""

    async with aiofiles.open(log_path, encoding="utf-8", errors="replace") as handle:
        async for line in handle:
            yield line.rstrip("\r\n")


async def parse_log_stream(log_path: Path) -> AsyncIterator[Event]:
    async for event in parse_event_stream(read_log_lines(log_path)):
        yield event


async def get_log_summary(log_path: Path) -> LogSummary:
    """Summarize a log without keeping its events in memory."""

    session_id: str | None = None
    event_count = 0
    message_count = 0
    has_errors = False
    total_cost: float | None = None
    duration_ms: int | None = None

    async for event in parse_log_stream(log_path):
        event_count += 1
        if session_id is None:
            session_id = extract_session_id(event)
        if isinstance(event, AssistantMessageEvent):
            message_count += 1
        if isinstance(event, ErrorEvent) or (isinstance(event, ResultEvent) and event.failed):
            has_errors = True
        if isinstance(event, ResultEvent):
            if event.total_cost:
                total_cost = event.total_cost
            if event.duration_ms:
                duration_ms = event.duration_ms

    return LogSummary(
        session_id=session_id,
        event_count=event_count,
        message_count=message_count,
        has_errors=has_errors,
        total_cost=total_cost,
        duration_ms=duration_ms,
    )


def is_valid_log_file(log_path: Path) -> bool:
    """True when the first kilobyte holds at least one decodable event."""

    try:
        if not log_path.is_file():
            return False
        with log_path.open("r", encoding="utf-8", errors="replace") as handle:
            head = handle.read(_VALIDITY_PROBE_BYTES)
    except OSError as error:
        logger.debug("Cannot probe log file %s: %s", log_path, error)
        return False
    return any(parse_event(line) is not None for line in head.splitlines())


def _merge_result_metrics(metadata: LogMetadata, event: ResultEvent) -> None:
    cost = event.total_cost or event.cost_usd
    if cost:
        metadata.total_cost = cost
    if event.duration_ms:
        metadata.duration_ms = event.duration_ms
    if event.num_turns:
        metadata.turns = event.num_turns
