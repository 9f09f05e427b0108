"""Typed events of the line-delimited JSON protocol emitted by the tool."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

SYSTEM = "system"
ASSISTANT = "assistant"
RESULT = "result"
TOOL_USE = "tool_use"
TOOL_RESULT = "tool_result"
ERROR = "error"

KNOWN_EVENT_TYPES: frozenset[str] = frozenset(
    {SYSTEM, ASSISTANT, RESULT, TOOL_USE, TOOL_RESULT, ERROR},
)


@dataclass(slots=True)
class Event:
    """Common part of every decoded protocol line."""

    type: str
    session_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(slots=True)
class McpServerStatus:
    """One MCP server entry announced by the init event."""

    name: str
    status: str


@dataclass(slots=True)
class InitEvent(Event):
    """`system` event; `subtype` is normally `init`."""

    subtype: str = "init"
    tools: list[str] = field(default_factory=list)
    mcp_servers: list[McpServerStatus] = field(default_factory=list)


@dataclass(slots=True)
class AssistantMessageEvent(Event):
    """`assistant` event; only `text` blocks of `content` are interpreted."""

    message_id: str | None = None
    model: str | None = None
    content: list[dict[str, Any]] = field(default_factory=list)
    stop_reason: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ToolInvocationEvent(Event):
    """`tool_use` event with an opaque input payload."""

    tool: str = ""
    input: Any = None
    timestamp: float | None = None


@dataclass(slots=True)
class ToolResultEvent(Event):
    """`tool_result` event with an opaque output payload."""

    tool: str = ""
    output: Any = None
    timestamp: float | None = None


@dataclass(slots=True)
class ResultEvent(Event):
    """Terminal `result` event closing one turn."""

    subtype: str = "success"
    is_error: bool = False
    result: str | None = None
    error: str | None = None
    cost_usd: float | None = None
    total_cost: float | None = None
    duration_ms: int | None = None
    duration_api_ms: int | None = None
    num_turns: int | None = None

    @property
    def failed(self) -> bool:
        return self.subtype == ERROR or self.is_error


@dataclass(slots=True)
class ErrorEvent(Event):
    """Terminal `error` event."""

    error: str = ""
    code: str | None = None


@dataclass(slots=True)
class UnknownEvent(Event):
    """Event with a discriminator this version does not recognize.

    The decoded object is kept in `raw` so newer protocol revisions pass
    through untouched.
    """


class ChunkKind(str, Enum):
    """Kinds of simplified output chunks."""

    CONTENT = "content"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    ERROR = "error"


@dataclass(slots=True)
class OutputChunk:
    """Lossy projection of an event for display and accumulation."""

    kind: ChunkKind
    text: str
    timestamp: float = field(default_factory=time.time)
    tool: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
