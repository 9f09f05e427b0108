"""Tolerant decoding of protocol lines and projection into output chunks."""

from __future__ import annotations

import json
import time
from collections.abc import Iterable
from typing import Any

from channelcoder.stream_parser.events import (
    ASSISTANT,
    ERROR,
    RESULT,
    SYSTEM,
    TOOL_RESULT,
    TOOL_USE,
    AssistantMessageEvent,
    ChunkKind,
    ErrorEvent,
    Event,
    InitEvent,
    McpServerStatus,
    OutputChunk,
    ResultEvent,
    ToolInvocationEvent,
    ToolResultEvent,
    UnknownEvent,
)


def parse_event(line: str) -> Event | None:
    """Decode one protocol line.

    Returns `None` for blank lines, invalid JSON, non-object payloads and
    objects without a string `type`. Never raises.
    """

    if not line or not line.strip():
        return None
    try:
        payload = json.loads(line)
    except (json.JSONDecodeError, RecursionError):
        return None
    if not isinstance(payload, dict):
        return None
    event_type = payload.get("type")
    if not isinstance(event_type, str):
        return None

    decoder = _DECODERS.get(event_type)
    if decoder is None:
        return UnknownEvent(
            type=event_type,
            session_id=_str_or_none(payload.get("session_id")),
            raw=payload,
        )
    return decoder(payload)


def parse_events(lines: Iterable[str]) -> list[Event]:
    """Decode many lines, dropping the ones that do not parse."""

    events: list[Event] = []
    for line in lines:
        event = parse_event(line)
        if event is not None:
            events.append(event)
    return events


def extract_assistant_text(event: AssistantMessageEvent) -> str:
    """Concatenate, in order, the text of every `text` block."""

    return "".join(
        block["text"]
        for block in event.content
        if block.get("type") == "text" and isinstance(block.get("text"), str)
    )


def extract_session_id(event: Event) -> str | None:
    """Top-level session identifier of any event kind."""

    return event.session_id


def is_terminal(event: Event) -> bool:
    """True for the events that end one turn: `result` and `error`."""

    return isinstance(event, ResultEvent | ErrorEvent)


def to_chunk(event: Event) -> OutputChunk | None:  # noqa: PLR0911
    """Project an event into an output chunk, or `None` for structural events."""

    now = time.time()
    if isinstance(event, AssistantMessageEvent):
        text = extract_assistant_text(event)
        if not text:
            return None
        return OutputChunk(
            kind=ChunkKind.CONTENT,
            text=text,
            timestamp=now,
            metadata={
                "session_id": event.session_id,
                "message_id": event.message_id,
                "model": event.model,
            },
        )
    if isinstance(event, ToolInvocationEvent):
        return OutputChunk(
            kind=ChunkKind.TOOL_USE,
            text=_serialize_payload(event.input),
            timestamp=event.timestamp or now,
            tool=event.tool,
            metadata={"session_id": event.session_id},
        )
    if isinstance(event, ToolResultEvent):
        return OutputChunk(
            kind=ChunkKind.TOOL_RESULT,
            text=_serialize_payload(event.output),
            timestamp=event.timestamp or now,
            tool=event.tool,
            metadata={"session_id": event.session_id},
        )
    if isinstance(event, ErrorEvent):
        return OutputChunk(
            kind=ChunkKind.ERROR,
            text=event.error,
            timestamp=now,
            metadata={"code": event.code, "session_id": event.session_id},
        )
    if isinstance(event, ResultEvent):
        if not event.failed:
            return None
        return OutputChunk(
            kind=ChunkKind.ERROR,
            text=event.error or event.result or "Execution finished with an error result",
            timestamp=now,
            metadata={
                "session_id": event.session_id,
                "cost_usd": event.cost_usd,
                "duration_ms": event.duration_ms,
            },
        )
    return None


def _serialize_payload(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, indent=2, default=str)


def _decode_system(payload: dict[str, Any]) -> InitEvent:
    servers: list[McpServerStatus] = []
    raw_servers = payload.get("mcp_servers")
    if isinstance(raw_servers, list):
        for item in raw_servers:
            if isinstance(item, dict) and isinstance(item.get("name"), str):
                servers.append(
                    McpServerStatus(name=item["name"], status=str(item.get("status", ""))),
                )
    return InitEvent(
        type=SYSTEM,
        session_id=_str_or_none(payload.get("session_id")),
        raw=payload,
        subtype=_str_or_none(payload.get("subtype")) or "init",
        tools=_str_list(payload.get("tools")),
        mcp_servers=servers,
    )


def _decode_assistant(payload: dict[str, Any]) -> AssistantMessageEvent:
    message = payload.get("message")
    if not isinstance(message, dict):
        message = {}
    content = message.get("content")
    blocks: list[dict[str, Any]] = []
    if isinstance(content, list):
        blocks = [block for block in content if isinstance(block, dict)]
    usage = message.get("usage")
    return AssistantMessageEvent(
        type=ASSISTANT,
        session_id=_str_or_none(payload.get("session_id")),
        raw=payload,
        message_id=_str_or_none(message.get("id")),
        model=_str_or_none(message.get("model")),
        content=blocks,
        stop_reason=_str_or_none(message.get("stop_reason")),
        usage=usage if isinstance(usage, dict) else {},
    )


def _decode_result(payload: dict[str, Any]) -> ResultEvent:
    return ResultEvent(
        type=RESULT,
        session_id=_str_or_none(payload.get("session_id")),
        raw=payload,
        subtype=_str_or_none(payload.get("subtype")) or "success",
        is_error=payload.get("is_error") is True,
        result=_str_or_none(payload.get("result")),
        error=_str_or_none(payload.get("error")),
        cost_usd=_number_or_none(payload.get("cost_usd")),
        total_cost=_number_or_none(payload.get("total_cost", payload.get("total_cost_usd"))),
        duration_ms=_int_or_none(payload.get("duration_ms")),
        duration_api_ms=_int_or_none(payload.get("duration_api_ms")),
        num_turns=_int_or_none(payload.get("num_turns")),
    )


def _decode_tool_use(payload: dict[str, Any]) -> ToolInvocationEvent:
    return ToolInvocationEvent(
        type=TOOL_USE,
        session_id=_str_or_none(payload.get("session_id")),
        raw=payload,
        tool=_str_or_none(payload.get("tool")) or "",
        input=payload.get("input"),
        timestamp=_number_or_none(payload.get("timestamp")),
    )


def _decode_tool_result(payload: dict[str, Any]) -> ToolResultEvent:
    return ToolResultEvent(
        type=TOOL_RESULT,
        session_id=_str_or_none(payload.get("session_id")),
        raw=payload,
        tool=_str_or_none(payload.get("tool")) or "",
        output=payload.get("output"),
        timestamp=_number_or_none(payload.get("timestamp")),
    )


def _decode_error(payload: dict[str, Any]) -> ErrorEvent:
    raw_error = payload.get("error")
    if isinstance(raw_error, dict):
        message = _str_or_none(raw_error.get("message")) or json.dumps(raw_error)
    else:
        message = _str_or_none(raw_error) or _str_or_none(payload.get("message")) or ""
    code = payload.get("code")
    return ErrorEvent(
        type=ERROR,
        session_id=_str_or_none(payload.get("session_id")),
        raw=payload,
        error=message,
        code=str(code) if code is not None else None,
    )


_DECODERS = {
    SYSTEM: _decode_system,
    ASSISTANT: _decode_assistant,
    RESULT: _decode_result,
    TOOL_USE: _decode_tool_use,
    TOOL_RESULT: _decode_tool_result,
    ERROR: _decode_error,
}


def _str_or_none(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _str_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _number_or_none(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


def _int_or_none(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return int(value)
