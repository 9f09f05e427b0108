"""Parsing and monitoring of the tool's line-delimited JSON event stream."""

from channelcoder.stream_parser.events import (
    AssistantMessageEvent,
    ChunkKind,
    ErrorEvent,
    Event,
    InitEvent,
    OutputChunk,
    ResultEvent,
    ToolInvocationEvent,
    ToolResultEvent,
    UnknownEvent,
)
from channelcoder.stream_parser.logfile import (
    LogMetadata,
    LogSummary,
    ParsedLog,
    get_log_summary,
    is_valid_log_file,
    parse_log_file,
    parse_log_stream,
    read_log_lines,
)
from channelcoder.stream_parser.monitor import (
    AsyncLogMonitor,
    MonitorOptions,
    create_async_monitor,
    monitor_log,
    monitor_multiple,
)
from channelcoder.stream_parser.parser import (
    extract_assistant_text,
    extract_session_id,
    is_terminal,
    parse_event,
    parse_events,
    to_chunk,
)
from channelcoder.stream_parser.stream import (
    buffer_until_complete,
    collect,
    events_to_chunks,
    extract_content,
    filter_event_type,
    from_iterable,
    parse_event_stream,
    take,
)

__all__ = [
    "AssistantMessageEvent",
    "AsyncLogMonitor",
    "ChunkKind",
    "ErrorEvent",
    "Event",
    "InitEvent",
    "LogMetadata",
    "LogSummary",
    "MonitorOptions",
    "OutputChunk",
    "ParsedLog",
    "ResultEvent",
    "ToolInvocationEvent",
    "ToolResultEvent",
    "UnknownEvent",
    "buffer_until_complete",
    "collect",
    "create_async_monitor",
    "events_to_chunks",
    "extract_assistant_text",
    "extract_content",
    "extract_session_id",
    "filter_event_type",
    "from_iterable",
    "get_log_summary",
    "is_terminal",
    "is_valid_log_file",
    "monitor_log",
    "monitor_multiple",
    "parse_event",
    "parse_event_stream",
    "parse_events",
    "parse_log_file",
    "parse_log_stream",
    "read_log_lines",
    "take",
    "to_chunk",
]
