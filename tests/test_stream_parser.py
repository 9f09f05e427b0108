from __future__ import annotations

import json

import allure
import pytest

from channelcoder.stream_parser import (
    AssistantMessageEvent,
    ChunkKind,
    ErrorEvent,
    InitEvent,
    ResultEvent,
    ToolInvocationEvent,
    ToolResultEvent,
    UnknownEvent,
    extract_assistant_text,
    extract_session_id,
    is_terminal,
    parse_event,
    parse_events,
    to_chunk,
)

pytestmark = [
    allure.epic("Stream Protocol"),
    allure.feature("Event Parsing"),
]


@pytest.mark.parametrize(
    ("line", "event_class"),
    [
        ('{"type":"system","subtype":"init","session_id":"s1"}', InitEvent),
        ('{"type":"assistant","message":{"content":[]}}', AssistantMessageEvent),
        ('{"type":"result","subtype":"success"}', ResultEvent),
        ('{"type":"tool_use","tool":"Read","input":{"path":"a"}}', ToolInvocationEvent),
        ('{"type":"tool_result","tool":"Read","output":"text"}', ToolResultEvent),
        ('{"type":"error","error":"boom"}', ErrorEvent),
    ],
)
def test_parse_event_decodes_recognized_types(line: str, event_class: type) -> None:
    event = parse_event(line)

    assert isinstance(event, event_class)
    assert event.type == json.loads(line)["type"]


@pytest.mark.parametrize(
    "line",
    ["", "   ", "not json", "{", "[1, 2]", '"text"', "42", '{"no_type":1}', '{"type":5}'],
)
def test_parse_event_returns_none_for_malformed_lines(line: str) -> None:
    assert parse_event(line) is None


def test_parse_event_tolerates_mistyped_fields() -> None:
    event = parse_event(
        json.dumps(
            {
                "type": "result",
                "subtype": 7,
                "is_error": "yes",
                "duration_ms": "slow",
                "num_turns": True,
                "session_id": ["x"],
            },
        ),
    )

    assert isinstance(event, ResultEvent)
    assert event.subtype == "success"
    assert event.is_error is False
    assert event.duration_ms is None
    assert event.num_turns is None
    assert event.session_id is None


def test_parse_event_keeps_unknown_discriminator() -> None:
    event = parse_event('{"type":"thinking","session_id":"s9","detail":{"a":1}}')

    assert isinstance(event, UnknownEvent)
    assert event.type == "thinking"
    assert event.session_id == "s9"
    assert event.raw["detail"] == {"a": 1}


def test_parse_init_event_reads_tools_and_servers() -> None:
    event = parse_event(
        json.dumps(
            {
                "type": "system",
                "subtype": "init",
                "session_id": "s1",
                "tools": ["Read", 3, "Bash"],
                "mcp_servers": [{"name": "fs", "status": "connected"}, "junk"],
            },
        ),
    )

    assert isinstance(event, InitEvent)
    assert event.tools == ["Read", "Bash"]
    assert [(server.name, server.status) for server in event.mcp_servers] == [
        ("fs", "connected"),
    ]


def test_result_reads_total_cost_usd_alias() -> None:
    event = parse_event('{"type":"result","subtype":"success","total_cost_usd":0.25}')

    assert isinstance(event, ResultEvent)
    assert event.total_cost == pytest.approx(0.25)


def test_error_event_reads_nested_error_message() -> None:
    event = parse_event('{"type":"error","error":{"message":"quota"},"code":429}')

    assert isinstance(event, ErrorEvent)
    assert event.error == "quota"
    assert event.code == "429"


def test_assistant_text_concatenates_text_blocks_in_order() -> None:
    event = parse_event(
        json.dumps(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "text", "text": "Hel"},
                        {"type": "tool_use", "name": "Read"},
                        {"type": "text", "text": "lo"},
                    ],
                },
            },
        ),
    )

    assert isinstance(event, AssistantMessageEvent)
    assert extract_assistant_text(event) == "Hello"


def test_three_line_scenario_yields_single_content_chunk() -> None:
    lines = [
        '{"type":"system","session_id":"s1"}',
        '{"type":"assistant","message":{"content":[{"type":"text","text":"Hi"}]}}',
        '{"type":"result","subtype":"success","result":"done"}',
    ]

    events = parse_events(lines)
    chunks = [chunk for chunk in (to_chunk(event) for event in events) if chunk is not None]

    assert len(events) == 3
    assert len(chunks) == 1
    assert chunks[0].kind == ChunkKind.CONTENT
    assert chunks[0].text == "Hi"
    assert [is_terminal(event) for event in events] == [False, False, True]


def test_to_chunk_nullness_per_kind() -> None:
    assert to_chunk(parse_event('{"type":"system","session_id":"s1"}')) is None
    assert to_chunk(parse_event('{"type":"result","subtype":"success"}')) is None
    assert to_chunk(parse_event('{"type":"assistant","message":{"content":[]}}')) is None
    assert to_chunk(parse_event('{"type":"mystery"}')) is None

    tool_use = to_chunk(parse_event('{"type":"tool_use","tool":"Read","input":{"path":"a"}}'))
    tool_result = to_chunk(parse_event('{"type":"tool_result","tool":"Read","output":"body"}'))
    error = to_chunk(parse_event('{"type":"error","error":"boom","code":"E1"}'))
    failed = to_chunk(parse_event('{"type":"result","subtype":"error","error":"bad"}'))

    assert tool_use is not None
    assert tool_use.kind == ChunkKind.TOOL_USE
    assert tool_use.tool == "Read"
    assert json.loads(tool_use.text) == {"path": "a"}
    assert tool_result is not None
    assert tool_result.kind == ChunkKind.TOOL_RESULT
    assert tool_result.text == "body"
    assert error is not None
    assert error.kind == ChunkKind.ERROR
    assert error.metadata["code"] == "E1"
    assert failed is not None
    assert failed.kind == ChunkKind.ERROR
    assert failed.text == "bad"


def test_is_error_result_projects_to_error_chunk() -> None:
    chunk = to_chunk(parse_event('{"type":"result","subtype":"success","is_error":true}'))

    assert chunk is not None
    assert chunk.kind == ChunkKind.ERROR
    assert chunk.text == "Execution finished with an error result"


def test_extract_session_id_is_deterministic() -> None:
    event = parse_event('{"type":"assistant","session_id":"abc","message":{}}')

    assert extract_session_id(event) == "abc"
    assert extract_session_id(event) == extract_session_id(event)
    assert extract_session_id(parse_event('{"type":"result"}')) is None
