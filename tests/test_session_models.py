from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from channelcoder.session.models import (
    Message,
    PendingSessionId,
    Role,
    SessionMetadata,
    SessionState,
    is_pending,
    state_from_dict,
    state_to_dict,
)

pytestmark = [
    allure.epic("Sessions"),
    allure.feature("Session State"),
]


def test_detached_placeholder_token_uses_millisecond_clock() -> None:
    moment = datetime(2024, 10, 15, 12, 0, tzinfo=UTC)

    placeholder = PendingSessionId.detached(moment)

    assert placeholder.token == f"detached-{int(moment.timestamp() * 1000)}"
    assert placeholder.is_detached is True
    assert PendingSessionId.streaming().is_detached is False
    assert is_pending(placeholder) is True
    assert is_pending("abc") is False


def test_last_resolved_id_skips_placeholders() -> None:
    state = SessionState(session_chain=["a", "b", PendingSessionId("detached-1")])

    assert state.last_resolved_id() == "b"
    assert SessionState().last_resolved_id() is None


def test_append_session_keeps_chain_unique() -> None:
    state = SessionState()

    state.append_session("a")
    state.append_session("b")
    state.append_session("a")

    assert state.session_chain == ["a", "b"]
    assert state.current_session_id == "a"


def test_resolve_pending_replaces_in_place_and_collapses_duplicates() -> None:
    pending = PendingSessionId("detached-1")
    state = SessionState(
        session_chain=["a", pending, "b"],
        current_session_id=pending,
        messages=[
            Message(role=Role.USER, content="q1", session_id="a"),
            Message(role=Role.USER, content="q2", session_id=pending),
        ],
    )

    assert state.resolve_pending("a", lambda ref: ref.is_detached) is True
    assert state.session_chain == ["a", "b"]
    assert state.current_session_id == "a"
    assert [message.session_id for message in state.messages] == ["a", "a"]
    assert state.resolve_pending("a") is False


def test_resolve_pending_respects_matcher() -> None:
    stream_pending = PendingSessionId.streaming()
    state = SessionState(session_chain=[stream_pending], current_session_id=stream_pending)

    assert state.resolve_pending("real", lambda ref: ref.is_detached) is False
    assert state.session_chain == [stream_pending]


def test_state_dict_round_trip_keeps_placeholders_and_times() -> None:
    created = datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)
    pending = PendingSessionId("detached-99")
    state = SessionState(
        session_chain=["s1", pending],
        current_session_id=pending,
        messages=[Message(role=Role.ASSISTANT, content="hi", session_id="s1", timestamp=created)],
        metadata=SessionMetadata(name="demo", created=created, last_active=created),
    )

    raw = state_to_dict(state)
    restored = state_from_dict(raw)

    assert raw["sessionChain"] == ["s1", {"pending": "detached-99"}]
    assert raw["messages"][0]["sessionId"] == "s1"
    assert raw["metadata"]["lastActive"] == created.isoformat()
    assert restored == state


def test_legacy_sentinel_strings_load_as_placeholders() -> None:
    restored = state_from_dict(
        {
            "sessionChain": ["s1", "detached-1729000000000"],
            "currentSessionId": "detached-1729000000000",
            "messages": [
                {
                    "role": "user",
                    "content": "q",
                    "timestamp": "2024-10-15T12:00:00.000Z",
                    "sessionId": "pending",
                },
            ],
            "metadata": {"created": "2024-10-15T12:00:00.000Z"},
        },
    )

    assert restored.session_chain == ["s1", PendingSessionId("detached-1729000000000")]
    assert restored.current_session_id == PendingSessionId("detached-1729000000000")
    assert restored.messages[0].session_id == PendingSessionId("pending")
    assert restored.messages[0].timestamp.tzinfo is not None


@pytest.mark.parametrize(
    "raw",
    [
        {"sessionChain": "s1"},
        {"messages": {}},
        {"metadata": []},
        {"messages": ["text"]},
        {"sessionChain": [5]},
    ],
)
def test_state_from_dict_rejects_bad_shapes(raw: dict) -> None:
    with pytest.raises(TypeError):
        state_from_dict(raw)
