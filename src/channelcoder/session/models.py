"""Conversation state models and their JSON representation."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

DETACHED_PREFIX = "detached-"
STREAM_PENDING_TOKEN = "pending"


@dataclass(frozen=True, slots=True)
class PendingSessionId:
    """Placeholder for a session id the tool has not reported yet.

    The token only distinguishes placeholders from each other; it is never
    passed to the tool as a resume id.
    """

    token: str

    @classmethod
    def detached(cls, now: datetime | None = None) -> PendingSessionId:
        moment = now or datetime.now(UTC)
        return cls(token=f"{DETACHED_PREFIX}{int(moment.timestamp() * 1000)}")

    @classmethod
    def streaming(cls) -> PendingSessionId:
        return cls(token=STREAM_PENDING_TOKEN)

    @property
    def is_detached(self) -> bool:
        return self.token.startswith(DETACHED_PREFIX)

    def __str__(self) -> str:
        return self.token


SessionRef = str | PendingSessionId


def is_pending(ref: SessionRef | None) -> bool:
    return isinstance(ref, PendingSessionId)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(slots=True)
class Message:
    """One conversation message tied to exactly one session id."""

    role: Role
    content: str
    session_id: SessionRef
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(slots=True)
class SessionMetadata:
    name: str | None = None
    created: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_active: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(slots=True)
class SessionState:
    """Session chain, message history and metadata of one conversation."""

    session_chain: list[SessionRef] = field(default_factory=list)
    current_session_id: SessionRef | None = None
    messages: list[Message] = field(default_factory=list)
    metadata: SessionMetadata = field(default_factory=SessionMetadata)

    def last_resolved_id(self) -> str | None:
        """Latest chain entry that is a real session id."""

        for ref in reversed(self.session_chain):
            if isinstance(ref, str):
                return ref
        return None

    def append_session(self, ref: SessionRef) -> None:
        """Append to the chain keeping entries unique."""

        if ref not in self.session_chain:
            self.session_chain.append(ref)
        self.current_session_id = ref

    def resolve_pending(
        self,
        real_id: str,
        matches: Callable[[PendingSessionId], bool] = lambda _ref: True,
    ) -> bool:
        """Replace matching placeholders in place across chain and messages.

        Chain order is kept; a replacement that duplicates an existing
        entry collapses into the earlier one. Returns whether anything
        changed.
        """

        changed = False
        chain: list[SessionRef] = []
        for ref in self.session_chain:
            if isinstance(ref, PendingSessionId) and matches(ref):
                ref = real_id
                changed = True
            if ref not in chain:
                chain.append(ref)
        self.session_chain = chain

        current = self.current_session_id
        if isinstance(current, PendingSessionId) and matches(current):
            self.current_session_id = real_id
            changed = True

        for message in self.messages:
            if isinstance(message.session_id, PendingSessionId) and matches(message.session_id):
                message.session_id = real_id
                changed = True
        return changed

    def last_message(self, role: Role) -> Message | None:
        for message in reversed(self.messages):
            if message.role == role:
                return message
        return None

    def touch(self) -> None:
        self.metadata.last_active = datetime.now(UTC)


@dataclass(slots=True)
class SessionInfo:
    """Summary of one stored session."""

    name: str
    path: Path
    created: datetime
    last_active: datetime
    message_count: int


def state_to_dict(state: SessionState) -> dict[str, Any]:
    return {
        "sessionChain": [_ref_to_json(ref) for ref in state.session_chain],
        "currentSessionId": (
            _ref_to_json(state.current_session_id)
            if state.current_session_id is not None
            else None
        ),
        "messages": [
            {
                "role": message.role.value,
                "content": message.content,
                "timestamp": message.timestamp.isoformat(),
                "sessionId": _ref_to_json(message.session_id),
            }
            for message in state.messages
        ],
        "metadata": {
            "name": state.metadata.name,
            "created": state.metadata.created.isoformat(),
            "lastActive": state.metadata.last_active.isoformat(),
        },
    }


def state_from_dict(raw: dict[str, Any]) -> SessionState:
    """Rebuild a state saved by `state_to_dict`.

    Plain strings carrying the legacy `detached-` prefix are read back as
    pending placeholders.
    """

    raw_chain = raw.get("sessionChain", [])
    raw_messages = raw.get("messages", [])
    raw_metadata = raw.get("metadata", {})
    if not isinstance(raw_chain, list):
        raise TypeError("session.sessionChain must be an array")
    if not isinstance(raw_messages, list):
        raise TypeError("session.messages must be an array")
    if not isinstance(raw_metadata, dict):
        raise TypeError("session.metadata must be an object")

    messages: list[Message] = []
    for item in raw_messages:
        if not isinstance(item, dict):
            raise TypeError("session.messages[] must be objects")
        messages.append(
            Message(
                role=Role(item.get("role", Role.USER.value)),
                content=str(item.get("content", "")),
                session_id=_ref_from_json(item.get("sessionId")),
                timestamp=_parse_datetime(item.get("timestamp")),
            ),
        )

    current = raw.get("currentSessionId")
    name = raw_metadata.get("name")
    return SessionState(
        session_chain=[_ref_from_json(item) for item in raw_chain],
        current_session_id=_ref_from_json(current) if current is not None else None,
        messages=messages,
        metadata=SessionMetadata(
            name=name if isinstance(name, str) else None,
            created=_parse_datetime(raw_metadata.get("created")),
            last_active=_parse_datetime(raw_metadata.get("lastActive")),
        ),
    )


def _ref_to_json(ref: SessionRef) -> str | dict[str, str]:
    if isinstance(ref, PendingSessionId):
        return {"pending": ref.token}
    return ref


def _ref_from_json(value: object) -> SessionRef:
    if isinstance(value, dict) and isinstance(value.get("pending"), str):
        return PendingSessionId(token=value["pending"])
    if isinstance(value, str):
        if value.startswith(DETACHED_PREFIX) or value == STREAM_PENDING_TOKEN:
            return PendingSessionId(token=value)
        return value
    raise TypeError(f"Invalid session id value: {value!r}")


def _parse_datetime(value: object) -> datetime:
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed
    return datetime.now(UTC)
