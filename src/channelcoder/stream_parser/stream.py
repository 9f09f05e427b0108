"""Async transforms over line and event sequences."""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator
from typing import TypeVar

from channelcoder.stream_parser.events import AssistantMessageEvent, Event, OutputChunk
from channelcoder.stream_parser.parser import (
    extract_assistant_text,
    is_terminal,
    parse_event,
    to_chunk,
)

T = TypeVar("T")
EventT = TypeVar("EventT", bound=Event)


async def parse_event_stream(lines: AsyncIterable[str]) -> AsyncIterator[Event]:
    """Decode a stream of lines, skipping lines that do not parse."""

    async for line in lines:
        event = parse_event(line)
        if event is not None:
            yield event


async def events_to_chunks(events: AsyncIterable[Event]) -> AsyncIterator[OutputChunk]:
    async for event in events:
        chunk = to_chunk(event)
        if chunk is not None:
            yield chunk


async def extract_content(events: AsyncIterable[Event]) -> AsyncIterator[str]:
    """Yield non-empty assistant text only."""

    async for event in events:
        if isinstance(event, AssistantMessageEvent):
            text = extract_assistant_text(event)
            if text:
                yield text


async def filter_event_type(
    events: AsyncIterable[Event],
    event_class: type[EventT],
) -> AsyncIterator[EventT]:
    async for event in events:
        if isinstance(event, event_class):
            yield event


async def buffer_until_complete(events: AsyncIterable[Event]) -> AsyncIterator[list[Event]]:
    """Group events into turns, each closed by a terminal event.

    A trailing group without a terminal event is still yielded.
    """

    buffer: list[Event] = []
    async for event in events:
        buffer.append(event)
        if is_terminal(event):
            yield buffer
            buffer = []
    if buffer:
        yield buffer


async def collect(iterable: AsyncIterable[T]) -> list[T]:
    return [item async for item in iterable]


async def take(iterable: AsyncIterable[T], count: int) -> AsyncIterator[T]:
    if count <= 0:
        return
    taken = 0
    async for item in iterable:
        yield item
        taken += 1
        if taken >= count:
            return


async def from_iterable(items: list[T]) -> AsyncIterator[T]:
    for item in items:
        yield item
