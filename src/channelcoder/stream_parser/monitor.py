"""Real-time monitoring of append-only log files."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Self

import aiofiles
from watchfiles import Change, awatch

from channelcoder.stream_parser.events import Event
from channelcoder.stream_parser.parser import parse_event

logger = logging.getLogger(__name__)

EventCallback = Callable[[Event], None]
CancelMonitor = Callable[[], None]

# Watch mode also rescans on this quiet interval, catching lines written
# before the watcher was running.
_WATCH_RESCAN_MS = 1_000


@dataclass(slots=True)
class MonitorOptions:
    """How a log file is followed.

    `initial_lines` selects the replay window of lines already present when
    monitoring starts: `None` replays all of them, `0` none, `N` the last N.
    """

    use_watch: bool = False
    initial_lines: int | None = None
    debounce_ms: int = 100
    poll_seconds: float = 0.1


class LogTail:
    """Read position of an append-only file, returning only complete lines."""

    def __init__(self, log_path: Path) -> None:
        self.log_path = log_path
        self.offset = 0
        self._partial = b""

    async def prime(self, initial_lines: int | None) -> list[str]:
        """Consume what is already in the file, returning the replay window."""

        existing = await self.read_new_lines()
        if initial_lines is None:
            return existing
        if initial_lines <= 0:
            return []
        return existing[-initial_lines:]

    async def read_new_lines(self) -> list[str]:
        try:
            size = self.log_path.stat().st_size
        except FileNotFoundError:
            return []
        if size < self.offset:
            logger.warning("Log file %s shrank, reading it from the start", self.log_path)
            self.offset = 0
            self._partial = b""
        if size == self.offset:
            return []

        async with aiofiles.open(self.log_path, "rb") as handle:
            await handle.seek(self.offset)
            data = await handle.read()
        self.offset += len(data)

        *complete, self._partial = (self._partial + data).split(b"\n")
        return [line.decode("utf-8", errors="replace").rstrip("\r") for line in complete]


def monitor_log(
    log_path: Path,
    on_event: EventCallback,
    options: MonitorOptions | None = None,
    *,
    on_done: Callable[[], None] | None = None,
) -> CancelMonitor:
    """Start following `log_path`, calling `on_event` for every decoded event.

    Must be called from a running event loop. Returns a function that stops
    the monitor. `on_done` runs once the monitor stops for any reason,
    including a failure, which is logged.
    """

    effective = options or MonitorOptions()
    tail = LogTail(Path(log_path))
    stop_event = asyncio.Event()
    if effective.use_watch:
        coroutine = _watch(tail, on_event, effective, stop_event)
    else:
        coroutine = _follow(tail, on_event, effective)
    task = asyncio.get_running_loop().create_task(coroutine)

    def _finished(finished: asyncio.Task[None]) -> None:
        if not finished.cancelled() and (error := finished.exception()) is not None:
            logger.error("Log monitor for %s stopped: %s", log_path, error, exc_info=error)
        if on_done is not None:
            on_done()

    task.add_done_callback(_finished)
    logger.debug(
        "Monitoring %s (strategy=%s)",
        log_path,
        "watch" if effective.use_watch else "follow",
    )

    def cancel() -> None:
        stop_event.set()
        if not task.done():
            task.cancel()

    return cancel


def monitor_multiple(
    log_paths: list[Path],
    on_event: Callable[[Path, Event], None],
    options: MonitorOptions | None = None,
) -> CancelMonitor:
    """Monitor several logs; the returned function stops all of them."""

    cancels = [
        monitor_log(path, _bind_path(on_event, Path(path)), options) for path in log_paths
    ]

    def cancel_all() -> None:
        for cancel in cancels:
            cancel()

    return cancel_all


class AsyncLogMonitor:
    """Pull-based view of `monitor_log`.

    Events arriving faster than they are consumed are buffered; a consumer
    that runs ahead parks on a future until the next event. `cleanup()` ends
    iteration and releases parked consumers. If the underlying monitor
    fails, buffered events are still delivered before iteration ends.

    Leaving `async for` early does not stop the monitor: use the instance as
    an async context manager, or call `cleanup()` yourself.

    Example:
        async with create_async_monitor(Path("run.log")) as monitor:
            async for event in monitor.events:
                if is_terminal(event):
                    break
    """

    def __init__(self, log_path: Path, options: MonitorOptions | None = None) -> None:
        self._buffer: deque[Event] = deque()
        self._waiters: deque[asyncio.Future[Event | None]] = deque()
        self._done = False
        self._cancel = monitor_log(log_path, self._on_event, options, on_done=self._end)

    @property
    def events(self) -> Self:
        return self

    @property
    def closed(self) -> bool:
        return self._done

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> Event:
        if self._buffer:
            return self._buffer.popleft()
        if self._done:
            raise StopAsyncIteration

        waiter: asyncio.Future[Event | None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        event = await waiter
        if event is None:
            raise StopAsyncIteration
        return event

    def cleanup(self) -> None:
        self._buffer.clear()
        self._end()

    def _end(self) -> None:
        if self._done:
            return
        self._done = True
        self._cancel()
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)

    async def aclose(self) -> None:
        self.cleanup()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *_args: object) -> None:
        self.cleanup()

    def _on_event(self, event: Event) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(event)
                return
        self._buffer.append(event)


def create_async_monitor(
    log_path: Path,
    options: MonitorOptions | None = None,
) -> AsyncLogMonitor:
    return AsyncLogMonitor(Path(log_path), options)


async def _follow(tail: LogTail, on_event: EventCallback, options: MonitorOptions) -> None:
    _dispatch(await tail.prime(options.initial_lines), on_event)
    while True:
        lines = await tail.read_new_lines()
        if lines:
            _dispatch(lines, on_event)
        else:
            await asyncio.sleep(options.poll_seconds)


async def _watch(
    tail: LogTail,
    on_event: EventCallback,
    options: MonitorOptions,
    stop_event: asyncio.Event,
) -> None:
    target = tail.log_path.resolve()
    _dispatch(await tail.prime(options.initial_lines), on_event)

    def _is_target(_change: Change, changed_path: str) -> bool:
        return Path(changed_path).resolve() == target

    # The parent directory is watched so a log created later is still seen.
    async for _changes in awatch(
        target.parent,
        watch_filter=_is_target,
        debounce=options.debounce_ms,
        stop_event=stop_event,
        rust_timeout=_WATCH_RESCAN_MS,
        yield_on_timeout=True,
    ):
        _dispatch(await tail.read_new_lines(), on_event)


def _dispatch(lines: list[str], on_event: EventCallback) -> None:
    for line in lines:
        event = parse_event(line)
        if event is None:
            continue
        try:
            on_event(event)
        except Exception:  # noqa: BLE001
            logger.exception("Log monitor callback failed")


def _bind_path(
    on_event: Callable[[Path, Event], None],
    log_path: Path,
) -> EventCallback:
    def _callback(event: Event) -> None:
        on_event(log_path, event)

    return _callback

