"""Subprocess lifecycle for synchronous, streaming and detached executions."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
from collections import deque
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import replace
from pathlib import Path

from channelcoder.config import ProcessSettings
from channelcoder.process.base import (
    Detachment,
    ExecutionError,
    ExecutionMode,
    ExecutionOptions,
    ExecutionResult,
    FailureKind,
    OutputFormat,
    ProcessError,
)
from channelcoder.process.command import (
    ClaudeCommandBuilder,
    CommandBuilder,
    render_shell_command,
)
from channelcoder.process.failures import classify_failure
from channelcoder.process.output import extract_payload
from channelcoder.stream_parser.events import ERROR, ErrorEvent, Event, OutputChunk
from channelcoder.stream_parser.parser import is_terminal, parse_event, to_chunk

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 64 * 1024
NO_JSON_WARNING = "No JSON output found in response"


class ProcessManager:
    """Spawn the external tool in one of three execution modes.

    Example:
        manager = ProcessManager()
        result = await manager.execute("Summarize README.md")
        async for chunk in manager.stream("Explain main.py"):
            print(chunk.text, end="")
    """

    def __init__(
        self,
        settings: ProcessSettings | None = None,
        command_builder: CommandBuilder | None = None,
    ) -> None:
        self._settings = settings or ProcessSettings()
        self._builder = command_builder or ClaudeCommandBuilder(self._settings.command)
        self._available: bool | None = None
        self._detached: dict[int, subprocess.Popen[bytes]] = {}

    @property
    def settings(self) -> ProcessSettings:
        return self._settings

    def is_available(self) -> bool:
        """Whether the tool executable can be found; probed once per instance."""

        if self._available is None:
            executable = self._builder.build(ExecutionOptions())[0]
            self._available = shutil.which(executable) is not None
            if not self._available:
                logger.warning("Tool executable not found: %s", executable)
        return self._available

    async def execute(
        self,
        prompt: str,
        options: ExecutionOptions | None = None,
    ) -> ExecutionResult:
        """Run to completion and capture output.

        A non-empty prompt goes to stdin, which is then closed. Resumed and
        continued runs leave stdin empty and carry the prompt in argv.
        On success a structured payload is extracted from stdout; not
        finding one only adds a warning.
        """

        effective = replace(options or ExecutionOptions(), mode=ExecutionMode.RUN)
        argv = self._builder.build(effective, prompt)
        try:
            process = await self._spawn(argv, effective)
        except ProcessError as error:
            logger.warning("Execution did not start: %s", error)
            return ExecutionResult.failure(error.to_execution_error())

        timeout = self._timeout(effective)
        stdout_buffer = bytearray()
        stderr_buffer = bytearray()
        io_tasks = asyncio.gather(
            _write_prompt(process, _stdin_prompt(prompt, effective)),
            _drain(process.stdout, stdout_buffer),
            _drain(process.stderr, stderr_buffer),
        )
        timed_out = False
        try:
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except TimeoutError:
                timed_out = True
                logger.warning("Process %s timed out after %ss", process.pid, timeout)
                await self._terminate(process)
            await self._finish_io(io_tasks)
        finally:
            if process.returncode is None:
                await self._terminate(process)
            if not io_tasks.done():
                io_tasks.cancel()

        exit_code = process.returncode
        stdout = stdout_buffer.decode("utf-8", errors="replace")
        stderr = stderr_buffer.decode("utf-8", errors="replace")
        logger.info("Process %s exited with code %s", process.pid, exit_code)
        if effective.verbose:
            logger.debug("STDOUT: %s", stdout)
            logger.debug("STDERR: %s", stderr)

        if timed_out or exit_code != 0:
            error = classify_failure(
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
                timed_out=timed_out,
                timeout_seconds=timeout,
            )
            return ExecutionResult.failure(error, stdout=stdout, stderr=stderr)

        result = ExecutionResult(success=True, stdout=stdout, stderr=stderr, exit_code=exit_code)
        payload = extract_payload(stdout)
        if payload is None:
            result.warnings.append(NO_JSON_WARNING)
            result.text = stdout.strip() or None
            return result
        result.data = payload.data
        result.text = payload.text
        result.session_id = payload.session_id
        return result

    async def stream(
        self,
        prompt: str,
        options: ExecutionOptions | None = None,
    ) -> AsyncIterator[OutputChunk]:
        """Yield output chunks as the tool produces them.

        Always uses the line-delimited JSON output format. A non-zero exit,
        a timeout or a failure to start ends the sequence with an error
        chunk.
        """

        async with aclosing(self._stream_items(prompt, options)) as items:
            async for event, _synthetic in items:
                chunk = to_chunk(event)
                if chunk is not None:
                    yield chunk

    async def stream_events(
        self,
        prompt: str,
        options: ExecutionOptions | None = None,
    ) -> AsyncIterator[Event]:
        """Yield decoded events as the tool produces them.

        Failures are reported as an `error` event unless the tool already
        closed the turn with its own terminal event.
        """

        seen_terminal = False
        async with aclosing(self._stream_items(prompt, options)) as items:
            async for event, synthetic in items:
                if synthetic and seen_terminal:
                    logger.warning("Suppressed failure after terminal event: %s", event)
                    continue
                seen_terminal = seen_terminal or is_terminal(event)
                yield event

    def execute_detached(
        self,
        prompt: str,
        options: ExecutionOptions | None = None,
    ) -> ExecutionResult:
        """Start the tool in the background and return immediately.

        Output goes to `options.log_file` (line-delimited JSON) or is
        discarded. The child runs in its own session so it outlives the
        caller.
        """

        effective = replace(options or ExecutionOptions(), mode=ExecutionMode.DETACHED)
        if effective.log_file is not None:
            effective = replace(effective, output_format=OutputFormat.STREAM_JSON)
        argv = self._builder.build(effective, prompt)
        if not self.is_available():
            return ExecutionResult.failure(_unavailable(argv).to_execution_error())

        self._reap_detached()
        stdin_prompt = _stdin_prompt(prompt, effective)
        log_path = Path(effective.log_file) if effective.log_file is not None else None
        try:
            process = self._popen_detached(argv, stdin_prompt, effective, log_path)
        except ProcessError as error:
            logger.warning("Detached execution did not start: %s", error)
            return ExecutionResult.failure(error.to_execution_error())

        if process.stdin is not None:
            try:
                process.stdin.write(stdin_prompt.encode("utf-8"))
            except BrokenPipeError:
                logger.warning("Detached process %s closed stdin early", process.pid)
            finally:
                try:
                    process.stdin.close()
                except BrokenPipeError:
                    pass

        self._detached[process.pid] = process
        logger.info("Detached process %s started, log: %s", process.pid, log_path or "discarded")
        return ExecutionResult(
            success=True,
            detachment=Detachment(pid=process.pid, log_path=log_path),
        )

    def poll_detached(self, pid: int) -> int | None:
        """Exit code of a detached child started here, `None` while running.

        Once the exit code has been reported the pid is forgotten.
        """

        process = self._detached.get(pid)
        if process is None:
            raise KeyError(f"No detached process with pid {pid}")
        exit_code = process.poll()
        if exit_code is not None:
            del self._detached[pid]
        return exit_code

    def dry_run(self, prompt: str, options: ExecutionOptions | None = None) -> ExecutionResult:
        """Describe the invocation without spawning anything."""

        effective = options or ExecutionOptions()
        if effective.mode == ExecutionMode.DETACHED and effective.log_file is not None:
            effective = replace(effective, output_format=OutputFormat.STREAM_JSON)
        argv = self._builder.build(effective, prompt)
        return ExecutionResult(
            success=True,
            data={
                "command": argv[0],
                "args": argv[1:],
                "fullCommand": render_shell_command(
                    argv,
                    prompt,
                    pipe_prompt=bool(_stdin_prompt(prompt, effective)),
                ),
                "prompt": prompt,
            },
        )

    async def _stream_items(
        self,
        prompt: str,
        options: ExecutionOptions | None,
    ) -> AsyncIterator[tuple[Event, bool]]:
        effective = replace(
            options or ExecutionOptions(),
            mode=ExecutionMode.STREAM,
            output_format=OutputFormat.STREAM_JSON,
        )
        argv = self._builder.build(effective, prompt)
        try:
            process = await self._spawn(argv, effective)
        except ProcessError as error:
            logger.warning("Stream did not start: %s", error)
            yield _failure_event(error.to_execution_error()), True
            return

        loop = asyncio.get_running_loop()
        timeout = self._timeout(effective)
        deadline = loop.time() + timeout if timeout is not None else None
        queue: deque[Event] = deque()
        stderr_buffer = bytearray()
        producer = asyncio.gather(
            _write_prompt(process, _stdin_prompt(prompt, effective)),
            _produce_events(process.stdout, queue),
            _drain(process.stderr, stderr_buffer),
        )
        timed_out = False
        try:
            while True:
                if queue:
                    yield queue.popleft(), False
                    continue
                if producer.done():
                    break
                if deadline is not None and not timed_out and loop.time() >= deadline:
                    timed_out = True
                    logger.warning("Stream process %s timed out after %ss", process.pid, timeout)
                    await self._terminate(process)
                    continue
                await asyncio.sleep(self._settings.stream_poll_seconds)

            if process.returncode is None:
                remaining = None if deadline is None else max(0.0, deadline - loop.time())
                try:
                    await asyncio.wait_for(process.wait(), timeout=remaining)
                except TimeoutError:
                    timed_out = True
                    await self._terminate(process)

            exit_code = process.returncode
            logger.info("Stream process %s exited with code %s", process.pid, exit_code)
            if timed_out or exit_code != 0:
                error = classify_failure(
                    exit_code=exit_code,
                    stdout="",
                    stderr=stderr_buffer.decode("utf-8", errors="replace"),
                    timed_out=timed_out,
                    timeout_seconds=timeout,
                )
                yield _failure_event(error), True
        finally:
            if process.returncode is None:
                logger.info("Stream consumer left early, stopping process %s", process.pid)
                await self._terminate(process)
            if not producer.done():
                producer.cancel()

    async def _spawn(
        self,
        argv: list[str],
        options: ExecutionOptions,
    ) -> asyncio.subprocess.Process:
        if not self.is_available():
            raise _unavailable(argv)
        logger.info("Starting %s", " ".join(argv))
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=_child_env(options),
                cwd=options.cwd,
            )
        except FileNotFoundError as error:
            raise ProcessError(
                f"Tool command not found: {argv[0]}",
                kind=FailureKind.SPAWN_FAILURE,
            ) from error
        except OSError as error:
            raise ProcessError(
                f"Tool failed to start: {error}",
                kind=FailureKind.SPAWN_FAILURE,
            ) from error

    def _popen_detached(
        self,
        argv: list[str],
        prompt: str,
        options: ExecutionOptions,
        log_path: Path | None,
    ) -> subprocess.Popen[bytes]:
        stdin = subprocess.PIPE if prompt else subprocess.DEVNULL
        try:
            if log_path is None:
                return subprocess.Popen(  # noqa: S603
                    argv,
                    stdin=stdin,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    env=_child_env(options),
                    cwd=options.cwd,
                    start_new_session=True,
                )
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("ab") as log_handle:
                return subprocess.Popen(  # noqa: S603
                    argv,
                    stdin=stdin,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    env=_child_env(options),
                    cwd=options.cwd,
                    start_new_session=True,
                )
        except FileNotFoundError as error:
            raise ProcessError(
                f"Tool command not found: {argv[0]}",
                kind=FailureKind.SPAWN_FAILURE,
            ) from error
        except OSError as error:
            raise ProcessError(
                f"Tool failed to start: {error}",
                kind=FailureKind.SPAWN_FAILURE,
            ) from error


    def _reap_detached(self) -> None:
        for pid, process in list(self._detached.items()):
            exit_code = process.poll()
            if exit_code is not None:
                logger.info("Detached process %s exited with code %s", pid, exit_code)
                del self._detached[pid]

    def _timeout(self, options: ExecutionOptions) -> float | None:
        if options.timeout_seconds is not None:
            return options.timeout_seconds
        return self._settings.timeout_seconds

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Ask the process to stop, killing it after the grace window."""

        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(
                process.wait(),
                timeout=self._settings.graceful_shutdown_seconds,
            )
        except TimeoutError:
            logger.warning("Process %s ignored termination, killing it", process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def _finish_io(self, io_tasks: asyncio.Future[list[None]]) -> None:
        # Grandchildren may keep the pipes open after the tool itself exited.
        try:
            await asyncio.wait_for(io_tasks, timeout=self._settings.graceful_shutdown_seconds)
        except TimeoutError:
            logger.warning("Output pipes still open after process exit, output truncated")


def _stdin_prompt(prompt: str, options: ExecutionOptions) -> str:
    return "" if options.resumes_session else prompt


async def _write_prompt(process: asyncio.subprocess.Process, prompt: str) -> None:
    """Send the prompt, if any, and close stdin."""

    if process.stdin is None:
        return
    try:
        if prompt:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.debug("Process %s closed stdin before the prompt was written", process.pid)
    finally:
        process.stdin.close()


async def _drain(stream: asyncio.StreamReader | None, sink: bytearray) -> None:
    if stream is None:
        return
    while data := await stream.read(_READ_CHUNK_BYTES):
        sink.extend(data)


async def _produce_events(stream: asyncio.StreamReader | None, queue: deque[Event]) -> None:
    """Split stdout into lines and enqueue every decodable event."""

    if stream is None:
        return
    pending = b""
    while data := await stream.read(_READ_CHUNK_BYTES):
        *lines, pending = (pending + data).split(b"\n")
        for raw in lines:
            _enqueue_line(raw, queue)
    if pending.strip():
        _enqueue_line(pending, queue)


def _enqueue_line(raw: bytes, queue: deque[Event]) -> None:
    line = raw.decode("utf-8", errors="replace")
    event = parse_event(line)
    if event is None:
        if line.strip():
            logger.debug("Skipping undecodable stream line: %.200s", line)
        return
    queue.append(event)


def _failure_event(error: ExecutionError) -> ErrorEvent:
    return ErrorEvent(
        type=ERROR,
        raw={"type": ERROR, "error": error.message, "code": error.kind.value},
        error=error.message,
        code=error.kind.value,
    )


def _unavailable(argv: list[str]) -> ProcessError:
    return ProcessError(
        f"Tool executable not available: {argv[0]}",
        kind=FailureKind.TOOL_UNAVAILABLE,
    )


def _child_env(options: ExecutionOptions) -> dict[str, str] | None:
    if not options.env:
        return None
    env = os.environ.copy()
    env.update(options.env)
    return env
