"""CLI entrypoint for channelcoder."""

import logging
from pathlib import Path

import rich_click as click

from channelcoder import __version__
from channelcoder.controllers import (
    ChannelCoderCliController,
    CommandResult,
    DetachedCommand,
    ExecuteCommand,
    LogFollowCommand,
    SessionReconcileCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ChannelCoderCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="channelcoder")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for diagnostics written to stderr.",
)
def channelcoder(log_level: str) -> None:
    """Run the `claude` CLI in run, stream or detached mode and manage its sessions."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )


def _execution_options(function):  # noqa: ANN001, ANN202
    options = [
        click.option("--resume", default=None, help="Session id to resume."),
        click.option(
            "--continue",
            "continue_session",
            is_flag=True,
            help="Continue the most recent conversation.",
        ),
        click.option(
            "--timeout-seconds",
            type=click.FloatRange(min=0, min_open=True),
            default=None,
            help="Stop the tool after this many seconds.",
        ),
        click.option("--system", "system_prompt", default=None, help="System prompt override."),
        click.option(
            "--tools",
            "allowed_tools",
            multiple=True,
            help="Allowed tool, for example `Read` or `Bash(git:*)`. Can be repeated.",
        ),
        click.option("--max-turns", type=click.IntRange(min=1), default=None, help="Turn limit."),
        click.option(
            "--session",
            default=None,
            help="Session name; the conversation is resumed and saved under it.",
        ),
        click.option("--dry-run", is_flag=True, help="Print the command instead of running it."),
        click.option("--verbose", is_flag=True, help="Pass --verbose to the tool."),
    ]
    for option in reversed(options):
        function = option(function)
    return function


@channelcoder.command("run")
@click.argument("prompt")
@_execution_options
def run(  # noqa: PLR0913
    prompt: str,
    resume: str | None,
    continue_session: bool,
    timeout_seconds: float | None,
    system_prompt: str | None,
    allowed_tools: tuple[str, ...],
    max_turns: int | None,
    session: str | None,
    dry_run: bool,
    verbose: bool,
) -> None:
    """Run one prompt to completion and print the answer."""

    _finish(
        CONTROLLER.run(
            ExecuteCommand(
                prompt=prompt,
                resume=resume,
                continue_session=continue_session,
                timeout_seconds=timeout_seconds,
                system_prompt=system_prompt,
                allowed_tools=allowed_tools,
                max_turns=max_turns,
                session=session,
                dry_run=dry_run,
                verbose=verbose,
            ),
        ),
    )


@channelcoder.command("stream")
@click.argument("prompt")
@_execution_options
def stream(  # noqa: PLR0913
    prompt: str,
    resume: str | None,
    continue_session: bool,
    timeout_seconds: float | None,
    system_prompt: str | None,
    allowed_tools: tuple[str, ...],
    max_turns: int | None,
    session: str | None,
    dry_run: bool,
    verbose: bool,
) -> None:
    """Stream the answer to one prompt as it is produced."""

    _finish(
        CONTROLLER.stream(
            ExecuteCommand(
                prompt=prompt,
                resume=resume,
                continue_session=continue_session,
                timeout_seconds=timeout_seconds,
                system_prompt=system_prompt,
                allowed_tools=allowed_tools,
                max_turns=max_turns,
                session=session,
                dry_run=dry_run,
                verbose=verbose,
            ),
            emit=click.echo,
        ),
    )


@channelcoder.command("detached")
@click.argument("prompt")
@click.option(
    "--log-file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Append the run's stream-json output to this file.",
)
@click.option("--resume", default=None, help="Session id to resume.")
@click.option("--session", default=None, help="Session name to record the detached turn in.")
@click.option(
    "--wait",
    is_flag=True,
    help="With --session, wait for the run to finish and reconcile the session.",
)
def detached(
    prompt: str,
    log_file: Path | None,
    resume: str | None,
    session: str | None,
    wait: bool,
) -> None:
    """Start the tool in the background and return immediately."""

    _finish(
        CONTROLLER.detached(
            DetachedCommand(
                prompt=prompt,
                log_file=log_file,
                resume=resume,
                session=session,
                wait=wait,
            ),
        ),
    )


@channelcoder.group()
def log() -> None:
    """Inspect stream-json log files."""


@log.command("parse")
@click.argument("path", type=click.Path(path_type=Path, dir_okay=False))
def log_parse(path: Path) -> None:
    """Print the session, metrics and assistant content of a log."""

    _finish(CONTROLLER.log_parse(path))


@log.command("summary")
@click.argument("path", type=click.Path(path_type=Path, dir_okay=False))
def log_summary(path: Path) -> None:
    """Print a JSON summary of a log."""

    _finish(CONTROLLER.log_summary(path))


@log.command("follow")
@click.argument("path", type=click.Path(path_type=Path, dir_okay=False))
@click.option(
    "--initial-lines",
    type=click.IntRange(min=0),
    default=None,
    help="Replay only the last N existing lines. All are replayed by default.",
)
@click.option("--until-terminal", is_flag=True, help="Stop at the first result or error event.")
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Stop following after this many seconds.",
)
@click.option(
    "--watch/--poll",
    "use_watch",
    default=None,
    help="Use filesystem notifications instead of polling. Defaults to config.",
)
def log_follow(
    path: Path,
    initial_lines: int | None,
    until_terminal: bool,
    timeout_seconds: float | None,
    use_watch: bool | None,
) -> None:
    """Print content from a log as it is appended."""

    _finish(
        CONTROLLER.log_follow(
            LogFollowCommand(
                path=path,
                initial_lines=initial_lines,
                until_terminal=until_terminal,
                timeout_seconds=timeout_seconds,
                use_watch=use_watch,
            ),
            emit=click.echo,
        ),
    )


@channelcoder.group()
def session() -> None:
    """Saved conversation sessions."""


@session.command("list")
def session_list() -> None:
    """List saved sessions, most recently active first."""

    _finish(CONTROLLER.session_list())


@session.command("show")
@click.argument("name")
def session_show(name: str) -> None:
    """Show the session chain and messages of a saved session."""

    _finish(CONTROLLER.session_show(name))


@session.command("remove")
@click.argument("name")
def session_remove(name: str) -> None:
    """Delete a saved session."""

    _finish(CONTROLLER.session_remove(name))


@session.command("reconcile")
@click.argument("name")
@click.argument("log_path", type=click.Path(path_type=Path, dir_okay=False))
def session_reconcile(name: str, log_path: Path) -> None:
    """Resolve a detached turn of a saved session from its log."""

    _finish(CONTROLLER.session_reconcile(SessionReconcileCommand(name=name, log_path=log_path)))


def _finish(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Command failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    channelcoder()
