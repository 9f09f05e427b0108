"""Reconciling session state with the logs of detached runs."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from channelcoder.session.models import DETACHED_PREFIX, Message, Role, SessionState
from channelcoder.stream_parser.logfile import ParsedLog, parse_log_file

if TYPE_CHECKING:
    from channelcoder.session.manager import SessionManager

logger = logging.getLogger(__name__)


def reconcile_detached(
    state: SessionState,
    log_path: Path,
    *,
    require_terminal: bool = True,
) -> bool:
    """Patch `detached-` placeholders with the session id found in the log.

    Does nothing until the log holds a terminal event, unless
    `require_terminal` is off. The assistant reply is appended only when no
    assistant message is tagged with the real id yet, so repeated calls on
    an unchanged log leave the state as it is. Returns whether the log
    carried a session id.
    """

    try:
        parsed = parse_log_file(log_path)
    except OSError as error:
        logger.warning("Cannot read detached log %s: %s", log_path, error)
        return False
    if require_terminal and not parsed.completed:
        logger.debug("Detached log %s has no terminal event yet", log_path)
        return False

    session_id = _real_session_id(parsed)
    if session_id is None:
        logger.debug("Detached log %s reports no session id yet", log_path)
        return False

    if state.resolve_pending(session_id, lambda ref: ref.is_detached):
        logger.info("Detached placeholder resolved to session %s", session_id)
    elif session_id not in state.session_chain:
        state.append_session(session_id)

    if parsed.content and state.last_message(Role.USER) is not None:
        answered = any(
            message.role == Role.ASSISTANT and message.session_id == session_id
            for message in state.messages
        )
        if not answered:
            state.messages.append(
                Message(role=Role.ASSISTANT, content=parsed.content, session_id=session_id),
            )
    state.touch()
    return True


async def monitor_detached_session(
    manager: SessionManager,
    log_path: Path,
    poll_interval: float = 1.0,
    max_wait: float = 60.0,
) -> bool:
    """Wait for the detached run to finish, then reconcile once and persist.

    On timeout a final pass still records whatever the log holds. Returns
    whether the run finished within `max_wait`.
    """

    loop = asyncio.get_running_loop()
    deadline = loop.time() + max_wait
    finished = False
    while loop.time() < deadline:
        if _log_completed(log_path):
            finished = True
            break
        await asyncio.sleep(poll_interval)

    if not finished:
        logger.warning("Detached run did not finish within %ss: %s", max_wait, log_path)
    reconcile_detached(manager.state, log_path, require_terminal=finished)
    await manager.persist()
    return finished


def _log_completed(log_path: Path) -> bool:
    if not log_path.is_file():
        return False
    try:
        return parse_log_file(log_path).completed
    except OSError as error:
        logger.debug("Detached log %s not readable yet: %s", log_path, error)
        return False


def _real_session_id(parsed: ParsedLog) -> str | None:
    for event in parsed.events:
        if event.session_id and not event.session_id.startswith(DETACHED_PREFIX):
            return event.session_id
    return None
