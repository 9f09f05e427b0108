"""Local stand-in for the tool, used by process and session integration tests.

Accepts the same flags as the real tool and answers by echoing the prompt.
Extra flags control timing, exit status and reported session identifiers.
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import time
import uuid


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt in the requested output format."""

    parser = argparse.ArgumentParser()
    parser.add_argument("-p", "--print", dest="print_mode", action="store_true")
    parser.add_argument("--output-format", default="text")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--resume")
    parser.add_argument("--continue", dest="continue_session", action="store_true")
    parser.add_argument("--session-id")
    for flag in (
        "--system-prompt",
        "--append-system-prompt",
        "--allowedTools",
        "--disallowedTools",
        "--mcp-config",
        "--permission-prompt-tool",
        "--max-turns",
    ):
        parser.add_argument(flag)
    parser.add_argument("prompt", nargs="?")
    parser.add_argument("--sleep-seconds", type=float, default=0.0)
    parser.add_argument("--line-delay", type=float, default=0.0)
    parser.add_argument("--ignore-sigterm", action="store_true")
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--stderr-text")
    parser.add_argument("--error-result")
    args, _unknown = parser.parse_known_args(argv)

    if args.ignore_sigterm:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    # A prompt arriving both as argument and on stdin is echoed twice.
    prompt = " ".join(part for part in (args.prompt, sys.stdin.read().strip()) if part)
    session_id = args.session_id or f"session-{uuid.uuid4().hex[:12]}"
    reply = _reply(prompt, resume=args.resume, continued=args.continue_session)

    if args.sleep_seconds:
        time.sleep(args.sleep_seconds)

    if args.output_format == "stream-json":
        for line in _stream_lines(session_id, reply, args.error_result):
            print(line, flush=True)
            if args.line_delay:
                time.sleep(args.line_delay)
    elif args.output_format == "json":
        print(json.dumps(_result_payload(session_id, reply, args.error_result)), flush=True)
    else:
        print(reply, flush=True)

    print(f"Session ID: {session_id}", file=sys.stderr, flush=True)
    if args.stderr_text:
        print(args.stderr_text, file=sys.stderr, flush=True)
    return args.exit_code


def _reply(prompt: str, *, resume: str | None, continued: bool) -> str:
    text = f"echo: {prompt.strip()}"
    if resume:
        return f"[resumed {resume}] {text}"
    if continued:
        return f"[continued] {text}"
    return text


def _result_payload(session_id: str, reply: str, error: str | None) -> dict[str, object]:
    if error:
        return {
            "type": "result",
            "subtype": "error",
            "is_error": True,
            "error": error,
            "session_id": session_id,
        }
    return {
        "type": "result",
        "subtype": "success",
        "is_error": False,
        "result": reply,
        "session_id": session_id,
        "total_cost_usd": 0.0,
        "duration_ms": 1,
        "num_turns": 1,
    }


def _stream_lines(session_id: str, reply: str, error: str | None) -> list[str]:
    events: list[dict[str, object]] = [
        {
            "type": "system",
            "subtype": "init",
            "session_id": session_id,
            "tools": ["Read"],
            "mcp_servers": [],
        },
        {
            "type": "assistant",
            "session_id": session_id,
            "message": {
                "id": "msg-1",
                "model": "echo",
                "content": [{"type": "text", "text": reply}],
                "stop_reason": "end_turn",
            },
        },
        _result_payload(session_id, reply, error),
    ]
    return [json.dumps(event) for event in events]


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
