"""Deterministic classification of finished, unsuccessful executions."""

from __future__ import annotations

from channelcoder.process.base import ExecutionError, FailureKind
from channelcoder.process.output import find_error_payload

_STDERR_PREVIEW_CHARS = 2_000

_REASON_PATTERNS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "billing_or_quota",
        ("quota", "insufficient", "billing", "credit balance", "usage limit"),
    ),
    (
        "access_or_auth",
        ("unauthorized", "forbidden", "invalid api key", "authentication", "please run /login"),
    ),
    (
        "model_not_available",
        ("model not found", "unknown model", "invalid model", "model is not available"),
    ),
    (
        "rate_limited",
        ("too many requests", "rate limit", "429", "overloaded", "try again later"),
    ),
)


def classify_failure(
    *,
    exit_code: int | None,
    stdout: str,
    stderr: str,
    timed_out: bool,
    timeout_seconds: float | None = None,
) -> ExecutionError:
    """Map an unsuccessful run onto the error taxonomy.

    Timeouts win over the exit code the killed process ends up with. For
    other non-zero exits a structured error on stdout is preferred over the
    raw stderr text.
    """

    if timed_out:
        return ExecutionError(
            kind=FailureKind.TIMEOUT,
            message=f"Process timed out after {_format_seconds(timeout_seconds)}",
            exit_code=exit_code,
        )

    payload = find_error_payload(stdout)
    if payload is not None:
        message = _payload_message(payload)
        return ExecutionError(
            kind=FailureKind.NON_ZERO_EXIT,
            message=f"Process exited with code {exit_code}: {message}",
            exit_code=exit_code,
            structured=True,
            payload=payload,
            reason=_match_reason(message),
        )

    stderr_text = stderr.strip()
    message = f"Process exited with code {exit_code}"
    if stderr_text:
        message = f"{message}: {stderr_text[:_STDERR_PREVIEW_CHARS]}"
    return ExecutionError(
        kind=FailureKind.NON_ZERO_EXIT,
        message=message,
        exit_code=exit_code,
        reason=_match_reason(f"{stderr}\n{stdout}"),
    )


def _payload_message(payload: dict[str, object]) -> str:
    for key in ("error", "result", "message"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, dict):
            nested = value.get("message")
            if isinstance(nested, str) and nested.strip():
                return nested.strip()
    return "tool reported an error"


def _match_reason(text: str) -> str | None:
    haystack = text.lower()
    for reason, patterns in _REASON_PATTERNS:
        for pattern in patterns:
            if pattern in haystack:
                return reason
    return None


def _format_seconds(seconds: float | None) -> str:
    if seconds is None:
        return "the configured limit"
    return f"{seconds:g}s"
