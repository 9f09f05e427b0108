"""Best-effort structured payload recovery from tool stdout."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\}|\[.*?\])\s*```", re.DOTALL | re.IGNORECASE)


@dataclass(slots=True)
class ExtractedPayload:
    """Payload found in stdout and how it was found."""

    data: Any
    text: str | None
    session_id: str | None
    parser: str
    envelope: dict[str, Any] | None = None


def extract_payload(stdout_text: str) -> ExtractedPayload | None:
    """Recover the answer from stdout.

    Tries, in order: a JSON envelope whose `result` field holds the answer
    (a whole-output object, or the last `result` line of a line-delimited
    stream), then a fenced JSON block in free text, then a bare JSON
    document.
    """

    text = stdout_text.strip()
    if not text:
        return None

    envelope = _find_envelope(text)
    if envelope is not None:
        return _from_envelope(envelope)

    fenced = _parse_fenced(text)
    if fenced is not None:
        return ExtractedPayload(data=fenced, text=text, session_id=None, parser="fenced_json")

    document = _try_load(text)
    if isinstance(document, dict | list):
        return ExtractedPayload(
            data=document,
            text=None,
            session_id=_session_id_of(document),
            parser="json_document",
        )
    return None


def find_error_payload(stdout_text: str) -> dict[str, Any] | None:
    """Structured error reported by the tool on stdout, if any."""

    text = stdout_text.strip()
    if not text:
        return None
    candidates: list[object] = [_try_load(text)]
    candidates.extend(_try_load(line) for line in reversed(text.splitlines()))
    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        if candidate.get("type") == "error":
            return candidate
        if candidate.get("is_error") is True or (
            candidate.get("type") == "result" and candidate.get("subtype") == "error"
        ):
            return candidate
    return None


def _from_envelope(envelope: dict[str, Any]) -> ExtractedPayload:
    session_id = _session_id_of(envelope)
    result = envelope.get("result")
    if isinstance(result, str):
        fenced = _parse_fenced(result)
        if fenced is not None:
            return ExtractedPayload(
                data=fenced,
                text=result,
                session_id=session_id,
                parser="json_envelope_fenced",
                envelope=envelope,
            )
        return ExtractedPayload(
            data=result,
            text=result,
            session_id=session_id,
            parser="json_envelope",
            envelope=envelope,
        )
    return ExtractedPayload(
        data=result,
        text=None,
        session_id=session_id,
        parser="json_envelope",
        envelope=envelope,
    )


def _find_envelope(text: str) -> dict[str, Any] | None:
    direct = _try_load(text)
    if isinstance(direct, dict):
        return direct if "result" in direct else None

    for line in reversed(text.splitlines()):
        candidate = _try_load(line)
        if isinstance(candidate, dict) and candidate.get("type") == "result":
            return candidate
    return None


def _parse_fenced(text: str) -> Any:
    for match in _FENCED_JSON.finditer(text):
        parsed = _try_load(match.group(1))
        if parsed is not None:
            return parsed
    return None


def _try_load(raw: str) -> Any:
    raw = raw.strip()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def _session_id_of(payload: object) -> str | None:
    if not isinstance(payload, dict):
        return None
    for key in ("session_id", "sessionId"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None
