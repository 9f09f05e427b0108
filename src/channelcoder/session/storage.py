"""Persistence of session state as JSON files."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

import aiofiles

from channelcoder.session.models import SessionInfo, SessionState, state_from_dict, state_to_dict

logger = logging.getLogger(__name__)

_SUFFIX = ".json"


class SessionStorageError(RuntimeError):
    """Session file is missing or cannot be decoded."""


class SessionStorage(Protocol):
    """Three-method contract the session manager depends on."""

    async def save(self, state: SessionState, name: str | None = None) -> Path: ...

    async def load(self, name_or_path: str | Path) -> SessionState: ...

    async def list(self) -> list[SessionInfo]: ...


class FileSessionStorage:
    """One pretty-printed JSON file per session under `base_path`."""

    def __init__(self, base_path: Path) -> None:
        self.base_path = base_path

    async def save(self, state: SessionState, name: str | None = None) -> Path:
        self.base_path.mkdir(parents=True, exist_ok=True)
        if name:
            filename = _with_suffix(name)
        else:
            filename = f"session-{int(datetime.now(UTC).timestamp() * 1000)}{_SUFFIX}"
        path = self.base_path / filename
        payload = json.dumps(state_to_dict(state), ensure_ascii=False, indent=2)
        async with aiofiles.open(path, "w", encoding="utf-8") as handle:
            await handle.write(payload)
        logger.debug("Saved session to %s", path)
        return path

    async def load(self, name_or_path: str | Path) -> SessionState:
        path = self.resolve(name_or_path)
        try:
            async with aiofiles.open(path, encoding="utf-8") as handle:
                raw = json.loads(await handle.read())
            if not isinstance(raw, dict):
                raise TypeError("session file must contain a JSON object")
            return state_from_dict(raw)
        except (OSError, ValueError, TypeError) as error:
            raise SessionStorageError(f"Failed to load session from {path}: {error}") from error

    async def list(self) -> list[SessionInfo]:
        """Stored sessions, most recently active first.

        Files that do not decode are skipped with a warning.
        """

        if not self.base_path.is_dir():
            return []
        sessions: list[SessionInfo] = []
        for path in sorted(self.base_path.glob(f"*{_SUFFIX}")):
            try:
                state = await self.load(path)
            except SessionStorageError as error:
                logger.warning("Skipping invalid session file %s: %s", path.name, error)
                continue
            sessions.append(
                SessionInfo(
                    name=state.metadata.name or path.stem,
                    path=path,
                    created=state.metadata.created,
                    last_active=state.metadata.last_active,
                    message_count=len(state.messages),
                ),
            )
        sessions.sort(key=lambda info: info.last_active, reverse=True)
        return sessions

    async def delete(self, name_or_path: str | Path) -> None:
        path = self.resolve(name_or_path)
        try:
            path.unlink()
        except FileNotFoundError as error:
            raise SessionStorageError(f"Session file not found: {path}") from error

    async def exists(self, name: str) -> bool:
        return (self.base_path / _with_suffix(name)).is_file()

    def resolve(self, name_or_path: str | Path) -> Path:
        """Names are looked up under `base_path`; anything with a separator is a path."""

        if isinstance(name_or_path, Path):
            return name_or_path
        if "/" in name_or_path or "\\" in name_or_path:
            return Path(name_or_path)
        return self.base_path / _with_suffix(name_or_path)


def _with_suffix(name: str) -> str:
    return name if name.endswith(_SUFFIX) else f"{name}{_SUFFIX}"
