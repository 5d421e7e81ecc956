from __future__ import annotations

import json
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import fields
from pathlib import Path

from auth.errors import SessionStoreError
from auth.google_oauth2 import TokenSet

DEFAULT_SESSION_ID = "default"

_TOKEN_FIELDS = {field.name for field in fields(TokenSet)}
_REQUIRED_FIELDS = {"access_token", "refresh_token", "expires_at"}


class TokenStore(ABC):
    """Saved Google sessions, keyed by session id."""

    @abstractmethod
    async def get(self, session_id: str) -> TokenSet | None:
        raise NotImplementedError

    @abstractmethod
    async def set(self, session_id: str, token_set: TokenSet) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        raise NotImplementedError


class MemoryTokenStore(TokenStore):
    def __init__(self) -> None:
        self._sessions: dict[str, TokenSet] = {}

    async def get(self, session_id: str) -> TokenSet | None:
        return self._sessions.get(session_id)

    async def set(self, session_id: str, token_set: TokenSet) -> None:
        self._sessions[session_id] = token_set

    async def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)


def token_set_from_payload(payload: object, *, session_id: str, path: str = "") -> TokenSet:
    if not isinstance(payload, dict):
        raise SessionStoreError(f"Session {session_id!r} is not a JSON object.", path=path)
    missing = _REQUIRED_FIELDS - payload.keys()
    if missing:
        raise SessionStoreError(
            f"Session {session_id!r} is missing {', '.join(sorted(missing))}.",
            path=path,
        )
    if not isinstance(payload["expires_at"], int):
        raise SessionStoreError(f"Session {session_id!r} has a non-integer expires_at.", path=path)
    # Unknown keys from newer writers are ignored.
    return TokenSet(**{key: value for key, value in payload.items() if key in _TOKEN_FIELDS})


class FileTokenStore(TokenStore):
    """JSON file of sessions, rewritten atomically on every change."""

    def __init__(self, path: str | Path = ".session.json") -> None:
        self._path = Path(path)

    async def get(self, session_id: str) -> TokenSet | None:
        payload = self._read_sessions().get(session_id)
        if payload is None:
            return None
        return token_set_from_payload(payload, session_id=session_id, path=str(self._path))

    async def set(self, session_id: str, token_set: TokenSet) -> None:
        sessions = self._read_sessions()
        sessions[session_id] = token_set.to_payload()
        self._write_sessions(sessions)

    async def delete(self, session_id: str) -> None:
        sessions = self._read_sessions()
        if sessions.pop(session_id, None) is not None:
            self._write_sessions(sessions)

    def _read_sessions(self) -> dict[str, object]:
        if not self._path.exists():
            return {}

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except ValueError as error:
            raise SessionStoreError(
                f"Session store {self._path} is not valid JSON.", path=str(self._path)
            ) from error
        if not isinstance(raw, dict):
            raise SessionStoreError(
                "Session store file is invalid; expected top-level JSON object.",
                path=str(self._path),
            )
        return raw

    def _write_sessions(self, sessions: dict[str, object]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f"{self._path.name}.",
            suffix=".tmp",
            dir=self._path.parent,
        )
        tmp_path = Path(tmp_name)

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(sessions, handle, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
