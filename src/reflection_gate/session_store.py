from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from .errors import StateCorrupt, StateUnreadable
from .fsutil import atomic_write_text
from .models import Session

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_session_id(session_id: str) -> str:
    """Map a host-supplied identifier to a safe file stem."""
    cleaned = _UNSAFE_CHARS.sub("_", session_id).strip(".")
    return cleaned or "_"


class SessionStore(Protocol):
    def get(self, session_id: str) -> Session | None: ...

    def put(self, session: Session) -> None: ...

    def delete(self, session_id: str) -> bool: ...

    def list_ids(self) -> list[str]: ...


class FileSessionStore:
    """One JSON file per session, replaced atomically on every write."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def path_for(self, session_id: str) -> Path:
        return self.directory / f"{sanitize_session_id(session_id)}.json"

    def get(self, session_id: str) -> Session | None:
        path = self.path_for(session_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StateUnreadable(f"{path}: {exc}") from exc
        try:
            return Session.model_validate_json(raw)
        except ValidationError as exc:
            raise StateCorrupt(f"{path}: {exc.error_count()} validation error(s)") from exc

    def put(self, session: Session) -> None:
        atomic_write_text(self.path_for(session.id), session.model_dump_json(indent=2))

    def delete(self, session_id: str) -> bool:
        try:
            self.path_for(session_id).unlink()
        except FileNotFoundError:
            return False
        return True

    def list_ids(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        ids = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                ids.append(json.loads(path.read_text(encoding="utf-8"))["id"])
            except (OSError, ValueError, KeyError, TypeError):
                continue
        return ids


class MemorySessionStore:
    """In-process store with the same interface, for tests and embedding."""

    def __init__(self):
        self._sessions: dict[str, str] = {}

    def get(self, session_id: str) -> Session | None:
        raw = self._sessions.get(session_id)
        return Session.model_validate_json(raw) if raw is not None else None

    def put(self, session: Session) -> None:
        self._sessions[session.id] = session.model_dump_json()

    def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def list_ids(self) -> list[str]:
        return sorted(self._sessions)


def load_or_create(store: SessionStore, session_id: str, cwd: str = "", transcript_path: str = "") -> Session:
    """Existing session, or a fresh one when missing or unreadable."""
    try:
        session = store.get(session_id)
    except (StateCorrupt, StateUnreadable) as exc:
        logger.warning("Starting fresh session %s: %s", session_id, exc)
        session = None
    if session is None:
        session = Session(id=session_id, cwd=cwd, transcript_path=transcript_path)
    return session


def save_quietly(store: SessionStore, session: Session) -> bool:
    """Persist ``session``; a failed write is logged, never raised."""
    try:
        store.put(session)
    except OSError as exc:
        logger.warning("Could not save session %s: %s", session.id, exc)
        return False
    return True
