"""Session state, snapshot export/import and on-disk persistence."""

from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from codeloop.core.history import Message, TokenUsage
from codeloop.handles import FileHandleState

_log = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1
DEFAULT_SESSIONS_DIR = Path.home() / ".codeloop" / "sessions"
DEFAULT_SESSION_CAP = 50


class Session(BaseModel):
    """Everything one conversation owns. Only its agent loop mutates it."""

    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    parent_session_id: str | None = None
    subagent_type: str | None = None
    model_id: str | None = None
    mode: Literal["build", "plan"] = "build"
    history: list[Message] = Field(default_factory=list)
    pending_plan: str | None = None
    mentioned_skills: list[str] = Field(default_factory=list)
    file_handles: FileHandleState = Field(default_factory=FileHandleState)
    usage: TokenUsage | None = None

    @property
    def is_subagent(self) -> bool:
        return bool(self.parent_session_id or self.subagent_type)


def export_snapshot(session: Session) -> dict[str, Any]:
    """JSON-safe snapshot of a session."""
    data = session.model_dump(mode="json")
    return {
        "version": SNAPSHOT_VERSION,
        "saved_at": datetime.now(timezone.utc).isoformat(),
        **data,
    }


def import_snapshot(data: dict[str, Any]) -> Session:
    """Rebuild a session from :func:`export_snapshot` output.

    Raises:
        ValueError: If the snapshot version is unsupported or the payload is invalid.
    """
    if not isinstance(data, dict):
        raise ValueError("Session snapshot must be a JSON object")
    version = data.get("version")
    if version != SNAPSHOT_VERSION:
        raise ValueError(f"Unsupported session snapshot version: {version!r}")
    payload = {k: v for k, v in data.items() if k not in ("version", "saved_at")}
    try:
        return Session.model_validate(payload)
    except ValidationError as e:
        raise ValueError(f"Invalid session snapshot: {e}") from None


class SessionStore:
    """Persists session snapshots as JSON files with atomic writes."""

    def __init__(self, sessions_dir: Path | None = None, session_cap: int = DEFAULT_SESSION_CAP):
        """Initialize SessionStore.

        Args:
            sessions_dir: Directory to store sessions. Defaults to ~/.codeloop/sessions/
            session_cap: Maximum number of sessions to keep. Defaults to 50.
        """
        self._sessions_dir = sessions_dir or DEFAULT_SESSIONS_DIR
        self._session_cap = session_cap

    def _atomic_write(self, path: Path, data: str) -> None:
        """Write to .tmp file, then rename. Safe on crash/Ctrl+C."""
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(data, encoding="utf-8")
        os.replace(str(tmp_path), str(path))

    def _get_session_path(self, session_id: str) -> Path:
        return self._sessions_dir / f"{session_id}.json"

    def save(self, session: Session) -> Path:
        self._sessions_dir.mkdir(parents=True, exist_ok=True)
        path = self._get_session_path(session.session_id)
        self._atomic_write(path, json.dumps(export_snapshot(session), indent=2, ensure_ascii=False))
        self._prune_old_sessions()
        return path

    def load(self, session_id: str) -> Session | None:
        path = self._get_session_path(session_id)
        if not path.exists():
            return None
        try:
            return import_snapshot(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, OSError, ValueError) as e:
            _log.warning("Could not load session %s: %s", session_id, e)
            return None

    def list_sessions(self) -> list[dict[str, Any]]:
        """Saved sessions, most recent first."""
        if not self._sessions_dir.exists():
            return []
        sessions = []
        for session_file in self._sessions_dir.glob("*.json"):
            try:
                data = json.loads(session_file.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as e:
                _log.debug("Skipping session %s: %s", session_file, e)
                continue
            sessions.append({
                "session_id": data.get("session_id", session_file.stem),
                "saved_at": data.get("saved_at", ""),
                "model_id": data.get("model_id"),
                "messages": len(data.get("history") or []),
            })
        sessions.sort(key=lambda s: s["saved_at"], reverse=True)
        return sessions

    def delete(self, session_id: str) -> bool:
        path = self._get_session_path(session_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def _prune_old_sessions(self) -> None:
        for stale in self.list_sessions()[self._session_cap:]:
            self.delete(stale["session_id"])
