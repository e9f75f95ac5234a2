"""
session_store.py — Durable on-device buffer of walk sessions.

The whole collection lives in one JSON file (the `rawPaths_v1` key of the
mobile app). Every mutation is a full read-modify-write of that file,
written to a temp file and renamed into place so a crash mid-write never
leaves a truncated collection behind. Fine for a handful of sessions with a
few thousand points each; not meant for high-frequency writers.

Only one writer (the device) is assumed.

Reading is lenient: a session that fails validation is dropped, and inside
a valid session malformed points / loops are dropped individually, so one
bad record from an older app version can't hide the rest of the history.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import uuid
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from app.core.config import settings
from app.models.session import BackendSessionPayload, GpsPoint, Loop, PathPoint, WalkSession

logger = logging.getLogger(__name__)


def _revive_items(model, items: Any) -> list:
    if not isinstance(items, list):
        return []
    revived = []
    for item in items:
        try:
            revived.append(model.model_validate(item))
        except ValidationError:
            continue
    return revived


def revive_sessions(raw: Any) -> list[WalkSession]:
    """Turn whatever was on disk into a list of valid sessions."""
    if not isinstance(raw, list):
        return []

    sessions = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        data = {
            **entry,
            "points": _revive_items(PathPoint, entry.get("points")),
            "loops": _revive_items(Loop, entry.get("loops")),
        }
        try:
            sessions.append(WalkSession.model_validate(data))
        except ValidationError as exc:
            logger.debug("Dropping malformed session %r: %s", entry.get("id"), exc)
    return sessions


class SessionStore:
    """JSON-file backed collection of WalkSessions."""

    def __init__(self, path: Optional[str | os.PathLike] = None):
        self.path = Path(path or settings.session_store_path)

    # ── Whole-collection access ───────────────────────────────────────────────

    def load_sessions(self) -> list[WalkSession]:
        """All stored sessions; an unreadable file reads as empty."""
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            logger.warning("Failed to read sessions from %s: %s", self.path, exc)
            return []
        if not text.strip():
            return []
        try:
            return revive_sessions(json.loads(text))
        except json.JSONDecodeError as exc:
            logger.warning("Session file %s is corrupt, ignoring it: %s", self.path, exc)
            return []

    def save_sessions(self, sessions: list[WalkSession]) -> None:
        """Atomically replace the stored collection."""
        payload = json.dumps([s.model_dump(mode="json") for s in sessions])
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get_all_sessions(self) -> list[WalkSession]:
        return self.load_sessions()

    def get_session(self, session_id: str) -> Optional[WalkSession]:
        return next((s for s in self.load_sessions() if s.id == session_id), None)

    def append_session(self, session: WalkSession) -> None:
        sessions = self.load_sessions()
        sessions.append(session)
        self.save_sessions(sessions)

    def clear_all_sessions(self) -> None:
        self.save_sessions([])

    # ── Single-session mutations ──────────────────────────────────────────────

    def start_session(self, started_at_ms: int, session_id: Optional[str] = None) -> WalkSession:
        session = WalkSession(id=session_id or uuid.uuid4().hex, started_at_ms=started_at_ms)
        self.append_session(session)
        logger.info("Walk session %s started", session.id)
        return session

    def append_point(self, session_id: str, point: GpsPoint) -> WalkSession:
        return self._mutate(
            session_id,
            lambda s: {"points": [*s.points, PathPoint.from_gps(point)]},
        )

    def append_loop(self, session_id: str, loop: Loop) -> WalkSession:
        return self._mutate(session_id, lambda s: {"loops": [*s.loops, loop]})

    def end_session(self, session_id: str, ended_at_ms: int) -> WalkSession:
        """Set ended_at_ms once; ending an already-ended session is a no-op."""
        sessions = self.load_sessions()
        for i, s in enumerate(sessions):
            if s.id != session_id:
                continue
            if not s.is_active:
                return s
            sessions[i] = s.model_copy(update={"ended_at_ms": ended_at_ms})
            self.save_sessions(sessions)
            logger.info(
                "Walk session %s ended: %d points, %d loops",
                session_id, len(s.points), len(s.loops),
            )
            return sessions[i]
        raise KeyError(session_id)

    def _mutate(self, session_id: str, change) -> WalkSession:
        sessions = self.load_sessions()
        for i, s in enumerate(sessions):
            if s.id != session_id:
                continue
            if not s.is_active:
                raise ValueError(f"session {session_id} has ended and can no longer change")
            sessions[i] = s.model_copy(update=change(s))
            self.save_sessions(sessions)
            return sessions[i]
        raise KeyError(session_id)


def to_backend_payload(sessions: list[WalkSession]) -> list[BackendSessionPayload]:
    """Summaries suitable for posting to the server."""
    return [BackendSessionPayload.from_session(s) for s in sessions]
