"""Session records and the operations that span several stores.

``SessionIndex`` keeps session metadata in one JSON file.
``SessionService`` composes it with the transcript store and the task
tracker for fork, import and delete.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from agentweb.engine.errors import NotFoundError, ValidationError
from agentweb.engine.models import utc_now_iso
from agentweb.engine.task_tracker import TaskTracker
from agentweb.shared.services.durable_write import atomic_write_text
from agentweb.shared.services.transcript_store import TranscriptStore

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"


@dataclass
class SessionRecord:
    user_id: str
    title: str = DEFAULT_TITLE
    project_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    parent_session_id: str | None = None
    fork_message_index: int | None = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "projectId": self.project_id,
            "parentSessionId": self.parent_session_id,
            "forkMessageIndex": self.fork_message_index,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class SessionIndex:
    """Session metadata persisted to a JSON file (in memory when path is None)."""

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path) if path else None
        self._sessions: dict[str, SessionRecord] = {}
        self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            for entry in raw.get("sessions", []):
                record = SessionRecord(**entry)
                self._sessions[record.id] = record
        except (OSError, json.JSONDecodeError, TypeError) as exc:
            logger.warning("SessionIndex: failed to load %s: %s", self._path, exc)

    def _save(self) -> None:
        if self._path is None:
            return
        payload = {"sessions": [asdict(r) for r in self._sessions.values()]}
        atomic_write_text(self._path, json.dumps(payload, indent=2))

    def create(
        self,
        user_id: str,
        title: str = DEFAULT_TITLE,
        project_id: str | None = None,
        *,
        parent_session_id: str | None = None,
        fork_message_index: int | None = None,
    ) -> SessionRecord:
        record = SessionRecord(
            user_id=user_id,
            title=title,
            project_id=project_id,
            parent_session_id=parent_session_id,
            fork_message_index=fork_message_index,
        )
        self._sessions[record.id] = record
        self._save()
        return record

    def get(self, user_id: str, session_id: str) -> SessionRecord:
        record = self._sessions.get(session_id)
        if record is None or record.user_id != user_id:
            raise NotFoundError("Session", session_id)
        return record

    def list(self, user_id: str, project_id: str | None = None) -> list[SessionRecord]:
        records = [
            r for r in self._sessions.values()
            if r.user_id == user_id and (project_id is None or r.project_id == project_id)
        ]
        return sorted(records, key=lambda r: r.updated_at, reverse=True)

    def update_title(self, user_id: str, session_id: str, title: str) -> SessionRecord:
        record = self.get(user_id, session_id)
        record.title = title
        record.updated_at = utc_now_iso()
        self._save()
        return record

    def touch(self, user_id: str, session_id: str) -> None:
        record = self.get(user_id, session_id)
        record.updated_at = utc_now_iso()
        self._save()

    def delete(self, user_id: str, session_id: str) -> None:
        self.get(user_id, session_id)
        del self._sessions[session_id]
        self._save()


class SessionService:
    def __init__(self, index: SessionIndex, transcripts: TranscriptStore, tracker: TaskTracker) -> None:
        self.index = index
        self.transcripts = transcripts
        self.tracker = tracker

    def fork(self, user_id: str, session_id: str, message_index: int) -> SessionRecord:
        """New session holding messages ``0..message_index`` of the source."""
        source = self.index.get(user_id, session_id)
        total = self.transcripts.count(user_id, session_id)
        if not isinstance(message_index, int) or message_index < 0 or message_index >= total:
            raise ValidationError(
                f"messageIndex must be between 0 and {total - 1}" if total else "Session has no messages to fork"
            )
        forked = self.index.create(
            user_id,
            title=f"{source.title} (Fork)",
            project_id=source.project_id,
            parent_session_id=source.id,
            fork_message_index=message_index,
        )
        copied = self.transcripts.copy(user_id, session_id, forked.id, message_index + 1)
        logger.info("SessionService: forked %s -> %s (%d messages)", session_id, forked.id, copied)
        return forked

    def import_transcript(
        self,
        user_id: str,
        source: str,
        title: str | None = None,
        project_id: str | None = None,
    ) -> SessionRecord:
        source_path = Path(source).expanduser()
        if not source_path.is_file():
            raise NotFoundError("Transcript file", source)
        record = self.index.create(user_id, title=title or source_path.stem, project_id=project_id)
        try:
            self.transcripts.import_file(user_id, record.id, source_path)
        except Exception:
            self.index.delete(user_id, record.id)
            raise
        return record

    def delete(self, user_id: str, session_id: str) -> None:
        self.index.delete(user_id, session_id)
        self.transcripts.delete(user_id, session_id)
        self.tracker.clear_session(session_id)
