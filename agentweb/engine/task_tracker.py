"""Per-session todo lists.

One ``TaskTracker`` is built per process (see runtime.py) and passed to
the todo tools and the session service. Everything is in memory and
synchronous; lists disappear when the session is deleted or the
process exits.
"""
from __future__ import annotations

import logging
from typing import Any

from agentweb.engine.errors import ValidationError
from agentweb.engine.models import TodoItem, TodoStatus, utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 100


def parse_status(value: Any) -> TodoStatus:
    try:
        return TodoStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in TodoStatus)
        raise ValidationError(f"Invalid status {value!r}; expected one of {allowed}") from None


def _parse_blocked_by(value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError("blockedBy must be a list of todo ids")
    return list(value)


class TaskTracker:
    def __init__(self) -> None:
        self._lists: dict[str, dict[str, TodoItem]] = {}
        self._counters: dict[str, int] = {}

    def create(
        self,
        session_id: str,
        subject: str,
        description: str | None = None,
        blocked_by: list[str] | None = None,
    ) -> TodoItem:
        if not subject or not subject.strip():
            raise ValidationError("subject must not be empty")
        number = self._counters.get(session_id, 0) + 1
        self._counters[session_id] = number
        item = TodoItem(
            id=f"todo-{number}",
            subject=subject.strip(),
            description=description,
            blocked_by=_parse_blocked_by(blocked_by),
        )
        self._lists.setdefault(session_id, {})[item.id] = item
        return item

    def get(self, session_id: str, todo_id: str) -> TodoItem | None:
        return self._lists.get(session_id, {}).get(todo_id)

    def update(self, session_id: str, todo_id: str, changes: dict[str, Any]) -> TodoItem | None:
        """Apply only the keys present in ``changes``. None when the id is unknown."""
        item = self.get(session_id, todo_id)
        if item is None:
            return None
        if "subject" in changes:
            subject = changes["subject"]
            if not isinstance(subject, str) or not subject.strip():
                raise ValidationError("subject must not be empty")
            item.subject = subject.strip()
        if "description" in changes:
            item.description = changes["description"]
        if "status" in changes:
            item.status = parse_status(changes["status"])
        if "blockedBy" in changes:
            item.blocked_by = _parse_blocked_by(changes["blockedBy"])
        item.updated_at = utc_now_iso()
        return item

    def delete(self, session_id: str, todo_id: str) -> bool:
        return self._lists.get(session_id, {}).pop(todo_id, None) is not None

    def list(
        self,
        session_id: str,
        status: TodoStatus | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[TodoItem]:
        limit = max(1, min(MAX_LIST_LIMIT, limit))
        items = list(self._lists.get(session_id, {}).values())
        if status is not None:
            items = [i for i in items if i.status == status]
        return items[:limit]

    def stats(self, session_id: str) -> dict[str, int]:
        items = self._lists.get(session_id, {}).values()
        counts = {s: 0 for s in TodoStatus}
        for item in items:
            counts[item.status] += 1
        return {
            "total": sum(counts.values()),
            "pending": counts[TodoStatus.PENDING],
            "inProgress": counts[TodoStatus.IN_PROGRESS],
            "completed": counts[TodoStatus.COMPLETED],
        }

    def clear_session(self, session_id: str) -> None:
        self._lists.pop(session_id, None)
        self._counters.pop(session_id, None)

    def shutdown(self) -> None:
        if self._lists:
            logger.info("TaskTracker: dropping todo lists for %d sessions", len(self._lists))
        self._lists.clear()
        self._counters.clear()
