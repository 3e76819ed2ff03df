"""Todo tools backed by the process-wide ``TaskTracker``."""
from __future__ import annotations

import json

from agentweb.engine.errors import ValidationError
from agentweb.engine.models import Capability, ToolResult
from agentweb.engine.task_tracker import TaskTracker, parse_status
from agentweb.engine.tools.base import Tool, optional_int, require_str

_ACTIONS = ("create", "update", "delete")


def _require_session(session_id: str | None) -> str:
    if not session_id:
        raise ValidationError("Todo tools are only available inside a chat session")
    return session_id


class TodoWriteTool(Tool):
    name = "TodoWrite"
    capability = Capability.FILE_SYSTEM
    description = "Create, update or delete an item in this session's todo list."
    input_schema = {
        "type": "object",
        "properties": {
            "action": {"type": "string", "enum": list(_ACTIONS)},
            "id": {"type": "string"},
            "subject": {"type": "string"},
            "description": {"type": "string"},
            "status": {"type": "string", "enum": ["pending", "in_progress", "completed"]},
            "blockedBy": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["action"],
    }

    def __init__(self, tracker: TaskTracker) -> None:
        self.tracker = tracker

    async def execute(self, params, working_dir, *, session_id=None):
        session_id = _require_session(session_id)
        action = params.get("action")
        if action not in _ACTIONS:
            raise ValidationError(f"action must be one of {', '.join(_ACTIONS)}")

        if action == "create":
            item = self.tracker.create(
                session_id,
                require_str(params, "subject"),
                description=params.get("description"),
                blocked_by=params.get("blockedBy"),
            )
            return ToolResult.ok(f"Created {item.id}: {item.subject}")

        todo_id = require_str(params, "id")
        if action == "delete":
            if self.tracker.delete(session_id, todo_id):
                return ToolResult.ok(f"Deleted {todo_id}")
            return ToolResult.error(f"Todo {todo_id} not found")

        changes = {
            key: params[key]
            for key in ("subject", "description", "status", "blockedBy")
            if key in params
        }
        if not changes:
            raise ValidationError("update needs at least one of subject, description, status, blockedBy")
        item = self.tracker.update(session_id, todo_id, changes)
        if item is None:
            return ToolResult.error(f"Todo {todo_id} not found")
        return ToolResult.ok(f"Updated {item.id}: {item.subject} [{item.status.value}]")


class TodoReadTool(Tool):
    name = "TodoRead"
    description = "List this session's todo items with counts by status."
    input_schema = {
        "type": "object",
        "properties": {
            "status": {"type": "string", "enum": ["pending", "in_progress", "completed"]},
            "limit": {"type": "integer", "minimum": 1, "maximum": 100},
        },
    }

    def __init__(self, tracker: TaskTracker) -> None:
        self.tracker = tracker

    async def execute(self, params, working_dir, *, session_id=None):
        session_id = _require_session(session_id)
        status = parse_status(params["status"]) if params.get("status") else None
        limit = optional_int(params, "limit", 50, minimum=1, maximum=100)
        items = self.tracker.list(session_id, status=status, limit=limit)
        payload = {
            "todos": [item.to_dict() for item in items],
            "stats": self.tracker.stats(session_id),
        }
        return ToolResult.ok(json.dumps(payload, indent=2))
