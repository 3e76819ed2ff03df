"""Core data models for the agent engine.

Dataclasses and enums shared by the dispatcher, tools, MCP registry and
session controller. Kept import-free of the rest of the package to avoid
circular imports.
"""
from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Capability(str, Enum):
    """Feature-flag class a tool belongs to."""
    READ_ONLY = "readOnly"
    FILE_SYSTEM = "fileSystem"
    BASH = "bash"


class PermissionMode(str, Enum):
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    PLAN = "plan"


class McpServerStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


class TodoStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass
class ToolCallRequest:
    """A tool call the model asked for. Consumed once."""
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    """Outcome of a tool call. Failures are data, never exceptions."""
    content: str
    is_error: bool = False

    @classmethod
    def ok(cls, content: str) -> ToolResult:
        return cls(content=content)

    @classmethod
    def error(cls, content: str) -> ToolResult:
        return cls(content=content, is_error=True)


@dataclass
class FeatureFlags:
    file_system: bool = True
    bash: bool = True

    def allows(self, capability: Capability) -> bool:
        if capability == Capability.FILE_SYSTEM:
            return self.file_system
        if capability == Capability.BASH:
            return self.bash
        return True

    def to_dict(self) -> dict[str, bool]:
        return {"fileSystem": self.file_system, "bash": self.bash}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> FeatureFlags:
        data = data or {}
        return cls(
            file_system=bool(data.get("fileSystem", True)),
            bash=bool(data.get("bash", True)),
        )


@dataclass
class McpServerRecord:
    """Configuration and status of one MCP server.

    ``owner_id`` is None for global servers visible to every user.
    Status changes only through the registry.
    """
    name: str
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    owner_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: McpServerStatus = McpServerStatus.STOPPED
    last_error: str | None = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "name": self.name,
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env),
            "enabled": self.enabled,
            "status": self.status.value,
            "lastError": self.last_error,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> McpServerRecord:
        return cls(
            id=data["id"],
            owner_id=data.get("ownerId"),
            name=data["name"],
            command=data["command"],
            args=list(data.get("args") or []),
            env=dict(data.get("env") or {}),
            enabled=bool(data.get("enabled", True)),
            # Live processes never survive a restart.
            status=McpServerStatus.STOPPED,
            last_error=None,
            created_at=data.get("createdAt") or utc_now_iso(),
            updated_at=data.get("updatedAt") or utc_now_iso(),
        )


@dataclass
class TodoItem:
    id: str
    subject: str
    description: str | None = None
    status: TodoStatus = TodoStatus.PENDING
    blocked_by: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject": self.subject,
            "description": self.description,
            "status": self.status.value,
            "blockedBy": list(self.blocked_by),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class StreamEvent:
    """One ordered unit of a turn's streamed output."""
    type: str
    data: dict[str, Any]
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.data, "timestamp": self.timestamp}

    def to_sse(self) -> bytes:
        payload = json.dumps(self.to_dict())
        return f"event: {self.type}\ndata: {payload}\n\n".encode()
