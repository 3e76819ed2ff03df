"""Persisted chat message model.

Content blocks are kept as plain dicts in their wire shape:

    {"type": "text", "content": "..."}
    {"type": "thinking", "content": "..."}
    {"type": "tool_use", "toolUse": {"id": ..., "name": ..., "input": {...}}}
    {"type": "tool_result", "toolResult": {"toolUseId": ..., "content": ..., "isError": bool}}
    {"type": "image" | "document", "mediaType": ..., "data": <base64>, "name": ...}
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from agentweb.engine.models import utc_now_iso


def text_block(text: str) -> dict[str, Any]:
    return {"type": "text", "content": text}


def thinking_block(text: str) -> dict[str, Any]:
    return {"type": "thinking", "content": text}


def tool_use_block(tool_id: str, name: str, tool_input: dict[str, Any]) -> dict[str, Any]:
    return {"type": "tool_use", "toolUse": {"id": tool_id, "name": name, "input": tool_input}}


def tool_result_block(tool_use_id: str, content: str, is_error: bool) -> dict[str, Any]:
    return {
        "type": "tool_result",
        "toolResult": {"toolUseId": tool_use_id, "content": content, "isError": is_error},
    }


@dataclass
class TranscriptEntry:
    role: str
    content: list[dict[str, Any]]
    session_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=utc_now_iso)
    model: str | None = None
    stop_reason: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "sessionId": self.session_id,
            "role": self.role,
            "content": self.content,
            "createdAt": self.created_at,
        }
        if self.model is not None:
            data["model"] = self.model
        if self.stop_reason is not None:
            data["stopReason"] = self.stop_reason
        if self.input_tokens is not None:
            data["inputTokens"] = self.input_tokens
        if self.output_tokens is not None:
            data["outputTokens"] = self.output_tokens
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TranscriptEntry:
        role = data["role"]
        if role not in ("user", "assistant"):
            raise ValueError(f"unknown role {role!r}")
        content = data.get("content", [])
        if isinstance(content, str):
            content = [text_block(content)]
        if not isinstance(content, list):
            raise ValueError("content must be a list of blocks")
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            session_id=str(data.get("sessionId") or ""),
            role=role,
            content=content,
            created_at=data.get("createdAt") or utc_now_iso(),
            model=data.get("model"),
            stop_reason=data.get("stopReason"),
            input_tokens=data.get("inputTokens"),
            output_tokens=data.get("outputTokens"),
        )

    def text(self) -> str:
        return "".join(b.get("content", "") for b in self.content if b.get("type") == "text")
