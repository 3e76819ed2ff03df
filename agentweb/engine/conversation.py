"""Chat request parsing and conversion between stored and model messages."""
from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agentweb.engine.errors import ValidationError
from agentweb.engine.models import PermissionMode
from agentweb.shared.models.message import TranscriptEntry, text_block

logger = logging.getLogger(__name__)

MAX_ATTACHMENTS = 10
MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024
PROJECT_CONTEXT_FILES = ("CLAUDE.md", "AGENTS.md")
MAX_PROJECT_CONTEXT_CHARS = 20_000

_THINKING_KEYWORDS = re.compile(
    r"\b(code|function|class|bug|error|debug|fix|implement|refactor|optimi[sz]e|"
    r"algorithm|architecture|design|test|analy[sz]e|explain why)\b",
    re.IGNORECASE,
)


@dataclass
class Attachment:
    name: str
    media_type: str
    data: str  # base64

    def to_block(self) -> dict[str, Any]:
        if self.media_type.startswith("image/"):
            kind = "image"
        elif self.media_type == "application/pdf":
            kind = "document"
        else:
            kind = "file"
        return {"type": kind, "mediaType": self.media_type, "data": self.data, "name": self.name}


@dataclass
class ChatRequest:
    message: str
    session_id: str | None = None
    project_id: str | None = None
    attachments: list[Attachment] = field(default_factory=list)
    permission_mode: PermissionMode = PermissionMode.DEFAULT

    @classmethod
    def from_dict(cls, data: Any) -> ChatRequest:
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        message = data.get("message")
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("message is required")
        for key in ("sessionId", "projectId"):
            if data.get(key) is not None and not isinstance(data[key], str):
                raise ValidationError(f"{key} must be a string")
        try:
            mode = PermissionMode(data.get("permissionMode") or PermissionMode.DEFAULT.value)
        except ValueError:
            raise ValidationError("permissionMode must be one of plan, acceptEdits, default") from None

        raw_attachments = data.get("attachments") or []
        if not isinstance(raw_attachments, list):
            raise ValidationError("attachments must be a list")
        if len(raw_attachments) > MAX_ATTACHMENTS:
            raise ValidationError(f"At most {MAX_ATTACHMENTS} attachments are allowed")
        attachments = [_parse_attachment(index, a) for index, a in enumerate(raw_attachments, start=1)]

        return cls(
            message=message,
            session_id=data.get("sessionId") or None,
            project_id=data.get("projectId") or None,
            attachments=attachments,
            permission_mode=mode,
        )


def _parse_attachment(index: int, raw: Any) -> Attachment:
    if not isinstance(raw, dict):
        raise ValidationError(f"Attachment #{index} must be an object")
    media_type = raw.get("mediaType") or raw.get("type")
    data = raw.get("data")
    if not isinstance(media_type, str) or not isinstance(data, str):
        raise ValidationError(f"Attachment #{index} needs mediaType and base64 data")
    if not (media_type.startswith(("image/", "text/")) or media_type == "application/pdf"):
        raise ValidationError(f"Attachment #{index}: unsupported type {media_type}")
    try:
        decoded = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(f"Attachment #{index}: data is not valid base64") from None
    if len(decoded) > MAX_ATTACHMENT_BYTES:
        raise ValidationError(
            f"Attachment #{index} is {len(decoded)} bytes; the limit is {MAX_ATTACHMENT_BYTES}"
        )
    return Attachment(name=str(raw.get("name") or f"attachment-{index}"), media_type=media_type, data=data)


def should_use_thinking(message: str) -> bool:
    return len(message) > 100 or "`" in message or bool(_THINKING_KEYWORDS.search(message))


def user_content_blocks(request: ChatRequest) -> list[dict[str, Any]]:
    return [text_block(request.message)] + [a.to_block() for a in request.attachments]


def build_system_prompt(working_dir: str, tool_names: list[str], user_rules: str = "") -> str:
    lines = [
        "You are a coding assistant with access to tools that act on the user's workspace.",
        f"Working directory: {working_dir}",
        "All file paths are resolved relative to the working directory and cannot leave it.",
        f"Available tools: {', '.join(tool_names)}",
        "Prefer reading files before editing them, and keep edits minimal.",
    ]
    for name in PROJECT_CONTEXT_FILES:
        path = Path(working_dir) / name
        if path.is_file():
            try:
                text = path.read_text(encoding="utf-8", errors="replace")[:MAX_PROJECT_CONTEXT_CHARS]
            except OSError as exc:
                logger.warning("build_system_prompt: cannot read %s: %s", path, exc)
                continue
            lines += ["", f"Project instructions ({name}):", text]
    if user_rules:
        lines += ["", "User rules (always follow these):", user_rules]
    return "\n".join(lines)


def _api_block(block: dict[str, Any]) -> dict[str, Any] | None:
    kind = block.get("type")
    if kind == "text":
        text = block.get("content", "")
        return {"type": "text", "text": text} if text else None
    if kind == "tool_use":
        use = block["toolUse"]
        return {"type": "tool_use", "id": use["id"], "name": use["name"], "input": use.get("input") or {}}
    if kind == "tool_result":
        res = block["toolResult"]
        return {
            "type": "tool_result",
            "tool_use_id": res["toolUseId"],
            "content": res.get("content", ""),
            "is_error": bool(res.get("isError")),
        }
    if kind in ("image", "document"):
        return {
            "type": kind,
            "source": {"type": "base64", "media_type": block["mediaType"], "data": block["data"]},
        }
    if kind == "file":
        try:
            text = base64.b64decode(block["data"]).decode("utf-8", errors="replace")
        except (binascii.Error, ValueError):
            return None
        return {"type": "text", "text": f"Attachment {block.get('name', '')}:\n{text}"}
    # Thinking blocks from earlier turns are not sent back.
    return None


def to_model_messages(entries: list[TranscriptEntry]) -> list[dict[str, Any]]:
    """Stored transcript -> Messages API ``messages``.

    An assistant entry stores its tool results inline; they are split
    out into user messages. Tool uses without a result (an aborted
    turn) are dropped. Adjacent same-role messages are merged.
    """
    messages: list[dict[str, Any]] = []

    def push(role: str, content: list[dict[str, Any]]) -> None:
        if not content:
            return
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"].extend(content)
        else:
            messages.append({"role": role, "content": list(content)})

    for entry in entries:
        if entry.role == "user":
            push("user", [b for b in map(_api_block, entry.content) if b])
            continue
        answered = {
            b["toolResult"]["toolUseId"] for b in entry.content if b.get("type") == "tool_result"
        }
        pending: list[dict[str, Any]] = []
        results: list[dict[str, Any]] = []
        for block in entry.content:
            if block.get("type") == "tool_use" and block["toolUse"]["id"] not in answered:
                continue
            api = _api_block(block)
            if api is None:
                continue
            if api["type"] == "tool_result":
                results.append(api)
                continue
            if results:
                push("assistant", pending)
                push("user", results)
                pending, results = [], []
            pending.append(api)
        push("assistant", pending)
        push("user", results)
    return messages
