"""File tools: Read, Write, Edit, MultiEdit, Diff."""
from __future__ import annotations

import difflib
import logging
from pathlib import Path
from typing import Any

from agentweb.engine.errors import NotFoundError, ValidationError
from agentweb.engine.models import Capability, ToolResult
from agentweb.engine.tools.base import (
    MAX_FILE_BYTES,
    Tool,
    display_path,
    optional_int,
    require_str,
    resolve_path,
)
from agentweb.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

DEFAULT_READ_LIMIT = 2000
MAX_LINE_CHARS = 2000
PREVIEW_CHARS = 200
PREVIEW_LINES = 10


def _read_text(path: Path, working_dir: str) -> str:
    if not path.exists():
        raise NotFoundError("File", display_path(path, working_dir))
    if path.is_dir():
        raise ValidationError(f"{display_path(path, working_dir)} is a directory, not a file")
    size = path.stat().st_size
    if size > MAX_FILE_BYTES:
        raise ValidationError(
            f"File is too large ({size} bytes); the limit is {MAX_FILE_BYTES} bytes"
        )
    try:
        return path.read_bytes().decode("utf-8")
    except UnicodeDecodeError:
        raise ValidationError(
            f"{display_path(path, working_dir)} is not a UTF-8 text file"
        ) from None


def _count_lines(text: str) -> int:
    if not text:
        return 0
    return text.count("\n") + (0 if text.endswith("\n") else 1)


def _not_found_message(old: str, content: str, rel: str, label: str = "old_string") -> str:
    target = old if len(old) <= PREVIEW_CHARS else old[:PREVIEW_CHARS] + "..."
    head = "\n".join(content.splitlines()[:PREVIEW_LINES])
    return (
        f"{label} not found in {rel}.\n"
        f"Searched for:\n{target}\n"
        f"First {PREVIEW_LINES} lines of the file:\n{head}"
    )


class ReadTool(Tool):
    name = "Read"
    description = (
        "Read a text file. Lines are numbered; use offset (1-based line) "
        "and limit to page through large files."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path relative to the working directory"},
            "offset": {"type": "integer", "description": "First line to return (1-based)"},
            "limit": {"type": "integer", "description": "Number of lines to return"},
        },
        "required": ["file_path"],
    }

    async def execute(self, params, working_dir, *, session_id=None):
        path = resolve_path(require_str(params, "file_path"), working_dir)
        rel = display_path(path, working_dir)
        text = _read_text(path, working_dir)
        lines = text.splitlines()
        total = len(lines)
        offset = optional_int(params, "offset", 1, minimum=1)
        limit = optional_int(params, "limit", DEFAULT_READ_LIMIT, minimum=1)

        start = offset - 1
        window = lines[start:start + limit]
        if not window:
            return ToolResult.ok(
                f"File: {rel} (lines 0-0 of {total})\n"
                + ("(empty file)" if total == 0 else f"(offset {offset} is past the end of the file)")
            )
        end = start + len(window)
        numbered = []
        for number, line in enumerate(window, start=offset):
            if len(line) > MAX_LINE_CHARS:
                line = line[:MAX_LINE_CHARS] + " [line truncated]"
            numbered.append(f"{number:>6}\t{line}")
        header = f"File: {rel} (lines {offset}-{end} of {total})"
        return ToolResult.ok(header + "\n" + "\n".join(numbered))


class WriteTool(Tool):
    name = "Write"
    capability = Capability.FILE_SYSTEM
    description = "Create or overwrite a file with the given content. Parent directories are created."
    input_schema = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string"},
            "content": {"type": "string"},
        },
        "required": ["file_path", "content"],
    }

    async def execute(self, params, working_dir, *, session_id=None):
        path = resolve_path(require_str(params, "file_path"), working_dir)
        content = require_str(params, "content", allow_empty=True)
        data = content.encode("utf-8")
        if len(data) > MAX_FILE_BYTES:
            raise ValidationError(
                f"Content is too large ({len(data)} bytes); the limit is {MAX_FILE_BYTES} bytes"
            )
        if path.is_dir():
            raise ValidationError(f"{display_path(path, working_dir)} is a directory")
        existed = path.exists()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        verb = "Overwrote" if existed else "Created"
        return ToolResult.ok(
            f"{verb} {display_path(path, working_dir)} "
            f"({len(data)} bytes, {_count_lines(content)} lines)"
        )


class EditTool(Tool):
    name = "Edit"
    capability = Capability.FILE_SYSTEM
    description = (
        "Replace an exact substring in a file. Only the first occurrence is "
        "replaced unless replace_all is true."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string"},
            "old_string": {"type": "string"},
            "new_string": {"type": "string"},
            "replace_all": {"type": "boolean", "default": False},
        },
        "required": ["file_path", "old_string", "new_string"],
    }

    async def execute(self, params, working_dir, *, session_id=None):
        path = resolve_path(require_str(params, "file_path"), working_dir)
        old = require_str(params, "old_string")
        new = require_str(params, "new_string", allow_empty=True)
        if old == new:
            raise ValidationError("old_string and new_string are identical")
        replace_all = bool(params.get("replace_all", False))
        rel = display_path(path, working_dir)

        content = _read_text(path, working_dir)
        count = content.count(old)
        if count == 0:
            return ToolResult.error(_not_found_message(old, content, rel))

        if replace_all:
            updated = content.replace(old, new)
            replaced = count
        else:
            updated = content.replace(old, new, 1)
            replaced = 1
        atomic_write_text(path, updated)

        note = f" ({count} occurrences found, first one replaced)" if count > 1 and not replace_all else ""
        return ToolResult.ok(
            f"Edited {rel}: replaced {replaced} occurrence{'s' if replaced != 1 else ''}{note}"
        )


class MultiEditTool(Tool):
    name = "MultiEdit"
    capability = Capability.FILE_SYSTEM
    description = (
        "Apply several ordered search/replace edits to one file. Either all "
        "edits apply or the file is left untouched."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string"},
            "edits": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "old_string": {"type": "string"},
                        "new_string": {"type": "string"},
                    },
                    "required": ["old_string", "new_string"],
                },
            },
        },
        "required": ["file_path", "edits"],
    }

    @staticmethod
    def _parse_edits(raw: Any) -> list[tuple[str, str]]:
        if not isinstance(raw, list) or not raw:
            raise ValidationError("'edits' must be a non-empty list")
        edits = []
        for index, entry in enumerate(raw, start=1):
            if not isinstance(entry, dict):
                raise ValidationError(f"Edit #{index} must be an object")
            old = entry.get("old_string")
            new = entry.get("new_string")
            if not isinstance(old, str) or not old:
                raise ValidationError(f"Edit #{index}: old_string must be a non-empty string")
            if not isinstance(new, str):
                raise ValidationError(f"Edit #{index}: new_string must be a string")
            edits.append((old, new))
        return edits

    @staticmethod
    def validate(content: str, edits: list[tuple[str, str]]) -> list[str]:
        """Simulate the edits in order and return every failure.

        Each edit must match exactly once in the text produced by the
        edits before it. Failing edits are skipped so later ones are
        still checked.
        """
        failures = []
        working = content
        for index, (old, new) in enumerate(edits, start=1):
            count = working.count(old)
            if count == 0:
                failures.append(f"Edit #{index}: old_string not found")
                continue
            if count > 1:
                failures.append(
                    f"Edit #{index}: old_string matches {count} times; it must match exactly once"
                )
                continue
            working = working.replace(old, new, 1)
        return failures

    @staticmethod
    def apply(content: str, edits: list[tuple[str, str]]) -> str:
        # First occurrence of each target in the running text.
        updated = content
        for old, new in edits:
            updated = updated.replace(old, new, 1)
        return updated

    async def execute(self, params, working_dir, *, session_id=None):
        path = resolve_path(require_str(params, "file_path"), working_dir)
        edits = self._parse_edits(params.get("edits"))
        rel = display_path(path, working_dir)

        content = _read_text(path, working_dir)
        failures = self.validate(content, edits)
        if failures:
            logger.info("MultiEdit on %s rejected: %d of %d edits failed", rel, len(failures), len(edits))
            return ToolResult.error(
                f"No changes made to {rel}. {len(failures)} of {len(edits)} edits failed:\n"
                + "\n".join(failures)
            )

        atomic_write_text(path, self.apply(content, edits))
        return ToolResult.ok(f"Applied {len(edits)} edits to {rel}")


class DiffTool(Tool):
    name = "Diff"
    description = "Compare two files line by line and show a unified diff with a change summary."
    input_schema = {
        "type": "object",
        "properties": {
            "file1": {"type": "string"},
            "file2": {"type": "string"},
            "context": {"type": "integer", "minimum": 0, "maximum": 10, "description": "Context lines (default 3)"},
        },
        "required": ["file1", "file2"],
    }

    async def execute(self, params, working_dir, *, session_id=None):
        first = resolve_path(require_str(params, "file1"), working_dir)
        second = resolve_path(require_str(params, "file2"), working_dir)
        context = optional_int(params, "context", 3, minimum=0, maximum=10)
        rel1 = display_path(first, working_dir)
        rel2 = display_path(second, working_dir)

        old_lines = _read_text(first, working_dir).splitlines()
        new_lines = _read_text(second, working_dir).splitlines()
        diff_lines = list(difflib.unified_diff(
            old_lines, new_lines, fromfile=rel1, tofile=rel2, n=context, lineterm="",
        ))
        if not diff_lines:
            return ToolResult.ok(f"{rel1} and {rel2} are identical")

        added = sum(1 for line in diff_lines[2:] if line.startswith("+"))
        removed = sum(1 for line in diff_lines[2:] if line.startswith("-"))
        return ToolResult.ok(f"{added} lines added, {removed} lines removed\n\n" + "\n".join(diff_lines))
