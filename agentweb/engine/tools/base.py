"""Shared plumbing for tool handlers.

Each tool is a small class with a fixed ``name``, the ``capability``
that gates it, a JSON input schema for the model, and one
``execute(params, working_dir, *, session_id=None)`` coroutine.
Handlers raise ``AgentWebError`` subclasses; the dispatcher turns
them into error results.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, ClassVar

from agentweb.engine.errors import PathViolation, ValidationError
from agentweb.engine.models import Capability, ToolResult

MAX_FILE_BYTES = 10 * 1024 * 1024

# Directories never descended into by walking tools.
IGNORED_DIRS = frozenset({
    ".git",
    ".hg",
    ".svn",
    "node_modules",
    "dist",
    "build",
    "out",
    "target",
    "coverage",
    ".next",
    ".nuxt",
    ".cache",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    ".tox",
    ".venv",
    "venv",
})


class Tool:
    name: ClassVar[str] = ""
    capability: ClassVar[Capability] = Capability.READ_ONLY
    description: ClassVar[str] = ""
    input_schema: ClassVar[dict[str, Any]] = {"type": "object", "properties": {}}

    async def execute(
        self,
        params: dict[str, Any],
        working_dir: str,
        *,
        session_id: str | None = None,
    ) -> ToolResult:
        raise NotImplementedError

    def definition(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


def resolve_path(path: str | None, working_dir: str) -> Path:
    """Resolve ``path`` against ``working_dir`` and refuse anything outside it.

    Symlinks are resolved first, so a link pointing out of the root is
    rejected like a ``../`` path.
    """
    root = Path(working_dir).resolve()
    raw = os.path.expanduser(path) if path else "."
    candidate = Path(raw)
    if not candidate.is_absolute():
        candidate = root / candidate
    resolved = candidate.resolve()
    if resolved != root and root not in resolved.parents:
        raise PathViolation(str(path), str(root))
    return resolved


def display_path(path: Path, working_dir: str) -> str:
    root = Path(working_dir).resolve()
    try:
        rel = path.relative_to(root)
    except ValueError:
        return str(path)
    return str(rel) if str(rel) != "." else "."


def require_str(params: dict[str, Any], key: str, *, allow_empty: bool = False) -> str:
    value = params.get(key)
    if not isinstance(value, str):
        raise ValidationError(f"'{key}' is required and must be a string")
    if not allow_empty and not value:
        raise ValidationError(f"'{key}' must not be empty")
    return value


def optional_int(
    params: dict[str, Any],
    key: str,
    default: int | None,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int | None:
    """Read an int parameter, clamping into [minimum, maximum]."""
    value = params.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValidationError(f"'{key}' must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{key}' must be an integer") from None
    if minimum is not None:
        number = max(minimum, number)
    if maximum is not None:
        number = min(maximum, number)
    return number
