"""Directory and search tools: Glob, Grep, Ls, FileTree, Find.

Walks skip ``IGNORED_DIRS``, never follow directory symlinks and are
bounded by a depth limit. They yield to the event loop after every
directory so a large tree does not stall other sessions.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import AsyncIterator
from pathlib import Path

from agentweb.engine.errors import NotFoundError, ValidationError
from agentweb.engine.models import ToolResult
from agentweb.engine.tools.base import (
    IGNORED_DIRS,
    Tool,
    display_path,
    optional_int,
    require_str,
    resolve_path,
)

logger = logging.getLogger(__name__)

MAX_WALK_DEPTH = 12
MAX_GLOB_RESULTS = 500
GREP_MAX_PER_FILE = 50
GREP_MAX_TOTAL = 1000
GREP_MAX_LINE_CHARS = 250
GREP_MAX_FILE_BYTES = 5 * 1024 * 1024
FILETREE_DEFAULT_DEPTH = 3
FILETREE_MAX_ENTRIES = 1000
GREP_OUTPUT_MODES = ("content", "files_with_matches", "count")


async def walk_entries(
    root: Path,
    *,
    max_depth: int = MAX_WALK_DEPTH,
    include_hidden: bool = True,
) -> AsyncIterator[tuple[Path, bool]]:
    """Yield ``(path, is_dir)`` under ``root``, depth-first, in name order.

    Ignored and symlinked directories are neither yielded nor entered.
    """
    stack = [(root, 0)]
    while stack:
        directory, depth = stack.pop()
        try:
            entries = sorted(directory.iterdir(), key=lambda p: p.name)
        except OSError as exc:
            logger.debug("walk_entries: cannot list %s: %s", directory, exc)
            continue
        subdirs = []
        for entry in entries:
            if not include_hidden and entry.name.startswith("."):
                continue
            if entry.is_dir():
                if entry.is_symlink() or entry.name in IGNORED_DIRS:
                    continue
                yield entry, True
                if depth + 1 < max_depth:
                    subdirs.append((entry, depth + 1))
            elif entry.is_file():
                yield entry, False
        stack.extend(reversed(subdirs))
        await asyncio.sleep(0)


async def walk_files(
    root: Path,
    *,
    max_depth: int = MAX_WALK_DEPTH,
    include_hidden: bool = True,
) -> AsyncIterator[Path]:
    """Yield regular files under ``root``, depth-first, in name order."""
    async for path, is_dir in walk_entries(root, max_depth=max_depth, include_hidden=include_hidden):
        if not is_dir:
            yield path


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a glob with ``**``, ``{a,b}`` and ``[...]`` into a regex."""
    out: list[str] = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**/", i):
                out.append("(?:.*/)?")
                i += 3
                continue
            if pattern.startswith("**", i):
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "{" and "}" in pattern[i:]:
            end = pattern.index("}", i)
            alternatives = pattern[i + 1:end].split(",")
            out.append("(?:" + "|".join(re.escape(a) for a in alternatives) + ")")
            i = end + 1
            continue
        elif c == "[" and "]" in pattern[i + 1:]:
            end = pattern.index("]", i + 1)
            body = pattern[i + 1:end]
            if body.startswith("!"):
                body = "^" + body[1:]
            out.append(f"[{body}]")
            i = end + 1
            continue
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("^" + "".join(out) + "$")


class PathMatcher:
    """Glob matcher; patterns without a slash match the file name only."""

    def __init__(self, pattern: str) -> None:
        self.pattern = pattern
        self._regex = glob_to_regex(pattern)
        self._basename_only = "/" not in pattern

    def matches(self, rel_path: str) -> bool:
        target = rel_path.rsplit("/", 1)[-1] if self._basename_only else rel_path
        return bool(self._regex.match(target))


class GlobTool(Tool):
    name = "Glob"
    description = "Find files whose path matches a glob pattern such as '**/*.py' or 'src/*.{ts,tsx}'."
    input_schema = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string"},
            "path": {"type": "string", "description": "Directory to search (default: working directory)"},
        },
        "required": ["pattern"],
    }

    async def execute(self, params, working_dir, *, session_id=None):
        matcher = PathMatcher(require_str(params, "pattern"))
        base = resolve_path(params.get("path"), working_dir)
        if not base.is_dir():
            raise NotFoundError("Directory", display_path(base, working_dir))

        found: list[str] = []
        truncated = False
        async for file_path in walk_files(base):
            rel = file_path.relative_to(base).as_posix()
            if matcher.matches(rel):
                found.append(display_path(file_path, working_dir))
                if len(found) >= MAX_GLOB_RESULTS:
                    truncated = True
                    break
        if not found:
            return ToolResult.ok(f"No files match {matcher.pattern}")
        found.sort()
        text = f"Found {len(found)} files\n" + "\n".join(found)
        if truncated:
            text += f"\n(results truncated at {MAX_GLOB_RESULTS} files)"
        return ToolResult.ok(text)


class GrepTool(Tool):
    name = "Grep"
    description = (
        "Search file contents with a regular expression. output_mode is one of "
        "'files_with_matches' (default), 'content' or 'count'."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string"},
            "path": {"type": "string"},
            "glob": {"type": "string", "description": "Only search files matching this glob"},
            "output_mode": {"type": "string", "enum": list(GREP_OUTPUT_MODES)},
            "case_insensitive": {"type": "boolean"},
        },
        "required": ["pattern"],
    }

    async def execute(self, params, working_dir, *, session_id=None):
        raw_pattern = require_str(params, "pattern")
        flags = re.IGNORECASE if params.get("case_insensitive") else 0
        try:
            regex = re.compile(raw_pattern, flags)
        except re.error as exc:
            raise ValidationError(f"Invalid regular expression: {exc}") from None
        mode = params.get("output_mode") or "files_with_matches"
        if mode not in GREP_OUTPUT_MODES:
            raise ValidationError(
                f"output_mode must be one of {', '.join(GREP_OUTPUT_MODES)}"
            )
        matcher = PathMatcher(params["glob"]) if params.get("glob") else None
        base = resolve_path(params.get("path"), working_dir)
        if not base.exists():
            raise NotFoundError("Path", display_path(base, working_dir))

        per_file: dict[str, list[tuple[int, str]]] = {}
        total = 0
        truncated = False

        async def candidates() -> AsyncIterator[Path]:
            if base.is_file():
                yield base
                return
            async for file_path in walk_files(base):
                yield file_path

        async for file_path in candidates():
            if matcher and not matcher.matches(
                file_path.name if base.is_file() else file_path.relative_to(base).as_posix()
            ):
                continue
            hits = self._search_file(file_path, regex)
            if not hits:
                continue
            room = GREP_MAX_TOTAL - total
            if len(hits) > room:
                hits = hits[:room]
                truncated = True
            per_file[display_path(file_path, working_dir)] = hits
            total += len(hits)
            if total >= GREP_MAX_TOTAL:
                truncated = True
                break

        if not per_file:
            return ToolResult.ok(f"No matches found for pattern: {raw_pattern}")

        files = sorted(per_file)
        if mode == "files_with_matches":
            lines = [f"Found {len(files)} files"] + files
        elif mode == "count":
            lines = [f"{rel}: {len(per_file[rel])}" for rel in files]
            lines.append(f"Total: {total} matches in {len(files)} files")
        else:
            lines = []
            for rel in files:
                for number, text in per_file[rel]:
                    lines.append(f"{rel}:{number}: {text}")
        if truncated:
            lines.append(f"(results truncated at {GREP_MAX_TOTAL} matches)")
        return ToolResult.ok("\n".join(lines))

    @staticmethod
    def _search_file(path: Path, regex: re.Pattern[str]) -> list[tuple[int, str]]:
        try:
            if path.stat().st_size > GREP_MAX_FILE_BYTES:
                return []
            data = path.read_bytes()
        except OSError:
            return []
        if b"\0" in data[:8192]:
            return []
        hits = []
        for number, line in enumerate(data.decode("utf-8", errors="replace").splitlines(), start=1):
            if regex.search(line):
                if len(line) > GREP_MAX_LINE_CHARS:
                    line = line[:GREP_MAX_LINE_CHARS] + "..."
                hits.append((number, line))
                if len(hits) >= GREP_MAX_PER_FILE:
                    break
        return hits


class LsTool(Tool):
    name = "Ls"
    description = "List the entries of one directory with their sizes."
    input_schema = {
        "type": "object",
        "properties": {"path": {"type": "string"}},
    }

    async def execute(self, params, working_dir, *, session_id=None):
        target = resolve_path(params.get("path"), working_dir)
        if not target.exists():
            raise NotFoundError("Directory", display_path(target, working_dir))
        if not target.is_dir():
            raise ValidationError(f"{display_path(target, working_dir)} is not a directory")
        entries = sorted(target.iterdir(), key=lambda p: (not p.is_dir(), p.name))
        lines = [f"{display_path(target, working_dir)}/ ({len(entries)} entries)"]
        for entry in entries:
            if entry.is_dir():
                lines.append(f"  {entry.name}/")
            else:
                try:
                    size = entry.stat().st_size
                except OSError:
                    size = 0
                lines.append(f"  {entry.name} ({size} bytes)")
        return ToolResult.ok("\n".join(lines))


class FileTreeTool(Tool):
    name = "FileTree"
    description = "Show the directory tree (depth 1-5, default 3), skipping build output and caches."
    input_schema = {
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "maxDepth": {"type": "integer", "minimum": 1, "maximum": 5},
            "includeHidden": {"type": "boolean"},
        },
    }

    async def execute(self, params, working_dir, *, session_id=None):
        root = resolve_path(params.get("path"), working_dir)
        if not root.is_dir():
            raise NotFoundError("Directory", display_path(root, working_dir))
        max_depth = optional_int(params, "maxDepth", FILETREE_DEFAULT_DEPTH, minimum=1, maximum=5)
        include_hidden = bool(params.get("includeHidden", False))

        lines = [display_path(root, working_dir).rstrip("/") + "/"]
        counts = {"dirs": 0, "files": 0}
        truncated = await self._render(root, "", 1, max_depth, include_hidden, lines, counts)
        lines.append(f"\n{counts['dirs']} directories, {counts['files']} files")
        if truncated:
            lines.append(f"(tree truncated at {FILETREE_MAX_ENTRIES} entries)")
        return ToolResult.ok("\n".join(lines))

    async def _render(self, directory, prefix, depth, max_depth, include_hidden, lines, counts) -> bool:
        try:
            entries = [
                e for e in directory.iterdir()
                if (include_hidden or not e.name.startswith("."))
                and not (e.is_dir() and e.name in IGNORED_DIRS)
            ]
        except OSError:
            return False
        entries.sort(key=lambda p: (not p.is_dir(), p.name))
        await asyncio.sleep(0)
        for index, entry in enumerate(entries):
            if counts["dirs"] + counts["files"] >= FILETREE_MAX_ENTRIES:
                return True
            last = index == len(entries) - 1
            branch = "└── " if last else "├── "
            if entry.is_dir() and not entry.is_symlink():
                counts["dirs"] += 1
                lines.append(f"{prefix}{branch}{entry.name}/")
                if depth < max_depth:
                    extension = "    " if last else "│   "
                    if await self._render(entry, prefix + extension, depth + 1,
                                          max_depth, include_hidden, lines, counts):
                        return True
            else:
                counts["files"] += 1
                lines.append(f"{prefix}{branch}{entry.name}")
        return False


_SIZE_RE = re.compile(r"^([+-]?)(\d+(?:\.\d+)?)\s*([BKMGT])?$", re.IGNORECASE)
_AGE_RE = re.compile(r"^([+-]?)(\d+)\s*([smhdwMy])$")
_SIZE_UNITS = {"B": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3, "T": 1024 ** 4}
_AGE_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 7 * 86400, "M": 30 * 86400, "y": 365 * 86400}
FIND_DEFAULT_DEPTH = 10
FIND_DEFAULT_LIMIT = 100


def parse_size_filter(text: str) -> tuple[str, float]:
    """``"+1M"`` -> ``("+", 1048576.0)``; no sign means about equal."""
    match = _SIZE_RE.match(text.strip())
    if not match:
        raise ValidationError(f"Invalid size filter {text!r}; use forms like +1M, -100K or 512")
    sign, number, unit = match.groups()
    return sign or "=", float(number) * _SIZE_UNITS[(unit or "B").upper()]


def parse_age_filter(text: str, now: float | None = None) -> tuple[str, float]:
    """``"-7d"`` -> ``("-", <epoch seconds 7 days ago>)``; no sign means within."""
    match = _AGE_RE.match(text.strip())
    if not match:
        raise ValidationError(f"Invalid mtime filter {text!r}; use forms like -7d or +1h")
    sign, number, unit = match.groups()
    now = time.time() if now is None else now
    return sign or "-", now - int(number) * _AGE_UNITS[unit]


def _size_matches(size: int, rule: tuple[str, float]) -> bool:
    sign, target = rule
    if sign == "+":
        return size > target
    if sign == "-":
        return size < target
    return abs(size - target) <= target * 0.01


def _age_matches(mtime: float, rule: tuple[str, float]) -> bool:
    sign, cutoff = rule
    # "-" is modified after the cutoff, "+" before it.
    return mtime > cutoff if sign == "-" else mtime < cutoff


def _format_size(size: int) -> str:
    for unit, scale in (("G", 1024 ** 3), ("M", 1024 ** 2), ("K", 1024)):
        if size >= scale:
            return f"{size / scale:.1f}{unit}"
    return f"{size}B"


class FindTool(Tool):
    name = "Find"
    description = (
        "Find files and directories by name glob, type, size (+1M, -100K) and "
        "modification age (-7d for the last week, +1h for older than an hour)."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "name": {"type": "string", "description": "Case-insensitive glob on the entry name"},
            "type": {"type": "string", "enum": ["file", "directory", "all"]},
            "size": {"type": "string"},
            "mtime": {"type": "string"},
            "maxDepth": {"type": "integer", "minimum": 1, "maximum": 20},
            "limit": {"type": "integer", "minimum": 1, "maximum": 500},
        },
    }

    async def execute(self, params, working_dir, *, session_id=None):
        base = resolve_path(params.get("path"), working_dir)
        if not base.is_dir():
            raise NotFoundError("Directory", display_path(base, working_dir))
        kind = params.get("type") or "all"
        if kind not in ("file", "directory", "all"):
            raise ValidationError("type must be one of file, directory, all")
        name_regex = (
            re.compile(glob_to_regex(params["name"]).pattern, re.IGNORECASE) if params.get("name") else None
        )
        size_rule = parse_size_filter(params["size"]) if params.get("size") else None
        age_rule = parse_age_filter(params["mtime"]) if params.get("mtime") else None
        max_depth = optional_int(params, "maxDepth", FIND_DEFAULT_DEPTH, minimum=1, maximum=20)
        limit = optional_int(params, "limit", FIND_DEFAULT_LIMIT, minimum=1, maximum=500)

        lines: list[str] = []
        async for entry, is_dir in walk_entries(base, max_depth=max_depth, include_hidden=False):
            if (kind == "file" and is_dir) or (kind == "directory" and not is_dir):
                continue
            if name_regex and not name_regex.match(entry.name):
                continue
            try:
                stat = entry.stat()
            except OSError:
                continue
            if size_rule and not is_dir and not _size_matches(stat.st_size, size_rule):
                continue
            if age_rule and not _age_matches(stat.st_mtime, age_rule):
                continue
            size = "-" if is_dir else _format_size(stat.st_size)
            modified = time.strftime("%Y-%m-%d %H:%M", time.localtime(stat.st_mtime))
            label = "dir " if is_dir else "file"
            lines.append(f"{label} {size:>8}  {modified}  {entry.relative_to(base).as_posix()}")
            if len(lines) >= limit:
                break

        if not lines:
            return ToolResult.ok("No matching files found")
        text = f"Found {len(lines)} entries\n" + "\n".join(lines)
        if len(lines) >= limit:
            text += f"\n(results truncated at {limit} entries)"
        return ToolResult.ok(text)
