"""Read-only git tools: GitStatus, GitDiff, GitLog."""
from __future__ import annotations

import asyncio
import logging

from agentweb.engine.errors import ProcessSpawnFailure, ProcessTimeout
from agentweb.engine.models import ToolResult
from agentweb.engine.tools.base import Tool, display_path, optional_int, require_str, resolve_path

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 30
MAX_GIT_OUTPUT = 100 * 1024


async def run_git(args: list[str], cwd: str) -> tuple[int, str, str]:
    try:
        proc = await asyncio.create_subprocess_exec(
            "git", *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    except OSError as exc:
        raise ProcessSpawnFailure("git", str(exc)) from exc
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=GIT_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ProcessTimeout("git " + " ".join(args), GIT_TIMEOUT_SECONDS * 1000) from None
    return (
        proc.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


class _GitTool(Tool):
    async def _git(self, args: list[str], params, working_dir: str) -> ToolResult:
        repo = resolve_path(params.get("path"), working_dir)
        code, out, err = await run_git(args, str(repo))
        if code != 0:
            message = err.strip() or f"git exited with code {code}"
            return ToolResult.error(f"git {args[0]} failed in {display_path(repo, working_dir)}: {message}")
        if len(out) > MAX_GIT_OUTPUT:
            out = out[:MAX_GIT_OUTPUT] + f"\n[output truncated at {MAX_GIT_OUTPUT // 1024} KB]"
        return ToolResult.ok(out.rstrip("\n") or "(no output)")


class GitStatusTool(_GitTool):
    name = "GitStatus"
    description = "Show the working tree status (branch, staged, unstaged and untracked files)."
    input_schema = {"type": "object", "properties": {"path": {"type": "string"}}}

    async def execute(self, params, working_dir, *, session_id=None):
        return await self._git(["status", "--porcelain=v1", "--branch"], params, working_dir)


class GitDiffTool(_GitTool):
    name = "GitDiff"
    description = "Show unstaged changes, or staged changes when staged is true."
    input_schema = {
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "staged": {"type": "boolean"},
            "file": {"type": "string", "description": "Limit the diff to one file"},
        },
    }

    async def execute(self, params, working_dir, *, session_id=None):
        args = ["diff", "--no-color"]
        if params.get("staged"):
            args.append("--cached")
        if params.get("file"):
            target = resolve_path(require_str(params, "file"), working_dir)
            args += ["--", str(target)]
        return await self._git(args, params, working_dir)


class GitLogTool(_GitTool):
    name = "GitLog"
    description = "Show recent commits (1-50, default 10)."
    input_schema = {
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "limit": {"type": "integer", "minimum": 1, "maximum": 50},
        },
    }

    async def execute(self, params, working_dir, *, session_id=None):
        limit = optional_int(params, "limit", 10, minimum=1, maximum=50)
        args = ["log", f"-n{limit}", "--no-color", "--date=iso", "--pretty=format:%h %ad %an%n    %s"]
        return await self._git(args, params, working_dir)
