"""Built-in tool handlers."""
from __future__ import annotations

from agentweb.engine.task_tracker import TaskTracker
from agentweb.engine.tools.base import Tool, resolve_path
from agentweb.engine.tools.bash import BashExecutor, BashTool
from agentweb.engine.tools.files import DiffTool, EditTool, MultiEditTool, ReadTool, WriteTool
from agentweb.engine.tools.git import GitDiffTool, GitLogTool, GitStatusTool
from agentweb.engine.tools.notebook import NotebookEditTool
from agentweb.engine.tools.search import FileTreeTool, FindTool, GlobTool, GrepTool, LsTool
from agentweb.engine.tools.todo import TodoReadTool, TodoWriteTool
from agentweb.engine.tools.web import (
    DuckDuckGoSearch,
    HttpSessionProvider,
    SearchBackend,
    WebFetchTool,
    WebSearchTool,
)


def build_builtin_tools(
    tracker: TaskTracker,
    http: HttpSessionProvider,
    search_backend: SearchBackend | None = None,
    bash_timeout_ms: int = 30_000,
) -> list[Tool]:
    """The fixed tool set, in the order it is advertised to the model."""
    return [
        ReadTool(),
        WriteTool(),
        EditTool(),
        MultiEditTool(),
        NotebookEditTool(),
        DiffTool(),
        GlobTool(),
        GrepTool(),
        LsTool(),
        FileTreeTool(),
        FindTool(),
        BashTool(BashExecutor(), default_timeout_ms=bash_timeout_ms),
        WebFetchTool(http),
        WebSearchTool(search_backend or DuckDuckGoSearch(http)),
        GitStatusTool(),
        GitDiffTool(),
        GitLogTool(),
        TodoReadTool(tracker),
        TodoWriteTool(tracker),
    ]


__all__ = [
    "Tool",
    "resolve_path",
    "build_builtin_tools",
    "HttpSessionProvider",
    "SearchBackend",
]
