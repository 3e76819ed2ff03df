"""Routes a named tool call to its handler under the current policy."""
from __future__ import annotations

import logging
from typing import Any, Protocol

from agentweb.engine.errors import AgentWebError, ToolDisabled
from agentweb.engine.models import Capability, FeatureFlags, ToolResult
from agentweb.engine.tools.base import Tool

logger = logging.getLogger(__name__)


class FeatureFlagSource(Protocol):
    async def get_flags(self) -> FeatureFlags: ...


class ToolDispatcher:
    """Lookup table of tools, built once.

    ``execute`` never raises: unknown names, disabled capabilities and
    handler failures all come back as ``ToolResult(is_error=True)``.
    """

    def __init__(self, tools: list[Tool], flags: FeatureFlagSource) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            if tool.name in self._tools:
                raise ValueError(f"Duplicate tool name: {tool.name}")
            self._tools[tool.name] = tool
        self._flags = flags

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def capability_of(self, name: str) -> Capability | None:
        tool = self._tools.get(name)
        return tool.capability if tool else None

    async def definitions(self) -> list[dict[str, Any]]:
        """Definitions of the tools enabled right now, for the model request."""
        flags = await self._flags.get_flags()
        return [t.definition() for t in self._tools.values() if flags.allows(t.capability)]

    async def execute(
        self,
        name: str,
        params: dict[str, Any] | None,
        working_dir: str,
        *,
        session_id: str | None = None,
    ) -> ToolResult:
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult.error(
                f"Unknown tool: {name}. Available tools: {', '.join(self._tools)}"
            )
        try:
            # Policy can change between calls of the same session.
            flags = await self._flags.get_flags()
            if not flags.allows(tool.capability):
                raise ToolDisabled(name, tool.capability.value)
            if params is not None and not isinstance(params, dict):
                return ToolResult.error(f"Input for {name} must be an object")
            return await tool.execute(params or {}, working_dir, session_id=session_id)
        except AgentWebError as exc:
            logger.info("Tool %s failed: %s", name, exc)
            return ToolResult.error(str(exc))
        except Exception as exc:
            logger.exception("Tool %s raised unexpectedly", name)
            return ToolResult.error(f"{name} failed: {type(exc).__name__}: {exc}")
