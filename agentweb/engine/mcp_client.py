"""Client for one stdio MCP server process.

The ``stdio_client``/``ClientSession`` contexts must be entered and
exited by the same task, so a dedicated runner task owns them for the
whole connection. ``connect`` waits until the session is initialized;
``disconnect`` asks the runner to leave its contexts, which stops the
child process. While connected the runner pings the server, so a child
that exits or stops answering ends the connection and fires the closed
callback.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Callable
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from agentweb.engine.errors import McpNotRunning, ProcessSpawnFailure
from agentweb.engine.models import McpServerRecord

logger = logging.getLogger(__name__)

# Called once when the connection ends for any reason; the argument is
# the error that ended it, or None for a requested disconnect.
ClosedCallback = Callable[[BaseException | None], None]

HEARTBEAT_INTERVAL = 30.0
PING_TIMEOUT = 10.0


@dataclass
class McpToolInfo:
    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    server_id: str | None = None
    server_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
            "serverId": self.server_id,
            "serverName": self.server_name,
        }


@dataclass
class McpCallResult:
    content: str
    is_error: bool = False


def format_call_result(result: Any) -> McpCallResult:
    """Join the text parts of an MCP tool result; JSON-dump anything else."""
    parts = []
    for item in getattr(result, "content", None) or []:
        text = getattr(item, "text", None)
        if text is not None:
            parts.append(text)
        elif getattr(item, "data", None) is not None:
            parts.append(f"[{getattr(item, 'mimeType', 'binary')} data: {len(item.data)} bytes]")
        else:
            dump = getattr(item, "model_dump", None)
            parts.append(json.dumps(dump(mode="json")) if dump else str(item))
    if not parts:
        structured = getattr(result, "structuredContent", None)
        parts.append(json.dumps(structured) if structured is not None else "")
    return McpCallResult(
        content="\n".join(parts),
        is_error=bool(getattr(result, "isError", False)),
    )


class McpClient:
    def __init__(
        self,
        record: McpServerRecord,
        on_closed: ClosedCallback | None = None,
        *,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        ping_timeout: float = PING_TIMEOUT,
    ) -> None:
        self.server_id = record.id
        self.server_name = record.name
        self._params = StdioServerParameters(
            command=record.command,
            args=list(record.args),
            env={**os.environ, **record.env},
        )
        self._on_closed = on_closed
        self._heartbeat_interval = heartbeat_interval
        self._ping_timeout = ping_timeout
        self._session: ClientSession | None = None
        self._ready = asyncio.Event()
        self._closing = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._abandoned = False

    def set_closed_callback(self, callback: ClosedCallback | None) -> None:
        self._on_closed = callback

    async def connect(self) -> None:
        if self._task is not None:
            raise RuntimeError(f"McpClient for {self.server_name} already started")
        self._task = asyncio.create_task(self._run(), name=f"mcp-{self.server_name}")
        ready = asyncio.create_task(self._ready.wait())
        try:
            await asyncio.wait({ready, self._task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self._abandon_handshake()
            raise
        finally:
            ready.cancel()
        if not self._ready.is_set():
            exc = self._task.exception() if not self._task.cancelled() else None
            reason = str(exc) if exc else "server closed during initialization"
            raise ProcessSpawnFailure(self._params.command, reason)
        logger.info("McpClient: connected to %s (%s)", self.server_name, self._params.command)

    async def _run(self) -> None:
        error: BaseException | None = None
        try:
            async with AsyncExitStack() as stack:
                read, write = await stack.enter_async_context(stdio_client(self._params))
                session = await stack.enter_async_context(ClientSession(read, write))
                await session.initialize()
                self._session = session
                self._ready.set()
                await self._heartbeat(session)
        except Exception as exc:
            error = exc
            if not self._ready.is_set():
                raise
            logger.warning("McpClient: connection to %s lost: %s", self.server_name, exc)
        finally:
            self._session = None
            if self._on_closed is not None and self._ready.is_set():
                self._on_closed(None if self._closing.is_set() else error or EOFError("server exited"))

    async def _heartbeat(self, session: ClientSession) -> None:
        """Ping the server until asked to close; a failed ping ends the connection."""
        while not self._closing.is_set():
            try:
                await asyncio.wait_for(self._closing.wait(), timeout=self._heartbeat_interval)
            except asyncio.TimeoutError:
                try:
                    await asyncio.wait_for(session.send_ping(), timeout=self._ping_timeout)
                except asyncio.TimeoutError:
                    raise EOFError("server stopped answering pings") from None

    def _abandon_handshake(self) -> None:
        # The handshake never looks at the closing flag, so cancel the runner;
        # leaving the stdio context stops the child. Only once, so the
        # teardown itself is not interrupted.
        if self._task is None or self._ready.is_set() or self._abandoned:
            return
        self._abandoned = True
        self._task.cancel()

    def is_connected(self) -> bool:
        return self._session is not None and self._task is not None and not self._task.done()

    async def disconnect(self) -> None:
        self._closing.set()
        task = self._task
        if task is None:
            return
        self._abandon_handshake()
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.warning("McpClient: error while closing %s: %s", self.server_name, task.exception())

    def _require_session(self) -> ClientSession:
        if not self.is_connected():
            raise McpNotRunning(self.server_id)
        return self._session

    async def list_tools(self) -> list[McpToolInfo]:
        response = await self._require_session().list_tools()
        return [
            McpToolInfo(
                name=tool.name,
                description=tool.description or "",
                input_schema=dict(tool.inputSchema or {"type": "object", "properties": {}}),
                server_id=self.server_id,
                server_name=self.server_name,
            )
            for tool in response.tools
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> McpCallResult:
        result = await self._require_session().call_tool(name, arguments or {})
        return format_call_result(result)

    async def list_resources(self) -> list[dict[str, Any]]:
        response = await self._require_session().list_resources()
        return [
            {
                "uri": str(r.uri),
                "name": r.name,
                "description": r.description,
                "mimeType": r.mimeType,
            }
            for r in response.resources
        ]

    async def read_resource(self, uri: str) -> list[dict[str, Any]]:
        response = await self._require_session().read_resource(uri)
        contents = []
        for item in response.contents:
            entry: dict[str, Any] = {"uri": str(item.uri), "mimeType": item.mimeType}
            if getattr(item, "text", None) is not None:
                entry["text"] = item.text
            else:
                entry["blob"] = getattr(item, "blob", None)
            contents.append(entry)
        return contents
