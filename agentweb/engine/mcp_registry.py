"""MCP server configuration and live client supervision.

Records live in ``McpServerStore`` (JSON file). Live clients are held
by ``McpRegistry`` keyed by (owner scope, server id), one per key.
Record status only changes here:

    stopped -> starting -> running -> stopped
    starting -> error   (spawn or handshake failed, or start cancelled)
    running  -> error   (process exited on its own)
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from agentweb.engine.errors import (
    AgentWebError,
    ForbiddenError,
    McpConflict,
    McpNotRunning,
    NotFoundError,
    ProcessSpawnFailure,
    ValidationError,
)
from agentweb.engine.mcp_client import McpCallResult, McpClient, McpToolInfo
from agentweb.engine.models import McpServerRecord, McpServerStatus, utc_now_iso
from agentweb.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"


class McpClientHandle(Protocol):
    async def connect(self) -> None: ...
    async def disconnect(self) -> None: ...
    def is_connected(self) -> bool: ...
    def set_closed_callback(self, callback) -> None: ...
    async def list_tools(self) -> list[McpToolInfo]: ...
    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> McpCallResult: ...
    async def list_resources(self) -> list[dict[str, Any]]: ...
    async def read_resource(self, uri: str) -> list[dict[str, Any]]: ...


ClientFactory = Callable[[McpServerRecord], McpClientHandle]


class McpServerStore:
    """Persists server records (never their runtime status) as JSON."""

    def __init__(self, path: str | Path | None) -> None:
        self._path = Path(path) if path else None

    def load(self) -> list[McpServerRecord]:
        if self._path is None or not self._path.exists():
            return []
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("McpServerStore: failed to load %s: %s", self._path, exc)
            return []
        records = []
        for entry in raw.get("servers", []):
            try:
                records.append(McpServerRecord.from_dict(entry))
            except (KeyError, TypeError) as exc:
                logger.warning("McpServerStore: skipping malformed record %r: %s", entry, exc)
        return records

    def save(self, records: list[McpServerRecord]) -> None:
        if self._path is None:
            return
        payload = {"servers": [
            {k: v for k, v in r.to_dict().items() if k not in ("status", "lastError")}
            for r in records
        ]}
        atomic_write_text(self._path, json.dumps(payload, indent=2))


def _scope(owner_id: str | None) -> str:
    return owner_id or GLOBAL_SCOPE


class McpRegistry:
    def __init__(
        self,
        store: McpServerStore | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._store = store or McpServerStore(None)
        self._client_factory = client_factory or McpClient
        self._records: dict[str, McpServerRecord] = {}
        self._handles: dict[tuple[str, str], McpClientHandle] = {}
        # Start in progress per key; resolves to True when the start succeeded.
        self._pending: dict[tuple[str, str], asyncio.Future[bool]] = {}
        # The connect() call of each start in progress, cancelled by stop and cleanup.
        self._connecting: dict[tuple[str, str], asyncio.Future[None]] = {}

    # ── Lifecycle ──

    async def init(self, seed: list[dict[str, Any]] | None = None) -> None:
        """Load persisted records and add configured global servers."""
        for record in self._store.load():
            self._records[record.id] = record
        added = 0
        for entry in seed or []:
            if any(r.owner_id is None and r.name == entry["name"] for r in self._records.values()):
                continue
            record = McpServerRecord(
                name=entry["name"],
                command=entry["command"],
                args=list(entry.get("args") or []),
                env=dict(entry.get("env") or {}),
                enabled=bool(entry.get("enabled", True)),
            )
            self._records[record.id] = record
            added += 1
        if added:
            self._save()
        logger.info("McpRegistry.init: %d server records (%d from config)", len(self._records), added)

    async def cleanup(self) -> None:
        """Disconnect every live client; used at process shutdown."""
        for connecting in list(self._connecting.values()):
            connecting.cancel()
        for future in list(self._pending.values()):
            await asyncio.shield(future)
        handles = list(self._handles.items())
        self._handles.clear()
        for (_, server_id), handle in handles:
            await self._disconnect(handle)
            record = self._records.get(server_id)
            if record is not None:
                record.status = McpServerStatus.STOPPED
        if handles:
            logger.info("McpRegistry.cleanup: stopped %d MCP servers", len(handles))

    # ── Records ──

    def _save(self) -> None:
        self._store.save(sorted(self._records.values(), key=lambda r: r.created_at))

    def list_servers(self, user_id: str | None) -> list[McpServerRecord]:
        visible = [r for r in self._records.values() if r.owner_id is None or r.owner_id == user_id]
        return sorted(visible, key=lambda r: r.created_at)

    def get_server(self, user_id: str | None, server_id: str) -> McpServerRecord:
        record = self._records.get(server_id)
        if record is None or (record.owner_id is not None and record.owner_id != user_id):
            raise NotFoundError("MCP server", server_id)
        return record

    def _owned(self, user_id: str | None, server_id: str) -> McpServerRecord:
        record = self.get_server(user_id, server_id)
        if record.owner_id != user_id:
            raise ForbiddenError(f"MCP server {record.name} is not owned by you")
        return record

    def _check_name(self, user_id: str | None, name: str, exclude_id: str | None = None) -> None:
        for other in self.list_servers(user_id):
            if other.name == name and other.id != exclude_id:
                raise McpConflict(name)

    @staticmethod
    def _validate(name: Any, command: Any, args: Any, env: Any) -> None:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("name is required")
        if not isinstance(command, str) or not command.strip():
            raise ValidationError("command is required")
        if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
            raise ValidationError("args must be a list of strings")
        if not isinstance(env, dict) or not all(isinstance(v, str) for v in env.values()):
            raise ValidationError("env must map names to strings")

    async def create_server(
        self,
        user_id: str | None,
        name: str,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        enabled: bool = True,
    ) -> McpServerRecord:
        args = [] if args is None else args
        env = {} if env is None else env
        self._validate(name, command, args, env)
        self._check_name(user_id, name.strip())
        record = McpServerRecord(
            name=name.strip(),
            command=command.strip(),
            args=list(args),
            env=dict(env),
            enabled=bool(enabled),
            owner_id=user_id,
        )
        self._records[record.id] = record
        self._save()
        logger.info("McpRegistry: created server %s (%s) owner=%s", record.name, record.id, _scope(user_id))
        return record

    async def update_server(self, user_id: str | None, server_id: str, changes: dict[str, Any]) -> McpServerRecord:
        record = self._owned(user_id, server_id)
        name = changes.get("name", record.name)
        command = changes.get("command", record.command)
        args = changes.get("args", record.args)
        env = changes.get("env", record.env)
        self._validate(name, command, args, env)
        if name.strip() != record.name:
            self._check_name(user_id, name.strip(), exclude_id=record.id)
        # A live process was started from the old configuration.
        await self.stop(user_id, server_id)
        record.name = name.strip()
        record.command = command.strip()
        record.args = list(args)
        record.env = dict(env)
        if "enabled" in changes:
            record.enabled = bool(changes["enabled"])
        record.updated_at = utc_now_iso()
        self._save()
        return record

    async def delete_server(self, user_id: str | None, server_id: str) -> None:
        record = self._owned(user_id, server_id)
        await self.stop(user_id, server_id)
        del self._records[record.id]
        self._save()
        logger.info("McpRegistry: deleted server %s (%s)", record.name, record.id)

    # ── Process lifecycle ──

    def _key(self, record: McpServerRecord) -> tuple[str, str]:
        return (_scope(record.owner_id), record.id)

    async def start(self, user_id: str | None, server_id: str) -> McpServerRecord:
        record = self.get_server(user_id, server_id)
        key = self._key(record)
        if key in self._handles:
            return record

        pending = self._pending.get(key)
        if pending is not None:
            # Another caller is already spawning this server; share its outcome.
            if await asyncio.shield(pending):
                return record
            raise ProcessSpawnFailure(record.command, record.last_error or "start failed")

        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        record.status = McpServerStatus.STARTING
        record.last_error = None
        logger.info("McpRegistry.start: starting %s (%s %s)", record.name, record.command, " ".join(record.args))
        client: McpClientHandle | None = None
        try:
            client = self._client_factory(record)
            client.set_closed_callback(lambda error: self._on_client_closed(key, client, error))
            connecting = asyncio.ensure_future(client.connect())
            self._connecting[key] = connecting
            try:
                await asyncio.wait({connecting})
            except asyncio.CancelledError:
                connecting.cancel()
                raise
            if connecting.cancelled():
                # stop() or cleanup() gave up on the handshake.
                raise ProcessSpawnFailure(record.command, "start cancelled")
            connecting.result()
        except BaseException as exc:
            if client is not None:
                # The child may already be running; never leave it behind.
                await self._disconnect(client)
            record.status = McpServerStatus.ERROR
            record.last_error = str(exc) or type(exc).__name__
            future.set_result(False)
            logger.warning("McpRegistry.start: %s failed: %s", record.name, record.last_error)
            if isinstance(exc, AgentWebError) or not isinstance(exc, Exception):
                raise
            raise ProcessSpawnFailure(record.command, record.last_error) from exc
        else:
            self._handles[key] = client
            record.status = McpServerStatus.RUNNING
            future.set_result(True)
            return record
        finally:
            self._pending.pop(key, None)
            self._connecting.pop(key, None)

    async def stop(self, user_id: str | None, server_id: str) -> McpServerRecord:
        record = self.get_server(user_id, server_id)
        key = self._key(record)
        connecting = self._connecting.get(key)
        if connecting is not None:
            connecting.cancel()
        pending = self._pending.get(key)
        if pending is not None:
            await asyncio.shield(pending)
        handle = self._handles.pop(key, None)
        if handle is not None:
            await self._disconnect(handle)
            logger.info("McpRegistry.stop: stopped %s", record.name)
        record.status = McpServerStatus.STOPPED
        record.last_error = None
        return record

    async def _disconnect(self, handle: McpClientHandle) -> None:
        handle.set_closed_callback(None)
        try:
            await handle.disconnect()
        except Exception as exc:
            logger.warning("McpRegistry: disconnect failed: %s", exc)

    def _on_client_closed(self, key: tuple[str, str], client: McpClientHandle, error: BaseException | None) -> None:
        if self._handles.get(key) is not client:
            return
        del self._handles[key]
        record = self._records.get(key[1])
        if record is not None:
            record.status = McpServerStatus.ERROR
            record.last_error = f"MCP server process exited: {error}" if error else "MCP server process exited"
            logger.warning("McpRegistry: %s closed unexpectedly: %s", record.name, record.last_error)

    # ── Tools and resources ──

    def _live_handle(self, record: McpServerRecord) -> McpClientHandle | None:
        handle = self._handles.get(self._key(record))
        if handle is None or not handle.is_connected():
            return None
        return handle

    def _handle_for(self, record: McpServerRecord) -> McpClientHandle:
        handle = self._live_handle(record)
        if handle is None:
            raise McpNotRunning(record.name)
        return handle

    async def list_tools(self, user_id: str | None, server_id: str) -> list[McpToolInfo]:
        record = self.get_server(user_id, server_id)
        return await self._handle_for(record).list_tools()

    def _by_name(self, user_id: str | None, server_name: str) -> McpServerRecord:
        # The caller's own server wins over a global one with the same name.
        matches = [r for r in self.list_servers(user_id) if r.name == server_name]
        if not matches:
            raise NotFoundError("MCP server", server_name)
        matches.sort(key=lambda r: r.owner_id is None)
        return matches[0]

    async def call_tool(
        self,
        user_id: str | None,
        server_name: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
    ) -> McpCallResult:
        record = self._by_name(user_id, server_name)
        return await self._handle_for(record).call_tool(tool_name, arguments)

    async def list_resources(self, user_id: str | None, server_id: str) -> list[dict[str, Any]]:
        return await self._handle_for(self.get_server(user_id, server_id)).list_resources()

    async def read_resource(self, user_id: str | None, server_id: str, uri: str) -> list[dict[str, Any]]:
        return await self._handle_for(self.get_server(user_id, server_id)).read_resource(uri)

    async def get_available_tools(self, user_id: str | None) -> list[McpToolInfo]:
        """Tools of every enabled, running server; failing servers are skipped."""
        tools: list[McpToolInfo] = []
        for record in self.list_servers(user_id):
            if not record.enabled:
                continue
            handle = self._live_handle(record)
            if handle is None:
                continue
            try:
                server_tools = await handle.list_tools()
            except Exception as exc:
                logger.warning("McpRegistry: listing tools of %s failed: %s", record.name, exc)
                continue
            for tool in server_tools:
                tool.server_id = record.id
                tool.server_name = record.name
                tools.append(tool)
        return tools
