from __future__ import annotations

import asyncio
import json
import sys

import pytest

from agentweb.engine.errors import (
    ForbiddenError,
    McpConflict,
    McpNotRunning,
    NotFoundError,
    ProcessSpawnFailure,
    ValidationError,
)
from agentweb.engine.mcp_registry import McpRegistry, McpServerStore
from agentweb.engine.models import McpServerStatus


@pytest.mark.asyncio
async def test_concurrent_starts_spawn_one_client(mcp_factory) -> None:
    factory = mcp_factory(connect_delay=0.05)
    registry = McpRegistry(client_factory=factory)
    record = await registry.create_server("alice", "docs", "docs-server")

    results = await asyncio.gather(*(registry.start("alice", record.id) for _ in range(5)))

    assert len(factory.created) == 1
    assert all(r.status == McpServerStatus.RUNNING for r in results)
    assert registry._live_handle(record) is not None


@pytest.mark.asyncio
async def test_failed_start_records_error_for_every_waiter(mcp_factory) -> None:
    factory = mcp_factory(connect_delay=0.02, fail=True)
    registry = McpRegistry(client_factory=factory)
    record = await registry.create_server("alice", "broken", "nope")

    outcomes = await asyncio.gather(
        registry.start("alice", record.id),
        registry.start("alice", record.id),
        return_exceptions=True,
    )

    assert all(isinstance(o, ProcessSpawnFailure) for o in outcomes)
    assert record.status == McpServerStatus.ERROR
    assert "command not found" in record.last_error
    assert len(factory.created) == 1
    assert registry._live_handle(record) is None


@pytest.mark.asyncio
async def test_stop_is_idempotent(mcp_factory) -> None:
    factory = mcp_factory()
    registry = McpRegistry(client_factory=factory)
    record = await registry.create_server("alice", "docs", "docs-server")

    await registry.start("alice", record.id)
    await registry.stop("alice", record.id)
    stopped = await registry.stop("alice", record.id)

    assert stopped.status == McpServerStatus.STOPPED
    assert factory.created[0].disconnects == 1
    with pytest.raises(McpNotRunning):
        await registry.list_tools("alice", record.id)


@pytest.mark.asyncio
async def test_names_are_unique_per_visible_scope() -> None:
    registry = McpRegistry()
    await registry.init([{"name": "shared", "command": "srv"}])
    await registry.create_server("alice", "docs", "docs-server")

    with pytest.raises(McpConflict):
        await registry.create_server("alice", "docs", "other")
    with pytest.raises(McpConflict):
        await registry.create_server("bob", "shared", "other")
    bobs = await registry.create_server("bob", "docs", "docs-server")
    assert bobs.owner_id == "bob"

    with pytest.raises(ValidationError):
        await registry.create_server("bob", "bad", "srv", args="not-a-list")


@pytest.mark.asyncio
async def test_ownership_rules() -> None:
    registry = McpRegistry()
    await registry.init([{"name": "shared", "command": "srv"}])
    global_record = registry.list_servers("alice")[0]
    mine = await registry.create_server("alice", "docs", "docs-server")

    assert [r.name for r in registry.list_servers("bob")] == ["shared"]
    with pytest.raises(NotFoundError):
        registry.get_server("bob", mine.id)
    with pytest.raises(ForbiddenError):
        await registry.delete_server("alice", global_record.id)

    updated = await registry.update_server("alice", mine.id, {"args": ["--verbose"], "enabled": False})
    assert updated.args == ["--verbose"]
    assert updated.enabled is False

    await registry.delete_server("alice", mine.id)
    assert [r.name for r in registry.list_servers("alice")] == ["shared"]


@pytest.mark.asyncio
async def test_available_tools_skip_failing_servers(mcp_factory) -> None:
    factory = mcp_factory()
    registry = McpRegistry(client_factory=factory)
    good = await registry.create_server("alice", "good", "srv")
    bad = await registry.create_server("alice", "bad", "srv")
    idle = await registry.create_server("alice", "idle", "srv")
    await registry.start("alice", good.id)
    await registry.start("alice", bad.id)

    async def explode():
        raise RuntimeError("broken pipe")

    factory.created[1].list_tools = explode

    tools = await registry.get_available_tools("alice")

    assert [(t.server_name, t.name) for t in tools] == [("good", "search")]
    assert tools[0].server_id == good.id
    assert idle.status == McpServerStatus.STOPPED


@pytest.mark.asyncio
async def test_unexpected_exit_marks_error(mcp_factory) -> None:
    factory = mcp_factory()
    registry = McpRegistry(client_factory=factory)
    record = await registry.create_server("alice", "docs", "srv")
    await registry.start("alice", record.id)

    client = factory.created[0]
    client.connected = False
    client.on_closed(RuntimeError("exit code 1"))

    assert record.status == McpServerStatus.ERROR
    assert registry._live_handle(record) is None
    assert "exit code 1" in record.last_error


@pytest.mark.asyncio
async def test_call_tool_prefers_own_server(mcp_factory) -> None:
    factory = mcp_factory()
    registry = McpRegistry(client_factory=factory)
    own = await registry.create_server("alice", "docs", "own-srv")
    await registry.init([{"name": "docs", "command": "global-srv"}])
    shared = registry.list_servers("bob")[0]
    await registry.start("alice", own.id)
    await registry.start("bob", shared.id)

    result = await registry.call_tool("alice", "docs", "search", {"q": "x"})
    await registry.call_tool("bob", "docs", "search", {"q": "y"})

    assert result.content == 'search: {"q": "x"}'
    clients = {c.record.command: c for c in factory.created}
    assert clients["own-srv"].calls == [("search", {"q": "x"})]
    assert clients["global-srv"].calls == [("search", {"q": "y"})]
    with pytest.raises(NotFoundError):
        await registry.call_tool("alice", "missing", "search", {})


@pytest.mark.asyncio
async def test_store_persists_records_without_status(tmp_path, mcp_factory) -> None:
    path = tmp_path / "mcp_servers.json"
    registry = McpRegistry(McpServerStore(path), client_factory=mcp_factory())
    record = await registry.create_server("alice", "docs", "srv", env={"TOKEN": "x"})
    await registry.start("alice", record.id)

    saved = json.loads(path.read_text(encoding="utf-8"))
    assert saved["servers"][0]["name"] == "docs"
    assert "status" not in saved["servers"][0]

    reloaded = McpRegistry(McpServerStore(path))
    await reloaded.init()
    again = reloaded.get_server("alice", record.id)
    assert again.env == {"TOKEN": "x"}
    assert again.status == McpServerStatus.STOPPED

    await registry.cleanup()
    assert record.status == McpServerStatus.STOPPED


@pytest.mark.asyncio
async def test_stop_during_start_abandons_the_handshake(mcp_factory) -> None:
    factory = mcp_factory(connect_delay=30)
    registry = McpRegistry(client_factory=factory)
    record = await registry.create_server("alice", "slow", "srv")
    starting = asyncio.create_task(registry.start("alice", record.id))
    await asyncio.sleep(0.05)

    stopped = await asyncio.wait_for(registry.stop("alice", record.id), 2)

    with pytest.raises(ProcessSpawnFailure):
        await starting
    assert stopped.status == McpServerStatus.STOPPED
    assert factory.created[0].disconnects == 1
    assert registry._live_handle(record) is None


@pytest.mark.asyncio
async def test_cancelled_start_disconnects_its_client(mcp_factory) -> None:
    factory = mcp_factory(connect_delay=30)
    registry = McpRegistry(client_factory=factory)
    record = await registry.create_server("alice", "slow", "srv")
    starting = asyncio.create_task(registry.start("alice", record.id))
    await asyncio.sleep(0.05)

    starting.cancel()
    with pytest.raises(asyncio.CancelledError):
        await starting

    assert factory.created[0].disconnects == 1
    assert record.status == McpServerStatus.ERROR
    assert not registry._pending and not registry._connecting


@pytest.mark.asyncio
async def test_cleanup_does_not_wait_for_a_silent_server() -> None:
    registry = McpRegistry()
    # Spawns fine but never answers the initialize request.
    record = await registry.create_server(
        "alice", "silent", sys.executable, ["-c", "import time; time.sleep(30)"],
    )
    starting = asyncio.create_task(registry.start("alice", record.id))
    await asyncio.sleep(0.5)

    await asyncio.wait_for(registry.cleanup(), 10)

    with pytest.raises(ProcessSpawnFailure):
        await starting
    assert record.status == McpServerStatus.ERROR
    assert registry._live_handle(record) is None
