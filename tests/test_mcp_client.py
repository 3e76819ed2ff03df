from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from agentweb.engine.errors import McpNotRunning, ProcessSpawnFailure
from agentweb.engine.mcp_client import McpClient
from agentweb.engine.models import McpServerRecord

SERVER = Path(__file__).parent / "mcp_echo_server.py"


def _record(*args: str, command: str = sys.executable) -> McpServerRecord:
    return McpServerRecord(name="echo", command=command, args=list(args) or [str(SERVER)])


@pytest.mark.asyncio
async def test_talks_to_a_stdio_server() -> None:
    closed: list[BaseException | None] = []
    client = McpClient(_record(), on_closed=closed.append)
    await asyncio.wait_for(client.connect(), 30)
    try:
        assert client.is_connected()

        tools = {t.name: t for t in await client.list_tools()}
        assert {"echo", "shutdown"} <= set(tools)
        assert tools["echo"].server_name == "echo"
        assert "text" in tools["echo"].input_schema["properties"]

        result = await client.call_tool("echo", {"text": "hi"})
        assert not result.is_error
        assert result.content == "echo: hi"

        resources = await client.list_resources()
        assert [r["name"] for r in resources] == ["readme"]
        contents = await client.read_resource(resources[0]["uri"])
        assert contents[0]["text"] == "read me"
    finally:
        await asyncio.wait_for(client.disconnect(), 10)

    assert not client.is_connected()
    assert closed == [None]
    with pytest.raises(McpNotRunning):
        await client.list_tools()


@pytest.mark.asyncio
async def test_missing_command_fails_to_connect(tmp_path) -> None:
    client = McpClient(_record(command=str(tmp_path / "no-such-server")))

    with pytest.raises(ProcessSpawnFailure):
        await asyncio.wait_for(client.connect(), 30)
    assert not client.is_connected()


@pytest.mark.asyncio
async def test_server_exit_reports_an_error() -> None:
    closed: list[BaseException | None] = []
    client = McpClient(_record(), on_closed=closed.append, heartbeat_interval=0.2, ping_timeout=2)
    await asyncio.wait_for(client.connect(), 30)

    await client.call_tool("shutdown")
    for _ in range(100):
        if closed:
            break
        await asyncio.sleep(0.1)

    assert len(closed) == 1
    assert closed[0] is not None
    assert not client.is_connected()
    await asyncio.wait_for(client.disconnect(), 10)


@pytest.mark.asyncio
async def test_disconnect_during_handshake_stops_the_child() -> None:
    client = McpClient(_record("-c", "import time; time.sleep(30)"))
    connecting = asyncio.create_task(client.connect())
    await asyncio.sleep(0.5)

    await asyncio.wait_for(client.disconnect(), 10)

    with pytest.raises(ProcessSpawnFailure):
        await connecting
    assert client._task.done()
