from __future__ import annotations

import asyncio
import copy
import json
from typing import Any

import pytest

from agentweb.engine.mcp_client import McpCallResult, McpToolInfo


def text_step(text: str, *, input_tokens: int = 10, output_tokens: int = 5) -> list[dict[str, Any]]:
    """Raw model events for a reply that is a single text block."""
    return [
        {"type": "message_start", "message": {"model": "fake-model", "usage": {"input_tokens": input_tokens, "output_tokens": 1}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}},
        {"type": "content_block_stop", "index": 0},
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": output_tokens}},
        {"type": "message_stop"},
    ]


def tool_step(tool_id: str, name: str, tool_input: dict[str, Any]) -> list[dict[str, Any]]:
    """Raw model events for a reply that asks for one tool call."""
    encoded = json.dumps(tool_input)
    return [
        {"type": "message_start", "message": {"model": "fake-model", "usage": {"input_tokens": 10, "output_tokens": 1}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "tool_use", "id": tool_id, "name": name, "input": {}}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": encoded[:5]}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": encoded[5:]}},
        {"type": "content_block_stop", "index": 0},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 3}},
        {"type": "message_stop"},
    ]


class FakeModelClient:
    """Replays one scripted list of raw events per model call."""

    model = "fake-model"

    def __init__(self, steps: list[list[dict[str, Any]]], title: str = "Scripted Title") -> None:
        self.steps = list(steps)
        self.title = title
        self.requests: list[dict[str, Any]] = []
        self.hang_after: int | None = None

    async def stream(self, request):
        self.requests.append(copy.deepcopy(request))
        if not self.steps:
            raise AssertionError("model called more often than scripted")
        step = self.steps.pop(0)
        for index, event in enumerate(step):
            if self.hang_after is not None and index == self.hang_after:
                await asyncio.Event().wait()
            yield event

    async def complete(self, prompt: str) -> str:
        return self.title


class FakeMcpClient:
    """Stands in for a stdio MCP client process."""

    def __init__(self, record, *, connect_delay: float = 0.0, fail: bool = False, tools=None) -> None:
        self.record = record
        self.connect_delay = connect_delay
        self.fail = fail
        self.tools = tools if tools is not None else [McpToolInfo(name="search", description="Search docs")]
        self.connected = False
        self.disconnects = 0
        self.calls: list[tuple[str, dict[str, Any] | None]] = []
        self.on_closed = None

    def set_closed_callback(self, callback) -> None:
        self.on_closed = callback

    async def connect(self) -> None:
        await asyncio.sleep(self.connect_delay)
        if self.fail:
            raise RuntimeError("spawn failed: command not found")
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnects += 1
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    async def list_tools(self):
        return [McpToolInfo(name=t.name, description=t.description, input_schema=t.input_schema) for t in self.tools]

    async def call_tool(self, name, arguments=None):
        self.calls.append((name, arguments))
        return McpCallResult(content=f"{name}: {json.dumps(arguments, sort_keys=True)}")

    async def list_resources(self):
        return [{"uri": "docs://index", "name": "index"}]

    async def read_resource(self, uri):
        return [{"uri": uri, "text": "contents"}]


@pytest.fixture
def mcp_factory():
    """Client factory that records every client it builds."""
    created: list[FakeMcpClient] = []

    def make(**options):
        def factory(record):
            client = FakeMcpClient(record, **options)
            created.append(client)
            return client
        factory.created = created
        return factory

    return make
