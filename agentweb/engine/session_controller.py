"""Drives one chat turn and streams its events.

A turn is prepared (session resolved or created), then ``run_turn``
yields ``StreamEvent``s: ``init``, content deltas, ``tool_use`` /
``tool_result`` pairs, optional ``permission_request``, ``done`` and,
for new sessions, ``title_update``. Failures become an ``error`` event.

Cancellation is cooperative. ``abort_session`` and a closed output
channel both set the turn's ``CancellationToken``; every await in the
loop races against it, and nothing is emitted once it is set. Tool
calls already dispatched keep running in the background.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from collections.abc import AsyncIterator, Awaitable
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from agentweb.engine.conversation import (
    ChatRequest,
    build_system_prompt,
    should_use_thinking,
    to_model_messages,
    user_content_blocks,
)
from agentweb.engine.dispatcher import ToolDispatcher
from agentweb.engine.errors import AgentWebError, ValidationError
from agentweb.engine.mcp_registry import McpRegistry
from agentweb.engine.model_client import ModelClient, build_request
from agentweb.engine.models import (
    Capability,
    PermissionMode,
    StreamEvent,
    ToolCallRequest,
    ToolResult,
)
from agentweb.engine.tools.bash import is_risky_command
from agentweb.shared.models.message import (
    TranscriptEntry,
    text_block,
    thinking_block,
    tool_result_block,
    tool_use_block,
)
from agentweb.shared.services.rules import RulesStore
from agentweb.shared.services.session_naming import fallback_title, generate_title
from agentweb.shared.services.sessions import DEFAULT_TITLE, SessionIndex
from agentweb.shared.services.transcript_store import TranscriptStore

logger = logging.getLogger(__name__)

MCP_TOOL_PREFIX = "mcp__"
DEFAULT_MAX_TOOL_ITERATIONS = 20


def mcp_tool_alias(server_name: str, tool_name: str) -> str:
    """Model-facing name of an MCP tool; tool names only allow [A-Za-z0-9_-]."""
    safe = lambda s: re.sub(r"[^A-Za-z0-9_-]", "_", s)
    return f"{MCP_TOOL_PREFIX}{safe(server_name)}__{safe(tool_name)}"[:128]


class TurnAborted(Exception):
    """Raised inside a turn once its token is cancelled."""


class TurnState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


def _log_orphan(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Abandoned tool call finished with error: %s", exc)


async def _cancel_and_wait(task: asyncio.Future) -> None:
    # The awaitable may be a generator step; it must be finished before the generator is closed.
    task.cancel()
    await asyncio.wait({task})
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Cancelled step ended with %r", task.exception())


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "aborted") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def check(self) -> None:
        if self.cancelled:
            raise TurnAborted(self.reason)

    async def race(self, awaitable: Awaitable[Any], *, cancel_pending: bool = True) -> Any:
        """Await ``awaitable`` unless the token fires first.

        With ``cancel_pending=False`` the losing awaitable keeps running
        on its own.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise TurnAborted(self.reason)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await _cancel_and_wait(task)
            raise
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        if cancel_pending:
            await _cancel_and_wait(task)
        else:
            task.add_done_callback(_log_orphan)
        raise TurnAborted(self.reason)


class PermissionBroker:
    """Pending approval requests, answered from the HTTP API."""

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Future[bool]] = {}

    def open(self, request_id: str) -> None:
        self._pending[request_id] = asyncio.get_running_loop().create_future()

    async def wait(self, request_id: str, timeout: float) -> bool:
        future = self._pending[request_id]
        try:
            if timeout <= 0:
                return False
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            logger.info("Permission request %s timed out after %.0fs", request_id, timeout)
            return False
        finally:
            self._pending.pop(request_id, None)

    def resolve(self, request_id: str, allow: bool) -> bool:
        future = self._pending.get(request_id)
        if future is None or future.done():
            return False
        future.set_result(bool(allow))
        return True


@dataclass
class Turn:
    user_id: str
    session_id: str
    title: str
    is_new_session: bool
    working_dir: str
    request: ChatRequest
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    token: CancellationToken = field(default_factory=CancellationToken)
    state: TurnState = TurnState.RUNNING
    blocks: list[dict[str, Any]] = field(default_factory=list)
    model: str | None = None
    stop_reason: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    persisted: bool = False
    # Model-facing MCP tool name -> (server name, tool name).
    mcp_aliases: dict[str, tuple[str, str]] = field(default_factory=dict)


@dataclass
class _Step:
    """State of one model call within a turn."""
    open_blocks: dict[int, dict[str, Any]] = field(default_factory=dict)
    api_content: list[dict[str, Any]] = field(default_factory=list)
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    stop_reason: str | None = None


class StreamingSessionController:
    def __init__(
        self,
        *,
        dispatcher: ToolDispatcher,
        registry: McpRegistry,
        transcripts: TranscriptStore,
        sessions: SessionIndex,
        model_client: ModelClient,
        projects: dict[str, dict[str, str]] | None = None,
        default_cwd: str = ".",
        max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS,
        permission_timeout: float = 300.0,
        title_timeout: float = 8.0,
        rules: RulesStore | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._registry = registry
        self._transcripts = transcripts
        self._sessions = sessions
        self._model = model_client
        self._projects = projects or {}
        self._default_cwd = default_cwd
        self._max_iterations = max(1, max_tool_iterations)
        self._permission_timeout = permission_timeout
        self._title_timeout = title_timeout
        self._rules = rules
        self._permissions = PermissionBroker()
        self._active: dict[str, Turn] = {}

    # ── Public API ──

    def active_session_ids(self) -> list[str]:
        return list(self._active)

    def abort_session(self, session_id: str) -> bool:
        """Abort the session's in-flight turn. False when nothing was running."""
        turn = self._active.get(session_id)
        if turn is None or turn.state != TurnState.RUNNING:
            return False
        turn.token.cancel("aborted")
        turn.state = TurnState.ABORTED
        del self._active[session_id]
        logger.info("Turn %s of session %s aborted", turn.message_id, session_id)
        return True

    def resolve_permission(self, request_id: str, allow: bool) -> bool:
        return self._permissions.resolve(request_id, allow)

    async def prepare_turn(self, user_id: str, request: ChatRequest) -> Turn:
        """Resolve or create the session. Raises before any event is produced."""
        if request.session_id:
            record = self._sessions.get(user_id, request.session_id)
            working_dir = self._working_dir(record.project_id or request.project_id)
            is_new = False
            if record.title == DEFAULT_TITLE:
                record = self._sessions.update_title(user_id, record.id, fallback_title(request.message))
        else:
            working_dir = self._working_dir(request.project_id)
            record = self._sessions.create(
                user_id, title=fallback_title(request.message), project_id=request.project_id,
            )
            is_new = True
        return Turn(
            user_id=user_id,
            session_id=record.id,
            title=record.title,
            is_new_session=is_new,
            working_dir=working_dir,
            request=request,
        )

    async def stream_chat(self, user_id: str, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        turn = await self.prepare_turn(user_id, request)
        async for event in self.run_turn(turn):
            yield event

    async def run_turn(self, turn: Turn) -> AsyncIterator[StreamEvent]:
        previous = self._active.get(turn.session_id)
        if previous is not None:
            logger.warning("Session %s started a new turn; aborting the previous one", turn.session_id)
            self.abort_session(turn.session_id)
        self._active[turn.session_id] = turn
        events = self._drive(turn)
        try:
            async for event in events:
                if turn.token.cancelled:
                    break
                yield event
        except asyncio.CancelledError:
            turn.token.cancel("request cancelled")
            if turn.state == TurnState.RUNNING:
                turn.state = TurnState.ABORTED
            raise
        finally:
            await events.aclose()
            if turn.state == TurnState.RUNNING and turn.token.cancelled:
                turn.state = TurnState.ABORTED
            if not turn.persisted:
                self._persist(turn, turn.stop_reason or ("aborted" if turn.token.cancelled else "error"))
            if self._active.get(turn.session_id) is turn:
                del self._active[turn.session_id]

    # ── Turn internals ──

    def _working_dir(self, project_id: str | None) -> str:
        path = self._default_cwd
        if project_id:
            project = self._projects.get(project_id)
            if project and project.get("path"):
                path = project["path"]
            else:
                logger.warning("Unknown project %s; using default working directory", project_id)
        resolved = Path(path).expanduser().resolve()
        if not resolved.is_dir():
            raise ValidationError(f"Working directory does not exist: {resolved}")
        return str(resolved)

    @staticmethod
    def _event(event_type: str, data: dict[str, Any]) -> StreamEvent:
        return StreamEvent(type=event_type, data=data)

    def _persist(self, turn: Turn, stop_reason: str) -> None:
        turn.persisted = True
        turn.stop_reason = stop_reason
        if not turn.blocks and stop_reason != "end_turn":
            return
        entry = TranscriptEntry(
            id=turn.message_id,
            session_id=turn.session_id,
            role="assistant",
            content=turn.blocks,
            model=turn.model,
            stop_reason=stop_reason,
            input_tokens=turn.input_tokens,
            output_tokens=turn.output_tokens,
        )
        self._transcripts.append(turn.user_id, entry)
        try:
            self._sessions.touch(turn.user_id, turn.session_id)
        except AgentWebError as exc:
            logger.warning("Could not touch session %s: %s", turn.session_id, exc)

    async def _tool_definitions(self, turn: Turn) -> list[dict[str, Any]]:
        tools = await self._dispatcher.definitions()
        for info in await self._registry.get_available_tools(turn.user_id):
            alias = mcp_tool_alias(info.server_name, info.name)
            if alias in turn.mcp_aliases:
                logger.warning("MCP tool %s of %s shadows another tool; skipped", info.name, info.server_name)
                continue
            turn.mcp_aliases[alias] = (info.server_name, info.name)
            tools.append({
                "name": alias,
                "description": f"[MCP: {info.server_name}] {info.description}".strip(),
                "input_schema": info.input_schema,
            })
        return tools

    async def _drive(self, turn: Turn) -> AsyncIterator[StreamEvent]:
        request = turn.request
        yield self._event("init", {
            "sessionId": turn.session_id,
            "messageId": turn.message_id,
            "title": turn.title,
            "workingDir": turn.working_dir,
        })

        step: _Step | None = None
        try:
            history = self._transcripts.read(turn.user_id, turn.session_id)
            user_entry = TranscriptEntry(role="user", content=user_content_blocks(request), session_id=turn.session_id)
            self._transcripts.append(turn.user_id, user_entry)
            messages = to_model_messages(history + [user_entry])

            tools = await turn.token.race(self._tool_definitions(turn))
            user_rules = self._rules.enabled_content(turn.user_id) if self._rules else ""
            system = build_system_prompt(turn.working_dir, [t["name"] for t in tools], user_rules)
            thinking = should_use_thinking(request.message)

            for iteration in range(self._max_iterations):
                step = _Step()
                model_request = build_request(self._model.model, system, messages, tools, thinking)
                async with aclosing(self._stream_model(turn, model_request, step)) as events:
                    async for event in events:
                        yield event

                if step.stop_reason != "tool_use" or not step.tool_calls:
                    turn.stop_reason = step.stop_reason or "end_turn"
                    break

                messages.append({"role": "assistant", "content": step.api_content})
                results: list[dict[str, Any]] = []
                for call in step.tool_calls:
                    turn.token.check()
                    async with aclosing(self._run_tool(turn, call, results)) as events:
                        async for event in events:
                            yield event
                messages.append({"role": "user", "content": results})

                if iteration == self._max_iterations - 1:
                    turn.stop_reason = "max_iterations"
                    yield self._event("error", {
                        "code": "MAX_ITERATIONS",
                        "message": f"Stopped after {self._max_iterations} model calls without a final answer",
                    })
        except TurnAborted:
            if step is not None:
                self._keep_partial_blocks(turn, step)
            turn.stop_reason = "aborted"
            return
        except Exception as exc:
            logger.exception("Turn %s of session %s failed", turn.message_id, turn.session_id)
            turn.state = TurnState.FAILED
            self._persist(turn, "error")
            yield self._event("error", {"code": "AGENT_ERROR", "message": str(exc)})
            return

        self._persist(turn, turn.stop_reason or "end_turn")
        turn.state = TurnState.COMPLETED
        yield self._event("done", {
            "messageId": turn.message_id,
            "stopReason": turn.stop_reason,
            "inputTokens": turn.input_tokens,
            "outputTokens": turn.output_tokens,
        })

        if turn.is_new_session:
            title = await generate_title(request.message, self._model.complete, self._title_timeout)
            if title:
                self._sessions.update_title(turn.user_id, turn.session_id, title)
                yield self._event("title_update", {"sessionId": turn.session_id, "title": title})

    async def _stream_model(self, turn: Turn, model_request: dict[str, Any], step: _Step) -> AsyncIterator[StreamEvent]:
        upstream = self._model.stream(model_request)
        try:
            while True:
                try:
                    raw = await turn.token.race(upstream.__anext__())
                except StopAsyncIteration:
                    break
                for event in self._apply_model_event(turn, step, raw):
                    yield event
        finally:
            await upstream.aclose()

    def _apply_model_event(self, turn: Turn, step: _Step, raw: dict[str, Any]) -> list[StreamEvent]:
        kind = raw.get("type")
        if kind == "message_start":
            message = raw.get("message") or {}
            turn.model = message.get("model") or turn.model
            usage = message.get("usage") or {}
            turn.input_tokens += int(usage.get("input_tokens") or 0)
            turn.output_tokens += int(usage.get("output_tokens") or 0)
        elif kind == "content_block_start":
            block = raw.get("content_block") or {}
            step.open_blocks[raw.get("index", 0)] = {
                "type": block.get("type"),
                "text": block.get("text") or block.get("thinking") or "",
                "json": "",
                "signature": block.get("signature") or "",
                "id": block.get("id"),
                "name": block.get("name"),
            }
        elif kind == "content_block_delta":
            block = step.open_blocks.get(raw.get("index", 0))
            delta = raw.get("delta") or {}
            if block is None:
                return []
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                block["text"] += delta.get("text", "")
                return [self._event("text_delta", {"content": delta.get("text", "")})]
            if delta_type == "thinking_delta":
                block["text"] += delta.get("thinking", "")
                return [self._event("thinking_delta", {"content": delta.get("thinking", "")})]
            if delta_type == "input_json_delta":
                block["json"] += delta.get("partial_json", "")
            elif delta_type == "signature_delta":
                block["signature"] += delta.get("signature", "")
        elif kind == "content_block_stop":
            block = step.open_blocks.pop(raw.get("index", 0), None)
            if block is not None:
                return self._close_block(turn, step, block)
        elif kind == "message_delta":
            delta = raw.get("delta") or {}
            if delta.get("stop_reason"):
                step.stop_reason = delta["stop_reason"]
            usage = raw.get("usage") or {}
            turn.output_tokens += int(usage.get("output_tokens") or 0)
        return []

    def _close_block(self, turn: Turn, step: _Step, block: dict[str, Any]) -> list[StreamEvent]:
        kind = block["type"]
        if kind == "text":
            if block["text"]:
                turn.blocks.append(text_block(block["text"]))
                step.api_content.append({"type": "text", "text": block["text"]})
        elif kind == "thinking":
            turn.blocks.append(thinking_block(block["text"]))
            step.api_content.append({"type": "thinking", "thinking": block["text"], "signature": block["signature"]})
        elif kind == "tool_use":
            try:
                tool_input = json.loads(block["json"]) if block["json"] else {}
            except json.JSONDecodeError:
                logger.warning("Tool %s sent unparseable input: %s", block["name"], block["json"][:200])
                tool_input = {}
            if not isinstance(tool_input, dict):
                tool_input = {}
            call = ToolCallRequest(id=block["id"], name=block["name"], input=tool_input)
            step.tool_calls.append(call)
            turn.blocks.append(tool_use_block(call.id, call.name, call.input))
            step.api_content.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.input})
            return [self._event("tool_use", {"id": call.id, "name": call.name, "input": call.input})]
        return []

    def _keep_partial_blocks(self, turn: Turn, step: _Step) -> None:
        # Text streamed before an abort is kept; half-received tool calls are not.
        for index in sorted(step.open_blocks):
            block = step.open_blocks[index]
            if block["type"] == "text" and block["text"]:
                turn.blocks.append(text_block(block["text"]))
            elif block["type"] == "thinking" and block["text"]:
                turn.blocks.append(thinking_block(block["text"]))
        step.open_blocks.clear()

    def _approval_reason(self, turn: Turn, call: ToolCallRequest) -> str | None:
        """Why this call needs the user's approval, or None."""
        mode = turn.request.permission_mode
        if mode == PermissionMode.ACCEPT_EDITS:
            return None
        command = call.input.get("command") if call.name == "Bash" else None
        if mode == PermissionMode.PLAN:
            if call.name in turn.mcp_aliases:
                server_name, tool_name = turn.mcp_aliases[call.name]
                return f"Call {tool_name} on MCP server {server_name}"
            capability = self._dispatcher.capability_of(call.name)
            if capability == Capability.BASH:
                return f"Run command: {command}"
            if capability == Capability.FILE_SYSTEM:
                target = call.input.get("file_path") or call.input.get("action") or ""
                return f"{call.name} {target}".strip()
            return None
        if isinstance(command, str) and is_risky_command(command):
            return f"Run command: {command}"
        return None

    async def _execute_call(self, turn: Turn, call: ToolCallRequest) -> ToolResult:
        if call.name not in turn.mcp_aliases:
            return await self._dispatcher.execute(
                call.name, call.input, turn.working_dir, session_id=turn.session_id,
            )
        server_name, tool_name = turn.mcp_aliases[call.name]
        try:
            result = await self._registry.call_tool(turn.user_id, server_name, tool_name, call.input)
        except Exception as exc:
            logger.warning("MCP tool %s failed: %s", call.name, exc)
            return ToolResult.error(f"MCP tool {tool_name} on {server_name} failed: {exc}")
        return ToolResult(content=result.content, is_error=result.is_error)

    async def _run_tool(self, turn: Turn, call: ToolCallRequest, results: list[dict[str, Any]]) -> AsyncIterator[StreamEvent]:
        result: ToolResult | None = None
        reason = self._approval_reason(turn, call)
        if reason:
            request_id = str(uuid.uuid4())
            self._permissions.open(request_id)
            yield self._event("permission_request", {
                "id": request_id,
                "toolName": call.name,
                "description": reason,
                "details": {"toolUseId": call.id, "input": call.input},
            })
            allowed = await turn.token.race(self._permissions.wait(request_id, self._permission_timeout))
            if not allowed:
                result = ToolResult.error(f"Permission denied for {call.name}")

        if result is None:
            result = await turn.token.race(self._execute_call(turn, call), cancel_pending=False)

        results.append({
            "type": "tool_result",
            "tool_use_id": call.id,
            "content": result.content,
            "is_error": result.is_error,
        })
        turn.blocks.append(tool_result_block(call.id, result.content, result.is_error))
        yield self._event("tool_result", {
            "toolUseId": call.id,
            "content": result.content,
            "isError": result.is_error,
        })
