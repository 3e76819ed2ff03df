"""HTTP API and SSE chat stream.

Chat turns stream as ``text/event-stream``: one frame per
``StreamEvent`` (``event: <type>`` + ``data: {type, data, timestamp}``).
If the client goes away mid-turn, the turn is aborted exactly as an
explicit ``POST /api/chat/abort/{session_id}`` would.
"""
from __future__ import annotations

import asyncio
import json
import logging
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from agentweb import __version__
from agentweb.engine.conversation import ChatRequest
from agentweb.engine.errors import AgentWebError, ValidationError
from agentweb.engine.models import FeatureFlags, StreamEvent, TodoStatus
from agentweb.engine.runtime import AgentRuntime
from agentweb.engine.session_controller import Turn
from agentweb.engine.task_tracker import parse_status
from agentweb.web.auth import resolve_user

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
SSE_KEEPALIVE_SECONDS = 15.0


class AgentWebServer:
    def __init__(
        self,
        runtime: AgentRuntime,
        host: str = "127.0.0.1",
        port: int = 8420,
        *,
        sse_keepalive: float = SSE_KEEPALIVE_SECONDS,
    ) -> None:
        self.runtime = runtime
        self._sse_keepalive = sse_keepalive
        self._pumps: set[asyncio.Task] = set()
        self._host = host
        self._port = port
        self._started_at = time.time()
        self.app = web.Application(middlewares=[
            self._request_logging_middleware,
            self._error_middleware,
            self._auth_middleware,
        ])
        self.app.on_startup.append(self._on_startup)
        self.app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-agentweb-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except AgentWebError as exc:
            logger.info("HTTP %s %s -> %s %s", request.method, request.path, exc.status, exc)
            return web.json_response({"error": str(exc), "code": exc.code}, status=exc.status)
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.path)
            return web.json_response(
                {"error": "Internal server error", "code": "INTERNAL_ERROR"}, status=500,
            )

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if request.path.startswith("/api/"):
            request["user_id"] = resolve_user(request, self.runtime.config.auth_tokens)
        return await handler(request)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self.app.router
        r.add_get("/health", self._handle_health)
        # Chat
        r.add_post("/api/chat/stream", self._handle_chat_stream)
        r.add_post("/api/chat/abort/{session_id}", self._handle_abort)
        r.add_post("/api/chat/permissions/{request_id}", self._handle_resolve_permission)
        # Sessions
        r.add_get("/api/sessions", self._handle_list_sessions)
        r.add_post("/api/sessions/import", self._handle_import_session)
        r.add_get("/api/sessions/{id}", self._handle_get_session)
        r.add_delete("/api/sessions/{id}", self._handle_delete_session)
        r.add_post("/api/sessions/{id}/fork", self._handle_fork_session)
        r.add_get("/api/sessions/{id}/todos", self._handle_get_todos)
        # MCP servers
        r.add_get("/api/mcp/servers", self._handle_list_mcp_servers)
        r.add_post("/api/mcp/servers", self._handle_create_mcp_server)
        r.add_get("/api/mcp/servers/{id}", self._handle_get_mcp_server)
        r.add_put("/api/mcp/servers/{id}", self._handle_update_mcp_server)
        r.add_delete("/api/mcp/servers/{id}", self._handle_delete_mcp_server)
        r.add_post("/api/mcp/servers/{id}/start", self._handle_start_mcp_server)
        r.add_post("/api/mcp/servers/{id}/stop", self._handle_stop_mcp_server)
        r.add_get("/api/mcp/servers/{id}/tools", self._handle_mcp_server_tools)
        r.add_get("/api/mcp/servers/{id}/resources", self._handle_mcp_server_resources)
        # Configuration
        r.add_get("/api/config/features", self._handle_get_features)
        r.add_put("/api/config/features", self._handle_update_features)
        # User rules
        r.add_get("/api/rules", self._handle_list_rules)
        r.add_post("/api/rules", self._handle_create_rule)
        r.add_put("/api/rules/{id}", self._handle_update_rule)
        r.add_delete("/api/rules/{id}", self._handle_delete_rule)

    # ── Lifecycle ──

    async def _on_startup(self, app: web.Application) -> None:
        await self.runtime.start()

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.runtime.shutdown()

    async def start(self) -> web.AppRunner:
        """Start listening and print the bound port to stdout."""
        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        sockets = runner.addresses
        if sockets:
            self._port = sockets[0][1]
        sys.stdout.write(json.dumps({"port": self._port}) + "\n")
        sys.stdout.flush()
        logger.info("agentweb server listening on %s:%d", self._host, self._port)
        return runner

    async def serve_forever(self) -> None:
        runner = await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()

    # ── Helpers ──

    @staticmethod
    async def _json(request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except json.JSONDecodeError:
            raise ValidationError("Request body is not valid JSON") from None
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        return body

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "version": __version__,
            "uptime_seconds": round(time.time() - self._started_at, 1),
            "active_turns": len(self.runtime.controller.active_session_ids()),
        })

    async def _handle_chat_stream(self, request: web.Request) -> web.StreamResponse:
        controller = self.runtime.controller
        chat = ChatRequest.from_dict(await self._json(request))
        turn = await controller.prepare_turn(request["user_id"], chat)

        response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        await response.prepare(request)
        queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        pump = asyncio.create_task(self._pump_turn(turn, queue))
        self._pumps.add(pump)
        pump.add_done_callback(self._pumps.discard)
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=self._sse_keepalive)
                except asyncio.TimeoutError:
                    # A quiet turn still notices a client that went away.
                    await response.write(b": keepalive\n\n")
                    continue
                if event is None:
                    break
                await response.write(event.to_sse())
        except ConnectionResetError:
            logger.info("SSE client went away req=%s session=%s", request.get("req_id"), turn.session_id)
            controller.abort_session(turn.session_id)
            await pump
            return response
        except asyncio.CancelledError:
            controller.abort_session(turn.session_id)
            raise
        await pump
        await response.write_eof()
        return response

    async def _pump_turn(self, turn: Turn, queue: asyncio.Queue[StreamEvent | None]) -> None:
        try:
            async for event in self.runtime.controller.run_turn(turn):
                queue.put_nowait(event)
        finally:
            queue.put_nowait(None)

    async def _handle_abort(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        # Only the owner may abort; unknown sessions raise NotFoundError.
        self.runtime.session_index.get(request["user_id"], session_id)
        aborted = self.runtime.controller.abort_session(session_id)
        return web.json_response({"aborted": aborted})

    async def _handle_resolve_permission(self, request: web.Request) -> web.Response:
        body = await self._json(request)
        if not isinstance(body.get("allow"), bool):
            raise ValidationError("allow must be a boolean")
        resolved = self.runtime.controller.resolve_permission(request.match_info["request_id"], body["allow"])
        if not resolved:
            return web.json_response({"error": "No pending permission request with that id", "code": "NOT_FOUND"}, status=404)
        return web.json_response({"resolved": True})

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        project_id = request.query.get("projectId")
        records = self.runtime.session_index.list(request["user_id"], project_id)
        return web.json_response({"sessions": [r.to_dict() for r in records]})

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        user_id = request["user_id"]
        record = self.runtime.session_index.get(user_id, request.match_info["id"])
        messages = self.runtime.transcripts.read(user_id, record.id)
        return web.json_response({
            "session": record.to_dict(),
            "messages": [m.to_dict() for m in messages],
        })

    async def _handle_delete_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        # Ownership first; another user's running turn must not be touched.
        self.runtime.session_index.get(request["user_id"], session_id)
        self.runtime.controller.abort_session(session_id)
        self.runtime.sessions.delete(request["user_id"], session_id)
        return web.json_response({"status": "deleted"})

    async def _handle_fork_session(self, request: web.Request) -> web.Response:
        body = await self._json(request)
        message_index = body.get("messageIndex")
        if not isinstance(message_index, int) or isinstance(message_index, bool):
            raise ValidationError("messageIndex must be an integer")
        record = self.runtime.sessions.fork(request["user_id"], request.match_info["id"], message_index)
        return web.json_response({"session": record.to_dict()}, status=201)

    async def _handle_import_session(self, request: web.Request) -> web.Response:
        body = await self._json(request)
        path = body.get("path")
        if not isinstance(path, str) or not path:
            raise ValidationError("path is required")
        record = self.runtime.sessions.import_transcript(
            request["user_id"], path, title=body.get("title"), project_id=body.get("projectId"),
        )
        return web.json_response({"session": record.to_dict()}, status=201)

    async def _handle_get_todos(self, request: web.Request) -> web.Response:
        record = self.runtime.session_index.get(request["user_id"], request.match_info["id"])
        status: TodoStatus | None = None
        if request.query.get("status"):
            status = parse_status(request.query["status"])
        try:
            limit = int(request.query.get("limit", "50"))
        except ValueError:
            raise ValidationError("limit must be an integer") from None
        tracker = self.runtime.tracker
        return web.json_response({
            "todos": [t.to_dict() for t in tracker.list(record.id, status=status, limit=limit)],
            "stats": tracker.stats(record.id),
        })

    async def _handle_list_mcp_servers(self, request: web.Request) -> web.Response:
        records = self.runtime.registry.list_servers(request["user_id"])
        return web.json_response({"servers": [r.to_dict() for r in records]})

    async def _handle_create_mcp_server(self, request: web.Request) -> web.Response:
        body = await self._json(request)
        record = await self.runtime.registry.create_server(
            request["user_id"],
            name=body.get("name"),
            command=body.get("command"),
            args=body.get("args"),
            env=body.get("env"),
            enabled=body.get("enabled", True),
        )
        return web.json_response({"server": record.to_dict()}, status=201)

    async def _handle_get_mcp_server(self, request: web.Request) -> web.Response:
        record = self.runtime.registry.get_server(request["user_id"], request.match_info["id"])
        return web.json_response({"server": record.to_dict()})

    async def _handle_update_mcp_server(self, request: web.Request) -> web.Response:
        body = await self._json(request)
        changes = {k: body[k] for k in ("name", "command", "args", "env", "enabled") if k in body}
        record = await self.runtime.registry.update_server(request["user_id"], request.match_info["id"], changes)
        return web.json_response({"server": record.to_dict()})

    async def _handle_delete_mcp_server(self, request: web.Request) -> web.Response:
        await self.runtime.registry.delete_server(request["user_id"], request.match_info["id"])
        return web.json_response({"status": "deleted"})

    async def _handle_start_mcp_server(self, request: web.Request) -> web.Response:
        record = await self.runtime.registry.start(request["user_id"], request.match_info["id"])
        return web.json_response({"server": record.to_dict()})

    async def _handle_stop_mcp_server(self, request: web.Request) -> web.Response:
        record = await self.runtime.registry.stop(request["user_id"], request.match_info["id"])
        return web.json_response({"server": record.to_dict()})

    async def _handle_mcp_server_tools(self, request: web.Request) -> web.Response:
        tools = await self.runtime.registry.list_tools(request["user_id"], request.match_info["id"])
        return web.json_response({"tools": [t.to_dict() for t in tools]})

    async def _handle_mcp_server_resources(self, request: web.Request) -> web.Response:
        registry = self.runtime.registry
        user_id = request["user_id"]
        server_id = request.match_info["id"]
        uri = request.query.get("uri")
        if uri:
            return web.json_response({"contents": await registry.read_resource(user_id, server_id, uri)})
        return web.json_response({"resources": await registry.list_resources(user_id, server_id)})

    async def _handle_get_features(self, request: web.Request) -> web.Response:
        flags = await self.runtime.flags.get_flags()
        return web.json_response(flags.to_dict())

    async def _handle_update_features(self, request: web.Request) -> web.Response:
        body = await self._json(request)
        current = (await self.runtime.flags.get_flags()).to_dict()
        for key in ("fileSystem", "bash"):
            if key in body:
                if not isinstance(body[key], bool):
                    raise ValidationError(f"{key} must be a boolean")
                current[key] = body[key]
        updated = await self.runtime.flags.set_flags(FeatureFlags.from_dict(current))
        return web.json_response(updated.to_dict())

    async def _handle_list_rules(self, request: web.Request) -> web.Response:
        rules = self.runtime.rules.list(request["user_id"])
        return web.json_response({"rules": [r.to_dict() for r in rules]})

    async def _handle_create_rule(self, request: web.Request) -> web.Response:
        body = await self._json(request)
        rule = self.runtime.rules.create(
            request["user_id"],
            body.get("name"),
            body.get("content"),
            enabled=body.get("enabled", True),
            priority=body.get("priority", 0),
        )
        return web.json_response({"rule": rule.to_dict()}, status=201)

    async def _handle_update_rule(self, request: web.Request) -> web.Response:
        body = await self._json(request)
        changes = {k: body[k] for k in ("name", "content", "enabled", "priority") if k in body}
        rule = self.runtime.rules.update(request["user_id"], request.match_info["id"], changes)
        return web.json_response({"rule": rule.to_dict()})

    async def _handle_delete_rule(self, request: web.Request) -> web.Response:
        self.runtime.rules.delete(request["user_id"], request.match_info["id"])
        return web.json_response({"status": "deleted"})
