"""Exception hierarchy for the agent engine.

Tool handlers raise these; the dispatcher turns them into error results
and the HTTP layer turns them into structured API errors using ``code``
and ``status``.
"""
from __future__ import annotations


class AgentWebError(Exception):
    """Base exception for all agentweb errors."""
    code = "INTERNAL_ERROR"
    status = 500


class ValidationError(AgentWebError):
    """Malformed tool input or request payload."""
    code = "VALIDATION_ERROR"
    status = 400


class PathViolation(AgentWebError):
    """A path resolved outside the session working directory."""
    code = "PATH_VIOLATION"
    status = 403

    def __init__(self, path: str, root: str):
        self.path = path
        self.root = root
        super().__init__(
            f"Access denied: {path} is outside the working directory {root}"
        )


class NotFoundError(AgentWebError):
    """Missing file, session, server or task."""
    code = "NOT_FOUND"
    status = 404

    def __init__(self, kind: str, ident: str):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found: {ident}")


class ForbiddenError(AgentWebError):
    """Caller does not own the resource."""
    code = "FORBIDDEN"
    status = 403


class ToolDisabled(AgentWebError):
    """Tool gated off by the current feature-flag policy."""
    code = "TOOL_DISABLED"
    status = 403

    def __init__(self, tool_name: str, capability: str):
        self.tool_name = tool_name
        self.capability = capability
        super().__init__(
            f"Tool {tool_name} is disabled: the '{capability}' capability "
            f"is turned off by the current feature settings"
        )


class ProcessTimeout(AgentWebError):
    """A child process exceeded its time limit."""
    code = "PROCESS_TIMEOUT"
    status = 504

    def __init__(self, command: str, timeout_ms: int):
        self.command = command
        self.timeout_ms = timeout_ms
        super().__init__(f"Command timed out after {timeout_ms}ms: {command}")


class ProcessSpawnFailure(AgentWebError):
    """A child process could not be started or connected."""
    code = "PROCESS_SPAWN_FAILURE"
    status = 502

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start {command}: {reason}")


class McpNotRunning(AgentWebError):
    """Operation needs a connected MCP client and none exists."""
    code = "MCP_NOT_RUNNING"
    status = 409

    def __init__(self, server_id: str):
        self.server_id = server_id
        super().__init__(f"MCP server {server_id} is not running")


class McpConflict(AgentWebError):
    """Duplicate MCP server name within the owner scope."""
    code = "MCP_CONFLICT"
    status = 409

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"MCP server with name '{name}' already exists")


class ModelApiError(AgentWebError):
    """The model API returned an error or an unreadable stream."""
    code = "MODEL_API_ERROR"
    status = 502


class Unauthorized(AgentWebError):
    """Caller could not be identified."""
    code = "UNAUTHORIZED"
    status = 401
