"""agentweb engine: tools, MCP registry, and the streaming session controller."""
from .models import (
    Capability,
    FeatureFlags,
    McpServerRecord,
    McpServerStatus,
    PermissionMode,
    StreamEvent,
    TodoItem,
    TodoStatus,
    ToolCallRequest,
    ToolResult,
)
from .config import AgentConfig
from .errors import (
    AgentWebError,
    ForbiddenError,
    McpConflict,
    McpNotRunning,
    ModelApiError,
    NotFoundError,
    PathViolation,
    ProcessSpawnFailure,
    ProcessTimeout,
    ToolDisabled,
    Unauthorized,
    ValidationError,
)

__all__ = [
    # Models
    "Capability",
    "FeatureFlags",
    "McpServerRecord",
    "McpServerStatus",
    "PermissionMode",
    "StreamEvent",
    "TodoItem",
    "TodoStatus",
    "ToolCallRequest",
    "ToolResult",
    # Config
    "AgentConfig",
    # Errors
    "AgentWebError",
    "ForbiddenError",
    "McpConflict",
    "McpNotRunning",
    "ModelApiError",
    "NotFoundError",
    "PathViolation",
    "ProcessSpawnFailure",
    "ProcessTimeout",
    "ToolDisabled",
    "Unauthorized",
    "ValidationError",
]
