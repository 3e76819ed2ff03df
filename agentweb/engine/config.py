"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTWEB_* env vars,
then via the YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def default_data_dir() -> str:
    return str(Path.home() / ".agentweb")


@dataclass
class AgentConfig:
    """Service configuration."""

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 8420

    # Storage root for transcripts, session index and MCP server records.
    data_dir: str = field(default_factory=default_data_dir)
    # Working directory for turns without a project.
    default_cwd: str = "."

    # Model API
    model: str = "claude-sonnet-4-5-20250929"
    title_model: str = "claude-haiku-4-5-20251001"
    api_base_url: str = "https://api.anthropic.com"
    api_key: str | None = None

    # Tool execution
    bash_timeout_ms: int = 30_000
    max_tool_iterations: int = 20
    # Max wait for a user to answer a permission request.
    # Set to 0 (or a negative value) to deny immediately.
    permission_timeout_seconds: float = 300.0

    # Feature flags file; None keeps flags in memory.
    features_file: str | None = None
    default_features: dict[str, bool] = field(
        default_factory=lambda: {"fileSystem": True, "bash": True}
    )

    # project_id -> {"path": ..., "name": ...}
    projects: dict[str, dict[str, str]] = field(default_factory=dict)
    # bearer token -> user id; empty means header-based identity.
    auth_tokens: dict[str, str] = field(default_factory=dict)
    # Global MCP servers seeded at startup.
    mcp_servers: list[dict[str, Any]] = field(default_factory=list)

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> AgentConfig:
        """Load configuration from AGENTWEB_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("AGENTWEB_")
        }
        if overrides:
            logger.info(
                "AgentConfig.from_env: AGENTWEB_* env overrides: %s",
                ", ".join(
                    f"{k}={'***' if k == 'AGENTWEB_API_KEY' else v}"
                    for k, v in sorted(overrides.items())
                ),
            )
        else:
            logger.debug("AgentConfig.from_env: no AGENTWEB_* env vars set, using defaults")

        return cls(
            host=os.getenv("AGENTWEB_HOST", cls.host),
            port=int(os.getenv("AGENTWEB_PORT", str(cls.port))),
            data_dir=os.getenv("AGENTWEB_DATA_DIR") or default_data_dir(),
            default_cwd=os.getenv("AGENTWEB_DEFAULT_CWD", cls.default_cwd),
            model=os.getenv("AGENTWEB_MODEL", cls.model),
            api_base_url=os.getenv("AGENTWEB_API_BASE_URL", cls.api_base_url),
            api_key=(
                os.getenv("AGENTWEB_API_KEY")
                or os.getenv("ANTHROPIC_API_KEY")
            ),
            bash_timeout_ms=int(os.getenv(
                "AGENTWEB_BASH_TIMEOUT_MS", str(cls.bash_timeout_ms)
            )),
            max_tool_iterations=int(os.getenv(
                "AGENTWEB_MAX_TOOL_ITERATIONS", str(cls.max_tool_iterations)
            )),
            permission_timeout_seconds=float(os.getenv(
                "AGENTWEB_PERMISSION_TIMEOUT",
                str(cls.permission_timeout_seconds),
            )),
            features_file=os.getenv("AGENTWEB_FEATURES_FILE") or None,
            log_level=os.getenv("AGENTWEB_LOG_LEVEL", cls.log_level),
        )

    @property
    def transcripts_dir(self) -> Path:
        return Path(self.data_dir) / "transcripts"

    @property
    def sessions_file(self) -> Path:
        return Path(self.data_dir) / "sessions.json"

    @property
    def mcp_servers_file(self) -> Path:
        return Path(self.data_dir) / "mcp_servers.json"

    @property
    def rules_file(self) -> Path:
        return Path(self.data_dir) / "rules.json"
