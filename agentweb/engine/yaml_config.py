"""YAML configuration loader.

Loads a single YAML file on top of the environment-derived defaults.
Every section is optional.

Example YAML:
    server:
      host: 0.0.0.0
      port: 8420
      data_dir: ~/.agentweb
      default_cwd: /srv/workspace

    model:
      name: claude-sonnet-4-5-20250929
      title_model: claude-haiku-4-5-20251001
      base_url: https://api.anthropic.com
      api_key_env: ANTHROPIC_API_KEY

    tools:
      bash_timeout_ms: 30000
      max_tool_iterations: 20
      permission_timeout_seconds: 300

    features:
      file: ~/.agentweb/features.yaml   # re-read on every tool call
      defaults:
        fileSystem: true
        bash: false

    projects:
      webapp:
        name: Web App
        path: /srv/workspace/webapp

    auth:
      tokens:
        s3cret-token: alice

    mcp_servers:
      - name: filesystem
        command: npx
        args: ["-y", "@modelcontextprotocol/server-filesystem", "/srv/workspace"]
        env: {}
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from agentweb.engine.config import AgentConfig
from agentweb.engine.errors import ValidationError

logger = logging.getLogger(__name__)


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ValidationError(f"YAML section '{name}' must be a mapping")
    return value


def _expand(path: str) -> str:
    return str(Path(os.path.expandvars(path)).expanduser())


def _parse_mcp_servers(raw: Any) -> list[dict[str, Any]]:
    if raw is None:
        return []
    # Accept both a list of entries and a name -> entry mapping.
    if isinstance(raw, dict):
        raw = [{"name": name, **(entry or {})} for name, entry in raw.items()]
    if not isinstance(raw, list):
        raise ValidationError("YAML section 'mcp_servers' must be a list or mapping")
    servers: list[dict[str, Any]] = []
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get("name") or not entry.get("command"):
            logger.warning("load_yaml_config: skipping MCP server entry without name/command: %r", entry)
            continue
        servers.append({
            "name": str(entry["name"]),
            "command": str(entry["command"]),
            "args": [str(a) for a in entry.get("args") or []],
            "env": {str(k): str(v) for k, v in (entry.get("env") or {}).items()},
            "enabled": bool(entry.get("enabled", True)),
        })
    return servers


def apply_yaml_config(config: AgentConfig, raw: dict[str, Any]) -> AgentConfig:
    """Overlay parsed YAML data onto ``config`` in place and return it."""
    server = _section(raw, "server")
    if "host" in server:
        config.host = str(server["host"])
    if "port" in server:
        config.port = int(server["port"])
    if "data_dir" in server:
        config.data_dir = _expand(str(server["data_dir"]))
    if "default_cwd" in server:
        config.default_cwd = _expand(str(server["default_cwd"]))

    model = _section(raw, "model")
    if "name" in model:
        config.model = str(model["name"])
    if "title_model" in model:
        config.title_model = str(model["title_model"])
    if "base_url" in model:
        config.api_base_url = str(model["base_url"]).rstrip("/")
    if "api_key_env" in model:
        key = os.getenv(str(model["api_key_env"]))
        if key:
            config.api_key = key
        else:
            logger.warning(
                "load_yaml_config: api_key_env %s is not set", model["api_key_env"],
            )

    tools = _section(raw, "tools")
    if "bash_timeout_ms" in tools:
        config.bash_timeout_ms = int(tools["bash_timeout_ms"])
    if "max_tool_iterations" in tools:
        config.max_tool_iterations = int(tools["max_tool_iterations"])
    if "permission_timeout_seconds" in tools:
        config.permission_timeout_seconds = float(tools["permission_timeout_seconds"])

    features = _section(raw, "features")
    if features.get("file"):
        config.features_file = _expand(str(features["file"]))
    defaults = features.get("defaults") or {}
    for key in ("fileSystem", "bash"):
        if key in defaults:
            config.default_features[key] = bool(defaults[key])

    for project_id, entry in _section(raw, "projects").items():
        if not isinstance(entry, dict) or not entry.get("path"):
            logger.warning("load_yaml_config: project %s has no path, skipping", project_id)
            continue
        config.projects[str(project_id)] = {
            "path": _expand(str(entry["path"])),
            "name": str(entry.get("name") or project_id),
        }

    auth = _section(raw, "auth")
    for token, user_id in (auth.get("tokens") or {}).items():
        config.auth_tokens[str(token)] = str(user_id)

    config.mcp_servers = _parse_mcp_servers(raw.get("mcp_servers"))
    return config


def load_yaml_config(path: str | Path, base: AgentConfig | None = None) -> AgentConfig:
    """Load a YAML config file over ``base`` (env defaults when omitted)."""
    path = Path(path)
    config = base or AgentConfig.from_env()
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        logger.info("load_yaml_config: successfully read and parsed %s", path)
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise
    if not isinstance(raw, dict):
        raise ValidationError(f"{path}: top level must be a mapping")
    return apply_yaml_config(config, raw)
