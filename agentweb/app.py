"""agentweb: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from agentweb.engine.config import AgentConfig, default_data_dir

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def _configure_logging(data_dir: str | Path, level: str, verbose: bool) -> Path:
    log_dir = Path(data_dir) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "agentweb.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=5_000_000, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    if verbose:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    return log_file


def _load_config(args) -> AgentConfig:
    config = AgentConfig.from_env()
    if args.config:
        from agentweb.engine.yaml_config import load_yaml_config

        config = load_yaml_config(args.config, base=config)
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.cwd:
        config.default_cwd = str(Path(args.cwd).expanduser().resolve())
    return config


def _list_sessions(config: AgentConfig, user_id: str) -> None:
    from agentweb.shared.services.sessions import SessionIndex

    index = SessionIndex(config.sessions_file)
    records = index.list(user_id)
    if not records:
        print("No saved sessions.")
        return
    for record in records:
        print(f"  {record.id}  {record.title}  (updated {record.updated_at})")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentweb",
        description="agentweb: streaming coding-agent backend over HTTP+SSE",
    )
    parser.add_argument(
        "--server", action="store_true",
        help="Start the HTTP+SSE server",
    )
    parser.add_argument(
        "--host", metavar="HOST",
        help="Bind address (default: 127.0.0.1 or AGENTWEB_HOST)",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (server, model, tools, features, projects, auth, mcp_servers)",
    )
    parser.add_argument(
        "--cwd", metavar="DIR",
        help="Default working directory for sessions without a project",
    )
    parser.add_argument(
        "--verbose", action="store_true",
        help="Also log to stderr",
    )
    parser.add_argument(
        "--list-sessions", action="store_true",
        help="List saved sessions for --user and exit",
    )
    parser.add_argument(
        "--user", metavar="USER_ID", default="local",
        help="User id for --list-sessions (default: local)",
    )
    args = parser.parse_args()

    log_level = os.getenv("AGENTWEB_LOG_LEVEL", "INFO")
    data_dir = os.getenv("AGENTWEB_DATA_DIR") or default_data_dir()
    log_file = _configure_logging(data_dir, log_level, args.verbose)
    logger = logging.getLogger(__name__)

    try:
        config = _load_config(args)
    except Exception as exc:
        logger.exception("Failed to load configuration")
        print(f"Error: could not load configuration: {exc}", file=sys.stderr)
        sys.exit(2)
    if config.log_level.upper() != log_level.upper():
        logging.getLogger().setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    if args.list_sessions:
        _list_sessions(config, args.user)
        sys.exit(0)

    if not args.server:
        parser.print_help()
        sys.exit(0)

    from agentweb.engine.runtime import AgentRuntime
    from agentweb.web.server import AgentWebServer

    logger.info(
        "Starting agentweb server host=%s port=%s cwd=%s config=%s log=%s",
        config.host,
        config.port,
        config.default_cwd,
        args.config or "<none>",
        log_file,
    )
    if not config.api_key:
        logger.warning("No API key configured; chat turns will fail until AGENTWEB_API_KEY is set")

    server = AgentWebServer(AgentRuntime(config), host=config.host, port=config.port)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        logger.info("agentweb server interrupted; shutting down")


if __name__ == "__main__":
    main()
