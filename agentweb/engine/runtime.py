"""Process-wide composition of the engine.

Built once from ``AgentConfig``; ``start``/``shutdown`` are tied to the
HTTP application's startup and cleanup hooks.
"""
from __future__ import annotations

import logging
from pathlib import Path

from agentweb.engine.config import AgentConfig
from agentweb.engine.dispatcher import FeatureFlagSource, ToolDispatcher
from agentweb.engine.feature_flags import FileFeatureFlagSource, StaticFeatureFlagSource
from agentweb.engine.mcp_registry import ClientFactory, McpRegistry, McpServerStore
from agentweb.engine.model_client import AnthropicClient, ModelClient
from agentweb.engine.models import FeatureFlags
from agentweb.engine.session_controller import StreamingSessionController
from agentweb.engine.task_tracker import TaskTracker
from agentweb.engine.tools import HttpSessionProvider, SearchBackend, build_builtin_tools
from agentweb.shared.services.rules import RulesStore
from agentweb.shared.services.sessions import SessionIndex, SessionService
from agentweb.shared.services.transcript_store import TranscriptStore

logger = logging.getLogger(__name__)


class AgentRuntime:
    def __init__(
        self,
        config: AgentConfig,
        *,
        model_client: ModelClient | None = None,
        flags: FeatureFlagSource | None = None,
        mcp_client_factory: ClientFactory | None = None,
        search_backend: SearchBackend | None = None,
        persist: bool = True,
    ) -> None:
        self.config = config
        data_dir = Path(config.data_dir)

        defaults = FeatureFlags.from_dict(config.default_features)
        if flags is None:
            flags = (
                FileFeatureFlagSource(config.features_file, defaults)
                if config.features_file else StaticFeatureFlagSource(defaults)
            )
        self.flags = flags

        self.http = HttpSessionProvider()
        self.tracker = TaskTracker()
        self.transcripts = TranscriptStore(config.transcripts_dir)
        self.session_index = SessionIndex(config.sessions_file if persist else None)
        self.sessions = SessionService(self.session_index, self.transcripts, self.tracker)
        self.rules = RulesStore(config.rules_file if persist else None)
        self.registry = McpRegistry(
            McpServerStore(config.mcp_servers_file if persist else None),
            client_factory=mcp_client_factory,
        )
        self.dispatcher = ToolDispatcher(
            build_builtin_tools(self.tracker, self.http, search_backend, config.bash_timeout_ms),
            self.flags,
        )
        self.model_client = model_client or AnthropicClient(
            api_key=config.api_key,
            model=config.model,
            base_url=config.api_base_url,
            title_model=config.title_model,
        )
        self.controller = StreamingSessionController(
            dispatcher=self.dispatcher,
            registry=self.registry,
            transcripts=self.transcripts,
            sessions=self.session_index,
            model_client=self.model_client,
            projects=config.projects,
            default_cwd=config.default_cwd,
            max_tool_iterations=config.max_tool_iterations,
            permission_timeout=config.permission_timeout_seconds,
            rules=self.rules,
        )
        self._started = False
        logger.info("AgentRuntime created data_dir=%s tools=%d", data_dir, len(self.dispatcher.tool_names))

    async def start(self) -> None:
        if self._started:
            return
        await self.registry.init(self.config.mcp_servers)
        self._started = True

    async def shutdown(self) -> None:
        if not self._started:
            return
        for session_id in self.controller.active_session_ids():
            self.controller.abort_session(session_id)
        await self.registry.cleanup()
        self.tracker.shutdown()
        await self.http.close()
        close = getattr(self.model_client, "close", None)
        if close is not None:
            await close()
        self._started = False
        logger.info("AgentRuntime shut down")
