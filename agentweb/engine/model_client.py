"""Streaming client for the Anthropic Messages API.

``stream`` yields the raw server-sent events as dicts
(``message_start``, ``content_block_delta``, ...). Turning them into
session events is the controller's job.
"""
from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol

import aiohttp

from agentweb.engine.errors import ModelApiError

logger = logging.getLogger(__name__)

API_VERSION = "2023-06-01"
MAX_TOKENS = 8192
MAX_TOKENS_WITH_THINKING = 16000
THINKING_BUDGET = 5000


class ModelClient(Protocol):
    model: str

    def stream(self, request: dict[str, Any]) -> AsyncIterator[dict[str, Any]]: ...
    async def complete(self, prompt: str) -> str: ...


def build_request(
    model: str,
    system: str,
    messages: list[dict[str, Any]],
    tools: list[dict[str, Any]],
    thinking: bool,
) -> dict[str, Any]:
    request: dict[str, Any] = {
        "model": model,
        "system": system,
        "messages": messages,
        "max_tokens": MAX_TOKENS_WITH_THINKING if thinking else MAX_TOKENS,
        "stream": True,
    }
    if tools:
        request["tools"] = tools
    if thinking:
        request["thinking"] = {"type": "enabled", "budget_tokens": THINKING_BUDGET}
    return request


class AnthropicClient:
    def __init__(
        self,
        api_key: str | None,
        model: str,
        base_url: str = "https://api.anthropic.com",
        title_model: str | None = None,
    ) -> None:
        self.model = model
        self.title_model = title_model or model
        self._api_key = api_key
        self._url = base_url.rstrip("/") + "/v1/messages"
        self._session: aiohttp.ClientSession | None = None

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # No total deadline: a turn can stream for minutes.
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=30, sock_read=300),
            )
        return self._session

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise ModelApiError("No API key configured (set AGENTWEB_API_KEY or ANTHROPIC_API_KEY)")
        return {
            "x-api-key": self._api_key,
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
        }

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def stream(self, request: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        headers = self._headers()
        try:
            async with self._http().post(self._url, json=request, headers=headers) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise ModelApiError(f"Model API returned {resp.status}: {body[:500]}")
                async for raw_line in resp.content:
                    line = raw_line.decode("utf-8", errors="replace").strip()
                    if not line.startswith("data:"):
                        continue
                    payload = line[5:].strip()
                    if not payload or payload == "[DONE]":
                        continue
                    try:
                        event = json.loads(payload)
                    except json.JSONDecodeError:
                        logger.warning("AnthropicClient: unparseable stream line: %s", payload[:200])
                        continue
                    if event.get("type") == "error":
                        error = event.get("error") or {}
                        raise ModelApiError(error.get("message") or "Model stream error")
                    yield event
        except aiohttp.ClientError as exc:
            raise ModelApiError(f"Model API request failed: {exc}") from exc

    async def complete(self, prompt: str) -> str:
        """One short non-streaming completion (used for titles)."""
        request = {
            "model": self.title_model,
            "max_tokens": 50,
            "messages": [{"role": "user", "content": prompt}],
        }
        try:
            async with self._http().post(self._url, json=request, headers=self._headers()) as resp:
                if resp.status != 200:
                    raise ModelApiError(f"Model API returned {resp.status}")
                data = await resp.json()
        except aiohttp.ClientError as exc:
            raise ModelApiError(f"Model API request failed: {exc}") from exc
        return "".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        )
