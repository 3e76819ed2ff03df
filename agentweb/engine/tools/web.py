"""Web tools: WebFetch and WebSearch.

WebSearch talks to a ``SearchBackend``; the DuckDuckGo backend scrapes
the HTML results page and falls back to the instant-answer JSON API.
Swapping in a real search API only means another backend class.
"""
from __future__ import annotations

import asyncio
import html
import logging
import re
import urllib.parse
from dataclasses import dataclass, field
from typing import Protocol

import aiohttp

from agentweb import __version__
from agentweb.engine.errors import ValidationError
from agentweb.engine.models import ToolResult
from agentweb.engine.tools.base import Tool, optional_int, require_str

logger = logging.getLogger(__name__)

USER_AGENT = f"agentweb/{__version__}"
REQUEST_TIMEOUT_SECONDS = 30
MAX_RESPONSE_BYTES = 5 * 1024 * 1024
DEFAULT_FETCH_CHARS = 50_000
MAX_FETCH_CHARS = 100_000
DEFAULT_SEARCH_RESULTS = 5
MAX_SEARCH_RESULTS = 10

_LINK_RE = re.compile(
    r'<a\s+[^>]*(?:class="[^"]*result__a[^"]*"[^>]*href="([^"]*)"'
    r'|href="([^"]*)"[^>]*class="[^"]*result__a[^"]*")[^>]*>(.*?)</a>',
    re.DOTALL,
)
_SNIPPET_RE = re.compile(
    r'<(?:a|div|td)\s+[^>]*class="[^"]*result__snippet[^"]*"[^>]*>(.*?)</(?:a|div|td)>',
    re.DOTALL,
)
_TAG_RE = re.compile(r"<[^>]+>")
_DROP_BLOCKS_RE = re.compile(r"<(script|style|noscript|svg|head)\b.*?</\1>", re.DOTALL | re.IGNORECASE)
_BLOCK_BREAK_RE = re.compile(r"<(?:br|/p|/div|/li|/h[1-6]|/tr)\s*/?>", re.IGNORECASE)


def strip_html(markup: str) -> str:
    text = _DROP_BLOCKS_RE.sub(" ", markup)
    text = _BLOCK_BREAK_RE.sub("\n", text)
    text = html.unescape(_TAG_RE.sub("", text))
    lines = [" ".join(line.split()) for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


class HttpSessionProvider:
    """Lazily created shared ``aiohttp.ClientSession``; closed at shutdown."""

    def __init__(self) -> None:
        self._session: aiohttp.ClientSession | None = None

    def get(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SECONDS),
                headers={"User-Agent": USER_AGENT},
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


@dataclass
class SearchHit:
    title: str
    url: str
    snippet: str = ""


@dataclass
class SearchResults:
    query: str
    hits: list[SearchHit] = field(default_factory=list)
    # Set when only the instant-answer fallback produced something.
    abstract: str | None = None
    abstract_url: str | None = None


class SearchBackend(Protocol):
    async def search(self, query: str, limit: int) -> SearchResults: ...


class DuckDuckGoSearch:
    """HTML results page first, instant-answer JSON second."""

    def __init__(
        self,
        http: HttpSessionProvider,
        html_url: str = "https://html.duckduckgo.com/html/",
        instant_url: str = "https://api.duckduckgo.com/",
    ) -> None:
        self._http = http
        self._html_url = html_url
        self._instant_url = instant_url

    async def search(self, query: str, limit: int) -> SearchResults:
        results = SearchResults(query=query)
        html_error: Exception | None = None
        try:
            results.hits = await self._search_html(query, limit)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            html_error = exc
            logger.warning("DuckDuckGoSearch: HTML search failed for %r: %s", query, exc)
        if results.hits:
            return results

        try:
            results.abstract, results.abstract_url = await self._instant_answer(query)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning("DuckDuckGoSearch: instant answer failed for %r: %s", query, exc)
            if html_error is not None:
                raise html_error from exc
        return results

    async def _search_html(self, query: str, limit: int) -> list[SearchHit]:
        session = self._http.get()
        async with session.post(self._html_url, data={"q": query}) as resp:
            resp.raise_for_status()
            page = (await resp.content.read(MAX_RESPONSE_BYTES)).decode("utf-8", errors="replace")
        return parse_result_page(page, limit)

    async def _instant_answer(self, query: str) -> tuple[str | None, str | None]:
        session = self._http.get()
        params = {"q": query, "format": "json", "no_html": "1", "skip_disambig": "1"}
        async with session.get(self._instant_url, params=params) as resp:
            resp.raise_for_status()
            data = await resp.json(content_type=None)
        if not isinstance(data, dict):
            raise ValueError("unexpected instant answer payload")
        abstract = (data.get("AbstractText") or data.get("Answer") or "").strip()
        if not abstract:
            for topic in data.get("RelatedTopics") or []:
                if isinstance(topic, dict) and topic.get("Text"):
                    abstract = topic["Text"].strip()
                    break
        return (abstract or None), (data.get("AbstractURL") or None)


def parse_result_page(page: str, limit: int) -> list[SearchHit]:
    """Extract result links from a DuckDuckGo HTML page, skipping ads."""
    links = [(u1 or u2, title) for u1, u2, title in _LINK_RE.findall(page)]
    snippets = _SNIPPET_RE.findall(page)
    hits: list[SearchHit] = []
    for index, (raw_url, raw_title) in enumerate(links):
        title = html.unescape(_TAG_RE.sub("", raw_title)).strip()
        url = html.unescape(raw_url)
        if "uddg=" in url:
            match = re.search(r"uddg=([^&]+)", url)
            if match:
                url = urllib.parse.unquote(match.group(1))
        elif url.startswith("//"):
            url = "https:" + url
        if not title or not url or "/y.js?" in url or "ad_provider" in url:
            continue
        snippet = ""
        if index < len(snippets):
            snippet = " ".join(html.unescape(_TAG_RE.sub("", snippets[index])).split())
        hits.append(SearchHit(title=title, url=url, snippet=snippet))
        if len(hits) >= limit:
            break
    return hits


class WebSearchTool(Tool):
    name = "WebSearch"
    description = "Search the web. Use site to restrict results to one domain."
    input_schema = {
        "type": "object",
        "properties": {
            "query": {"type": "string"},
            "limit": {"type": "integer", "minimum": 1, "maximum": MAX_SEARCH_RESULTS},
            "site": {"type": "string", "description": "Domain to restrict the search to"},
        },
        "required": ["query"],
    }

    def __init__(self, backend: SearchBackend) -> None:
        self.backend = backend

    async def execute(self, params, working_dir, *, session_id=None):
        query = require_str(params, "query").strip()
        if not query:
            raise ValidationError("'query' must not be empty")
        limit = optional_int(params, "limit", DEFAULT_SEARCH_RESULTS, minimum=1, maximum=MAX_SEARCH_RESULTS)
        site = (params.get("site") or "").strip()
        if site and "site:" not in query:
            query = f"site:{site} {query}"

        try:
            results = await self.backend.search(query, limit)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return ToolResult.error(f"Web search failed: {exc}")

        if results.hits:
            lines = [f"Search results for: {query}", ""]
            for number, hit in enumerate(results.hits[:limit], start=1):
                lines.append(f"{number}. {hit.title}")
                lines.append(f"   {hit.url}")
                if hit.snippet:
                    lines.append(f"   {hit.snippet}")
            return ToolResult.ok("\n".join(lines))
        if results.abstract:
            source = f"\nSource: {results.abstract_url}" if results.abstract_url else ""
            return ToolResult.ok(f"Instant answer for: {query}\n\n{results.abstract}{source}")
        return ToolResult.ok(f'No search results found for "{query}".')


class WebFetchTool(Tool):
    name = "WebFetch"
    description = "Fetch a URL and return its text content (HTML is converted to plain text)."
    input_schema = {
        "type": "object",
        "properties": {
            "url": {"type": "string"},
            "max_length": {"type": "integer", "description": "Max characters returned"},
        },
        "required": ["url"],
    }

    def __init__(self, http: HttpSessionProvider) -> None:
        self.http = http

    async def execute(self, params, working_dir, *, session_id=None):
        url = require_str(params, "url").strip()
        if urllib.parse.urlparse(url).scheme not in ("http", "https"):
            raise ValidationError("Only http and https URLs can be fetched")
        max_length = optional_int(params, "max_length", DEFAULT_FETCH_CHARS, minimum=1, maximum=MAX_FETCH_CHARS)

        try:
            async with self.http.get().get(url, allow_redirects=True) as resp:
                body = await resp.content.read(MAX_RESPONSE_BYTES)
                status = resp.status
                content_type = resp.headers.get("Content-Type", "")
                final_url = str(resp.url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return ToolResult.error(f"Failed to fetch {url}: {exc}")

        text = body.decode("utf-8", errors="replace")
        if "html" in content_type.lower() or text.lstrip()[:15].lower().startswith(("<!doctype", "<html")):
            text = strip_html(text)
        truncated = len(text) > max_length
        text = text[:max_length]
        header = f"URL: {final_url}\nStatus: {status}\nContent-Type: {content_type or 'unknown'}\n\n"
        footer = f"\n\n[content truncated at {max_length} characters]" if truncated else ""
        if status >= 400:
            return ToolResult.error(header + text + footer)
        return ToolResult.ok(header + text + footer)
