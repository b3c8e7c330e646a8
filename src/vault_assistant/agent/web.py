"""Network tools: web search through a chat endpoint and page fetching."""

from __future__ import annotations

import html
import logging
import re
import time
from collections.abc import Callable
from typing import Any, Literal
from urllib.parse import urlsplit

import httpx
from pydantic import BaseModel, Field

from vault_assistant.agent.registry import ToolSpec
from vault_assistant.config import RiskLevel, ToolSettings
from vault_assistant.types import ToolResult

LOGGER = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_S = 30.0
_MAX_REDIRECTS = 5

_SCRIPT = re.compile(r"<script\b[\s\S]*?</script>", flags=re.IGNORECASE)
_STYLE = re.compile(r"<style\b[\s\S]*?</style>", flags=re.IGNORECASE)
_TITLE = re.compile(r"<title[^>]*>(.*?)</title>", flags=re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]+>")
_BLANK_RUNS = re.compile(r"\n{3,}")

_MARKDOWN_RULES: list[tuple[re.Pattern[str], str]] = [
    *(
        (re.compile(rf"<h{level}[^>]*>(.*?)</h{level}>", flags=re.IGNORECASE | re.DOTALL), "#" * level + r" \1\n")
        for level in range(1, 7)
    ),
    (re.compile(r"<a[^>]*href=\"([^\"]*)\"[^>]*>(.*?)</a>", flags=re.IGNORECASE | re.DOTALL), r"[\2](\1)"),
    (re.compile(r"<(?:strong|b)(?:\s[^>]*)?>(.*?)</(?:strong|b)>", flags=re.IGNORECASE | re.DOTALL), r"**\1**"),
    (re.compile(r"<(?:em|i)(?:\s[^>]*)?>(.*?)</(?:em|i)>", flags=re.IGNORECASE | re.DOTALL), r"*\1*"),
    (re.compile(r"<pre[^>]*>(.*?)</pre>", flags=re.IGNORECASE | re.DOTALL), "```\n\\1\n```"),
    (re.compile(r"<code[^>]*>(.*?)</code>", flags=re.IGNORECASE | re.DOTALL), r"`\1`"),
    (re.compile(r"<br\s*/?>", flags=re.IGNORECASE), "\n"),
    (re.compile(r"<p[^>]*>(.*?)</p>", flags=re.IGNORECASE | re.DOTALL), r"\1\n\n"),
]
_TEXT_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"<br\s*/?>", flags=re.IGNORECASE), "\n"),
    (re.compile(r"</p>", flags=re.IGNORECASE), "\n\n"),
]


class FetchBlocked(Exception):
    """A redirect led outside the fetch policy, or there were too many of them."""


class TTLCache:
    """Small time-bounded cache; expired entries are dropped on read."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at > self.ttl:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (self._clock(), value)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def html_to_markdown(markup: str) -> str:
    text = _STYLE.sub("", _SCRIPT.sub("", markup))
    for pattern, replacement in _MARKDOWN_RULES:
        text = pattern.sub(replacement, text)
    return _finish(text)


def html_to_text(markup: str) -> str:
    text = _STYLE.sub("", _SCRIPT.sub("", markup))
    for pattern, replacement in _TEXT_RULES:
        text = pattern.sub(replacement, text)
    return _finish(text)


def _finish(text: str) -> str:
    text = html.unescape(_TAG.sub("", text)).replace("\xa0", " ")
    return _BLANK_RUNS.sub("\n\n", text).strip()


def extract_title(markup: str) -> str:
    match = _TITLE.search(markup)
    if match and match.group(1).strip():
        return html.unescape(match.group(1).strip())
    return "Untitled"


def is_allowed_domain(hostname: str, allowed_domains: list[str]) -> bool:
    host = hostname.lower()
    for allowed in allowed_domains:
        entry = allowed.strip().lower()
        if entry.startswith("*."):
            domain = entry[2:]
            if host == domain or host.endswith("." + domain):
                return True
        elif host == entry:
            return True
    return False


class _HttpTool:
    def __init__(self, settings: ToolSettings, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self._client = client
        self._owns_client = client is None
        self.cache = TTLCache(settings.cache_ttl_seconds)

    def update_settings(self, settings: ToolSettings) -> None:
        self.settings = settings
        self.cache.ttl = settings.cache_ttl_seconds
        if not settings.cache_enabled:
            self.cache.clear()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(_DEFAULT_TIMEOUT_S), follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class WebSearchInput(BaseModel):
    query: str = Field(min_length=1, description="Search query")
    max_results: int | None = Field(default=None, ge=1, description="Maximum number of search results")
    freshness: Literal["day", "week", "month", "year"] | None = Field(
        default=None, description="Time range filter"
    )


class WebSearchTool(_HttpTool):
    """Search through the configured chat endpoint's `web_search` tool."""

    name = "web_search"
    description = "Query external knowledge using the configured web search endpoint"

    def spec(self) -> ToolSpec:
        return ToolSpec(
            name=self.name,
            description=self.description,
            args_schema=WebSearchInput,
            handler=self.execute,
            risk_level=RiskLevel.MEDIUM,
            network=True,
            tags=["network", "search"],
        )

    async def execute(self, input_data: WebSearchInput) -> ToolResult:
        max_results = input_data.max_results or self.settings.web_search_max_results
        cache_key = f"{input_data.query}|{max_results}|{input_data.freshness or 'none'}"
        if self.settings.cache_enabled:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return ToolResult(success=True, data=cached, metadata={"cached": True})

        start = time.perf_counter()
        try:
            response = await self.client.post(
                f"{self.settings.web_search_endpoint.rstrip('/')}/api/chat",
                json=self._request_body(input_data.query, max_results, input_data.freshness),
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            return ToolResult.failure(f"Web search request failed: {exc}")
        if response.status_code != 200:
            return ToolResult.failure(f"Search endpoint returned status {response.status_code}: {response.text[:200]}")

        try:
            payload = response.json()
        except ValueError:
            return ToolResult.failure("Search endpoint returned invalid JSON")
        results = parse_search_response(payload, max_results)
        elapsed_ms = (time.perf_counter() - start) * 1000.0

        if self.settings.cache_enabled:
            self.cache.set(cache_key, results)
        return ToolResult(success=True, data=results, metadata={"cached": False, "search_time_ms": round(elapsed_ms, 3)})

    def _request_body(self, query: str, max_results: int, freshness: str | None) -> dict[str, Any]:
        options: dict[str, Any] = {"max_results": max_results}
        if freshness:
            options["freshness"] = freshness
        return {
            "model": self.settings.web_search_model,
            "messages": [{"role": "user", "content": query}],
            "stream": False,
            "tools": [{"type": "web_search"}],
            "web_search": options,
        }

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.web_search_api_key:
            headers["Authorization"] = f"Bearer {self.settings.web_search_api_key}"
        return headers


def parse_search_response(payload: Any, max_results: int) -> list[dict[str, Any]]:
    """Normalise results from tool-call arguments or a top-level `results` list."""

    raw: list[Any] = []
    message = payload.get("message") if isinstance(payload, dict) else None
    for call in (message or {}).get("tool_calls") or []:
        function = call.get("function") or {}
        arguments = function.get("arguments")
        if function.get("name") == "web_search" and isinstance(arguments, dict):
            raw.extend(arguments.get("results") or [])
    if not raw and isinstance(payload, dict) and isinstance(payload.get("results"), list):
        raw = payload["results"]

    results: list[dict[str, Any]] = []
    for item in raw[:max_results]:
        if not isinstance(item, dict):
            continue
        results.append(
            {
                "title": item.get("title") or "Untitled",
                "url": item.get("url") or "",
                "snippet": item.get("snippet") or item.get("description") or "",
                "relevance": item.get("score"),
            }
        )
    return results


class WebFetchInput(BaseModel):
    url: str = Field(min_length=1, description="URL to fetch")
    format: Literal["markdown", "text", "html"] = Field(default="markdown", description="Output format")
    max_bytes: int | None = Field(default=None, ge=1, description="Maximum content size in bytes")


class WebFetchTool(_HttpTool):
    """Fetch one page, gated by the domain allowlist and HTTPS-only policy."""

    name = "web_fetch"
    description = "Retrieve and parse web page content for analysis"

    def spec(self) -> ToolSpec:
        return ToolSpec(
            name=self.name,
            description=self.description,
            args_schema=WebFetchInput,
            handler=self.execute,
            risk_level=RiskLevel.MEDIUM,
            network=True,
            tags=["network", "fetch"],
        )

    def check_url(self, url: str) -> str | None:
        """Return a denial message, or None when the URL may be fetched."""

        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            return "Invalid URL format"
        if not self.settings.allow_all_domains and not is_allowed_domain(parts.hostname, self.settings.allowed_domains):
            return "Domain not allowed. Configure allowed domains in settings."
        if self.settings.https_only and parts.scheme != "https":
            return "Only HTTPS URLs are allowed. Disable HTTPS-only mode in settings to fetch HTTP URLs."
        return None

    async def execute(self, input_data: WebFetchInput) -> ToolResult:
        denial = self.check_url(input_data.url)
        if denial:
            return ToolResult.failure(denial)

        limit = min(input_data.max_bytes or self.settings.web_fetch_max_bytes, self.settings.max_response_size)
        cache_key = f"{input_data.url}|{input_data.format}|{limit}"
        if self.settings.cache_enabled:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return ToolResult(success=True, data=cached, metadata={"cached": True})

        start = time.perf_counter()
        try:
            response, raw, truncated = await self._download(input_data.url, limit)
        except FetchBlocked as exc:
            return ToolResult.failure(str(exc))
        except httpx.HTTPError as exc:
            return ToolResult.failure(f"Web fetch request failed: {exc}")

        encoding = response.charset_encoding or "utf-8"
        if response.status_code != 200:
            return ToolResult.failure(f"HTTP {response.status_code}: {raw[:200].decode(encoding, errors='replace')}")

        markup = raw.decode(encoding, errors="replace")
        content_type = response.headers.get("content-type", "text/html")

        content = markup
        if input_data.format == "markdown" and "text/html" in content_type:
            content = html_to_markdown(markup)
        elif input_data.format == "text":
            content = html_to_text(markup)

        data = {
            "content": content,
            "url": input_data.url,
            "title": extract_title(markup),
            "content_type": content_type,
            "size": len(content),
        }
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        if self.settings.cache_enabled:
            self.cache.set(cache_key, data)
        return ToolResult(
            success=True,
            data=data,
            metadata={"cached": False, "truncated": truncated, "fetch_time_ms": round(elapsed_ms, 3)},
        )

    async def _download(self, url: str, limit: int) -> tuple[httpx.Response, bytes, bool]:
        """GET `url`, re-checking every redirect hop and reading at most `limit` bytes."""

        for _ in range(_MAX_REDIRECTS + 1):
            async with self.client.stream("GET", url, follow_redirects=False) as response:
                if response.is_redirect:
                    target = str(response.url.join(response.headers["location"]))
                    denial = self.check_url(target)
                    if denial:
                        raise FetchBlocked(f"Redirect to {target} blocked: {denial}")
                    LOGGER.debug("web_fetch following redirect %s -> %s", url, target)
                    url = target
                    continue

                body = bytearray()
                async for block in response.aiter_bytes():
                    body.extend(block)
                    if len(body) > limit:
                        return response, bytes(body[:limit]), True
                return response, bytes(body), False
        raise FetchBlocked(f"Too many redirects (more than {_MAX_REDIRECTS})")
