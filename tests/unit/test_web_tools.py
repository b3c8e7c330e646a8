import asyncio
import json

import httpx

from vault_assistant.agent.web import (
    TTLCache,
    WebFetchInput,
    WebFetchTool,
    WebSearchInput,
    WebSearchTool,
    extract_title,
    html_to_markdown,
    html_to_text,
    is_allowed_domain,
    parse_search_response,
)
from vault_assistant.config import ToolSettings

PAGE = (
    "<html><head><title>Tea &amp; Notes</title><style>p {color: red}</style></head>"
    "<body><h1>Brewing</h1><p>Use <strong>fresh</strong> water. <a href=\"https://tea.example/more\">More</a></p>"
    "<script>alert(1)</script></body></html>"
)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_html_conversion_and_title() -> None:
    assert extract_title(PAGE) == "Tea & Notes"
    assert extract_title("<p>no title</p>") == "Untitled"

    markdown = html_to_markdown(PAGE)
    text = html_to_text(PAGE)

    assert "# Brewing" in markdown
    assert "**fresh**" in markdown
    assert "[More](https://tea.example/more)" in markdown
    assert "alert" not in markdown and "color" not in markdown
    assert "Use fresh water. More" in text


def test_domain_allowlist_supports_wildcards() -> None:
    allowed = ["docs.python.org", "*.example.com"]

    assert is_allowed_domain("docs.python.org", allowed)
    assert is_allowed_domain("api.example.com", allowed)
    assert is_allowed_domain("example.com", allowed)
    assert not is_allowed_domain("python.org", allowed)
    assert not is_allowed_domain("badexample.com", allowed)


def test_ttl_cache_expires_entries() -> None:
    now = [0.0]
    cache = TTLCache(10.0, clock=lambda: now[0])
    cache.set("k", "v")

    now[0] = 10.0
    assert cache.get("k") == "v"
    now[0] = 10.5
    assert cache.get("k") is None
    assert len(cache) == 0


def test_fetch_policy_checks() -> None:
    tool = WebFetchTool(ToolSettings(allowed_domains=["tea.example"]))

    assert tool.check_url("not a url") == "Invalid URL format"
    assert tool.check_url("https://other.example/") == "Domain not allowed. Configure allowed domains in settings."
    assert tool.check_url("http://tea.example/").startswith("Only HTTPS URLs are allowed.")
    assert tool.check_url("https://tea.example/") is None


def test_fetch_converts_truncates_and_caches() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, headers={"content-type": "text/html; charset=utf-8"}, text=PAGE)

    settings = ToolSettings(allowed_domains=["tea.example"])
    tool = WebFetchTool(settings, client=_client(handler))

    async def scenario():
        first = await tool.execute(WebFetchInput(url="https://tea.example/brew"))
        second = await tool.execute(WebFetchInput(url="https://tea.example/brew"))
        short = await tool.execute(WebFetchInput(url="https://tea.example/brew", format="html", max_bytes=20))
        return first, second, short

    first, second, short = asyncio.run(scenario())

    assert first.success
    assert first.data["title"] == "Tea & Notes"
    assert first.data["url"] == "https://tea.example/brew"
    assert "# Brewing" in first.data["content"]
    assert first.metadata["cached"] is False
    assert second.metadata == {"cached": True}
    assert short.data["content"] == PAGE[:20]
    assert short.metadata["truncated"] is True
    assert calls == ["https://tea.example/brew", "https://tea.example/brew"]


def test_fetch_reports_http_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="missing")

    tool = WebFetchTool(ToolSettings(allowed_domains=["tea.example"]), client=_client(handler))

    result = asyncio.run(tool.execute(WebFetchInput(url="https://tea.example/gone")))

    assert not result.success
    assert result.error == "HTTP 404: missing"


def test_search_posts_chat_request_and_parses_results() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        results = [{"title": "Tea", "url": "https://tea.example", "snippet": "About tea", "score": 0.9}]
        return httpx.Response(
            200,
            json={"message": {"tool_calls": [{"function": {"name": "web_search", "arguments": {"results": results}}}]}},
        )

    settings = ToolSettings(web_search_endpoint="http://search.local/", web_search_api_key="secret")
    tool = WebSearchTool(settings, client=_client(handler))

    result = asyncio.run(tool.execute(WebSearchInput(query="green tea", freshness="week")))
    cached = asyncio.run(tool.execute(WebSearchInput(query="green tea", freshness="week")))

    body = json.loads(seen[0].content)
    assert str(seen[0].url) == "http://search.local/api/chat"
    assert seen[0].headers["authorization"] == "Bearer secret"
    assert body["tools"] == [{"type": "web_search"}]
    assert body["web_search"] == {"max_results": 5, "freshness": "week"}
    assert body["messages"] == [{"role": "user", "content": "green tea"}]
    assert result.data == [{"title": "Tea", "url": "https://tea.example", "snippet": "About tea", "relevance": 0.9}]
    assert cached.metadata == {"cached": True}
    assert len(seen) == 1


def test_parse_search_response_accepts_top_level_results() -> None:
    payload = {"results": [{"url": "https://a.example", "description": "A"}, "junk", {"title": "B"}]}

    assert parse_search_response(payload, 2) == [
        {"title": "Untitled", "url": "https://a.example", "snippet": "A", "relevance": None}
    ]


def test_fetch_checks_every_redirect_hop() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        if request.url.host == "docs.example.com" and request.url.path == "/moved":
            return httpx.Response(302, headers={"location": "/new"})
        if request.url.host == "docs.example.com" and request.url.path == "/leak":
            return httpx.Response(302, headers={"location": "http://evil.test/secret"})
        if request.url.path == "/loop":
            return httpx.Response(301, headers={"location": "https://docs.example.com/loop"})
        if request.url.host == "evil.test":
            return httpx.Response(200, text="from evil")
        return httpx.Response(200, headers={"content-type": "text/plain"}, text="new home")

    tool = WebFetchTool(
        ToolSettings(allowed_domains=["docs.example.com"], cache_enabled=False), client=_client(handler)
    )

    async def scenario():
        moved = await tool.execute(WebFetchInput(url="https://docs.example.com/moved", format="text"))
        leak = await tool.execute(WebFetchInput(url="https://docs.example.com/leak"))
        loop = await tool.execute(WebFetchInput(url="https://docs.example.com/loop"))
        return moved, leak, loop

    moved, leak, loop = asyncio.run(scenario())

    assert moved.success
    assert moved.data["content"] == "new home"
    assert not leak.success
    assert leak.error.startswith("Redirect to http://evil.test/secret blocked: Domain not allowed.")
    assert "http://evil.test/secret" not in calls
    assert not loop.success
    assert loop.error == "Too many redirects (more than 5)"


def test_fetch_stops_reading_at_the_size_limit() -> None:
    pulled: list[int] = []

    async def body():
        for index in range(100):
            pulled.append(index)
            yield b"x" * 10

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/plain"}, content=body())

    tool = WebFetchTool(ToolSettings(allowed_domains=["tea.example"]), client=_client(handler))

    result = asyncio.run(tool.execute(WebFetchInput(url="https://tea.example/big", format="html", max_bytes=25)))

    assert result.success
    assert result.data["content"] == "x" * 25
    assert result.metadata["truncated"] is True
    assert len(pulled) <= 4


def test_fetch_cache_is_keyed_by_size_limit() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, headers={"content-type": "text/html; charset=utf-8"}, text=PAGE)

    tool = WebFetchTool(ToolSettings(allowed_domains=["tea.example"]), client=_client(handler))

    async def scenario():
        small = await tool.execute(WebFetchInput(url="https://tea.example/brew", format="html", max_bytes=20))
        full = await tool.execute(WebFetchInput(url="https://tea.example/brew", format="html"))
        return small, full

    small, full = asyncio.run(scenario())

    assert small.data["content"] == PAGE[:20]
    assert full.metadata["cached"] is False
    assert full.data["content"] == PAGE
    assert len(calls) == 2
