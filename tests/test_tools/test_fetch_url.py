import httpx
import pytest

from deckhand.tools.fetch_url import FetchUrlTool

PAGE = """
<html>
  <head><title>Release notes</title><style>body { color: red; }</style></head>
  <body>
    <script>console.log("ignored")</script>
    <h1>Version 2.0</h1>
    <p>See the <a href="/docs/upgrade">upgrade guide</a> for details.</p>
  </body>
</html>
"""


def _tool(handler, max_chars: int = 50_000) -> FetchUrlTool:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FetchUrlTool(max_chars=max_chars, client=client)


@pytest.mark.asyncio
async def test_fetch_url_extracts_readable_text_and_inlines_links():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=PAGE, headers={"content-type": "text/html; charset=utf-8"})

    tool = _tool(handler)
    try:
        result = await tool.execute(url="https://example.com/releases")
    finally:
        await tool.close()

    assert result.success is True
    assert result.content.startswith("URL: https://example.com/releases\nStatus: 200\n")
    assert "Release notes" in result.content
    assert "Version 2.0" in result.content
    assert "upgrade guide (https://example.com/docs/upgrade)" in result.content
    assert "console.log" not in result.content
    assert "color: red" not in result.content


@pytest.mark.asyncio
async def test_fetch_url_truncates_long_plain_text():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="y" * 500, headers={"content-type": "text/plain"})

    tool = _tool(handler, max_chars=100)
    try:
        result = await tool.execute(url="http://example.com/raw.txt")
    finally:
        await tool.close()

    assert result.success is True
    assert result.content.endswith("y" * 100 + "\n... [truncated]")


@pytest.mark.asyncio
async def test_fetch_url_reports_http_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="missing")

    tool = _tool(handler)
    try:
        result = await tool.execute(url="https://example.com/missing")
    finally:
        await tool.close()

    assert result.success is False
    assert "404" in result.error


@pytest.mark.asyncio
async def test_fetch_url_rejects_non_http_schemes():
    tool = _tool(lambda request: httpx.Response(200))
    try:
        result = await tool.execute(url="file:///etc/passwd")
    finally:
        await tool.close()

    assert result.success is False
    assert "Unsupported URL" in result.error
