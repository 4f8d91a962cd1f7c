"""URL fetch tool returning readable page text."""

import re
from typing import Any
from urllib.parse import urljoin

from bs4 import BeautifulSoup
import httpx

from deckhand import __version__
from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolResult

log = get_logger(__name__)


class FetchUrlTool(Tool):
    """Fetch web page content."""

    name = "fetch_url"
    description = "Fetch a URL and return its readable text content."
    parameters = {
        "type": "object",
        "properties": {
            "url": {
                "type": "string",
                "description": "URL to fetch (http or https)",
            },
        },
        "required": ["url"],
    }

    def __init__(
        self,
        max_chars: int = 50_000,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.max_chars = max(1, int(max_chars))
        self.timeout_seconds = float(timeout) + 5.0
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={
                "User-Agent": f"Deckhand/{__version__} (fetch_url tool)",
            },
        )

    async def execute(self, url: str, **kwargs: Any) -> ToolResult:
        """Fetch a page and extract readable text via BeautifulSoup."""
        target = str(url or "").strip()
        if not re.match(r"^https?://", target, flags=re.IGNORECASE):
            return ToolResult(success=False, error=f"Unsupported URL: {target or '(empty)'}")

        try:
            log.info("Fetching URL", url=target)
            response = await self.client.get(target)
            response.raise_for_status()
        except httpx.HTTPError as e:
            log.error("HTTP fetch failed", url=target, error=str(e))
            return ToolResult(success=False, error=f"HTTP error: {e}")

        content_type = response.headers.get("content-type", "")
        if "html" in content_type.lower() or not content_type:
            content = self._extract_readable_text(response.text, base_url=target)
        else:
            content = response.text

        if len(content) > self.max_chars:
            content = content[:self.max_chars] + "\n... [truncated]"

        return ToolResult(
            success=True,
            content=(
                f"URL: {target}\n"
                f"Status: {response.status_code}\n"
                f"Size: {len(response.text)} chars\n\n"
                f"{content}"
            ),
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    def _extract_readable_text(self, html: str, base_url: str | None = None) -> str:
        """Extract human-readable text from raw HTML."""
        soup = BeautifulSoup(html, "html.parser")

        for tag in soup(["script", "style", "noscript", "template", "svg", "canvas"]):
            tag.decompose()

        # Inline link targets so later turns can cite them.
        for anchor in soup.find_all("a"):
            href = (anchor.get("href") or "").strip()
            label = anchor.get_text(" ", strip=True)
            if not href:
                continue
            absolute = urljoin(base_url, href) if base_url else href
            if label:
                anchor.replace_with(f"{label} ({absolute})")
            else:
                anchor.replace_with(absolute)

        title = ""
        if soup.title and soup.title.string:
            title = soup.title.string.strip()

        raw_text = soup.get_text(separator="\n")
        lines: list[str] = []
        for line in raw_text.splitlines():
            cleaned = re.sub(r"\s+", " ", line).strip()
            if cleaned:
                lines.append(cleaned)

        text = "\n".join(lines)
        if title and not text.startswith(title):
            return f"{title}\n\n{text}" if text else title
        return text
