"""web_fetch: retrieve a URL over HTTP(S) and return readable text."""

from __future__ import annotations

import html
import logging
import re
from urllib.parse import urlparse

import httpx

from conductor.capabilities import CapabilityRegistry
from conductor.errors import CapabilityError, ProviderError

logger = logging.getLogger(__name__)

_SCRIPT_STYLE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]+>")
_BLANK_LINES = re.compile(r"\n\s*\n+")


def html_to_text(markup: str) -> str:
    """Crude HTML to text: drop scripts/styles and tags, unescape entities."""
    text = _SCRIPT_STYLE.sub("", markup)
    text = _TAG.sub("\n", text)
    text = html.unescape(text)
    lines = (line.strip() for line in text.splitlines())
    return _BLANK_LINES.sub("\n\n", "\n".join(line for line in lines if line)).strip()


class WebTools:
    def __init__(self, timeout: float = 15.0, max_output_chars: int = 20000, client: httpx.AsyncClient | None = None):
        self.timeout = timeout
        self.max_output_chars = max_output_chars
        self._client = client

    async def _get(self, url: str) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url, follow_redirects=True)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(url, follow_redirects=True)

    async def web_fetch(self, params: dict) -> str:
        url = (params.get("url") or "").strip()
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise CapabilityError(f"Invalid URL (http/https only): {url!r}")

        response = await self._get(url)
        if response.status_code >= 400:
            raise ProviderError(
                f"Fetching {url} failed with status {response.status_code}",
                status_code=response.status_code,
            )

        content_type = response.headers.get("content-type", "")
        text = response.text
        if "html" in content_type:
            text = html_to_text(text)
        if len(text) > self.max_output_chars:
            text = text[: self.max_output_chars] + "\n... [truncated]"
        logger.info(f"Fetched {url} ({response.status_code}, {len(text)} chars)")
        return text

    def register(self, registry: CapabilityRegistry) -> None:
        registry.register("web_fetch", self.web_fetch, "Fetch a web page as text (url)")
