"""Fetch a web page over HTTP(S) and return it as text, markdown or HTML."""

from __future__ import annotations

import logging
import time
from typing import Any
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from ..models import ToolResult
from . import ParameterSpec, Tool

logger = logging.getLogger(__name__)

FORMATS = ("text", "markdown", "html")
MAX_TIMEOUT = 120
DEFAULT_MAX_CONTENT_LENGTH = 500_000

_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; fosscode-agent/1.0)",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}
_STRIP_TAGS = ["script", "style", "noscript"]


def html_to_text(html: str, fmt: str) -> tuple[str, list[str]]:
    """Convert HTML to plain text or light markdown. Returns (content, links)."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(_STRIP_TAGS):
        tag.decompose()
    links = [a["href"] for a in soup.find_all("a", href=True)]

    if fmt == "markdown":
        for level in range(1, 7):
            for h in soup.find_all(f"h{level}"):
                h.replace_with(f"\n{'#' * level} {h.get_text(' ', strip=True)}\n")
        for a in soup.find_all("a", href=True):
            a.replace_with(f"[{a.get_text(' ', strip=True)}]({a['href']})")
        for li in soup.find_all("li"):
            li.replace_with(f"- {li.get_text(' ', strip=True)}\n")
        lines = (line.strip() for line in soup.get_text("\n").splitlines())
        return "\n".join(line for line in lines if line), links

    return " ".join(soup.get_text(" ", strip=True).split()), links


class WebFetchTool(Tool):
    name = "webfetch"
    description = "Fetch a web page (http or https only) and return its content as text, markdown or raw HTML."
    parameters = (
        ParameterSpec("url", "string", "The URL to fetch", required=True),
        ParameterSpec("format", "string", "Output format: text, markdown or html", default="text"),
        ParameterSpec("timeout", "number", f"Request timeout in seconds (max {MAX_TIMEOUT})", default=30),
        ParameterSpec("follow_redirects", "boolean", "Follow HTTP redirects", default=True),
        ParameterSpec("extract_links", "boolean", "Also return every link on the page", default=False),
        ParameterSpec(
            "max_content_length", "number", "Maximum bytes to download", default=DEFAULT_MAX_CONTENT_LENGTH
        ),
    )

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        params, error = self.prepare(params)
        if error:
            return ToolResult.fail(error)
        url, fmt = params["url"].strip(), params["format"]
        if fmt not in FORMATS:
            return ToolResult.fail(f"Invalid format '{fmt}'. Must be one of: {', '.join(FORMATS)}")
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            return ToolResult.fail("Only HTTP and HTTPS URLs are supported")
        if not parsed.netloc:
            return ToolResult.fail("Invalid URL format")
        timeout = min(max(float(params["timeout"]), 1.0), float(MAX_TIMEOUT))
        max_bytes = max(1, int(params["max_content_length"]))

        started = time.monotonic()
        body = bytearray()
        truncated = False
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(timeout),
                follow_redirects=params["follow_redirects"],
                headers=_HEADERS,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    async for chunk in response.aiter_bytes():
                        remaining = max_bytes - len(body)
                        if len(chunk) > remaining:
                            body.extend(chunk[:remaining])
                            truncated = True
                            break
                        body.extend(chunk)
                    status = response.status_code
                    content_type = response.headers.get("content-type", "unknown")
                    encoding = response.encoding or "utf-8"
        except httpx.TimeoutException:
            return ToolResult.fail(f"Request timed out after {timeout:g}s")
        except httpx.HTTPError as e:
            logger.debug("webfetch failed for %s", url, exc_info=True)
            return ToolResult.fail(f"Request failed: {e}")

        raw = body.decode(encoding, errors="replace")
        links: list[str] = []
        if fmt == "html":
            content = raw
        else:
            content, links = html_to_text(raw, fmt)

        data: dict[str, Any] = {
            "url": url,
            "format": fmt,
            "content": content,
            "status_code": status,
            "content_type": content_type,
            "content_length": len(body),
            "truncated": truncated,
        }
        if params["extract_links"]:
            data["links"] = links
        return ToolResult.ok(data, response_time_ms=int((time.monotonic() - started) * 1000))
