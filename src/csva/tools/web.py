"""Web tool factories."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from urllib import error as urllib_error
from urllib import parse as urllib_parse
from urllib import request as urllib_request

import html2markdown

from .registry import ProgressCallback, ToolDescriptor, define_tool
from .shared import WebFetchInput, WebSearchInput

TAVILY_SEARCH_URL = "https://api.tavily.com/search"
REQUEST_TIMEOUT_SECONDS = 20
MAX_FETCH_BYTES = 1_000_000
MAX_CONTENT_CHARS = 8_000
USER_AGENT = "Mozilla/5.0 (compatible; CustomerServiceBot/1.0)"


def create_web_fetch_tool() -> ToolDescriptor:
    """Create a web fetch tool that returns markdown converted from HTML."""

    async def _handler(params: WebFetchInput, progress: ProgressCallback) -> dict[str, Any]:
        progress(10, "Validating URL...")
        url = _normalize_url(params.url)
        if not url:
            return {"url": params.url, "success": False, "error": "Only HTTP and HTTPS URLs are supported"}

        progress(25, f"Fetching {urllib_parse.urlparse(url).netloc}...")
        fetched = await asyncio.to_thread(_fetch, url)
        if "error" in fetched:
            return {"url": url, "success": False, "error": fetched["error"]}

        progress(75, "Extracting content...")
        markdown = html2markdown.convert(fetched["body"]).strip()
        if not markdown:
            return {"url": url, "success": False, "error": "empty response body"}
        truncated = fetched["truncated"] or len(markdown) > MAX_CONTENT_CHARS
        progress(100, "Done")
        return {"url": url, "success": True, "content": markdown[:MAX_CONTENT_CHARS], "truncated": truncated}

    return define_tool(
        WebFetchInput,
        _handler,
        name="web_fetch",
        description="Fetch a web page by URL and return its readable content. Use it to read a page the customer mentions.",
    )


def create_web_search_tool(api_key: str | None) -> ToolDescriptor:
    """Create a web search tool powered by the Tavily API."""

    async def _handler(params: WebSearchInput, progress: ProgressCallback) -> dict[str, Any]:
        progress(10, "Initializing web search...")
        if not api_key:
            return {"query": params.query, "results": [], "message": "web search is not configured"}

        progress(25, f'Searching the web for: "{params.query}"')
        payload = {
            "api_key": api_key,
            "query": params.query,
            "max_results": params.max_results,
            "search_depth": "basic",
            "include_answer": False,
        }
        response = await asyncio.to_thread(_post_json, TAVILY_SEARCH_URL, payload)
        if "error" in response:
            return {"query": params.query, "results": [], "message": response["error"]}

        progress(75, "Processing search results...")
        results = _format_search_results(response.get("results"))
        progress(100, f"Found {len(results)} results")
        return {"query": params.query, "results": results, "message": f"Found {len(results)} results"}

    return define_tool(
        WebSearchInput,
        _handler,
        name="web_search",
        description="Search the internet for current information when the knowledge base does not cover the question.",
    )


def _fetch(url: str) -> dict[str, Any]:
    request = urllib_request.Request(  # noqa: S310 - scheme is validated by _normalize_url.
        url,
        headers={
            "User-Agent": USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        },
    )
    try:
        with urllib_request.urlopen(request, timeout=REQUEST_TIMEOUT_SECONDS) as response:  # noqa: S310
            body_bytes = response.read(MAX_FETCH_BYTES + 1)
            truncated = len(body_bytes) > MAX_FETCH_BYTES
            if truncated:
                body_bytes = body_bytes[:MAX_FETCH_BYTES]
            charset = response.headers.get_content_charset() or "utf-8"
    except urllib_error.HTTPError as exc:
        return {"error": f"HTTP {exc.code}: {exc.reason}"}
    except (urllib_error.URLError, OSError) as exc:
        return {"error": str(exc)}
    return {"body": body_bytes.decode(charset, errors="replace"), "truncated": truncated}


def _post_json(url: str, payload: dict[str, Any]) -> dict[str, Any]:
    request = urllib_request.Request(  # noqa: S310 - fixed https endpoint.
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
        method="POST",
    )
    try:
        with urllib_request.urlopen(request, timeout=REQUEST_TIMEOUT_SECONDS) as response:  # noqa: S310
            body = response.read().decode("utf-8", errors="replace")
    except urllib_error.HTTPError as exc:
        return {"error": f"http {exc.code}"}
    except (urllib_error.URLError, OSError) as exc:
        return {"error": str(exc)}
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        return {"error": f"invalid json response: {exc!s}"}
    return data if isinstance(data, dict) else {"error": "unexpected response shape"}


def _normalize_url(raw_url: str) -> str | None:
    normalized = raw_url.strip()
    if not normalized:
        return None

    parsed = urllib_parse.urlparse(normalized)
    if parsed.scheme and parsed.netloc:
        if parsed.scheme not in {"http", "https"}:
            return None
        return normalized

    if parsed.scheme == "" and parsed.netloc == "" and parsed.path:
        with_scheme = f"https://{normalized}"
        parsed = urllib_parse.urlparse(with_scheme)
        if parsed.netloc:
            return with_scheme

    return None


def _format_search_results(results: object) -> list[dict[str, Any]]:
    if not isinstance(results, list):
        return []
    formatted: list[dict[str, Any]] = []
    for item in results:
        if not isinstance(item, dict):
            continue
        formatted.append({
            "title": str(item.get("title") or "(untitled)"),
            "url": str(item.get("url") or ""),
            "content": str(item.get("content") or ""),
            "score": float(item.get("score") or 0.0),
        })
    return formatted
