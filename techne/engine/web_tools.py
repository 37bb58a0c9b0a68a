"""Web tools: web_search and web_fetch.

Lets the model look up documentation and reference pages while it builds.
Uses a separate httpx client (NOT the model transport's, which carries
API credentials).
"""

from __future__ import annotations

import html as html_module
import ipaddress
import logging
import re
import socket
import time
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx

from techne.config import Settings
from techne.engine.schemas import ToolOutcome
from techne.engine.tools import ToolContext, ToolDispatcher

logger = logging.getLogger(__name__)

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
_USER_AGENT = "Techne/0.1 (app builder)"

# Rate limit state (in-memory, resets on restart)
_rate_limit: dict[str, Any] = {"date": "", "count": 0}

# Blocked IP ranges for SSRF protection
_BLOCKED_NETWORKS = [
    ipaddress.ip_network("127.0.0.0/8"),       # Loopback
    ipaddress.ip_network("10.0.0.0/8"),         # RFC1918
    ipaddress.ip_network("172.16.0.0/12"),      # RFC1918
    ipaddress.ip_network("192.168.0.0/16"),     # RFC1918
    ipaddress.ip_network("169.254.0.0/16"),     # Link-local / cloud metadata
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("::1/128"),            # IPv6 loopback
    ipaddress.ip_network("fc00::/7"),           # IPv6 unique local
    ipaddress.ip_network("fe80::/10"),          # IPv6 link-local
]

# Blocked hostnames (internal services)
_BLOCKED_HOSTNAMES = {"localhost", "postgres", "techne", "redis", "0.0.0.0"}

_REDIRECT_CODES = (301, 302, 303, 307, 308)
_MAX_REDIRECTS = 5


def _is_url_safe(url: str) -> tuple[bool, str]:
    """Check if URL is safe from SSRF attacks.

    Resolves hostname to IP and checks against blocked ranges.
    Returns (is_safe, error_message).
    """
    try:
        parsed = urlparse(url)
        hostname = parsed.hostname

        if not hostname:
            return False, "Could not parse hostname from URL"

        if hostname.lower() in _BLOCKED_HOSTNAMES:
            return False, f"Blocked hostname: {hostname}"

        try:
            addr_infos = socket.getaddrinfo(hostname, None)
        except socket.gaierror:
            return False, f"Could not resolve hostname: {hostname}"

        for addr_info in addr_infos:
            ip = ipaddress.ip_address(addr_info[4][0])
            for network in _BLOCKED_NETWORKS:
                if ip in network:
                    return False, f"URL resolves to blocked IP range ({network})"

        return True, ""
    except ValueError as e:
        return False, f"URL validation error: {e}"


def _check_rate_limit(settings: Settings) -> str | None:
    """Check and increment daily rate limit.

    Returns error message if limit exceeded, None if OK.
    """
    today = time.strftime("%Y-%m-%d")

    if _rate_limit["date"] != today:
        _rate_limit["date"] = today
        _rate_limit["count"] = 0

    limit = settings.web_search_daily_limit
    current = _rate_limit["count"]

    if current >= limit:
        return f"Daily web search limit reached ({limit}). Resets tomorrow."

    _rate_limit["count"] = current + 1

    if current >= int(limit * 0.8):
        logger.warning("Web search rate limit at %d/%d", current + 1, limit)

    return None


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def _web_search(
    query: str,
    count: int = 5,
    freshness: str | None = None,
    *,
    _settings: Settings,
    _http: httpx.AsyncClient,
) -> ToolOutcome:
    """Search via Brave Search API."""
    if not _settings.brave_search_api_key:
        return ToolOutcome.fail(
            "BRAVE_SEARCH_API_KEY not configured. Set this environment variable to enable web search."
        )

    rate_error = _check_rate_limit(_settings)
    if rate_error:
        return ToolOutcome.fail(f"Rate limit: {rate_error}")

    count = max(1, min(count, 10))
    params: dict[str, Any] = {"q": query, "count": count}
    if freshness:
        mapped = {"day": "pd", "week": "pw", "month": "pm"}.get(freshness)
        if mapped:
            params["freshness"] = mapped

    try:
        response = await _http.get(
            BRAVE_SEARCH_URL,
            params=params,
            headers={
                "Accept": "application/json",
                "Accept-Encoding": "gzip",
                "X-Subscription-Token": _settings.brave_search_api_key,
            },
            timeout=10,
        )
    except httpx.TimeoutException:
        return ToolOutcome.fail("Web search timed out. Try again.")
    except httpx.HTTPError as e:
        return ToolOutcome.fail(f"Could not connect to search service: {e}")

    if response.status_code != 200:
        return ToolOutcome.fail(
            f"Search failed (HTTP {response.status_code}). Check BRAVE_SEARCH_API_KEY if 401."
        )

    items = response.json().get("web", {}).get("results", [])[:count]
    if not items:
        return ToolOutcome.ok(f"No results found for: {query}")

    lines = [f"Search results for: {query}\n"]
    for i, item in enumerate(items, 1):
        lines.append(f"{i}. {item.get('title', '')}")
        lines.append(f"   URL: {item.get('url', '')}")
        lines.append(f"   {item.get('description', '')}\n")
    return ToolOutcome.ok("\n".join(lines))


async def _web_fetch(
    url: str,
    max_chars: int | None = None,
    *,
    _settings: Settings,
    _http: httpx.AsyncClient,
) -> ToolOutcome:
    """Fetch URL and extract readable content."""
    if not url.startswith(("http://", "https://")):
        return ToolOutcome.fail("URL must start with http:// or https://")

    is_safe, error = _is_url_safe(url)
    if not is_safe:
        return ToolOutcome.fail(f"Blocked: {error}")

    effective_max = min(max_chars or _settings.web_fetch_max_chars, 50000)

    # Manual redirect following with an SSRF check on each hop
    current_url = url
    response = None
    try:
        for _ in range(_MAX_REDIRECTS + 1):
            response = await _http.get(
                current_url,
                headers={"User-Agent": _USER_AGENT},
                follow_redirects=False,
                timeout=15,
            )
            if response.status_code not in _REDIRECT_CODES:
                break
            redirect_url = response.headers.get("location", "")
            if not redirect_url:
                break
            redirect_url = urljoin(current_url, redirect_url)
            redirect_safe, redirect_error = _is_url_safe(redirect_url)
            if not redirect_safe:
                return ToolOutcome.fail(f"Blocked redirect to unsafe URL: {redirect_error}")
            current_url = redirect_url
        else:
            return ToolOutcome.fail(f"Too many redirects (max {_MAX_REDIRECTS})")
    except httpx.TimeoutException:
        return ToolOutcome.fail(f"Fetch timed out for: {url}")
    except httpx.HTTPError as e:
        return ToolOutcome.fail(f"Could not connect to {url}: {e}")

    if response is None:
        return ToolOutcome.fail("No response received")
    if response.status_code >= 400:
        return ToolOutcome.fail(f"Fetch failed (HTTP {response.status_code}) for: {url}")

    content_type = response.headers.get("content-type", "")
    is_text = any(
        t in content_type for t in ("text/", "application/json", "application/xml", "application/xhtml")
    )
    if content_type and not is_text:
        return ToolOutcome.fail(
            f"Cannot extract text from binary content (content-type: {content_type})"
        )

    text = _extract_readable(response.text) if "html" in content_type else response.text
    if len(text) > effective_max:
        text = text[:effective_max] + "\n\n[... truncated]"
    return ToolOutcome.ok(f"Content from {url} ({len(text)} chars):\n\n{text}")


# ---------------------------------------------------------------------------
# HTML extraction
# ---------------------------------------------------------------------------


def _extract_readable(html: str) -> str:
    """Extract readable text from HTML."""
    text = re.sub(
        r"<(script|style|noscript|nav|header|footer|svg)[^>]*>.*?</\1>",
        "",
        html,
        flags=re.DOTALL | re.IGNORECASE,
    )
    text = re.sub(r"<!--.*?-->", "", text, flags=re.DOTALL)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html_module.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------


_WEB_SEARCH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Search the web for current information (library docs, APIs). Returns titles, URLs, and snippets.",
    "properties": {
        "query": {"type": "string", "description": "Search query string"},
        "count": {
            "type": "integer",
            "description": "Number of results (1-10, default 5)",
            "minimum": 1,
            "maximum": 10,
            "default": 5,
        },
        "freshness": {
            "type": "string",
            "description": "Filter by recency: 'day', 'week', 'month', or omit for all time",
            "enum": ["day", "week", "month"],
        },
    },
    "required": ["query"],
}

_WEB_FETCH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Fetch and extract readable content from a URL. Returns clean text.",
    "properties": {
        "url": {"type": "string", "description": "URL to fetch (must be http or https)"},
        "max_chars": {
            "type": "integer",
            "description": "Maximum characters to return (default from config, max 50000)",
            "maximum": 50000,
        },
    },
    "required": ["url"],
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_web_tools(
    dispatcher: ToolDispatcher,
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> None:
    """Register web tools (web_search, web_fetch) with the dispatcher.

    Creates closure wrappers that inject settings and the httpx client.
    """

    async def _search(
        context: ToolContext, query: str, count: int = 5, freshness: str | None = None
    ) -> ToolOutcome:
        return await _web_search(query, count, freshness, _settings=settings, _http=http_client)

    async def _fetch(context: ToolContext, url: str, max_chars: int | None = None) -> ToolOutcome:
        return await _web_fetch(url, max_chars, _settings=settings, _http=http_client)

    dispatcher.register("web_search", _search, _WEB_SEARCH_SCHEMA, parallel_safe=True)
    dispatcher.register("web_fetch", _fetch, _WEB_FETCH_SCHEMA, parallel_safe=True)
