"""Preview telemetry tools: console logs, network requests, project analytics.

Read what the running preview of the generated app reported to the
telemetry service so the model can debug runtime errors. Read-only.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

import httpx

from techne.config import Settings
from techne.engine.schemas import ToolOutcome
from techne.engine.tools import ToolContext, ToolDispatcher

logger = logging.getLogger(__name__)

_MAX_ENTRIES = 100


async def _get(
    settings: Settings,
    http: httpx.AsyncClient,
    workspace_id: str,
    resource: str,
    params: dict[str, Any],
) -> Any:
    """GET a telemetry resource. Raises httpx errors."""
    headers = {"Accept": "application/json"}
    if settings.telemetry_token:
        headers["Authorization"] = f"Bearer {settings.telemetry_token}"
    response = await http.get(
        f"{settings.telemetry_base_url.rstrip('/')}/workspaces/{workspace_id}/{resource}",
        params={k: v for k, v in params.items() if v is not None},
        headers=headers,
        timeout=10,
    )
    response.raise_for_status()
    return response.json()


def _unavailable(what: str) -> ToolOutcome:
    return ToolOutcome.ok(f"{what} are not available (no preview telemetry service configured).")


def format_console_logs(entries: list[dict[str, Any]]) -> str:
    lines = []
    for entry in entries[:_MAX_ENTRIES]:
        level = str(entry.get("level", "log")).upper()
        lines.append(f"[{entry.get('timestamp', '')}] {level}: {entry.get('message', '')}")
        if entry.get("stack"):
            lines.append(f"    {entry['stack'].strip()[:500]}")
    return "\n".join(lines)


def format_network_requests(entries: list[dict[str, Any]]) -> str:
    lines = []
    for entry in entries[:_MAX_ENTRIES]:
        status = entry.get("status", "ERR")
        duration = entry.get("duration_ms")
        timing = f" ({duration} ms)" if duration is not None else ""
        lines.append(f"{entry.get('method', 'GET')} {entry.get('url', '')} -> {status}{timing}")
        if entry.get("error"):
            lines.append(f"    error: {entry['error']}")
    return "\n".join(lines)


def format_analytics(data: dict[str, Any]) -> str:
    lines = [
        f"Visitors: {data.get('visitors', 0)}",
        f"Page views: {data.get('pageviews', 0)}",
    ]
    series = data.get("series") or []
    if series:
        lines.append("")
        for point in series:
            lines.append(
                f"{point.get('date', '')}: {point.get('visitors', 0)} visitors, "
                f"{point.get('pageviews', 0)} views"
            )
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def _read_console_logs(
    context: ToolContext,
    search: str | None = None,
    *,
    _settings: Settings,
    _http: httpx.AsyncClient,
) -> ToolOutcome:
    if not _settings.telemetry_base_url:
        return _unavailable("Console logs")
    try:
        entries = await _get(_settings, _http, context.workspace_id, "console-logs", {"search": search})
    except httpx.HTTPError as e:
        return ToolOutcome.fail(f"Could not read console logs: {e}")
    if not entries:
        return ToolOutcome.ok("No console output" + (f" matching '{search}'" if search else ""))
    return ToolOutcome.ok(format_console_logs(entries))


async def _read_network_requests(
    context: ToolContext,
    search: str | None = None,
    *,
    _settings: Settings,
    _http: httpx.AsyncClient,
) -> ToolOutcome:
    if not _settings.telemetry_base_url:
        return _unavailable("Network requests")
    try:
        entries = await _get(
            _settings, _http, context.workspace_id, "network-requests", {"search": search}
        )
    except httpx.HTTPError as e:
        return ToolOutcome.fail(f"Could not read network requests: {e}")
    if not entries:
        return ToolOutcome.ok("No network requests" + (f" matching '{search}'" if search else ""))
    return ToolOutcome.ok(format_network_requests(entries))


async def _read_project_analytics(
    context: ToolContext,
    date_from: str | None = None,
    date_to: str | None = None,
    granularity: str = "daily",
    *,
    _settings: Settings,
    _http: httpx.AsyncClient,
) -> ToolOutcome:
    if not _settings.telemetry_base_url:
        return _unavailable("Project analytics")
    try:
        for value in (date_from, date_to):
            if value:
                date.fromisoformat(value)
    except ValueError:
        return ToolOutcome.fail("Dates must be ISO formatted (YYYY-MM-DD)")
    if granularity not in ("hourly", "daily"):
        return ToolOutcome.fail("granularity must be 'hourly' or 'daily'")

    try:
        data = await _get(
            _settings,
            _http,
            context.workspace_id,
            "analytics",
            {"from": date_from, "to": date_to, "granularity": granularity},
        )
    except httpx.HTTPError as e:
        return ToolOutcome.fail(f"Could not read analytics: {e}")
    return ToolOutcome.ok(format_analytics(data or {}))


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_SEARCH_PROPERTY = {"type": "string", "description": "Optional text to filter entries"}

_READ_CONSOLE_LOGS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Read the latest browser console output of the app preview",
    "properties": {"search": _SEARCH_PROPERTY},
    "required": [],
}

_READ_NETWORK_REQUESTS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Read the latest network requests made by the app preview",
    "properties": {"search": _SEARCH_PROPERTY},
    "required": [],
}

_READ_PROJECT_ANALYTICS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Read visitor analytics of the published app",
    "properties": {
        "date_from": {"type": "string", "description": "Start date (YYYY-MM-DD)"},
        "date_to": {"type": "string", "description": "End date (YYYY-MM-DD)"},
        "granularity": {"type": "string", "enum": ["hourly", "daily"], "default": "daily"},
    },
    "required": [],
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_telemetry_tools(
    dispatcher: ToolDispatcher,
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> None:
    async def _console(context: ToolContext, search: str | None = None) -> ToolOutcome:
        return await _read_console_logs(context, search, _settings=settings, _http=http_client)

    async def _network(context: ToolContext, search: str | None = None) -> ToolOutcome:
        return await _read_network_requests(context, search, _settings=settings, _http=http_client)

    async def _analytics(
        context: ToolContext,
        date_from: str | None = None,
        date_to: str | None = None,
        granularity: str = "daily",
    ) -> ToolOutcome:
        return await _read_project_analytics(
            context, date_from, date_to, granularity, _settings=settings, _http=http_client
        )

    dispatcher.register("read_console_logs", _console, _READ_CONSOLE_LOGS_SCHEMA, parallel_safe=True)
    dispatcher.register(
        "read_network_requests", _network, _READ_NETWORK_REQUESTS_SCHEMA, parallel_safe=True
    )
    dispatcher.register(
        "read_project_analytics", _analytics, _READ_PROJECT_ANALYTICS_SCHEMA, parallel_safe=True
    )
