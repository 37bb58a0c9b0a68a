"""Dependency tools: add_dependency and remove_dependency.

Edit the project's package.json. Versions left unspecified are resolved
against the npm registry so the manifest pins a real caret range; a
package the registry does not know is rejected before package.json is
touched.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any
from urllib.parse import quote

import httpx

from techne.engine.schemas import ToolOutcome
from techne.engine.tools import ToolContext, ToolDispatcher
from techne.storage.files import FileNotFound

logger = logging.getLogger(__name__)

NPM_REGISTRY_URL = "https://registry.npmjs.org"
PACKAGE_JSON = "package.json"

_NAME_RE = re.compile(r"^(@[a-z0-9][\w.-]*/)?[a-z0-9][\w.-]*$", re.IGNORECASE)


def parse_package_spec(spec: str) -> tuple[str, str | None]:
    """Split "name@version" into (name, version).

    Scoped names keep their leading "@": "@types/node@^20" ->
    ("@types/node", "^20"), "@types/node" -> ("@types/node", None).
    """
    spec = spec.strip()
    at = spec.find("@", 1)
    if at == -1:
        name, version = spec, None
    else:
        name, version = spec[:at], spec[at + 1 :] or None
    if not _NAME_RE.match(name):
        raise ValueError(f"Invalid package name: {name!r}")
    return name, version


async def _load_manifest(context: ToolContext) -> dict[str, Any]:
    try:
        raw = await context.file_store.read(context.workspace_id, PACKAGE_JSON)
    except FileNotFound:
        raw = context.templates.get(PACKAGE_JSON) or "{}"
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    manifest = json.loads(raw)
    if not isinstance(manifest, dict):
        raise ValueError("package.json must contain a JSON object")
    return manifest


async def _save_manifest(context: ToolContext, manifest: dict[str, Any]) -> bool:
    content = json.dumps(manifest, indent=2) + "\n"
    await context.file_store.write(context.workspace_id, PACKAGE_JSON, content)
    outcome = await context.tracker.record_write(context.workspace_id, PACKAGE_JSON, content)
    return outcome.changed


async def _resolve_latest(name: str, http: httpx.AsyncClient) -> str | None:
    """Latest published version of a package, or None if it does not exist."""
    response = await http.get(f"{NPM_REGISTRY_URL}/{quote(name, safe='@')}/latest", timeout=10)
    if response.status_code == 404:
        return None
    response.raise_for_status()
    return response.json()["version"]


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def _add_dependency(
    context: ToolContext, package: str, *, _http: httpx.AsyncClient
) -> ToolOutcome:
    try:
        name, version = parse_package_spec(package)
        manifest = await _load_manifest(context)
    except ValueError as e:
        return ToolOutcome.fail(str(e))

    if version is None or version == "latest":
        try:
            latest = await _resolve_latest(name, _http)
        except httpx.HTTPError as e:
            return ToolOutcome.fail(f"Could not reach the npm registry for {name}: {e}")
        if latest is None:
            return ToolOutcome.fail(f"Package not found on npm: {name}")
        version = f"^{latest}"

    dependencies = manifest.setdefault("dependencies", {})
    previous = dependencies.get(name)
    dependencies[name] = version
    changed = await _save_manifest(context, manifest)
    logger.info("Added dependency %s@%s to %s", name, version, context.workspace_id)

    if previous and previous != version:
        message = f"Updated dependency: {name} {previous} -> {version}"
    else:
        message = f"Added dependency: {name}@{version}"
    return ToolOutcome.ok(message, changed_paths=[PACKAGE_JSON] if changed else [])


async def remove_dependency(context: ToolContext, package: str) -> ToolOutcome:
    try:
        name, _ = parse_package_spec(package)
        manifest = await _load_manifest(context)
    except ValueError as e:
        return ToolOutcome.fail(str(e))

    for section in ("dependencies", "devDependencies"):
        deps = manifest.get(section) or {}
        if name in deps:
            del deps[name]
            await _save_manifest(context, manifest)
            logger.info("Removed dependency %s from %s", name, context.workspace_id)
            return ToolOutcome.ok(f"Removed dependency: {name}", changed_paths=[PACKAGE_JSON])

    return ToolOutcome.fail(f"Package {name} not found in dependencies")


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_ADD_DEPENDENCY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Add an npm package to package.json. Accepts 'name', 'name@version' or scoped "
        "names like '@tanstack/react-query@^5'. Without a version the latest release is used."
    ),
    "properties": {"package": {"type": "string", "description": "Package spec"}},
    "required": ["package"],
}

_REMOVE_DEPENDENCY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Remove an npm package from package.json",
    "properties": {"package": {"type": "string", "description": "Package name"}},
    "required": ["package"],
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_package_tools(dispatcher: ToolDispatcher, http_client: httpx.AsyncClient) -> None:
    """Register dependency tools. Both touch package.json, so they never run concurrently."""

    async def _add(context: ToolContext, package: str) -> ToolOutcome:
        return await _add_dependency(context, package, _http=http_client)

    def _manifest(args: dict[str, Any]) -> set[str]:
        return {PACKAGE_JSON}

    dispatcher.register(
        "add_dependency", _add, _ADD_DEPENDENCY_SCHEMA, parallel_safe=True, touches=_manifest
    )
    dispatcher.register(
        "remove_dependency",
        remove_dependency,
        _REMOVE_DEPENDENCY_SCHEMA,
        parallel_safe=True,
        touches=_manifest,
    )
