"""Tests for add_dependency / remove_dependency against a mocked npm registry."""

from __future__ import annotations

import json

import httpx
import pytest

from techne.engine.package_tools import (
    PACKAGE_JSON,
    _add_dependency,
    parse_package_spec,
    register_package_tools,
    remove_dependency,
)
from techne.engine.tools import ToolDispatcher, ToolEngine
from techne.engine.schemas import ToolUseBlock

WORKSPACE = "ws-test"  # matches the conftest fixtures

_LATEST = {"zustand": "4.5.2", "@tanstack/react-query": "5.40.0"}


def _registry(request: httpx.Request) -> httpx.Response:
    name = request.url.path.removeprefix("/").removesuffix("/latest").replace("%2F", "/")
    if name in _LATEST:
        return httpx.Response(200, json={"name": name, "version": _LATEST[name]})
    if name == "broken":
        return httpx.Response(500)
    return httpx.Response(404, json={"error": "Not found"})


@pytest.fixture
def http() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(_registry))


async def _manifest(file_store) -> dict:
    return json.loads(await file_store.read(WORKSPACE, PACKAGE_JSON))


@pytest.mark.parametrize(
    "spec,expected",
    [
        ("react", ("react", None)),
        ("react@^18.3.1", ("react", "^18.3.1")),
        ("@types/node", ("@types/node", None)),
        ("@types/node@20", ("@types/node", "20")),
        ("  lodash.debounce@latest ", ("lodash.debounce", "latest")),
    ],
)
def test_parse_package_spec(spec, expected):
    assert parse_package_spec(spec) == expected


@pytest.mark.parametrize("spec", ["", "../evil", "@/x", "has space"])
def test_parse_package_spec_rejects(spec):
    with pytest.raises(ValueError):
        parse_package_spec(spec)


@pytest.mark.asyncio
async def test_add_resolves_latest_from_template_manifest(tool_context, file_store, http):
    outcome = await _add_dependency(tool_context, "zustand", _http=http)

    assert outcome.success is True
    assert outcome.payload == "Added dependency: zustand@^4.5.2"
    assert outcome.changed_paths == (PACKAGE_JSON,)
    manifest = await _manifest(file_store)
    assert manifest["name"] == "app"
    assert manifest["dependencies"] == {"react": "^18.3.1", "zustand": "^4.5.2"}


@pytest.mark.asyncio
async def test_add_scoped_package_with_explicit_version(tool_context, file_store, http):
    outcome = await _add_dependency(tool_context, "@tanstack/react-query@^5", _http=http)
    assert outcome.success is True
    assert (await _manifest(file_store))["dependencies"]["@tanstack/react-query"] == "^5"


@pytest.mark.asyncio
async def test_add_scoped_package_latest(tool_context, file_store, http):
    await _add_dependency(tool_context, "@tanstack/react-query", _http=http)
    assert (await _manifest(file_store))["dependencies"]["@tanstack/react-query"] == "^5.40.0"


@pytest.mark.asyncio
async def test_add_updates_existing_version(tool_context, http):
    outcome = await _add_dependency(tool_context, "react@^19.0.0", _http=http)
    assert outcome.payload == "Updated dependency: react ^18.3.1 -> ^19.0.0"


@pytest.mark.asyncio
async def test_add_unknown_package_leaves_manifest_alone(tool_context, file_store, http):
    outcome = await _add_dependency(tool_context, "definitely-not-a-package", _http=http)

    assert outcome.success is False
    assert "not found on npm" in outcome.reason
    assert await file_store.list(WORKSPACE) == []


@pytest.mark.asyncio
async def test_add_registry_error(tool_context, http):
    outcome = await _add_dependency(tool_context, "broken", _http=http)
    assert outcome.success is False
    assert "npm registry" in outcome.reason


@pytest.mark.asyncio
async def test_add_invalid_manifest(tool_context, file_store, http):
    await file_store.write(WORKSPACE, PACKAGE_JSON, "[1, 2]")
    outcome = await _add_dependency(tool_context, "react@18", _http=http)
    assert outcome.success is False
    assert "JSON object" in outcome.reason


@pytest.mark.asyncio
async def test_remove_dependency(tool_context, file_store, tracker):
    await file_store.write(
        WORKSPACE,
        PACKAGE_JSON,
        json.dumps({"dependencies": {"react": "^18"}, "devDependencies": {"vitest": "^1"}}),
    )

    outcome = await remove_dependency(tool_context, "vitest")
    assert outcome.success is True
    assert (await _manifest(file_store))["devDependencies"] == {}
    assert await tracker.is_fresh(WORKSPACE, PACKAGE_JSON) is False

    missing = await remove_dependency(tool_context, "vitest")
    assert missing.success is False
    assert "not found" in missing.reason


@pytest.mark.asyncio
async def test_manifest_edits_never_run_concurrently(settings, tool_context, http):
    dispatcher = ToolDispatcher(settings)
    register_package_tools(dispatcher, http)
    engine = ToolEngine(dispatcher, settings)

    calls = [
        ToolUseBlock(id="1", name="add_dependency", input={"package": "zustand"}),
        ToolUseBlock(id="2", name="remove_dependency", input={"package": "react"}),
    ]
    assert engine.can_run_parallel(calls) is False

    results = await engine.execute(calls, tool_context)
    assert [r.is_error for r in results] == [False, False]
