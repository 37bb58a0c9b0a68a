"""Techne entry point.

Initializes all components in dependency order:
  Settings -> stores -> TemplateLibrary -> ChangeTracker -> ContextAssembler
  -> ToolDispatcher/ToolEngine -> AnthropicTransport -> AgentLoop

and runs one generation request from the command line.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Any

import httpx

from techne.config import Settings
from techne.context import (
    ChangeTracker,
    ComponentPredictor,
    ContextAssembler,
    StabilityClassifier,
    TemplateLibrary,
)
from techne.engine.file_tools import register_file_tools
from techne.engine.image_tools import register_image_tools
from techne.engine.orchestrator import AgentLoop
from techne.engine.package_tools import register_package_tools
from techne.engine.retry import RetryPolicy
from techne.engine.schemas import Conversation, TerminalResult
from techne.engine.telemetry_tools import register_telemetry_tools
from techne.engine.tools import ToolDispatcher, ToolEngine
from techne.engine.transport import AnthropicTransport
from techne.engine.web_tools import register_web_tools
from techne.events import EventBus
from techne.storage.database import Database
from techne.storage.files import InMemoryFileStore, LocalFileStore
from techne.storage.fingerprints import InMemoryFingerprintStore, SqlFingerprintStore
from techne.storage.migrator import run_migrations

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


async def create_components(settings: Settings) -> dict[str, Any]:
    """Initialize all components in dependency order.

    Returns a dict with every component so shutdown_components() can
    release them in reverse order.
    """
    database = None
    if settings.fingerprint_backend == "postgres":
        database = Database(settings)
        await database.connect()
        await run_migrations(database.engine)
        fingerprint_store = SqlFingerprintStore(database)
    else:
        fingerprint_store = InMemoryFingerprintStore()

    if settings.file_backend == "local":
        file_store = LocalFileStore(settings.workspace_dir)
    else:
        file_store = InMemoryFileStore()

    templates = (
        TemplateLibrary.from_directory(settings.template_dir)
        if settings.template_dir
        else TemplateLibrary()
    )

    classifier = StabilityClassifier(settings)
    tracker = ChangeTracker(
        fingerprint_store, classifier, settings, retry=RetryPolicy.for_compare_and_set(settings)
    )
    assembler = ContextAssembler(settings, file_store, tracker, classifier, templates)
    predictor = ComponentPredictor(templates.component_names() or None)

    bus = None
    if settings.event_bus_enabled:
        bus = EventBus()
        await bus.start()

    # Outbound httpx client for tools (separate from the transport: no API auth headers)
    tools_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=30, write=10, pool=10),
        limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
    )

    dispatcher = ToolDispatcher(settings)
    register_file_tools(dispatcher)
    register_web_tools(dispatcher, settings, tools_http)
    register_package_tools(dispatcher, tools_http)
    register_image_tools(dispatcher, settings, tools_http)
    register_telemetry_tools(dispatcher, settings, tools_http)
    engine = ToolEngine(dispatcher, settings, events=bus)

    transport = AnthropicTransport(settings, retry=RetryPolicy.from_settings(settings))
    await transport.start()

    agent = AgentLoop(
        settings,
        transport,
        assembler,
        engine,
        predictor,
        file_store,
        tracker,
        templates,
        events=bus,
    )
    logger.info(
        "Techne started: model=%s, %d tools, %d template files, fingerprints=%s",
        settings.model,
        len(dispatcher.names),
        len(templates),
        settings.fingerprint_backend,
    )

    return {
        "settings": settings,
        "database": database,
        "fingerprint_store": fingerprint_store,
        "file_store": file_store,
        "templates": templates,
        "tracker": tracker,
        "assembler": assembler,
        "dispatcher": dispatcher,
        "engine": engine,
        "transport": transport,
        "agent": agent,
        "tools_http": tools_http,
        "bus": bus,
    }


async def shutdown_components(components: dict[str, Any]) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Techne...")

    transport = components.get("transport")
    if transport:
        await transport.close()

    tools_http = components.get("tools_http")
    if tools_http:
        await tools_http.aclose()

    bus = components.get("bus")
    if bus:
        await bus.stop()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Techne shutdown complete.")


async def generate(
    request: str,
    workspace_id: str,
    components: dict[str, Any],
    conversation: Conversation | None = None,
) -> TerminalResult:
    """Run one generation request against a workspace."""
    settings: Settings = components["settings"]
    if conversation is None:
        conversation = Conversation(
            workspace_id=workspace_id, max_iterations=settings.max_iterations
        )
    return await components["agent"].run(conversation, request)


async def _run(settings: Settings, request: str, workspace_id: str) -> TerminalResult:
    components = await create_components(settings)
    try:
        return await generate(request, workspace_id, components)
    finally:
        await shutdown_components(components)


def main() -> None:
    """Entry point: parse settings and arguments, run one request."""
    parser = argparse.ArgumentParser(prog="techne", description="Generate an app from a request")
    parser.add_argument("request", help="What to build, e.g. 'create a todo app'")
    parser.add_argument("--workspace", default="default", help="Workspace id")
    args = parser.parse_args()

    settings = Settings()
    configure_logging(settings)

    result = asyncio.run(_run(settings, args.request, args.workspace))
    print(result.text)
    if result.files_changed:
        print("\nFiles changed:\n  " + "\n  ".join(result.files_changed))
    if result.outcome != "completed":
        print(f"\n[{result.outcome}] {result.error or ''}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
