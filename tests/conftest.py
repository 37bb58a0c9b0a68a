"""Shared fixtures: settings, in-memory stores, a template library and a Postgres-backed db."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from techne.config import Settings
from techne.context import (
    ChangeTracker,
    ContextAssembler,
    StabilityClassifier,
    TemplateLibrary,
)
from techne.engine.retry import RetryPolicy
from techne.engine.schemas import Conversation
from techne.engine.tools import ToolContext
from techne.storage.database import Database
from techne.storage.files import InMemoryFileStore
from techne.storage.fingerprints import InMemoryFingerprintStore
from techne.storage.migrator import run_migrations

WORKSPACE = "ws-test"


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Template library
# ---------------------------------------------------------------------------


def _component(name: str) -> str:
    title = name.title().replace("-", "")
    return (
        'import * as React from "react";\n'
        'import { cn } from "@/lib/utils";\n\n'
        f"export function {title}(props: React.HTMLAttributes<HTMLDivElement>) {{\n"
        f'  return <div className={{cn("{name}")}} {{...props}} />;\n'
        "}\n"
    )


COMPONENTS = [
    "accordion", "avatar", "badge", "button", "card", "checkbox", "dialog",
    "input", "label", "select", "table", "tabs", "textarea",
]

TEMPLATE_FILES = {
    "package.json": '{\n  "name": "app",\n  "dependencies": {\n    "react": "^18.3.1"\n  }\n}\n',
    "tailwind.config.ts": "export default { content: ['./src/**/*.tsx'] };\n",
    "src/index.css": "@tailwind base;\n@tailwind components;\n@tailwind utilities;\n",
    "src/lib/utils.ts": "export function cn(...c: string[]) { return c.join(' '); }\n",
    **{f"src/components/ui/{name}.tsx": _component(name) for name in COMPONENTS},
}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings with defaults only (no .env)."""
    return Settings(_env_file=None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def templates() -> TemplateLibrary:
    return TemplateLibrary(TEMPLATE_FILES)


@pytest.fixture
def fingerprint_store(clock) -> InMemoryFingerprintStore:
    return InMemoryFingerprintStore(clock=clock)


@pytest.fixture
def file_store() -> InMemoryFileStore:
    return InMemoryFileStore()


@pytest.fixture
def classifier(settings) -> StabilityClassifier:
    return StabilityClassifier(settings)


@pytest.fixture
def tracker(fingerprint_store, classifier, settings, clock) -> ChangeTracker:
    return ChangeTracker(
        fingerprint_store,
        classifier,
        settings,
        retry=RetryPolicy(max_attempts=8, base_delay=0, jitter=False),
        clock=clock,
    )


@pytest.fixture
def assembler(settings, file_store, tracker, classifier, templates) -> ContextAssembler:
    return ContextAssembler(settings, file_store, tracker, classifier, templates)


@pytest.fixture
def conversation() -> Conversation:
    return Conversation(workspace_id=WORKSPACE)


@pytest.fixture
def tool_context(conversation, file_store, tracker, templates, settings) -> ToolContext:
    return ToolContext(
        workspace_id=WORKSPACE,
        conversation=conversation,
        file_store=file_store,
        tracker=tracker,
        templates=templates,
        settings=settings,
    )


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db():
    """Database connection pool; skips when Postgres is unreachable."""
    database = Database(Settings(_env_file=None))
    try:
        await asyncio.wait_for(database.connect(), timeout=5)
    except Exception as e:
        await database.disconnect()
        pytest.skip(f"PostgreSQL not available: {e}")
    await run_migrations(database.engine)
    yield database
    await database.disconnect()
