"""Tool registry and execution engine.

Provides:
- ToolContext: per-call view of the workspace handed to every handler
- ToolDispatcher: closed registry name -> ToolSpec, resolved at startup
- ToolEngine: executes one turn's tool calls and returns their results
  in call order, running disjoint parallel-safe batches concurrently

Handlers are async callables taking (context, **arguments) and returning
a ToolOutcome. Nothing a handler does escapes as an exception: unknown
tools, bad arguments, timeouts and crashes all become error results.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from techne.config import Settings
from techne.context.templates import TemplateLibrary
from techne.context.tracker import ChangeTracker
from techne.engine.schemas import (
    Conversation,
    ToolCallRecord,
    ToolOutcome,
    ToolResultBlock,
    ToolUseBlock,
)
from techne.events import TOOL_COMPLETED, TOOL_STARTED, Event, EventBus
from techne.storage.files import FileStore, normalize_path

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Awaitable[ToolOutcome]]
PathsFn = Callable[[dict[str, Any]], set[str]]

# Truncate tool output sent back to the model
_MAX_RESULT_CHARS = 50_000


@dataclass
class ToolContext:
    """Everything a handler may touch for one conversation."""

    workspace_id: str
    conversation: Conversation
    file_store: FileStore
    tracker: ChangeTracker
    templates: TemplateLibrary
    settings: Settings
    changed_paths: set[str] = field(default_factory=set)
    # path -> (first_line, last_line, line delta) of earlier line_replace
    # calls in this batch, numbered as the model saw the file
    line_shifts: dict[str, list[tuple[int, int, int]]] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolSpec:
    name: str
    handler: ToolHandler
    schema: dict[str, Any]
    parallel_safe: bool = False
    touches: PathsFn | None = None  # workspace paths read or written
    timeout: float | None = None  # overrides settings.tool_timeout


def path_args(*names: str) -> PathsFn:
    """Build a touches() function from the named path arguments."""

    def _touches(args: dict[str, Any]) -> set[str]:
        paths = set()
        for name in names:
            value = args.get(name)
            if not isinstance(value, str):
                continue
            try:
                paths.add(normalize_path(value))
            except ValueError:
                paths.add(value)
        return paths

    return _touches


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """Registers tool specs and dispatches single tool calls."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._specs: dict[str, ToolSpec] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        schema: dict[str, Any],
        *,
        parallel_safe: bool = False,
        touches: PathsFn | None = None,
        timeout: float | None = None,
    ) -> None:
        """Register a tool handler with its JSON schema."""
        if name in self._specs:
            raise ValueError(f"Tool {name!r} is already registered")
        self._specs[name] = ToolSpec(
            name=name,
            handler=handler,
            schema=schema,
            parallel_safe=parallel_safe,
            touches=touches,
            timeout=timeout,
        )

    def get(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._specs)

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Anthropic API format."""
        return [
            {
                "name": name,
                "description": spec.schema.get("description", ""),
                "input_schema": {k: v for k, v in spec.schema.items() if k != "description"},
            }
            for name, spec in self._specs.items()
        ]

    def validate(self, spec: ToolSpec, args: dict[str, Any]) -> str | None:
        """Check required arguments and unknown ones. Returns an error or None."""
        if not isinstance(args, dict):
            return "Tool input must be a JSON object"
        missing = [r for r in spec.schema.get("required", []) if args.get(r) is None]
        if missing:
            return f"Missing required argument(s) for {spec.name}: {', '.join(missing)}"
        known = spec.schema.get("properties", {})
        unknown = [k for k in args if k not in known]
        if unknown:
            return f"Unknown argument(s) for {spec.name}: {', '.join(unknown)}"
        return None

    async def dispatch(self, name: str, args: dict[str, Any], context: ToolContext) -> ToolOutcome:
        """Run one tool call and return its outcome. Never raises (except cancellation)."""
        spec = self._specs.get(name)
        if spec is None:
            return ToolOutcome.fail(
                f"Unsupported tool: {name}. Available tools: {', '.join(self._specs)}"
            )

        error = self.validate(spec, args)
        if error:
            return ToolOutcome.fail(error)

        timeout = spec.timeout or self._settings.tool_timeout
        try:
            outcome = await asyncio.wait_for(spec.handler(context, **args), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %.0fs", name, timeout)
            return ToolOutcome.fail(f"Tool {name} timed out after {timeout:.0f}s")
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return ToolOutcome.fail(f"Tool error: {e}")

        if not isinstance(outcome, ToolOutcome):
            outcome = ToolOutcome.ok(str(outcome))
        return outcome


# ---------------------------------------------------------------------------
# ToolEngine
# ---------------------------------------------------------------------------


class ToolEngine:
    """Executes a turn's tool calls, order-preserving."""

    def __init__(
        self,
        dispatcher: ToolDispatcher,
        settings: Settings,
        events: EventBus | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self._settings = settings
        self._events = events

    def tool_schema(self) -> list[dict[str, Any]]:
        return self.dispatcher.tool_definitions()

    def can_run_parallel(self, calls: list[ToolUseBlock]) -> bool:
        """True when every call is parallel-safe and touched paths are disjoint."""
        if not self._settings.parallel_tools or len(calls) < 2:
            return False
        seen: set[str] = set()
        for call in calls:
            spec = self.dispatcher.get(call.name)
            if spec is None or not spec.parallel_safe:
                return False
            paths = spec.touches(call.input) if spec.touches else set()
            if paths & seen:
                return False
            seen |= paths
        return True

    async def execute(
        self, tool_calls: list[ToolUseBlock], context: ToolContext
    ) -> list[ToolResultBlock]:
        """Execute tool calls and return one result per call, in call order."""
        conversation = context.conversation
        in_flight = conversation.in_flight_ids()

        records: list[ToolCallRecord | None] = []
        for call in tool_calls:
            if call.id in in_flight:
                records.append(None)
                continue
            in_flight.add(call.id)
            record = ToolCallRecord(id=call.id, name=call.name, arguments=dict(call.input))
            conversation.tool_records.append(record)
            records.append(record)

        runnable = [(c, r) for c, r in zip(tool_calls, records) if r is not None]
        if self.can_run_parallel([c for c, _ in runnable]):
            logger.debug("Running %d tool calls concurrently", len(runnable))
            outcomes = await asyncio.gather(*(self._run_one(c, r, context) for c, r in runnable))
        else:
            outcomes = [await self._run_one(c, r, context) for c, r in runnable]

        by_id = {c.id: o for (c, _), o in zip(runnable, outcomes)}
        results: list[ToolResultBlock] = []
        for call, record in zip(tool_calls, records):
            if record is None:
                results.append(
                    ToolResultBlock(
                        tool_use_id=call.id,
                        content=f"Duplicate tool call id {call.id} is already in flight",
                        is_error=True,
                    )
                )
                continue
            outcome = by_id[call.id]
            results.append(
                ToolResultBlock(
                    tool_use_id=call.id,
                    content=_truncate(outcome.text) or "(no output)",
                    is_error=not outcome.success,
                )
            )
        return results

    async def _run_one(
        self, call: ToolUseBlock, record: ToolCallRecord, context: ToolContext
    ) -> ToolOutcome:
        record.start()
        await self._emit(TOOL_STARTED, context, {"tool_use_id": call.id, "name": call.name})

        outcome = await self.dispatcher.dispatch(call.name, dict(call.input), context)
        if outcome.success:
            record.complete(outcome.payload)
            context.changed_paths.update(outcome.changed_paths)
        else:
            record.fail(outcome.reason)
            logger.info("Tool %s failed: %s", call.name, outcome.reason[:200])

        await self._emit(
            TOOL_COMPLETED,
            context,
            {
                "tool_use_id": call.id,
                "name": call.name,
                "success": outcome.success,
                "duration_ms": record.duration_ms,
                "changed_paths": list(outcome.changed_paths),
            },
        )
        return outcome

    async def _emit(self, event_type: str, context: ToolContext, data: dict[str, Any]) -> None:
        if self._events is None:
            return
        await self._events.emit(
            Event(
                type=event_type,
                workspace_id=context.workspace_id,
                conversation_id=context.conversation.id,
                data=data,
            )
        )


def _truncate(text: str) -> str:
    if len(text) <= _MAX_RESULT_CHARS:
        return text
    return text[:_MAX_RESULT_CHARS] + f"\n\n[... truncated {len(text) - _MAX_RESULT_CHARS} chars]"
