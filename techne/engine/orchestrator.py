"""Agent loop: drives one conversation to a terminal result.

Each iteration assembles the tiered context, sends one turn to the model,
appends the assistant turn and, when it contains tool calls, executes
them and appends ONE user turn carrying all results in call order. The
loop ends on a turn without tool calls (completed), on the iteration cap
or context budget (truncated), on transport failure (interrupted or
failed) or when the caller cancels.

Truncated, interrupted and cancelled runs leave the conversation pending;
calling run() again resumes from the last good turn.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from techne.config import Settings
from techne.context.assembler import ContextAssembler, ContextBudgetExceeded
from techne.context.predictor import ComponentPredictor
from techne.context.templates import TemplateLibrary
from techne.context.tracker import ChangeTracker
from techne.engine.schemas import (
    AssistantTurn,
    Conversation,
    ConversationStatus,
    ConversationTurn,
    Outcome,
    TerminalResult,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
    Usage,
)
from techne.engine.tools import ToolContext, ToolEngine
from techne.engine.transport import ModelTransport, TransportError
from techne.events import GENERATION_COMPLETED, TURN_COMPLETED, Event, EventBus
from techne.storage.files import FileStore

logger = logging.getLogger(__name__)

CONTINUE_PROMPT = (
    "Your previous response was cut off because it hit the output token limit. "
    "Any incomplete tool call was discarded and not executed. Continue from where "
    "you left off; split large files into smaller write_file or line_replace calls."
)
TRUNCATED_PLACEHOLDER = "[Output truncated before the tool call was complete.]"


class AgentLoop:
    """Bounded tool-use loop over a ModelTransport."""

    def __init__(
        self,
        settings: Settings,
        transport: ModelTransport,
        assembler: ContextAssembler,
        engine: ToolEngine,
        predictor: ComponentPredictor,
        file_store: FileStore,
        tracker: ChangeTracker,
        templates: TemplateLibrary,
        events: EventBus | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._assembler = assembler
        self._engine = engine
        self._predictor = predictor
        self._files = file_store
        self._tracker = tracker
        self._templates = templates
        self._events = events

    async def run(
        self,
        conversation: Conversation,
        initial_request: str,
        cancel: asyncio.Event | None = None,
    ) -> TerminalResult:
        """Run (or resume) the conversation until it reaches a terminal result."""
        if conversation.is_terminal:
            raise RuntimeError(f"Conversation {conversation.id} is already {conversation.status}")

        if not conversation.turns:
            prediction = self._predictor.predict(initial_request, conversation.app_type)
            conversation.prediction = prediction
            conversation.app_type = prediction.app_type
            conversation.append_turn(
                ConversationTurn(role="user", blocks=(TextBlock(text=initial_request),))
            )
            logger.info(
                "Starting conversation %s (app_type=%s, components=%s)",
                conversation.id,
                prediction.app_type,
                prediction.components,
            )

        conversation.status = ConversationStatus.RUNNING
        state = _RunState()
        try:
            result = await self._loop(conversation, state, cancel)
        except asyncio.CancelledError:
            conversation.status = ConversationStatus.PENDING
            raise
        except Exception as e:
            logger.exception("Conversation %s failed unexpectedly", conversation.id)
            result = state.result(
                Outcome.FAILED, conversation, error=f"Unexpected error: {type(e).__name__}: {e}"
            )

        if result.outcome == Outcome.COMPLETED:
            conversation.status = ConversationStatus.COMPLETED
        elif result.outcome == Outcome.FAILED:
            conversation.status = ConversationStatus.FAILED
        else:
            conversation.status = ConversationStatus.PENDING
        if conversation.is_terminal:
            self._assembler.forget(conversation.workspace_id)

        logger.info(
            "Conversation %s ended %s after %d iterations (%d tool calls, cache hit %.0f%%)",
            conversation.id,
            result.outcome,
            result.iterations,
            result.tool_calls,
            result.usage.cache_hit_rate * 100,
        )
        await self._emit(
            GENERATION_COMPLETED,
            conversation,
            {
                "outcome": str(result.outcome),
                "iterations": result.iterations,
                "files_changed": result.files_changed,
                "error": result.error,
            },
        )
        return result

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _loop(
        self,
        conversation: Conversation,
        state: _RunState,
        cancel: asyncio.Event | None,
    ) -> TerminalResult:
        # A resumed conversation may end on calls that never got results
        pending = _unanswered_calls(conversation)
        if pending:
            await self._execute_tools(conversation, pending, state)
        elif conversation.last_turn is not None and conversation.last_turn.role == "assistant":
            conversation.append_turn(
                ConversationTurn(role="user", blocks=(TextBlock(text=CONTINUE_PROMPT),))
            )

        continuations = 0
        while True:
            if cancel is not None and cancel.is_set():
                return state.result(Outcome.CANCELLED, conversation, error="Cancelled by caller")

            if conversation.iteration_count >= conversation.max_iterations:
                logger.warning(
                    "Conversation %s hit max_iterations=%d",
                    conversation.id,
                    conversation.max_iterations,
                )
                return state.result(
                    Outcome.TRUNCATED,
                    conversation,
                    error=f"Reached max_iterations={conversation.max_iterations}",
                )
            conversation.begin_iteration()

            try:
                assembly = await self._assembler.assemble(conversation)
            except ContextBudgetExceeded as e:
                logger.warning("Conversation %s: %s", conversation.id, e)
                return state.result(Outcome.TRUNCATED, conversation, error=str(e))

            try:
                turn = await self._transport.send_turn(
                    assembly.blocks, self._engine.tool_schema(), list(conversation.turns)
                )
            except TransportError as e:
                outcome = Outcome.INTERRUPTED if e.retryable else Outcome.FAILED
                logger.error("Model call failed for %s (%s): %s", conversation.id, outcome, e)
                return state.result(outcome, conversation, error=str(e))

            state.usage.add(turn.usage)
            conversation.usage.add(turn.usage)

            if turn.stop_reason == "max_tokens":
                self._append_truncated(conversation, turn)
                await self._emit_turn(conversation, turn, 0)
                if continuations >= self._settings.max_continuations:
                    return state.result(
                        Outcome.TRUNCATED,
                        conversation,
                        error="Output token limit reached too many times in a row",
                    )
                continuations += 1
                logger.info(
                    "Turn hit max_tokens, requesting continuation %d/%d",
                    continuations,
                    self._settings.max_continuations,
                )
                conversation.append_turn(
                    ConversationTurn(role="user", blocks=(TextBlock(text=CONTINUE_PROMPT),))
                )
                continue
            continuations = 0

            assistant = ConversationTurn(
                role="assistant", blocks=tuple(turn.blocks), stop_reason=turn.stop_reason
            )
            conversation.append_turn(assistant)
            calls = assistant.tool_uses
            await self._emit_turn(conversation, turn, len(calls))

            if not calls:
                return state.result(Outcome.COMPLETED, conversation)

            await self._execute_tools(conversation, calls, state)

    async def _execute_tools(
        self, conversation: Conversation, calls: list[ToolUseBlock], state: _RunState
    ) -> None:
        """Run one turn's calls and append their results as a single user turn.

        If the surrounding task is cancelled, the batch still finishes and
        its results are recorded before the cancellation propagates.
        """
        context = ToolContext(
            workspace_id=conversation.workspace_id,
            conversation=conversation,
            file_store=self._files,
            tracker=self._tracker,
            templates=self._templates,
            settings=self._settings,
        )
        task = asyncio.create_task(self._engine.execute(calls, context))
        try:
            results = await asyncio.shield(task)
        except asyncio.CancelledError:
            results = await task
            self._record_results(conversation, results, context, state)
            raise
        self._record_results(conversation, results, context, state)

    def _record_results(
        self,
        conversation: Conversation,
        results: list[Any],
        context: ToolContext,
        state: _RunState,
    ) -> None:
        conversation.append_turn(ConversationTurn(role="user", blocks=tuple(results)))
        state.tool_calls += len(results)
        for path in sorted(context.changed_paths):
            if path not in state.files_changed:
                state.files_changed.append(path)

    def _append_truncated(self, conversation: Conversation, turn: AssistantTurn) -> None:
        """Keep the text and signed thinking of a length-truncated turn.

        Tool calls and thinking cut off before its signature are dropped.
        """
        retained = [
            b
            for b in turn.blocks
            if not isinstance(b, ToolUseBlock)
            and not (isinstance(b, ThinkingBlock) and not b.signature)
        ]
        dropped = len(turn.blocks) - len(retained)
        if dropped:
            logger.warning("Discarding %d incomplete block(s) from a truncated turn", dropped)
        if not any(isinstance(b, TextBlock) and b.text.strip() for b in retained):
            retained.append(TextBlock(text=TRUNCATED_PLACEHOLDER))
        conversation.append_turn(
            ConversationTurn(role="assistant", blocks=tuple(retained), stop_reason="max_tokens")
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _emit_turn(self, conversation: Conversation, turn: AssistantTurn, calls: int) -> None:
        await self._emit(
            TURN_COMPLETED,
            conversation,
            {
                "iteration": conversation.iteration_count,
                "stop_reason": turn.stop_reason,
                "tool_calls": calls,
                "usage": turn.usage.model_dump(),
            },
        )

    async def _emit(self, event_type: str, conversation: Conversation, data: dict[str, Any]) -> None:
        if self._events is None:
            return
        await self._events.emit(
            Event(
                type=event_type,
                workspace_id=conversation.workspace_id,
                conversation_id=conversation.id,
                data=data,
            )
        )


class _RunState:
    """Per-run accumulators."""

    def __init__(self) -> None:
        self.usage = Usage()
        self.tool_calls = 0
        self.files_changed: list[str] = []

    def result(
        self, outcome: Outcome, conversation: Conversation, error: str | None = None
    ) -> TerminalResult:
        return TerminalResult(
            outcome=outcome,
            text=_last_assistant_text(conversation),
            iterations=conversation.iteration_count,
            error=error,
            files_changed=list(self.files_changed),
            tool_calls=self.tool_calls,
            usage=self.usage.model_copy(),
        )


def _unanswered_calls(conversation: Conversation) -> list[ToolUseBlock]:
    last = conversation.last_turn
    if last is None or last.role != "assistant":
        return []
    return last.tool_uses


def _last_assistant_text(conversation: Conversation) -> str:
    for turn in reversed(conversation.turns):
        if turn.role == "assistant":
            return turn.text
    return ""
