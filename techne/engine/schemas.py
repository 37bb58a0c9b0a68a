"""Conversation data model.

Content blocks mirror the Anthropic Messages API block types exactly, so
a turn serializes to the wire with model_dump(). Blocks and turns are
frozen pydantic models; the Conversation itself is mutable runtime state
owned by the agent loop.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from techne.context.schemas import Prediction

# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


class TextBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ThinkingBlock(BaseModel):
    """Extended thinking, replayed verbatim (signature included)."""

    model_config = ConfigDict(frozen=True)

    type: Literal["thinking"] = "thinking"
    thinking: str
    signature: str = ""


class RedactedThinkingBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["redacted_thinking"] = "redacted_thinking"
    data: str


class ToolUseBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Annotated[
    Union[TextBlock, ThinkingBlock, RedactedThinkingBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


class ConversationTurn(BaseModel):
    """One message: a role plus its ordered content blocks."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    blocks: tuple[ContentBlock, ...]
    stop_reason: str | None = None

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.blocks if isinstance(b, ToolResultBlock)]

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    def to_api(self) -> dict[str, Any]:
        return {"role": self.role, "content": [b.model_dump() for b in self.blocks]}


# ---------------------------------------------------------------------------
# Transport output
# ---------------------------------------------------------------------------


class Usage(BaseModel):
    """Token usage as reported by the provider (summed across turns)."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    def add(self, other: Usage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_creation_input_tokens += other.cache_creation_input_tokens
        self.cache_read_input_tokens += other.cache_read_input_tokens

    @property
    def cache_hit_rate(self) -> float:
        total = self.input_tokens + self.cache_creation_input_tokens + self.cache_read_input_tokens
        return self.cache_read_input_tokens / total if total else 0.0


class AssistantTurn(BaseModel):
    """One parsed model response."""

    blocks: list[ContentBlock]
    stop_reason: str | None = None
    usage: Usage = Field(default_factory=Usage)

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class ToolStatus(StrEnum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class ToolOutcome:
    """What a tool handler returns: a payload or a failure reason."""

    success: bool
    payload: str = ""
    reason: str = ""
    changed_paths: tuple[str, ...] = ()

    @classmethod
    def ok(cls, payload: str, changed_paths: tuple[str, ...] | list[str] = ()) -> ToolOutcome:
        return cls(success=True, payload=payload, changed_paths=tuple(changed_paths))

    @classmethod
    def fail(cls, reason: str) -> ToolOutcome:
        return cls(success=False, reason=reason)

    @property
    def text(self) -> str:
        return self.payload if self.success else self.reason


@dataclass
class ToolCallRecord:
    """Lifecycle of one tool call: pending -> executing -> complete|failed."""

    id: str
    name: str
    arguments: dict[str, Any]
    status: ToolStatus = ToolStatus.PENDING
    result: str | None = None
    error: str | None = None
    started_at: float | None = None
    duration_ms: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (ToolStatus.COMPLETE, ToolStatus.FAILED)

    def start(self) -> None:
        if self.status != ToolStatus.PENDING:
            raise RuntimeError(f"Tool call {self.id} cannot start from {self.status}")
        self.status = ToolStatus.EXECUTING
        self.started_at = time.monotonic()

    def complete(self, result: str) -> None:
        self._finish(ToolStatus.COMPLETE)
        self.result = result

    def fail(self, error: str) -> None:
        self._finish(ToolStatus.FAILED)
        self.error = error

    def _finish(self, status: ToolStatus) -> None:
        if self.is_terminal:
            raise RuntimeError(f"Tool call {self.id} is already {self.status}")
        if self.started_at is not None:
            self.duration_ms = int((time.monotonic() - self.started_at) * 1000)
        self.status = status


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class ConversationStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Outcome(StrEnum):
    COMPLETED = "completed"
    TRUNCATED = "truncated"  # iteration cap or context budget, resumable
    INTERRUPTED = "interrupted"  # retryable transport failure, resumable
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Conversation:
    """A unit of generation work: the turn history plus loop bookkeeping.

    Turns are append-only through append_turn(), which enforces the
    message protocol: roles alternate starting with the user, and a
    user turn following tool calls starts with exactly one result per
    call, in call order.
    """

    workspace_id: str
    id: str = field(default_factory=lambda: uuid4().hex)
    max_iterations: int = 8
    turns: list[ConversationTurn] = field(default_factory=list)
    iteration_count: int = 0
    status: ConversationStatus = ConversationStatus.PENDING
    tool_records: list[ToolCallRecord] = field(default_factory=list)
    prediction: Prediction | None = None
    app_type: str | None = None
    loaded_components: list[str] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)

    @property
    def is_terminal(self) -> bool:
        return self.status in (ConversationStatus.COMPLETED, ConversationStatus.FAILED)

    @property
    def last_turn(self) -> ConversationTurn | None:
        return self.turns[-1] if self.turns else None

    def _check_mutable(self) -> None:
        if self.is_terminal:
            raise RuntimeError(f"Conversation {self.id} is {self.status} and immutable")

    def append_turn(self, turn: ConversationTurn) -> None:
        self._check_mutable()
        previous = self.last_turn

        if previous is None and turn.role != "user":
            raise ValueError("First turn must be a user turn")
        if previous is not None and previous.role == turn.role:
            raise ValueError(f"Two consecutive {turn.role} turns")

        results = turn.tool_results
        leading = 0
        for block in turn.blocks:
            if not isinstance(block, ToolResultBlock):
                break
            leading += 1
        if leading != len(results):
            raise ValueError("Tool results must be the first blocks of their turn")

        if turn.role == "user" and previous is not None:
            expected = [b.id for b in previous.tool_uses]
            got = [r.tool_use_id for r in results]
            if got != expected:
                raise ValueError(
                    f"Tool results {got} do not match preceding tool calls {expected}"
                )
        elif results:
            raise ValueError("Tool results are only allowed in user turns")

        self.turns.append(turn)

    def begin_iteration(self) -> None:
        if self.iteration_count >= self.max_iterations:
            raise RuntimeError(
                f"Conversation {self.id} reached max_iterations={self.max_iterations}"
            )
        self.iteration_count += 1

    def extend_iterations(self, extra: int) -> None:
        """Raise the iteration cap so a truncated conversation can resume."""
        self._check_mutable()
        if extra < 1:
            raise ValueError("extra must be >= 1")
        self.max_iterations += extra

    def to_api_messages(self) -> list[dict[str, Any]]:
        return [t.to_api() for t in self.turns]

    def in_flight_ids(self) -> set[str]:
        return {r.id for r in self.tool_records if not r.is_terminal}


class TerminalResult(BaseModel):
    """How a run ended."""

    outcome: Outcome
    text: str = ""
    iterations: int = 0
    error: str | None = None
    files_changed: list[str] = Field(default_factory=list)
    tool_calls: int = 0
    usage: Usage = Field(default_factory=Usage)

    @property
    def resumable(self) -> bool:
        return self.outcome in (Outcome.TRUNCATED, Outcome.INTERRUPTED, Outcome.CANCELLED)
