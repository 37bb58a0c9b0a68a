"""Pydantic DTOs for the context cache side.

Tiers, context items, cache blocks and the change tracker's outcomes.
All frozen: blocks derived from identical items must compare equal.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class Tier(StrEnum):
    STABLE = "stable"
    SEMI_STABLE = "semi_stable"
    ACTIVE = "active"
    VOLATILE = "volatile"

    @property
    def rank(self) -> int:
        """Position in emission order (0 = most cacheable)."""
        return TIER_ORDER.index(self)

    def promoted(self) -> Tier:
        """The next more cacheable tier (STABLE and VOLATILE stay put)."""
        if self in (Tier.STABLE, Tier.VOLATILE):
            return self
        return TIER_ORDER[self.rank - 1]


TIER_ORDER: tuple[Tier, ...] = (Tier.STABLE, Tier.SEMI_STABLE, Tier.ACTIVE, Tier.VOLATILE)


class ContextItem(BaseModel):
    """One unit of material sent to the model (a file or the instructions)."""

    model_config = ConfigDict(frozen=True)

    path: str
    content: str
    tier: Tier
    fingerprint: str


class CacheBlock(BaseModel):
    """A contiguous tier of context with its reuse lifetime (None = uncached)."""

    model_config = ConfigDict(frozen=True)

    tier: Tier
    text: str
    token_estimate: int
    cache_ttl: int | None = None
    paths: tuple[str, ...] = ()


class AssemblyResult(BaseModel):
    """Output of ContextAssembler.assemble()."""

    blocks: list[CacheBlock] = Field(default_factory=list)
    rebuilt_tiers: list[Tier] = Field(default_factory=list)
    total_tokens: int = 0
    cacheable_tokens: int = 0
    efficiency: float = 0.0
    over_budget: bool = False
    components: list[str] = Field(default_factory=list)


class StabilitySnapshot(BaseModel):
    """Change-log derived stability of one path."""

    path: str
    score: float = Field(ge=0.0, le=10.0)  # 10 = never changes
    changes_24h: int = 0
    seconds_unchanged: float | None = None  # None = no change on record


class WriteOutcome(BaseModel):
    """Result of ChangeTracker.record_write()."""

    changed: bool
    invalidated_tier: Tier | None = None
    old_hash: str | None = None
    new_hash: str | None = None


class Prediction(BaseModel):
    """Components expected for a request, plus the detected app type."""

    components: list[str] = Field(default_factory=list)
    app_type: str | None = None
