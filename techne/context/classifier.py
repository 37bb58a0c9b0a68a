"""Stability classification for context items.

Tags every item that can enter the model context with a cache tier.
Pure function of path, freshness and stability. No I/O.

Rules, in order:
1. A path written within the volatile window is VOLATILE.
2. Virtual items (system instructions, component index) are STABLE.
3. The application entry file is ACTIVE and never promoted.
4. Path heuristics (shared templates / UI primitives STABLE, manifests
   SEMI_STABLE, application sources ACTIVE, unknown ACTIVE).
5. Promotion by one tier once a file has stayed unchanged for
   promote_after seconds with a stability score >= promote_min_score.
"""

from __future__ import annotations

import re

from techne.config import Settings
from techne.context.schemas import StabilitySnapshot, Tier

# Virtual items (instructions, component index) are not workspace files
VIRTUAL_PREFIX = "@"
INSTRUCTIONS_PATH = "@instructions"
COMPONENT_INDEX_PATH = "@component-index"

_STABLE_PATTERNS = [
    re.compile(r"^src/components/ui/"),
    re.compile(r"^(src/)?lib/"),
    re.compile(r"^(templates?|shared|config)/"),
    re.compile(r"(^|/)(tsconfig[\w.-]*\.json|components\.json)$"),
    re.compile(r"(^|/)(vite|tailwind|postcss|eslint)\.config\.[cm]?[jt]s$"),
]

_SEMI_STABLE_PATTERNS = [
    re.compile(r"(^|/)package\.json$"),
    re.compile(r"(^|/)(package-lock\.json|yarn\.lock|pnpm-lock\.yaml|bun\.lockb)$"),
    re.compile(r"^(node_modules|vendor|public)/"),
    re.compile(r"^index\.html$"),
    re.compile(r"^src/(index|globals)\.css$"),
]

_ACTIVE_PATTERNS = [
    re.compile(r"^(src|app|components|pages)/"),
]


class StabilityClassifier:
    """Assign cache tiers from path heuristics and modification recency."""

    def __init__(self, settings: Settings) -> None:
        self.entry_file = settings.entry_file
        self.promote_after = settings.promote_after
        self.promote_min_score = settings.promote_min_score

    def base_tier(self, path: str) -> Tier:
        """Tier from path alone."""
        if path.startswith(VIRTUAL_PREFIX):
            return Tier.STABLE
        if path == self.entry_file:
            return Tier.ACTIVE
        if any(p.search(path) for p in _STABLE_PATTERNS):
            return Tier.STABLE
        if any(p.search(path) for p in _SEMI_STABLE_PATTERNS):
            return Tier.SEMI_STABLE
        if any(p.search(path) for p in _ACTIVE_PATTERNS):
            return Tier.ACTIVE
        return Tier.ACTIVE

    def classify(
        self,
        path: str,
        *,
        fresh: bool = True,
        stability: StabilitySnapshot | None = None,
    ) -> Tier:
        if not fresh:
            return Tier.VOLATILE

        tier = self.base_tier(path)
        if path == self.entry_file or stability is None:
            return tier

        if self.should_promote(stability):
            return tier.promoted()
        return tier

    def should_promote(self, stability: StabilitySnapshot) -> bool:
        if stability.seconds_unchanged is None:
            return False
        return (
            stability.seconds_unchanged >= self.promote_after
            and stability.score >= self.promote_min_score
        )
