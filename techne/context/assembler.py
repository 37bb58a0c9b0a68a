"""Context cache assembly: builds tiered, cacheable context blocks.

Enumerates the items a conversation needs (instructions, shared template
files, predicted components, project files), groups them by stability
tier and renders one CacheBlock per tier in a deterministic order so the
provider's prompt-cache keys match across turns.

Per workspace, the previous turn's blocks are memoized. A tier is
rebuilt only when its item set changed or the tracker reported it
invalidated; every other tier reuses the previous block verbatim.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, defaultdict
from typing import TYPE_CHECKING

from techne.config import Settings
from techne.context.classifier import (
    COMPONENT_INDEX_PATH,
    INSTRUCTIONS_PATH,
    StabilityClassifier,
)
from techne.context.schemas import TIER_ORDER, AssemblyResult, CacheBlock, ContextItem, Tier
from techne.context.templates import COMPONENT_DIR, TemplateLibrary
from techne.context.tracker import ChangeTracker
from techne.storage.files import FileStore
from techne.utils import estimate_tokens, fingerprint

if TYPE_CHECKING:
    from techne.engine.schemas import Conversation

logger = logging.getLogger(__name__)

# Project files never sent as context
_SKIPPED_PREFIXES = ("node_modules/", "dist/", ".git/")
_MAX_ITEM_CHARS = 200_000
# Workspaces whose previous blocks are kept; least recently assembled go first
MAX_MEMO_WORKSPACES = 256

_Signature = tuple[tuple[str, str], ...]


class ContextBudgetExceeded(RuntimeError):
    """Assembled context is larger than the hard token limit."""

    def __init__(self, tokens: int, limit: int) -> None:
        super().__init__(f"Context of ~{tokens} tokens exceeds hard limit of {limit}")
        self.tokens = tokens
        self.limit = limit


class ContextAssembler:
    """Tiered context builder with per-tier reuse."""

    def __init__(
        self,
        settings: Settings,
        file_store: FileStore,
        tracker: ChangeTracker,
        classifier: StabilityClassifier,
        templates: TemplateLibrary,
    ) -> None:
        self._settings = settings
        self._files = file_store
        self._tracker = tracker
        self._classifier = classifier
        self._templates = templates
        self._memo: OrderedDict[str, dict[Tier, tuple[_Signature, CacheBlock]]] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def ttl_for(self, tier: Tier) -> int | None:
        return {
            Tier.STABLE: self._settings.cache_ttl_stable,
            Tier.SEMI_STABLE: self._settings.cache_ttl_semi_stable,
            Tier.ACTIVE: self._settings.cache_ttl_active,
            Tier.VOLATILE: None,
        }[tier]

    async def assemble(self, conversation: Conversation) -> AssemblyResult:
        """Build the ordered cache blocks for the conversation's next turn.

        Raises ContextBudgetExceeded when the total crosses the hard limit.
        """
        workspace_id = conversation.workspace_id
        async with self._locks[workspace_id]:
            items, components = await self.collect_items(conversation)
            invalidated = await self._tracker.consume_invalidated_tiers(workspace_id)

            grouped: dict[Tier, list[ContextItem]] = defaultdict(list)
            for item in items:
                grouped[item.tier].append(item)

            memo = self._memo_for(workspace_id)
            blocks: list[CacheBlock] = []
            rebuilt: list[Tier] = []
            for tier in TIER_ORDER:
                tier_items = sorted(grouped.get(tier, []), key=lambda i: i.path)
                if not tier_items:
                    memo.pop(tier, None)
                    continue

                signature = tuple((i.path, i.fingerprint) for i in tier_items)
                previous = memo.get(tier)
                if previous is not None and previous[0] == signature and tier not in invalidated:
                    blocks.append(previous[1])
                    continue

                block = self.render_block(tier, tier_items)
                memo[tier] = (signature, block)
                blocks.append(block)
                rebuilt.append(tier)

        total = sum(b.token_estimate for b in blocks)
        cacheable = sum(b.token_estimate for b in blocks if b.cache_ttl is not None)
        result = AssemblyResult(
            blocks=blocks,
            rebuilt_tiers=rebuilt,
            total_tokens=total,
            cacheable_tokens=cacheable,
            efficiency=round(cacheable / total, 4) if total else 0.0,
            components=components,
        )

        if total > self._settings.context_hard_limit_tokens:
            raise ContextBudgetExceeded(total, self._settings.context_hard_limit_tokens)
        if total > self._settings.context_warn_tokens:
            result.over_budget = True
            logger.warning(
                "Context for %s is ~%d tokens (warn at %d)",
                workspace_id,
                total,
                self._settings.context_warn_tokens,
            )

        logger.debug(
            "Assembled %d blocks (%d tokens, %.0f%% cacheable), rebuilt %s",
            len(blocks),
            total,
            result.efficiency * 100,
            [t.value for t in rebuilt] or "none",
        )
        return result

    async def collect_items(self, conversation: Conversation) -> tuple[list[ContextItem], list[str]]:
        """Enumerate context items and the component names selected."""
        workspace_id = conversation.workspace_id
        selected = self._selected_components(conversation)
        selected_paths = {p for p in (self._templates.component_path(n) for n in selected) if p}

        contents: dict[str, str] = {}

        # Shared templates: scaffold base files plus selected components
        for path in self._templates.base_paths():
            contents[path] = self._templates.get(path) or ""
        for path in sorted(selected_paths):
            contents[path] = self._templates.get(path) or ""

        # Project files shadow template paths
        project_paths: list[str] = []
        for path in await self._files.list(workspace_id):
            if not self._include_project_file(path, selected_paths):
                continue
            content = await self._files.read(workspace_id, path)
            if isinstance(content, bytes) or len(content) > _MAX_ITEM_CHARS:
                continue
            contents[path] = content
            project_paths.append(path)

        for path in project_paths:
            await self._tracker.observe(workspace_id, path, contents[path])
        tiers = await self._tracker.classify_paths(workspace_id, project_paths)

        items = [
            ContextItem(
                path=INSTRUCTIONS_PATH,
                content=self._settings.system_instructions,
                tier=Tier.STABLE,
                fingerprint=fingerprint(self._settings.system_instructions),
            )
        ]
        index = self._component_index()
        if index:
            items.append(
                ContextItem(
                    path=COMPONENT_INDEX_PATH,
                    content=index,
                    tier=Tier.STABLE,
                    fingerprint=fingerprint(index),
                )
            )
        for path, content in contents.items():
            tier = tiers.get(path) or self._classifier.classify(path)
            items.append(
                ContextItem(path=path, content=content, tier=tier, fingerprint=fingerprint(content))
            )

        components = sorted(
            n for n in selected if self._templates.component_path(n) in contents
        )
        return items, components

    def _selected_components(self, conversation: Conversation) -> list[str]:
        names: list[str] = []
        if conversation.prediction is not None:
            names.extend(conversation.prediction.components)
        for name in conversation.loaded_components:
            if name not in names:
                names.append(name)
        return names

    def _include_project_file(self, path: str, selected_paths: set[str]) -> bool:
        if path.startswith(_SKIPPED_PREFIXES):
            return False
        # Library components are optional; custom ones the app added are not
        if path.startswith(f"{COMPONENT_DIR}/") and path in self._templates:
            return path in selected_paths
        return True

    def _component_index(self) -> str:
        names = self._templates.component_names()
        if not names:
            return ""
        return (
            "Available UI components (import from @/components/ui/<name>; "
            "call load_component to see one that is not in context): " + ", ".join(names)
        )

    def render_block(self, tier: Tier, items: list[ContextItem]) -> CacheBlock:
        parts = []
        for item in items:
            if item.path.startswith("@"):
                parts.append(item.content)
            else:
                parts.append(f'<file path="{item.path}">\n{item.content}\n</file>')
        text = "\n\n".join(parts)
        tokens = estimate_tokens(text)
        ttl = self.ttl_for(tier)
        if tokens < self._settings.cache_min_tokens:
            ttl = None
        return CacheBlock(
            tier=tier,
            text=text,
            token_estimate=tokens,
            cache_ttl=ttl,
            paths=tuple(i.path for i in items),
        )

    def _memo_for(self, workspace_id: str) -> dict[Tier, tuple[_Signature, CacheBlock]]:
        memo = self._memo.get(workspace_id)
        if memo is not None:
            self._memo.move_to_end(workspace_id)
            return memo
        memo = self._memo[workspace_id] = {}
        while len(self._memo) > MAX_MEMO_WORKSPACES:
            evicted, _ = self._memo.popitem(last=False)
            self._release_lock(evicted)
            logger.debug("Evicted memoized context for workspace %s", evicted)
        return memo

    def _release_lock(self, workspace_id: str) -> None:
        lock = self._locks.get(workspace_id)
        if lock is not None and not lock.locked():
            del self._locks[workspace_id]

    def forget(self, workspace_id: str) -> None:
        """Drop memoized blocks and the idle lock for a workspace."""
        self._memo.pop(workspace_id, None)
        self._release_lock(workspace_id)
