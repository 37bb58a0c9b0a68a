"""Tests for ContextAssembler: tiering, determinism, reuse and budgets."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from techne.context import ContextAssembler, ContextBudgetExceeded, Tier
from techne.context.classifier import COMPONENT_INDEX_PATH, INSTRUCTIONS_PATH
from techne.context.predictor import ComponentPredictor
from techne.engine.schemas import Conversation

WORKSPACE = "ws-test"  # matches the conftest fixtures

APP = "import { Button } from '@/components/ui/button';\nexport default function App() {}\n"


@pytest.fixture
def todo_conversation() -> Conversation:
    conversation = Conversation(workspace_id=WORKSPACE)
    conversation.prediction = ComponentPredictor().predict("create a todo app")
    return conversation


def _tier(result, tier: Tier):
    return next((b for b in result.blocks if b.tier == tier), None)


@pytest.mark.asyncio
async def test_todo_app_loads_only_predicted_components(assembler, todo_conversation):
    result = await assembler.assemble(todo_conversation)

    assert result.components == ["button", "card", "checkbox", "input"]
    stable = _tier(result, Tier.STABLE)
    component_paths = [p for p in stable.paths if p.startswith("src/components/ui/")]
    assert component_paths == [
        "src/components/ui/button.tsx",
        "src/components/ui/card.tsx",
        "src/components/ui/checkbox.tsx",
        "src/components/ui/input.tsx",
    ]
    assert "src/components/ui/dialog.tsx" not in stable.paths


@pytest.mark.asyncio
async def test_tier_order_and_path_order(assembler, file_store, todo_conversation):
    await file_store.write(WORKSPACE, "src/App.tsx", APP)
    await file_store.write(WORKSPACE, "src/pages/Home.tsx", "export {};\n")

    result = await assembler.assemble(todo_conversation)

    ranks = [b.tier.rank for b in result.blocks]
    assert ranks == sorted(ranks)
    for block in result.blocks:
        file_paths = [p for p in block.paths if not p.startswith("@")]
        assert file_paths == sorted(file_paths)

    stable = result.blocks[0]
    assert stable.tier == Tier.STABLE
    assert stable.paths[:2] == (COMPONENT_INDEX_PATH, INSTRUCTIONS_PATH)
    assert _tier(result, Tier.SEMI_STABLE).paths == ("package.json", "src/index.css")
    assert _tier(result, Tier.ACTIVE).paths == ("src/App.tsx", "src/pages/Home.tsx")


@pytest.mark.asyncio
async def test_identical_inputs_give_identical_blocks(
    settings, file_store, tracker, classifier, templates, todo_conversation
):
    await file_store.write(WORKSPACE, "src/App.tsx", APP)
    first = ContextAssembler(settings, file_store, tracker, classifier, templates)
    second = ContextAssembler(settings, file_store, tracker, classifier, templates)

    a = await first.assemble(todo_conversation)
    b = await second.assemble(todo_conversation)
    assert a.blocks == b.blocks


@pytest.mark.asyncio
async def test_untouched_tiers_are_reused(assembler, todo_conversation):
    first = await assembler.assemble(todo_conversation)
    assert set(first.rebuilt_tiers) == {Tier.STABLE, Tier.SEMI_STABLE}

    second = await assembler.assemble(todo_conversation)
    assert second.rebuilt_tiers == []
    assert second.blocks == first.blocks


@pytest.mark.asyncio
async def test_write_rebuilds_only_affected_tiers(assembler, file_store, tracker, todo_conversation):
    await file_store.write(WORKSPACE, "src/App.tsx", APP)
    first = await assembler.assemble(todo_conversation)

    new_app = APP + "// v2\n"
    await file_store.write(WORKSPACE, "src/App.tsx", new_app)
    await tracker.record_write(WORKSPACE, "src/App.tsx", new_app)

    second = await assembler.assemble(todo_conversation)
    # App.tsx moved ACTIVE -> VOLATILE; STABLE and SEMI_STABLE are reused
    assert second.rebuilt_tiers == [Tier.VOLATILE]
    assert _tier(second, Tier.ACTIVE) is None
    assert _tier(second, Tier.VOLATILE).paths == ("src/App.tsx",)
    assert _tier(second, Tier.STABLE) is _tier(first, Tier.STABLE)
    assert _tier(second, Tier.VOLATILE).cache_ttl is None


@pytest.mark.asyncio
async def test_identical_rewrite_rebuilds_nothing(assembler, file_store, tracker, todo_conversation):
    await file_store.write(WORKSPACE, "src/App.tsx", APP)
    first = await assembler.assemble(todo_conversation)

    outcome = await tracker.record_write(WORKSPACE, "src/App.tsx", APP)
    assert outcome.changed is False

    second = await assembler.assemble(todo_conversation)
    assert second.rebuilt_tiers == []
    assert second.blocks == first.blocks


@pytest.mark.asyncio
async def test_project_file_shadows_template(assembler, file_store, todo_conversation):
    await file_store.write(WORKSPACE, "package.json", '{"name": "mine"}')
    result = await assembler.assemble(todo_conversation)
    semi = _tier(result, Tier.SEMI_STABLE)
    assert '{"name": "mine"}' in semi.text
    assert semi.text.count('<file path="package.json">') == 1


@pytest.mark.asyncio
async def test_loaded_component_enters_context(assembler, todo_conversation):
    todo_conversation.loaded_components.append("dialog")
    result = await assembler.assemble(todo_conversation)
    assert "dialog" in result.components
    assert "src/components/ui/dialog.tsx" in _tier(result, Tier.STABLE).paths


@pytest.mark.asyncio
async def test_skips_build_output_and_binary_files(assembler, file_store, todo_conversation):
    await file_store.write(WORKSPACE, "node_modules/react/index.js", "x")
    await file_store.write(WORKSPACE, "dist/index.js", "x")
    await file_store.write(WORKSPACE, "public/logo.png", b"\x89PNG")

    result = await assembler.assemble(todo_conversation)
    paths = [p for b in result.blocks for p in b.paths]
    assert not any(p.startswith(("node_modules/", "dist/", "public/")) for p in paths)


@pytest.mark.asyncio
async def test_small_blocks_carry_no_lifetime(assembler, todo_conversation):
    result = await assembler.assemble(todo_conversation)
    for block in result.blocks:
        assert block.cache_ttl is None
    assert result.cacheable_tokens == 0
    assert result.efficiency == 0.0


@pytest.mark.asyncio
async def test_lifetimes_and_efficiency(assembler, file_store, settings, todo_conversation):
    big = "const x = 1;\n" * 1000
    await file_store.write(WORKSPACE, "src/lib/big.ts", big)

    result = await assembler.assemble(todo_conversation)
    stable = _tier(result, Tier.STABLE)
    assert stable.cache_ttl == settings.cache_ttl_stable
    assert result.cacheable_tokens == stable.token_estimate
    assert result.efficiency == round(result.cacheable_tokens / result.total_tokens, 4)


@pytest.mark.asyncio
async def test_warn_and_hard_limits(settings, file_store, tracker, classifier, templates, todo_conversation):
    big = "x" * 40_000  # ~10k tokens
    await file_store.write(WORKSPACE, "src/App.tsx", big)

    warn = settings.model_copy(update={"context_warn_tokens": 5_000})
    result = await ContextAssembler(warn, file_store, tracker, classifier, templates).assemble(
        todo_conversation
    )
    assert result.over_budget is True

    hard = settings.model_copy(update={"context_warn_tokens": 1_000, "context_hard_limit_tokens": 5_000})
    with pytest.raises(ContextBudgetExceeded):
        await ContextAssembler(hard, file_store, tracker, classifier, templates).assemble(
            todo_conversation
        )


@pytest.mark.asyncio
async def test_tier_invalidated_by_tracker_is_rebuilt(assembler, tracker, todo_conversation):
    await assembler.assemble(todo_conversation)

    # Not part of the context, but the tracker still reports SEMI_STABLE invalidated
    await tracker.record_write(WORKSPACE, "node_modules/left-pad/index.js", "module.exports = 1;")

    result = await assembler.assemble(todo_conversation)
    assert result.rebuilt_tiers == [Tier.SEMI_STABLE]


@pytest.mark.asyncio
async def test_forget_releases_memo_and_lock(assembler, todo_conversation):
    await assembler.assemble(todo_conversation)
    assert WORKSPACE in assembler._memo

    assembler.forget(WORKSPACE)

    assert WORKSPACE not in assembler._memo
    assert WORKSPACE not in assembler._locks
    rebuilt = await assembler.assemble(todo_conversation)
    assert rebuilt.rebuilt_tiers == [b.tier for b in rebuilt.blocks]


@pytest.mark.asyncio
async def test_memo_evicts_least_recently_assembled_workspace(assembler):
    with patch("techne.context.assembler.MAX_MEMO_WORKSPACES", 2):
        for workspace_id in ("ws-a", "ws-b", "ws-a", "ws-c"):
            await assembler.assemble(Conversation(workspace_id=workspace_id))

    assert list(assembler._memo) == ["ws-a", "ws-c"]
    assert "ws-b" not in assembler._locks
