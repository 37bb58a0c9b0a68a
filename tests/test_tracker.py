"""Tests for ChangeTracker: write detection, invalidation, CAS races, stability."""

from __future__ import annotations

import asyncio

import pytest

from techne.context.schemas import Tier
from techne.context.tracker import ChangeTracker, FingerprintConflictError
from techne.engine.retry import RetryPolicy
from techne.storage.fingerprints import InMemoryFingerprintStore

WS = "ws-1"


class YieldingStore(InMemoryFingerprintStore):
    """Yields to the event loop on every read so concurrent writers interleave."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)


class AlwaysLosingStore(InMemoryFingerprintStore):
    async def compare_and_set(self, key, expected_version, value, ttl=None):
        return False


# ---------------------------------------------------------------------------
# record_write
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_write_is_a_change(tracker):
    outcome = await tracker.record_write(WS, "src/App.tsx", "export default 1;")
    assert outcome.changed is True
    assert outcome.old_hash is None
    assert outcome.invalidated_tier == Tier.ACTIVE


@pytest.mark.asyncio
async def test_identical_rewrite_is_not_a_change(tracker):
    await tracker.record_write(WS, "src/App.tsx", "a")
    outcome = await tracker.record_write(WS, "src/App.tsx", "a")
    assert outcome.changed is False
    assert outcome.invalidated_tier is None
    assert len(await tracker.changed_since(WS, 0)) == 1


@pytest.mark.asyncio
async def test_rewrite_after_observe_is_not_a_change(tracker):
    await tracker.observe(WS, "src/lib/utils.ts", "x")
    outcome = await tracker.record_write(WS, "src/lib/utils.ts", "x")
    assert outcome.changed is False
    assert await tracker.changed_since(WS, 0) == []


@pytest.mark.asyncio
async def test_observe_does_not_overwrite(tracker):
    await tracker.record_write(WS, "src/App.tsx", "v1")
    await tracker.observe(WS, "src/App.tsx", "v2")
    outcome = await tracker.record_write(WS, "src/App.tsx", "v1")
    assert outcome.changed is False


@pytest.mark.asyncio
async def test_invalidated_tier_is_tier_before_write(tracker):
    outcome = await tracker.record_write(WS, "src/components/ui/button.tsx", "v1")
    assert outcome.invalidated_tier == Tier.STABLE

    # Now volatile: the second write invalidates the VOLATILE tier
    outcome = await tracker.record_write(WS, "src/components/ui/button.tsx", "v2")
    assert outcome.invalidated_tier == Tier.VOLATILE


@pytest.mark.asyncio
async def test_path_is_normalized(tracker):
    await tracker.record_write(WS, "./src/App.tsx", "a")
    outcome = await tracker.record_write(WS, "/src/App.tsx", "a")
    assert outcome.changed is False


# ---------------------------------------------------------------------------
# Freshness and tier markers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_is_fresh_until_volatile_window_passes(tracker, clock, settings):
    assert await tracker.is_fresh(WS, "src/App.tsx") is True
    await tracker.record_write(WS, "src/App.tsx", "a")
    assert await tracker.is_fresh(WS, "src/App.tsx") is False
    assert await tracker.tier_for(WS, "src/App.tsx") == Tier.VOLATILE

    clock.advance(settings.volatile_window + 1)
    assert await tracker.is_fresh(WS, "src/App.tsx") is True
    assert await tracker.tier_for(WS, "src/App.tsx") == Tier.ACTIVE


@pytest.mark.asyncio
async def test_consume_invalidated_tiers(tracker):
    await tracker.record_write(WS, "package.json", "{}")
    await tracker.record_write(WS, "src/App.tsx", "a")
    assert await tracker.consume_invalidated_tiers(WS) == {Tier.SEMI_STABLE, Tier.ACTIVE}
    assert await tracker.consume_invalidated_tiers(WS) == set()


@pytest.mark.asyncio
async def test_record_delete(tracker):
    await tracker.record_write(WS, "src/Old.tsx", "a")
    await tracker.consume_invalidated_tiers(WS)

    outcome = await tracker.record_delete(WS, "src/Old.tsx")
    assert outcome.changed is True
    entries = await tracker.changed_since(WS, 0)
    assert entries[-1].new_hash is None
    assert await tracker.consume_invalidated_tiers(WS) == {Tier.VOLATILE}

    assert (await tracker.record_delete(WS, "src/Old.tsx")).changed is False


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_writers_commit_every_update(settings, classifier):
    store = YieldingStore()
    writers = 10
    tracker = ChangeTracker(
        store,
        classifier,
        settings,
        retry=RetryPolicy(max_attempts=writers + 1, base_delay=0, jitter=False),
    )

    outcomes = await asyncio.gather(
        *(tracker.record_write(WS, "src/App.tsx", f"version {i}") for i in range(writers))
    )

    assert all(o.changed for o in outcomes)
    changes = await tracker.changed_since(WS, 0)
    assert len(changes) == writers
    # Each commit saw the previous one: the hashes form a single chain
    for previous, current in zip(changes, changes[1:]):
        assert current.old_hash == previous.new_hash


@pytest.mark.asyncio
async def test_cas_exhaustion_raises(settings, classifier):
    tracker = ChangeTracker(
        AlwaysLosingStore(),
        classifier,
        settings,
        retry=RetryPolicy(max_attempts=3, base_delay=0, jitter=False),
    )
    with pytest.raises(FingerprintConflictError):
        await tracker.record_write(WS, "src/App.tsx", "a")


# ---------------------------------------------------------------------------
# Stability and stats
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stability_score(tracker, clock):
    for i in range(48):
        await tracker.record_write(WS, "src/Busy.tsx", f"v{i}")
        clock.advance(60)
    for i in range(3):
        await tracker.record_write(WS, "src/Calm.tsx", f"v{i}")

    snapshots = await tracker.stability(WS, ["src/Busy.tsx", "src/Calm.tsx", "src/New.tsx"])
    assert snapshots["src/Busy.tsx"].changes_24h == 48
    assert snapshots["src/Busy.tsx"].score == 8.0
    assert snapshots["src/Calm.tsx"].score == 9.9
    assert snapshots["src/New.tsx"].score == 10.0
    assert snapshots["src/New.tsx"].seconds_unchanged is None
    assert snapshots["src/Busy.tsx"].seconds_unchanged == 60


@pytest.mark.asyncio
async def test_unchanged_file_gets_promoted(tracker, clock, settings):
    await tracker.record_write(WS, "src/pages/About.tsx", "a")
    clock.advance(settings.promote_after + 1)
    assert await tracker.tier_for(WS, "src/pages/About.tsx") == Tier.SEMI_STABLE


@pytest.mark.asyncio
async def test_stats_and_clear(tracker):
    await tracker.record_write(WS, "src/App.tsx", "a")
    await tracker.record_write(WS, "src/lib/utils.ts", "b")

    stats = await tracker.stats(WS)
    assert stats["total_tracked_files"] == 2
    assert stats["recent_changes_1h"] == 2
    assert stats["recent_changes_5m"] == 2
    assert stats["invalidated_caches"] == 2
    assert stats["stability_distribution"]["stable"] == 2

    await tracker.clear(WS)
    stats = await tracker.stats(WS)
    assert stats["total_tracked_files"] == 0
    assert stats["recent_changes_1h"] == 0
    assert await tracker.consume_invalidated_tiers(WS) == set()
