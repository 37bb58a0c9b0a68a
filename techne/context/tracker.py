"""Change tracking for workspace files.

Keeps a content fingerprint per tracked file in the shared fingerprint
store and decides, on every write, whether the file actually changed and
which cache tier the change invalidates.

Key layout (per workspace):
    file_hash:{ws}:{path}     -> {"hash": sha256, "at": committed_at}
    cache_invalid:{ws}:{path} -> marker, lives volatile_window seconds
    tier_invalid:{ws}:{tier}  -> marker, consumed by the assembler

Fingerprint updates are a read-compute-commit cycle against the store's
compare-and-set; a lost race re-reads and retries under the injected
RetryPolicy, so N concurrent writers commit exactly N updates.
"""

from __future__ import annotations

import json
import logging
import time
from collections import Counter
from typing import Any

from techne.config import Settings
from techne.context.classifier import StabilityClassifier
from techne.context.schemas import StabilitySnapshot, Tier, WriteOutcome
from techne.engine.retry import RetryPolicy
from techne.storage.files import normalize_path
from techne.storage.fingerprints import ChangeEntry, Clock, FingerprintStore
from techne.utils import fingerprint

logger = logging.getLogger(__name__)

STABILITY_WINDOW = 24 * 3600  # seconds of change log used for scoring


class FingerprintConflictError(RuntimeError):
    """Compare-and-set kept losing races until retries ran out."""


class _LostRace(Exception):
    pass


class ChangeTracker:
    """Fingerprints, invalidation markers and the per-workspace change log."""

    def __init__(
        self,
        store: FingerprintStore,
        classifier: StabilityClassifier,
        settings: Settings,
        retry: RetryPolicy | None = None,
        clock: Clock = time.time,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.settings = settings
        self.retry = retry or RetryPolicy.for_compare_and_set(settings)
        self._clock = clock

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def _hash_key(workspace_id: str, path: str) -> str:
        return f"file_hash:{workspace_id}:{path}"

    @staticmethod
    def _marker_key(workspace_id: str, path: str) -> str:
        return f"cache_invalid:{workspace_id}:{path}"

    @staticmethod
    def _tier_key(workspace_id: str, tier: Tier) -> str:
        return f"tier_invalid:{workspace_id}:{tier.value}"

    @staticmethod
    def _encode(hash_: str, at: float) -> str:
        return json.dumps({"hash": hash_, "at": at})

    @staticmethod
    def _decode(value: str) -> dict[str, Any]:
        return json.loads(value)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def record_write(
        self, workspace_id: str, path: str, content: str | bytes
    ) -> WriteOutcome:
        """Commit the fingerprint of new content and report the invalidation.

        Identical content is a no-op (changed=False, nothing invalidated).
        The invalidated tier is the tier the file occupied before the write.
        """
        path = normalize_path(path)
        new_hash = fingerprint(content)
        key = self._hash_key(workspace_id, path)
        tier_before = await self.tier_for(workspace_id, path)

        async def attempt() -> WriteOutcome:
            current = await self.store.get(key)
            old_hash = self._decode(current.value)["hash"] if current else None
            if old_hash == new_hash:
                return WriteOutcome(changed=False, old_hash=old_hash, new_hash=new_hash)

            now = self._clock()
            committed = await self.store.compare_and_set(
                key,
                current.version if current else None,
                self._encode(new_hash, now),
                ttl=self.settings.fingerprint_ttl,
            )
            if not committed:
                raise _LostRace(path)

            await self.store.append_change(
                workspace_id,
                ChangeEntry(path=path, old_hash=old_hash, new_hash=new_hash, changed_at=now),
                max_entries=self.settings.change_log_max,
                ttl=self.settings.change_log_ttl,
            )
            return WriteOutcome(
                changed=True,
                invalidated_tier=tier_before,
                old_hash=old_hash,
                new_hash=new_hash,
            )

        try:
            outcome = await self.retry.run(
                attempt,
                retry_on=lambda exc: isinstance(exc, _LostRace),
                label=f"fingerprint update {path}",
            )
        except _LostRace as exc:
            raise FingerprintConflictError(
                f"Could not commit fingerprint for {path} after "
                f"{self.retry.max_attempts} attempts"
            ) from exc

        if outcome.changed:
            await self._invalidate(workspace_id, path, tier_before)
            logger.debug(
                "File %s/%s changed (%s -> %s), invalidated %s",
                workspace_id,
                path,
                (outcome.old_hash or "new")[:8],
                outcome.new_hash[:8],
                tier_before,
            )
        return outcome

    async def record_delete(self, workspace_id: str, path: str) -> WriteOutcome:
        path = normalize_path(path)
        key = self._hash_key(workspace_id, path)
        current = await self.store.get(key)
        if current is None:
            return WriteOutcome(changed=False)

        tier_before = await self.tier_for(workspace_id, path)
        old_hash = self._decode(current.value)["hash"]
        if not await self.store.delete(key):
            # Someone else deleted it first
            return WriteOutcome(changed=False, old_hash=old_hash)

        await self.store.append_change(
            workspace_id,
            ChangeEntry(path=path, old_hash=old_hash, new_hash=None, changed_at=self._clock()),
            max_entries=self.settings.change_log_max,
            ttl=self.settings.change_log_ttl,
        )
        await self._invalidate(workspace_id, path, tier_before)
        return WriteOutcome(changed=True, invalidated_tier=tier_before, old_hash=old_hash)

    async def observe(self, workspace_id: str, path: str, content: str | bytes) -> str:
        """Seed a baseline fingerprint without logging a change.

        Returns the content hash. An existing fingerprint is left alone.
        """
        path = normalize_path(path)
        hash_ = fingerprint(content)
        key = self._hash_key(workspace_id, path)
        if await self.store.get(key) is None:
            await self.store.compare_and_set(
                key, None, self._encode(hash_, self._clock()), ttl=self.settings.fingerprint_ttl
            )
        return hash_

    async def _invalidate(self, workspace_id: str, path: str, tier: Tier) -> None:
        await self.store.set(
            self._marker_key(workspace_id, path),
            str(self._clock()),
            ttl=self.settings.volatile_window,
        )
        await self.store.set(
            self._tier_key(workspace_id, tier),
            path,
            ttl=self.settings.cache_ttl_stable,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def is_fresh(self, workspace_id: str, path: str) -> bool:
        """True when no invalidation marker is pending for the path."""
        marker = await self.store.get(self._marker_key(workspace_id, normalize_path(path)))
        return marker is None

    async def consume_invalidated_tiers(self, workspace_id: str) -> set[Tier]:
        """Return and clear the tiers invalidated since the last call."""
        prefix = f"tier_invalid:{workspace_id}:"
        keys = await self.store.keys(prefix)
        if not keys:
            return set()
        await self.store.delete(*keys)
        return {Tier(k[len(prefix):]) for k in keys}

    async def changed_since(self, workspace_id: str, timestamp: float) -> list[ChangeEntry]:
        return await self.store.changes_since(workspace_id, timestamp)

    async def stability(
        self, workspace_id: str, paths: list[str]
    ) -> dict[str, StabilitySnapshot]:
        """Stability snapshot per path.

        score = 10 - (changes per hour over the last 24h), floored at 0.
        seconds_unchanged counts from the last committed fingerprint.
        """
        now = self._clock()
        changes = await self.store.changes_since(workspace_id, now - STABILITY_WINDOW)
        counts = Counter(c.path for c in changes)
        last_change: dict[str, float] = {}
        for c in changes:
            last_change[c.path] = max(last_change.get(c.path, 0.0), c.changed_at)

        snapshots: dict[str, StabilitySnapshot] = {}
        for path in paths:
            count = counts.get(path, 0)
            score = round(max(10.0 - count / 24.0, 0.0), 1)

            since: float | None = None
            current = await self.store.get(self._hash_key(workspace_id, path))
            if current is not None:
                since = self._decode(current.value)["at"]
            elif path in last_change:
                since = last_change[path]

            snapshots[path] = StabilitySnapshot(
                path=path,
                score=score,
                changes_24h=count,
                seconds_unchanged=max(now - since, 0.0) if since is not None else None,
            )
        return snapshots

    async def tier_for(self, workspace_id: str, path: str) -> Tier:
        tiers = await self.classify_paths(workspace_id, [path])
        return tiers[path]

    async def classify_paths(self, workspace_id: str, paths: list[str]) -> dict[str, Tier]:
        """Tier per path from freshness markers and stability."""
        prefix = f"cache_invalid:{workspace_id}:"
        stale = {k[len(prefix):] for k in await self.store.keys(prefix)}
        snapshots = await self.stability(workspace_id, paths)
        return {
            path: self.classifier.classify(
                path, fresh=path not in stale, stability=snapshots[path]
            )
            for path in paths
        }

    async def stats(self, workspace_id: str) -> dict[str, Any]:
        now = self._clock()
        hash_prefix = f"file_hash:{workspace_id}:"
        tracked = [k[len(hash_prefix):] for k in await self.store.keys(hash_prefix)]
        changes_1h = await self.store.changes_since(workspace_id, now - 3600)
        changes_5m = [c for c in changes_1h if c.changed_at >= now - self.settings.volatile_window]
        invalidated = await self.store.keys(f"cache_invalid:{workspace_id}:")

        distribution = {"stable": 0, "active": 0, "volatile": 0}
        for snapshot in (await self.stability(workspace_id, tracked)).values():
            if snapshot.score >= 8:
                distribution["stable"] += 1
            elif snapshot.score >= 4:
                distribution["active"] += 1
            else:
                distribution["volatile"] += 1

        return {
            "total_tracked_files": len(tracked),
            "recent_changes_1h": len({c.path for c in changes_1h}),
            "recent_changes_5m": len({c.path for c in changes_5m}),
            "invalidated_caches": len(invalidated),
            "stability_distribution": distribution,
        }

    async def clear(self, workspace_id: str) -> None:
        """Drop every fingerprint, marker and change log entry of a workspace."""
        keys: list[str] = []
        for prefix in ("file_hash", "cache_invalid", "tier_invalid"):
            keys.extend(await self.store.keys(f"{prefix}:{workspace_id}:"))
        if keys:
            await self.store.delete(*keys)
        await self.store.clear_changes(workspace_id)
        logger.info("Cleared change tracking for workspace %s", workspace_id)
