"""Shared fingerprint / lock store used by the Change Tracker.

A low-latency key-value store with versioned values, atomic
compare-and-set and optional TTL, plus an append-only change log per
workspace. Two implementations:

- InMemoryFingerprintStore: single-process, asyncio.Lock around CAS.
- SqlFingerprintStore: PostgreSQL via SQLAlchemy async. CAS is a
  conditional UPDATE on the version column; versions come from a global
  sequence so a deleted-and-recreated key never matches a stale version.

All expiry is evaluated against an injectable clock (epoch seconds).
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import delete, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from techne.storage.database import Database
from techne.storage.models import FileChange, KvEntry, kv_version_seq

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class VersionedValue:
    """A stored value and the version it was committed at."""

    value: str
    version: int


@dataclass(frozen=True)
class ChangeEntry:
    """One committed fingerprint change (new_hash None = file deleted)."""

    path: str
    old_hash: str | None
    new_hash: str | None
    changed_at: float


class FingerprintStore(Protocol):
    async def get(self, key: str) -> VersionedValue | None: ...

    async def set(self, key: str, value: str, ttl: float | None = None) -> None: ...

    async def compare_and_set(
        self,
        key: str,
        expected_version: int | None,
        value: str,
        ttl: float | None = None,
    ) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def keys(self, prefix: str) -> list[str]: ...

    async def append_change(
        self,
        workspace_id: str,
        entry: ChangeEntry,
        max_entries: int,
        ttl: float | None = None,
    ) -> None: ...

    async def changes_since(self, workspace_id: str, since: float) -> list[ChangeEntry]: ...

    async def clear_changes(self, workspace_id: str) -> None: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemoryFingerprintStore:
    """Process-local store. Safe for many concurrent asyncio tasks."""

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, int, float | None]] = {}
        self._logs: dict[str, list[tuple[ChangeEntry, float | None]]] = defaultdict(list)
        self._versions = itertools.count(1)
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> tuple[str, int, float | None] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at = entry[2]
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl: float | None) -> float | None:
        return self._clock() + ttl if ttl is not None else None

    async def get(self, key: str) -> VersionedValue | None:
        entry = self._live(key)
        if entry is None:
            return None
        return VersionedValue(value=entry[0], version=entry[1])

    async def set(self, key: str, value: str, ttl: float | None = None) -> None:
        async with self._lock:
            self._data[key] = (value, next(self._versions), self._expiry(ttl))

    async def compare_and_set(
        self,
        key: str,
        expected_version: int | None,
        value: str,
        ttl: float | None = None,
    ) -> bool:
        async with self._lock:
            current = self._live(key)
            current_version = current[1] if current else None
            if current_version != expected_version:
                return False
            self._data[key] = (value, next(self._versions), self._expiry(ttl))
            return True

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._data.pop(key, None)
            return removed

    async def keys(self, prefix: str) -> list[str]:
        return sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k))

    async def append_change(
        self,
        workspace_id: str,
        entry: ChangeEntry,
        max_entries: int,
        ttl: float | None = None,
    ) -> None:
        async with self._lock:
            log = self._logs[workspace_id]
            log.append((entry, self._expiry(ttl)))
            if len(log) > max_entries:
                del log[: len(log) - max_entries]

    async def changes_since(self, workspace_id: str, since: float) -> list[ChangeEntry]:
        now = self._clock()
        return [
            entry
            for entry, expires_at in self._logs.get(workspace_id, [])
            if entry.changed_at >= since and (expires_at is None or expires_at > now)
        ]

    async def clear_changes(self, workspace_id: str) -> None:
        async with self._lock:
            self._logs.pop(workspace_id, None)


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------


class SqlFingerprintStore:
    """PostgreSQL-backed store shared by every worker process."""

    def __init__(self, db: Database, clock: Clock = time.time) -> None:
        self.db = db
        self._clock = clock

    def _not_expired(self, now: float):
        return or_(KvEntry.expires_at.is_(None), KvEntry.expires_at > now)

    def _expiry(self, now: float, ttl: float | None) -> float | None:
        return now + ttl if ttl is not None else None

    async def get(self, key: str) -> VersionedValue | None:
        now = self._clock()
        async with self.db.session() as session:
            result = await session.execute(
                select(KvEntry.value, KvEntry.version).where(
                    KvEntry.key == key, self._not_expired(now)
                )
            )
            row = result.first()
        if row is None:
            return None
        return VersionedValue(value=row.value, version=row.version)

    async def set(self, key: str, value: str, ttl: float | None = None) -> None:
        now = self._clock()
        expires_at = self._expiry(now, ttl)
        stmt = pg_insert(KvEntry).values(
            key=key,
            value=value,
            version=kv_version_seq.next_value(),
            expires_at=expires_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[KvEntry.key],
            set_={
                "value": value,
                "version": kv_version_seq.next_value(),
                "expires_at": expires_at,
            },
        )
        async with self.db.session() as session:
            await session.execute(stmt)
            await session.commit()

    async def compare_and_set(
        self,
        key: str,
        expected_version: int | None,
        value: str,
        ttl: float | None = None,
    ) -> bool:
        now = self._clock()
        expires_at = self._expiry(now, ttl)
        async with self.db.session() as session:
            if expected_version is None:
                # Expired rows count as absent
                await session.execute(
                    delete(KvEntry).where(
                        KvEntry.key == key,
                        KvEntry.expires_at.is_not(None),
                        KvEntry.expires_at <= now,
                    )
                )
                stmt = (
                    pg_insert(KvEntry)
                    .values(
                        key=key,
                        value=value,
                        version=kv_version_seq.next_value(),
                        expires_at=expires_at,
                    )
                    .on_conflict_do_nothing(index_elements=[KvEntry.key])
                    .returning(KvEntry.key)
                )
            else:
                stmt = (
                    update(KvEntry)
                    .where(
                        KvEntry.key == key,
                        KvEntry.version == expected_version,
                        self._not_expired(now),
                    )
                    .values(
                        value=value,
                        version=kv_version_seq.next_value(),
                        expires_at=expires_at,
                    )
                    .returning(KvEntry.key)
                )
            result = await session.execute(stmt)
            committed = result.first() is not None
            await session.commit()
        return committed

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        async with self.db.session() as session:
            result = await session.execute(
                delete(KvEntry).where(KvEntry.key.in_(keys)).returning(KvEntry.key)
            )
            removed = len(result.all())
            await session.commit()
        return removed

    async def keys(self, prefix: str) -> list[str]:
        now = self._clock()
        async with self.db.session() as session:
            result = await session.execute(
                select(KvEntry.key)
                .where(KvEntry.key.startswith(prefix, autoescape=True), self._not_expired(now))
                .order_by(KvEntry.key)
            )
            return [row[0] for row in result]

    async def append_change(
        self,
        workspace_id: str,
        entry: ChangeEntry,
        max_entries: int,
        ttl: float | None = None,
    ) -> None:
        now = self._clock()
        async with self.db.session() as session:
            session.add(
                FileChange(
                    workspace_id=workspace_id,
                    path=entry.path,
                    old_hash=entry.old_hash,
                    new_hash=entry.new_hash,
                    changed_at=entry.changed_at,
                    expires_at=self._expiry(now, ttl),
                )
            )
            await session.flush()

            # Trim to the newest max_entries rows for this workspace
            keep = (
                select(FileChange.id)
                .where(FileChange.workspace_id == workspace_id)
                .order_by(FileChange.id.desc())
                .limit(max_entries)
            )
            await session.execute(
                delete(FileChange).where(
                    FileChange.workspace_id == workspace_id,
                    FileChange.id.not_in(keep.scalar_subquery()),
                )
            )
            await session.commit()

    async def changes_since(self, workspace_id: str, since: float) -> list[ChangeEntry]:
        now = self._clock()
        async with self.db.session() as session:
            result = await session.execute(
                select(FileChange)
                .where(
                    FileChange.workspace_id == workspace_id,
                    FileChange.changed_at >= since,
                    or_(FileChange.expires_at.is_(None), FileChange.expires_at > now),
                )
                .order_by(FileChange.changed_at, FileChange.id)
            )
            rows = result.scalars().all()
        return [
            ChangeEntry(
                path=row.path,
                old_hash=row.old_hash,
                new_hash=row.new_hash,
                changed_at=row.changed_at,
            )
            for row in rows
        ]

    async def clear_changes(self, workspace_id: str) -> None:
        async with self.db.session() as session:
            await session.execute(delete(FileChange).where(FileChange.workspace_id == workspace_id))
            await session.commit()
