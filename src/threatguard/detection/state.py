"""Per-source threat state: running risk averages and time-limited blocks.

Sources are sharded across ``lock_stripes`` shards by a stable hash of the
source id. Each shard owns its own lock, a bounded ``TTLCache`` of
:class:`ThreatStateEntry` and a dict of :class:`BlockEntry`, so updates for
different sources rarely contend. The store is safe to share between
threads and asyncio tasks; no lock is ever held across an ``await``.
"""

from __future__ import annotations

import dataclasses
import threading
import time
import zlib
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from cachetools import TTLCache  # type: ignore[import-untyped]

from threatguard.detection.models import BlockEntry, ThreatAnalysis, ThreatStateEntry
from threatguard.logging import get_logger

log = get_logger("threatguard.detection.state")


@dataclass
class _Shard:
    lock: threading.Lock
    entries: TTLCache[str, ThreatStateEntry]
    blocks: dict[str, BlockEntry] = field(default_factory=dict)


class ThreatStateStore:
    """Tracks running risk per source and which sources are blocked."""

    def __init__(
        self,
        *,
        retention_count: int = 100,
        max_sources: int = 100_000,
        entry_ttl_seconds: float = 86_400.0,
        lock_stripes: int = 64,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._retention_count = retention_count
        self._clock = clock
        per_shard = max(1, max_sources // lock_stripes)
        self._shards = [
            _Shard(
                lock=threading.Lock(),
                entries=TTLCache(maxsize=per_shard, ttl=entry_ttl_seconds, timer=clock),
            )
            for _ in range(lock_stripes)
        ]

    def _shard(self, source_id: str) -> _Shard:
        return self._shards[zlib.crc32(source_id.encode("utf-8")) % len(self._shards)]

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    def block(self, source_id: str, duration_seconds: float, reason: str = "") -> BlockEntry | None:
        """Block *source_id* for *duration_seconds*. Non-positive durations are ignored."""
        if duration_seconds <= 0:
            log.debug("block_ignored", source_id=source_id, duration=duration_seconds)
            return None
        shard = self._shard(source_id)
        with shard.lock:
            entry = BlockEntry(
                source_id=source_id,
                expires_at=self._clock() + duration_seconds,
                reason=reason,
            )
            shard.blocks[source_id] = entry
        return entry

    def unblock(self, source_id: str) -> bool:
        shard = self._shard(source_id)
        with shard.lock:
            return shard.blocks.pop(source_id, None) is not None

    def get_block(self, source_id: str) -> BlockEntry | None:
        """Return the active block for *source_id*, removing it if expired."""
        shard = self._shard(source_id)
        try:
            with shard.lock:
                entry = shard.blocks.get(source_id)
                if entry is None:
                    return None
                if self._clock() < entry.expires_at:
                    return entry
                del shard.blocks[source_id]
                return None
        except Exception:
            # Unreadable block state never denies traffic
            log.warning("block_state_unreadable", source_id=source_id, exc_info=True)
            return None

    def is_blocked(self, source_id: str) -> bool:
        return self.get_block(source_id) is not None

    def purge_expired(self) -> int:
        """Drop every expired block. Returns how many were removed."""
        removed = 0
        now = self._clock()
        for shard in self._shards:
            with shard.lock:
                expired = [
                    source
                    for source, entry in shard.blocks.items()
                    if not isinstance(entry, BlockEntry) or entry.expires_at <= now
                ]
                for source in expired:
                    del shard.blocks[source]
                removed += len(expired)
                shard.entries.expire()
        if removed:
            log.debug("expired_blocks_purged", count=removed)
        return removed

    # ------------------------------------------------------------------
    # Running risk
    # ------------------------------------------------------------------

    def record_analysis(self, source_id: str, analysis: ThreatAnalysis) -> ThreatStateEntry:
        """Fold *analysis* into the source's running average and return a copy."""
        shard = self._shard(source_id)
        with shard.lock:
            entry = shard.entries.get(source_id) or ThreatStateEntry()
            # Capping the weight of history keeps the average responsive
            weight = min(entry.hit_count, self._retention_count)
            entry.average_risk = (entry.average_risk * weight + analysis.overall_risk) / (
                weight + 1
            )
            entry.hit_count += 1
            entry.last_seen = self._clock()
            shard.entries[source_id] = entry
            return dataclasses.replace(entry)

    def get_entry(self, source_id: str) -> ThreatStateEntry | None:
        shard = self._shard(source_id)
        with shard.lock:
            entry = shard.entries.get(source_id)
            return dataclasses.replace(entry) if entry is not None else None

    def threat_score(self, source_id: str) -> float:
        entry = self.get_entry(source_id)
        return entry.average_risk if entry is not None else 0.0

    def stats(self) -> dict[str, Any]:
        tracked = 0
        blocked = 0
        for shard in self._shards:
            with shard.lock:
                tracked += len(shard.entries)
                blocked += len(shard.blocks)
        return {
            "tracked_sources": tracked,
            "blocked_sources": blocked,
            "lock_stripes": len(self._shards),
        }
