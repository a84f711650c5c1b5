"""Bounded, time-pruned cache of the items currently worth keeping fresh."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Sequence

from topicmirror.models import HotPoolEntry, ItemSummary, resolve_freshness

__all__ = ["HotPoolCache", "SECONDS_PER_DAY"]

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400


def _score(entry: HotPoolEntry) -> int:
    return resolve_freshness(entry.item) or 0


class HotPoolCache:
    """Merge the previous pool with a fresh ranking list.

    Items stay in the pool after they drop off the remote list, until their
    freshness score is older than ``ttl_days`` or they are pushed out by the
    ``limit`` fresher entries.
    """

    def __init__(self, limit: int = 200, ttl_days: float = 7) -> None:
        self.limit = max(1, int(limit))
        self.ttl_days = ttl_days

    @classmethod
    def from_config(cls, config) -> "HotPoolCache":
        return cls(limit=config.hot_pool_limit, ttl_days=config.hot_pool_ttl_days)

    @property
    def ttl_seconds(self) -> float:
        return self.ttl_days * SECONDS_PER_DAY

    def merge(
        self,
        previous: Sequence[HotPoolEntry],
        fresh: Iterable[ItemSummary],
        now: float,
        *,
        source: str = "hot",
    ) -> List[HotPoolEntry]:
        seen_at = int(now)
        merged: Dict[int, HotPoolEntry] = {}
        for entry in previous:
            current = merged.get(entry.id)
            if current is None or _score(entry) > _score(current):
                merged[entry.id] = entry

        for summary in fresh:
            incoming = HotPoolEntry(item=summary, source=source, first_seen_at=seen_at, last_seen_at=seen_at)
            current = merged.get(summary.id)
            if current is None:
                merged[summary.id] = incoming
            elif _score(incoming) >= _score(current):
                incoming.first_seen_at = current.first_seen_at or seen_at
                merged[summary.id] = incoming
            else:
                merged[summary.id] = current.model_copy(update={"last_seen_at": seen_at})

        ordered = sorted(merged.values(), key=_score, reverse=True)
        kept = self.prune(ordered, now)
        if len(kept) > self.limit:
            logger.debug("Hot pool capped from %d to %d entries", len(kept), self.limit)
        return kept[: self.limit]

    def prune(self, entries: Iterable[HotPoolEntry], now: float) -> List[HotPoolEntry]:
        """Drop entries whose freshness timestamp is older than the TTL.

        Entries without a usable timestamp cannot be judged and are kept.
        """

        cutoff = now - self.ttl_seconds
        kept: List[HotPoolEntry] = []
        for entry in entries:
            score = resolve_freshness(entry.item)
            if score is not None and score < cutoff:
                logger.debug("Evicting item %d from the hot pool (freshness %d)", entry.id, score)
                continue
            kept.append(entry)
        return kept
