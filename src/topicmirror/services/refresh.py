"""Decide which mirrored documents need to be fetched again."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping

from topicmirror.models import CommentsDocument, ItemDocument, SnapshotRef, parse_timestamp

__all__ = ["RefreshPolicy", "should_refresh_comments", "should_refresh_item"]


def should_refresh_item(
    existing: ItemDocument | None,
    snapshot: SnapshotRef,
    now: datetime,
    ttl: timedelta,
) -> bool:
    """Return ``True`` when the detail of an item must be fetched.

    An item is refetched when nothing usable is stored, when the stored copy
    is older than ``ttl``, or when its reply count or modification time on the
    ranking list differs from the values recorded at the last fetch.
    """

    if existing is None:
        return True
    fetched_at = parse_timestamp(existing.meta.fetched_at)
    if fetched_at is None:
        return True
    if now - fetched_at > ttl:
        return True

    previous = existing.meta.list_snapshot
    if previous is None:
        return True
    return (previous.reply_count, previous.last_modified) != (snapshot.reply_count, snapshot.last_modified)


def should_refresh_comments(
    item_refreshed: bool,
    existing: CommentsDocument | None,
    item: Mapping[str, Any] | None,
) -> bool:
    """Return ``True`` when the comments of an item must be fetched.

    Elapsed time alone never triggers a comments fetch: only a refreshed item,
    a missing document, or a changed reply count do.
    """

    if item_refreshed or existing is None:
        return True
    current = (item or {}).get("replies")
    try:
        current_count = int(current)
    except (TypeError, ValueError):
        return True
    return existing.meta.total_count != current_count


@dataclass(frozen=True)
class RefreshPolicy:
    ttl: timedelta

    @classmethod
    def from_hours(cls, hours: float) -> "RefreshPolicy":
        return cls(ttl=timedelta(hours=hours))

    def should_refresh_item(self, existing: ItemDocument | None, snapshot: SnapshotRef, now: datetime) -> bool:
        return should_refresh_item(existing, snapshot, now, self.ttl)

    def should_refresh_comments(
        self,
        item_refreshed: bool,
        existing: CommentsDocument | None,
        item: Mapping[str, Any] | None,
    ) -> bool:
        return should_refresh_comments(item_refreshed, existing, item)
