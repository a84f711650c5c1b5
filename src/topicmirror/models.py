"""Domain models used across the application."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Dict, Iterable, List, Literal, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    computed_field,
    field_validator,
)

logger = logging.getLogger(__name__)

#: Version stamped into every document the mirror writes itself.
DOCUMENT_VERSION = 1

ListStatus = Literal["fetched", "fallback"]


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_timestamp(moment: datetime) -> str:
    """Render ``moment`` as an ISO-8601 UTC string with a ``Z`` suffix."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored ISO timestamp, returning ``None`` when it is unusable."""

    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ItemSummary(BaseModel):
    """One record of a remote ranking list, kept with all of its source fields."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: int = Field(..., gt=0)
    replies: int = Field(default=0, validation_alias=AliasChoices("replies", "reply_count"))
    last_modified: Optional[int] = None
    last_touched: Optional[int] = None
    created: Optional[int] = None

    @field_validator("replies", mode="before")
    @classmethod
    def _non_negative_replies(cls, value: Any) -> int:
        parsed = _optional_int(value)
        return parsed if parsed is not None and parsed > 0 else 0

    @field_validator("last_modified", "last_touched", "created", mode="before")
    @classmethod
    def _lenient_timestamp(cls, value: Any) -> Optional[int]:
        return _optional_int(value)

    @property
    def reply_count(self) -> int:
        return self.replies


def resolve_freshness(summary: ItemSummary) -> Optional[int]:
    """Return the freshness score of ``summary``.

    The score is the first usable timestamp in the priority order
    ``last_touched > last_modified > created``. ``None`` means the record
    carries no positive timestamp at all.
    """

    for value in (summary.last_touched, summary.last_modified, summary.created):
        if value is not None and value > 0:
            return value
    return None


def resolve_last_modified(summary: ItemSummary) -> int:
    """Return the timestamp used to detect content edits between runs."""

    if summary.last_modified is not None:
        return summary.last_modified
    if summary.last_touched is not None:
        return summary.last_touched
    return 0


def parse_summaries(records: Iterable[Any]) -> List[ItemSummary]:
    """Parse remote list records, dropping the ones without a usable id."""

    summaries: List[ItemSummary] = []
    for record in records:
        if not isinstance(record, dict):
            continue
        try:
            summaries.append(ItemSummary.model_validate(record))
        except ValidationError:
            logger.debug("Ignoring list record without a valid id: %r", record.get("id"))
    return summaries


class NodeSummary(BaseModel):
    """A category of the remote site, as listed by the nodes endpoint."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str = Field(..., min_length=1)
    title: str = ""
    item_count: int = Field(default=0, validation_alias=AliasChoices("item_count", "topics"))

    @field_validator("item_count", mode="before")
    @classmethod
    def _lenient_count(cls, value: Any) -> int:
        return _optional_int(value) or 0

    @field_validator("title", mode="before")
    @classmethod
    def _lenient_title(cls, value: Any) -> str:
        return "" if value is None else str(value)


class ListSnapshot(BaseModel):
    """A named remote list together with the outcome of fetching it."""

    name: str
    status: ListStatus
    source: str
    items: List[Any] = Field(default_factory=list)
    error: Optional[str] = None

    def summaries(self) -> List[ItemSummary]:
        return parse_summaries(self.items)


class SnapshotRef(BaseModel):
    """The list values an item had when its detail was last fetched."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    reply_count: int = Field(default=0, validation_alias=AliasChoices("reply_count", "replies"))
    last_modified: int = 0

    @classmethod
    def from_summary(cls, summary: ItemSummary) -> "SnapshotRef":
        return cls(
            id=summary.id,
            reply_count=summary.reply_count,
            last_modified=resolve_last_modified(summary),
        )


class ItemMeta(BaseModel):
    fetched_at: str
    source: str
    list_snapshot: Optional[SnapshotRef] = None
    reason: Optional[str] = None


class ItemDocument(BaseModel):
    """Persisted detail of a single item."""

    version: int = DOCUMENT_VERSION
    item: Dict[str, Any]
    meta: ItemMeta


class CommentsMeta(BaseModel):
    fetched_at: str
    source: str
    total_count: int = Field(default=0, ge=0)
    fetched_count: int = Field(default=0, ge=0)
    elevated: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def partial(self) -> bool:
        return self.fetched_count < self.total_count


class CommentsDocument(BaseModel):
    """Persisted comments of a single item."""

    version: int = DOCUMENT_VERSION
    comments: List[Any] = Field(default_factory=list)
    meta: CommentsMeta

    @classmethod
    def build(
        cls,
        comments: List[Any],
        *,
        source: str,
        total_count: Optional[int],
        fetched_at: datetime,
        elevated: bool = False,
    ) -> "CommentsDocument":
        """Create a document, using the number of comments when the total is unknown."""

        total = total_count if total_count is not None and total_count >= 0 else len(comments)
        return cls(
            comments=list(comments),
            meta=CommentsMeta(
                fetched_at=format_timestamp(fetched_at),
                source=source,
                total_count=total,
                fetched_count=len(comments),
                elevated=elevated,
            ),
        )


class HotPoolEntry(BaseModel):
    """An item summary held by the hot pool, with the place it was seen."""

    item: ItemSummary
    source: str = "hot"
    first_seen_at: int = 0
    last_seen_at: int = 0

    @property
    def id(self) -> int:
        return self.item.id


class HotPoolDocument(BaseModel):
    version: int = DOCUMENT_VERSION
    updated_at: Optional[str] = None
    entries: List[HotPoolEntry] = Field(default_factory=list)


class SyncState(BaseModel):
    """Checkpoint overwritten by every successful sync run."""

    version: int = DOCUMENT_VERSION
    last_success_at: Optional[str] = None
    candidate_item_ids: List[int] = Field(default_factory=list)
    refreshed_count: int = 0
    failed_count: int = 0
    previous_last_success_at: Optional[str] = None


class ListOutcome(BaseModel):
    status: ListStatus
    count: int
    source: str
    error: Optional[str] = None

    @classmethod
    def from_snapshot(cls, snapshot: ListSnapshot) -> "ListOutcome":
        return cls(
            status=snapshot.status,
            count=len(snapshot.items),
            source=snapshot.source,
            error=snapshot.error,
        )


class ItemFailure(BaseModel):
    id: int
    error: str


class ItemCounters(BaseModel):
    candidates: int = 0
    refreshed_count: int = 0
    skipped_count: int = 0
    comments_refreshed_count: int = 0
    comments_skipped_count: int = 0
    failed: List[ItemFailure] = Field(default_factory=list)


class HotPoolStats(BaseModel):
    previous: int = 0
    fresh: int = 0
    merged: int = 0


class NodeStats(BaseModel):
    scanned: int = 0
    selected: int = 0


class RunReport(BaseModel):
    """Record of one run, written once when the run finishes."""

    version: int = DOCUMENT_VERSION
    kind: Literal["sync", "backfill"] = "sync"
    started_at: str
    finished_at: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    lists: Dict[str, ListOutcome] = Field(default_factory=dict)
    hot_pool: Optional[HotPoolStats] = None
    nodes: Optional[NodeStats] = None
    items: ItemCounters = Field(default_factory=ItemCounters)


ItemAction = Literal["refreshed", "skipped"]


@dataclass
class ItemResult:
    """Outcome of processing one candidate id."""

    item_id: int
    item_action: Optional[ItemAction] = None
    comments_action: Optional[ItemAction] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def record(self, counters: ItemCounters) -> None:
        """Add this result to the aggregate ``counters``."""

        if self.item_action == "refreshed":
            counters.refreshed_count += 1
        elif self.item_action == "skipped":
            counters.skipped_count += 1
        if self.comments_action == "refreshed":
            counters.comments_refreshed_count += 1
        elif self.comments_action == "skipped":
            counters.comments_skipped_count += 1
        if self.error is not None:
            counters.failed.append(ItemFailure(id=self.item_id, error=self.error))
