"""Run orchestration: lists, hot pool, candidates, per-item refresh, state."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Sequence

from pydantic import ValidationError

from topicmirror.blobstore import (
    BACKFILL_RUN_KEY,
    HOT_KEY,
    LAST_RUN_KEY,
    LATEST_KEY,
    NODES_KEY,
    DurableStore,
)
from topicmirror.config import SyncConfig
from topicmirror.errors import EmptyPayloadError, NetworkError, PersistenceError
from topicmirror.models import (
    CommentsDocument,
    HotPoolDocument,
    HotPoolEntry,
    HotPoolStats,
    ItemDocument,
    ItemMeta,
    ItemResult,
    ItemSummary,
    ListOutcome,
    ListSnapshot,
    NodeStats,
    NodeSummary,
    RunReport,
    SnapshotRef,
    SyncState,
    format_timestamp,
    utc_now,
)
from topicmirror.services.client import RateLimitedClient
from topicmirror.services.collector import PaginatedCollector
from topicmirror.services.hot_pool import HotPoolCache
from topicmirror.services.refresh import RefreshPolicy

__all__ = ["RunStage", "SyncOrchestrator", "dedupe_item_ids", "sort_nodes"]

logger = logging.getLogger(__name__)


class RunStage(Enum):
    INIT = "init"
    LIST_SYNC = "list_sync"
    POOL_MERGE = "pool_merge"
    CANDIDATE_BUILD = "candidate_build"
    PER_ITEM_REFRESH = "per_item_refresh"
    STATE_PERSIST = "state_persist"
    DONE = "done"


def _record_id(record: Any) -> int | None:
    if isinstance(record, (ItemSummary, HotPoolEntry)):
        return record.id
    if isinstance(record, dict):
        record = record.get("id")
    if isinstance(record, bool):
        return None
    try:
        item_id = int(record)
    except (TypeError, ValueError):
        return None
    return item_id if item_id > 0 else None


def dedupe_item_ids(*sources: Iterable[Any]) -> List[int]:
    """Return the distinct positive ids of ``sources`` in order of first occurrence."""

    seen: Dict[int, None] = {}
    for source in sources:
        for record in source:
            item_id = _record_id(record)
            if item_id is not None:
                seen.setdefault(item_id, None)
    return list(seen)


def sort_nodes(records: Iterable[Any]) -> List[NodeSummary]:
    """Parse node records and order them by item count, largest first."""

    nodes: List[NodeSummary] = []
    for record in records:
        if not isinstance(record, dict) or not record.get("name"):
            continue
        try:
            nodes.append(NodeSummary.model_validate(record))
        except ValidationError:
            logger.debug("Ignoring malformed node record %r", record.get("name"))
    return sorted(nodes, key=lambda node: node.item_count, reverse=True)


def _reply_total(item: Dict[str, Any]) -> int | None:
    try:
        return int(item.get("replies"))
    except (TypeError, ValueError):
        return None


class SyncOrchestrator:
    """Compose client, store, hot pool and refresh policy into mirror runs.

    A run never goes back to an earlier stage. Failures of a single list fall
    back to the stored copy, failures of a single item are recorded in the run
    report, and only errors raised before the item loop abort the run.
    """

    def __init__(
        self,
        config: SyncConfig,
        *,
        client: RateLimitedClient | None = None,
        store: DurableStore | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.endpoints = config.endpoints()
        self.store = store or DurableStore(config.data_root)
        self._owns_client = client is None
        self.client = client or RateLimitedClient.from_config(config)
        self.collector = PaginatedCollector.from_config(self.client, config)
        self.hot_pool = HotPoolCache.from_config(config)
        self.policy = RefreshPolicy.from_hours(config.refresh_ttl_hours)
        self._now = now
        self.stage = RunStage.INIT

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "SyncOrchestrator":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _enter(self, stage: RunStage) -> None:
        self.stage = stage
        logger.info("Stage %s", stage.value)

    # ------------------------------------------------------------------
    # Sync run
    # ------------------------------------------------------------------

    def run(self) -> RunReport:
        """Execute one sync run and return its report."""

        started = self._now()
        self._enter(RunStage.INIT)
        self.store.ensure_layout()
        previous_state = self.store.load_state()
        report = RunReport(
            kind="sync",
            started_at=format_timestamp(started),
            config=self.config.report_view(),
        )

        self._enter(RunStage.LIST_SYNC)
        latest = self.sync_list("latest", self.endpoints.latest, LATEST_KEY)
        hot = self.sync_list("hot", self.endpoints.hot, HOT_KEY)
        nodes = self.sync_list("nodes", self.endpoints.nodes, NODES_KEY)
        for snapshot in (latest, hot, nodes):
            report.lists[snapshot.name] = ListOutcome.from_snapshot(snapshot)

        self._enter(RunStage.POOL_MERGE)
        hot_summaries = hot.summaries()
        pool = self.merge_hot_pool(hot_summaries, started, report)

        self._enter(RunStage.CANDIDATE_BUILD)
        latest_summaries = latest.summaries()
        pool_summaries = [entry.item for entry in pool]
        summaries: Dict[int, ItemSummary] = {}
        for summary in (*latest_summaries, *hot_summaries, *pool_summaries):
            summaries.setdefault(summary.id, summary)
        candidates = dedupe_item_ids(latest_summaries, hot_summaries, pool_summaries)
        report.items.candidates = len(candidates)
        logger.info("Built %d candidates", len(candidates))

        self._enter(RunStage.PER_ITEM_REFRESH)
        now = self._now()
        results = self._process_all(
            candidates,
            lambda item_id: self.process_item(item_id, SnapshotRef.from_summary(summaries[item_id]), now),
        )
        for result in results:
            result.record(report.items)

        self._enter(RunStage.STATE_PERSIST)
        finished = format_timestamp(self._now())
        state = SyncState(
            last_success_at=finished,
            candidate_item_ids=candidates,
            refreshed_count=report.items.refreshed_count,
            failed_count=len(report.items.failed),
            previous_last_success_at=previous_state.last_success_at if previous_state else None,
        )
        report.finished_at = finished
        self.store.save_state(state)
        self.store.save_report(report, LAST_RUN_KEY)

        self._enter(RunStage.DONE)
        logger.info(
            "Sync done. candidates=%d refreshed=%d skipped=%d failed=%d",
            report.items.candidates,
            report.items.refreshed_count,
            report.items.skipped_count,
            len(report.items.failed),
        )
        return report

    def sync_list(self, name: str, url: str, key: str) -> ListSnapshot:
        """Fetch a remote list and persist it, or fall back to the stored copy."""

        fallback = self.store.load_list(key)
        try:
            data = self.client.request(url)
            if not isinstance(data, list):
                raise NetworkError(f"Expected a list from {url}, got {type(data).__name__}", url=url)
            self.store.write_json(key, data)
        except (NetworkError, PersistenceError) as exc:
            logger.error("[list:%s] falling back to %d stored records: %s", name, len(fallback), exc)
            return ListSnapshot(name=name, status="fallback", source=url, items=fallback, error=str(exc))

        logger.info("[list:%s] fetched %d records", name, len(data))
        return ListSnapshot(name=name, status="fetched", source=url, items=data)

    def merge_hot_pool(
        self,
        fresh: Sequence[ItemSummary],
        now: datetime,
        report: RunReport | None = None,
    ) -> List[HotPoolEntry]:
        previous = self.store.load_hot_pool().entries
        merged = self.hot_pool.merge(previous, fresh, now.timestamp())
        self.store.save_hot_pool(HotPoolDocument(updated_at=format_timestamp(now), entries=merged))
        if report is not None:
            report.hot_pool = HotPoolStats(previous=len(previous), fresh=len(fresh), merged=len(merged))
        logger.info("Hot pool: previous=%d fresh=%d merged=%d", len(previous), len(fresh), len(merged))
        return merged

    def process_item(self, item_id: int, snapshot: SnapshotRef, now: datetime) -> ItemResult:
        """Refresh the detail and comments of one item as the policy decides."""

        result = ItemResult(item_id=item_id)
        try:
            existing = self.store.load_item(item_id)
            if existing is None or self.policy.should_refresh_item(existing, snapshot, now):
                item = self._fetch_and_store_item(item_id, list_snapshot=snapshot)
                result.item_action = "refreshed"
                item_refreshed = True
            else:
                logger.debug("[item %d] up to date", item_id)
                item = existing.item
                result.item_action = "skipped"
                item_refreshed = False
            self._sync_comments(item_id, item, item_refreshed, result)
        except Exception as exc:  # noqa: BLE001 - one failing item never aborts the run
            result.error = str(exc)
            logger.error("[item %d] %s", item_id, exc)
        return result

    # ------------------------------------------------------------------
    # Backfill run
    # ------------------------------------------------------------------

    def run_backfill(self) -> RunReport:
        """Walk the largest nodes page by page and mirror items not stored yet."""

        started = self._now()
        self._enter(RunStage.INIT)
        self.store.ensure_layout()
        report = RunReport(
            kind="backfill",
            started_at=format_timestamp(started),
            config=self.config.report_view(),
            nodes=NodeStats(),
        )

        self._enter(RunStage.LIST_SYNC)
        nodes = self.load_nodes(report)
        selected = nodes[: self.config.node_limit]
        report.nodes = NodeStats(scanned=len(nodes), selected=len(selected))

        self._enter(RunStage.CANDIDATE_BUILD)
        candidates = self.collector.collect_node_item_ids(selected)
        report.items.candidates = len(candidates)

        self._enter(RunStage.PER_ITEM_REFRESH)
        for result in self._process_all(candidates, self.backfill_item):
            result.record(report.items)

        self._enter(RunStage.STATE_PERSIST)
        report.finished_at = format_timestamp(self._now())
        self.store.save_report(report, BACKFILL_RUN_KEY)

        self._enter(RunStage.DONE)
        logger.info(
            "Backfill done. nodes=%d candidates=%d fetched=%d comments=%d failed=%d",
            report.nodes.selected,
            report.items.candidates,
            report.items.refreshed_count,
            report.items.comments_refreshed_count,
            len(report.items.failed),
        )
        return report

    def load_nodes(self, report: RunReport | None = None) -> List[NodeSummary]:
        """Return stored nodes, fetching and storing the remote list when none exist."""

        records = self.store.load_list(NODES_KEY)
        if records:
            status = "fallback"
        else:
            records = self.client.request(self.endpoints.nodes)
            if not isinstance(records, list):
                records = []
            self.store.write_json(NODES_KEY, records)
            status = "fetched"
        if report is not None:
            report.lists["nodes"] = ListOutcome(status=status, count=len(records), source=self.endpoints.nodes)
        return sort_nodes(records)

    def backfill_item(self, item_id: int) -> ItemResult:
        result = ItemResult(item_id=item_id)
        force = self.config.force_refresh
        try:
            existing = self.store.load_item(item_id)
            if existing is None or force:
                item = self._fetch_and_store_item(item_id, reason="backfill")
                result.item_action = "refreshed"
            else:
                item = existing.item
                result.item_action = "skipped"
            self._sync_comments(item_id, item, False, result, force=force)
        except Exception as exc:  # noqa: BLE001 - one failing item never aborts the run
            result.error = str(exc)
            logger.error("[backfill item %d] %s", item_id, exc)
        return result

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def fetch_item(self, item_id: int) -> Dict[str, Any]:
        data = self.client.request(self.endpoints.item(item_id))
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            raise EmptyPayloadError(f"Empty item payload for {item_id}")
        return data[0]

    def _fetch_and_store_item(
        self,
        item_id: int,
        *,
        list_snapshot: SnapshotRef | None = None,
        reason: str | None = None,
    ) -> Dict[str, Any]:
        item = self.fetch_item(item_id)
        document = ItemDocument(
            item=item,
            meta=ItemMeta(
                fetched_at=format_timestamp(self._now()),
                source=self.endpoints.item(item_id),
                list_snapshot=list_snapshot,
                reason=reason,
            ),
        )
        self.store.save_item(item_id, document)
        return item

    def _sync_comments(
        self,
        item_id: int,
        item: Dict[str, Any],
        item_refreshed: bool,
        result: ItemResult,
        *,
        force: bool = False,
    ) -> None:
        existing = self.store.load_comments(item_id)
        if not (force or self.policy.should_refresh_comments(item_refreshed, existing, item)):
            result.comments_action = "skipped"
            return

        fetched = self.collector.fetch_comments(item_id)
        document = CommentsDocument.build(
            fetched.comments,
            source=fetched.source,
            total_count=_reply_total(item),
            fetched_at=self._now(),
            elevated=fetched.elevated,
        )
        self.store.save_comments(item_id, document)
        if document.meta.partial:
            logger.info(
                "[item %d] stored %d of %d comments",
                item_id,
                document.meta.fetched_count,
                document.meta.total_count,
            )
        result.comments_action = "refreshed"

    def _process_all(self, item_ids: Sequence[int], worker: Callable[[int], ItemResult]) -> List[ItemResult]:
        """Run ``worker`` for every id; results keep the order of ``item_ids``."""

        workers = min(self.config.concurrency, len(item_ids))
        if workers <= 1:
            return [worker(item_id) for item_id in item_ids]
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mirror-item") as executor:
            return list(executor.map(worker, item_ids))
