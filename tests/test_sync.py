from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import NOW, DummyResponse
from topicmirror.blobstore import BACKFILL_RUN_KEY, LAST_RUN_KEY, LATEST_KEY, NODES_KEY, DurableStore
from topicmirror.errors import PersistenceError
from topicmirror.models import (
    CommentsDocument,
    HotPoolDocument,
    HotPoolEntry,
    ItemDocument,
    ItemMeta,
    ItemSummary,
    SnapshotRef,
    format_timestamp,
)
from topicmirror.services.hot_pool import SECONDS_PER_DAY
from topicmirror.services.sync import RunStage, SyncOrchestrator, dedupe_item_ids, sort_nodes


def make_orchestrator(config, client, **overrides) -> SyncOrchestrator:
    return SyncOrchestrator(config.model_copy(update=overrides), client=client, now=lambda: NOW)


def serve_lists(remote, endpoints, *, latest=(), hot=(), nodes=()) -> None:
    remote.routes[endpoints.latest] = list(latest)
    remote.routes[endpoints.hot] = list(hot)
    remote.routes[endpoints.nodes] = list(nodes)


def serve_item(remote, endpoints, item_id: int, *, replies: int = 0, comments=None) -> None:
    remote.routes[endpoints.item(item_id)] = [{"id": item_id, "replies": replies, "title": f"Item {item_id}"}]
    remote.routes[endpoints.comments(item_id)] = (
        comments if comments is not None else [{"id": item_id * 100 + n} for n in range(replies)]
    )


def store_item(store: DurableStore, item_id: int, *, replies: int, last_modified: int, age: timedelta) -> None:
    store.save_item(
        item_id,
        ItemDocument(
            item={"id": item_id, "replies": replies},
            meta=ItemMeta(
                fetched_at=format_timestamp(NOW - age),
                source=f"https://api.test/api/topics/show.json?id={item_id}",
                list_snapshot=SnapshotRef(id=item_id, reply_count=replies, last_modified=last_modified),
            ),
        ),
    )


def store_comments(store: DurableStore, item_id: int, total: int) -> None:
    store.save_comments(
        item_id,
        CommentsDocument.build([{"id": n} for n in range(total)], source="x", total_count=total, fetched_at=NOW),
    )


def test_first_run_fetches_new_item_and_writes_state(config, remote, client, endpoints) -> None:
    serve_lists(remote, endpoints, latest=[{"id": 1, "reply_count": 2, "last_modified": 100}])
    serve_item(remote, endpoints, 1, replies=2)
    orchestrator = make_orchestrator(config, client)

    report = orchestrator.run()

    assert orchestrator.stage is RunStage.DONE
    assert report.items.candidates == 1
    assert remote.count(endpoints.item(1)) == 1
    assert remote.count(endpoints.comments(1)) == 1

    store = orchestrator.store
    state = store.load_state()
    assert state is not None
    assert state.candidate_item_ids == [1]
    assert state.refreshed_count == 1
    assert state.failed_count == 0
    assert state.previous_last_success_at is None

    item = store.load_item(1)
    assert item is not None
    assert item.meta.list_snapshot == SnapshotRef(id=1, reply_count=2, last_modified=100)
    comments = store.load_comments(1)
    assert comments is not None
    assert comments.meta.total_count == 2
    assert comments.meta.partial is False

    assert {name: outcome.status for name, outcome in report.lists.items()} == {
        "latest": "fetched",
        "hot": "fetched",
        "nodes": "fetched",
    }
    assert store.load_report(LAST_RUN_KEY) == report


def test_fresh_unchanged_item_is_skipped_without_network(config, remote, client, endpoints) -> None:
    serve_lists(remote, endpoints, latest=[{"id": 5, "replies": 3, "last_modified": 500}])
    orchestrator = make_orchestrator(config, client, refresh_ttl_hours=24)
    store_item(orchestrator.store, 5, replies=3, last_modified=500, age=timedelta(hours=2))
    store_comments(orchestrator.store, 5, 3)

    report = orchestrator.run()

    assert report.items.skipped_count == 1
    assert report.items.refreshed_count == 0
    assert report.items.comments_skipped_count == 1
    assert remote.count(endpoints.item(5)) == 0
    assert remote.count(endpoints.comments(5)) == 0


def test_changed_reply_count_refreshes_item_and_comments(config, remote, client, endpoints) -> None:
    serve_lists(remote, endpoints, latest=[{"id": 5, "replies": 4, "last_modified": 500}])
    serve_item(remote, endpoints, 5, replies=4)
    orchestrator = make_orchestrator(config, client)
    store_item(orchestrator.store, 5, replies=3, last_modified=500, age=timedelta(hours=2))
    store_comments(orchestrator.store, 5, 3)

    report = orchestrator.run()

    assert report.items.refreshed_count == 1
    assert report.items.comments_refreshed_count == 1
    assert orchestrator.store.load_comments(5).meta.total_count == 4


def test_comments_refresh_alone_when_only_count_differs(config, remote, client, endpoints) -> None:
    serve_lists(remote, endpoints, latest=[{"id": 5, "replies": 3, "last_modified": 500}])
    serve_item(remote, endpoints, 5, replies=3)
    orchestrator = make_orchestrator(config, client)
    store_item(orchestrator.store, 5, replies=3, last_modified=500, age=timedelta(hours=2))
    store_comments(orchestrator.store, 5, 2)

    report = orchestrator.run()

    assert report.items.skipped_count == 1
    assert report.items.comments_refreshed_count == 1
    assert remote.count(endpoints.item(5)) == 0
    assert remote.count(endpoints.comments(5)) == 1


def test_hot_pool_keeps_recent_items_that_left_the_list(config, remote, client, endpoints) -> None:
    serve_lists(remote, endpoints)
    serve_item(remote, endpoints, 10)
    orchestrator = make_orchestrator(config, client, hot_pool_ttl_days=30)
    now = int(NOW.timestamp())
    orchestrator.store.save_hot_pool(
        HotPoolDocument(
            entries=[
                HotPoolEntry(item=ItemSummary(id=40, last_touched=now - 40 * SECONDS_PER_DAY)),
                HotPoolEntry(item=ItemSummary(id=10, last_touched=now - 10 * SECONDS_PER_DAY)),
            ]
        )
    )

    report = orchestrator.run()

    assert [entry.id for entry in orchestrator.store.load_hot_pool().entries] == [10]
    assert report.hot_pool is not None
    assert (report.hot_pool.previous, report.hot_pool.fresh, report.hot_pool.merged) == (2, 0, 1)
    assert orchestrator.store.load_state().candidate_item_ids == [10]
    assert remote.count(endpoints.item(40)) == 0


def test_failed_list_falls_back_to_stored_snapshot(config, remote, client, endpoints) -> None:
    serve_lists(remote, endpoints)
    remote.routes[endpoints.latest] = DummyResponse(None, status_code=502)
    serve_item(remote, endpoints, 7)
    orchestrator = make_orchestrator(config, client)
    stored = [{"id": 7, "replies": 0, "last_modified": 1}]
    orchestrator.store.write_json(LATEST_KEY, stored)

    report = orchestrator.run()

    outcome = report.lists["latest"]
    assert outcome.status == "fallback"
    assert outcome.count == 1
    assert "502" in outcome.error
    assert remote.count(endpoints.latest) == config.retries
    assert orchestrator.store.read_json(LATEST_KEY) == stored
    assert orchestrator.store.load_state().candidate_item_ids == [7]
    assert report.items.refreshed_count == 1


def test_unwritable_list_falls_back_without_aborting(config, remote, client, endpoints) -> None:
    serve_lists(remote, endpoints, latest=[{"id": 7, "replies": 0}, {"id": 8, "replies": 0}])
    serve_item(remote, endpoints, 7)
    orchestrator = make_orchestrator(config, client)
    stored = [{"id": 7, "replies": 0, "last_modified": 1}]
    orchestrator.store.write_json(LATEST_KEY, stored)
    latest_path = orchestrator.store.path_for(LATEST_KEY)
    latest_path.with_name(f"{latest_path.name}.tmp").mkdir()

    report = orchestrator.run()

    outcome = report.lists["latest"]
    assert outcome.status == "fallback"
    assert outcome.count == 1
    assert "Cannot write" in outcome.error
    assert report.lists["hot"].status == "fetched"
    assert orchestrator.store.read_json(LATEST_KEY) == stored
    assert orchestrator.store.load_state().candidate_item_ids == [7]


def test_one_failing_item_does_not_abort_the_run(config, remote, client, endpoints) -> None:
    serve_lists(remote, endpoints, latest=[{"id": 1}, {"id": 2}])
    remote.routes[endpoints.item(1)] = []
    serve_item(remote, endpoints, 2)
    orchestrator = make_orchestrator(config, client)

    report = orchestrator.run()

    assert [(failure.id, "Empty item payload" in failure.error) for failure in report.items.failed] == [(1, True)]
    assert report.items.refreshed_count == 1
    assert orchestrator.store.load_item(1) is None
    assert orchestrator.store.load_item(2) is not None
    assert orchestrator.store.load_state().failed_count == 1


def test_candidates_keep_first_occurrence_order(config, remote, client, endpoints) -> None:
    serve_lists(remote, endpoints, latest=[{"id": 3}, {"id": 1}], hot=[{"id": 1}, {"id": 2}])
    for item_id in (1, 2, 3):
        serve_item(remote, endpoints, item_id)
    orchestrator = make_orchestrator(config, client)

    orchestrator.run()

    detail_calls = [url for url in remote.calls if "topics/show.json?id=" in url]
    assert detail_calls == [endpoints.item(3), endpoints.item(1), endpoints.item(2)]
    assert orchestrator.store.load_state().candidate_item_ids == [3, 1, 2]


def test_worker_pool_processes_every_candidate_once(config, remote, client, endpoints) -> None:
    serve_lists(remote, endpoints, latest=[{"id": item_id} for item_id in (4, 2, 9, 7)])
    for item_id in (2, 4, 7, 9):
        serve_item(remote, endpoints, item_id)
    orchestrator = make_orchestrator(config, client, concurrency=3)

    report = orchestrator.run()

    assert report.items.refreshed_count == 4
    assert all(remote.count(endpoints.item(item_id)) == 1 for item_id in (2, 4, 7, 9))
    assert orchestrator.store.load_state().candidate_item_ids == [4, 2, 9, 7]


def test_second_run_records_previous_success(config, remote, client, endpoints) -> None:
    serve_lists(remote, endpoints)
    orchestrator = make_orchestrator(config, client)

    orchestrator.run()
    first = orchestrator.store.load_state()
    orchestrator.run()
    second = orchestrator.store.load_state()

    assert second.previous_last_success_at == first.last_success_at


def test_elevated_comments_mark_partial_documents(config, remote, client, endpoints) -> None:
    serve_lists(remote, endpoints, latest=[{"id": 1, "replies": 5}])
    remote.routes[endpoints.item(1)] = [{"id": 1, "replies": 5}]
    remote.routes[endpoints.comments_paged(1, 1)] = {"success": True, "result": [{"id": 11}]}
    orchestrator = make_orchestrator(config, client, api_token="token")

    orchestrator.run()

    comments = orchestrator.store.load_comments(1)
    assert comments.meta.elevated is True
    assert (comments.meta.fetched_count, comments.meta.total_count, comments.meta.partial) == (1, 5, True)
    assert remote.count(endpoints.comments(1)) == 0


def test_run_aborts_when_data_root_cannot_be_created(config, remote, client, tmp_path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    orchestrator = make_orchestrator(config, client, data_root=blocker)

    with pytest.raises(PersistenceError):
        orchestrator.run()

    assert remote.calls == []


def test_backfill_walks_largest_nodes(config, remote, client, endpoints) -> None:
    orchestrator = make_orchestrator(config, client, node_limit=1, pages_per_node=1)
    store = orchestrator.store
    store.write_json(NODES_KEY, [{"name": "small", "topics": 1}, {"name": "big", "topics": 10}, {"title": "x"}])
    remote.routes[endpoints.node_items("big", 1)] = [{"id": 1}, {"id": 2}]
    serve_item(remote, endpoints, 1, replies=1)
    store_item(store, 2, replies=1, last_modified=0, age=timedelta(days=90))
    store_comments(store, 2, 1)

    report = orchestrator.run_backfill()

    assert report.kind == "backfill"
    assert (report.nodes.scanned, report.nodes.selected) == (2, 1)
    assert remote.count(endpoints.node_items("small", 1)) == 0
    assert report.items.candidates == 2
    assert (report.items.refreshed_count, report.items.skipped_count) == (1, 1)
    assert (report.items.comments_refreshed_count, report.items.comments_skipped_count) == (1, 1)
    assert store.load_item(1).meta.reason == "backfill"
    assert store.load_report(BACKFILL_RUN_KEY) == report
    assert store.load_state() is None


def test_backfill_force_refresh_refetches_existing(config, remote, client, endpoints) -> None:
    orchestrator = make_orchestrator(config, client, pages_per_node=1, force_refresh=True)
    store = orchestrator.store
    remote.routes[endpoints.nodes] = [{"name": "big", "topics": 10}]
    remote.routes[endpoints.node_items("big", 1)] = [{"id": 2}]
    serve_item(remote, endpoints, 2, replies=1)
    store_item(store, 2, replies=1, last_modified=0, age=timedelta(minutes=1))
    store_comments(store, 2, 1)

    report = orchestrator.run_backfill()

    assert report.lists["nodes"].status == "fetched"
    assert store.load_list(NODES_KEY) == [{"name": "big", "topics": 10}]
    assert report.items.refreshed_count == 1
    assert report.items.comments_refreshed_count == 1


def test_dedupe_item_ids_accepts_mixed_records() -> None:
    ids = dedupe_item_ids([{"id": 2}, {"id": "3"}, {"id": None}], [ItemSummary(id=2), 5, 0, True, "x"])

    assert ids == [2, 3, 5]


def test_sort_nodes_orders_by_item_count() -> None:
    nodes = sort_nodes([{"name": "a", "topics": 3}, {"name": "b", "item_count": 9}, {"name": ""}, "junk"])

    assert [node.name for node in nodes] == ["b", "a"]
