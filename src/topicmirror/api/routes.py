"""API routes exposing mirrored documents and sync runs."""

from __future__ import annotations

import logging
import threading
from typing import List

from fastapi import APIRouter, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from topicmirror.blobstore import BACKFILL_RUN_KEY, LAST_RUN_KEY, DurableStore
from topicmirror.config import SyncConfig
from topicmirror.errors import MirrorError
from topicmirror.models import CommentsDocument, HotPoolEntry, ItemDocument, RunReport, SyncState
from topicmirror.services.sync import SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()

_sync_lock = threading.Lock()


class HealthResponse(BaseModel):
    status: str = "ok"
    data_root: str
    last_success_at: str | None = None


class HotPoolResponse(BaseModel):
    updated_at: str | None = None
    entries: List[HotPoolEntry] = Field(default_factory=list)


def _load_config() -> SyncConfig:
    try:
        return SyncConfig.from_env()
    except ValueError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _store() -> DurableStore:
    return DurableStore(_load_config().data_root)


def run_sync(config: SyncConfig) -> RunReport:
    """Run a full sync with ``config`` and return its report."""

    with SyncOrchestrator(config) as orchestrator:
        return orchestrator.run()


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    config = _load_config()
    state = DurableStore(config.data_root).load_state()
    return HealthResponse(
        data_root=str(config.data_root),
        last_success_at=state.last_success_at if state else None,
    )


@router.get("/state", response_model=SyncState)
async def retrieve_state() -> SyncState:
    """Return the checkpoint written by the last successful sync."""

    state = _store().load_state()
    if state is None:
        raise HTTPException(status_code=404, detail="No sync has completed yet.")
    return state


@router.get("/runs/last", response_model=RunReport)
async def retrieve_last_run() -> RunReport:
    report = _store().load_report(LAST_RUN_KEY)
    if report is None:
        raise HTTPException(status_code=404, detail="No sync report available.")
    return report


@router.get("/runs/backfill", response_model=RunReport)
async def retrieve_backfill_run() -> RunReport:
    report = _store().load_report(BACKFILL_RUN_KEY)
    if report is None:
        raise HTTPException(status_code=404, detail="No backfill report available.")
    return report


@router.get("/hot-pool", response_model=HotPoolResponse)
async def retrieve_hot_pool() -> HotPoolResponse:
    document = _store().load_hot_pool()
    return HotPoolResponse(updated_at=document.updated_at, entries=document.entries)


@router.get("/items/{item_id}", response_model=ItemDocument)
async def retrieve_item(item_id: int) -> ItemDocument:
    document = _store().load_item(item_id)
    if document is None:
        raise HTTPException(status_code=404, detail=f"Item {item_id} is not mirrored.")
    return document


@router.get("/items/{item_id}/comments", response_model=CommentsDocument)
async def retrieve_item_comments(item_id: int) -> CommentsDocument:
    document = _store().load_comments(item_id)
    if document is None:
        raise HTTPException(status_code=404, detail=f"Comments of item {item_id} are not mirrored.")
    return document


@router.post("/sync", response_model=RunReport)
async def trigger_sync() -> RunReport:
    """Run a sync now; only one sync may run at a time."""

    config = _load_config()
    if not _sync_lock.acquire(blocking=False):
        raise HTTPException(status_code=409, detail="A sync is already running.")
    try:
        return await run_in_threadpool(run_sync, config)
    except MirrorError as exc:
        logger.exception("Sync aborted")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    finally:
        _sync_lock.release()
