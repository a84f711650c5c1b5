"""Durable JSON storage for mirrored documents."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from topicmirror.config import DEFAULT_DATA_ROOT
from topicmirror.errors import PersistenceError
from topicmirror.models import (
    CommentsDocument,
    HotPoolDocument,
    ItemDocument,
    RunReport,
    SyncState,
)

logger = logging.getLogger(__name__)

_Pathish = Union[str, Path]
_Model = TypeVar("_Model", bound=BaseModel)

INDEX_DIR = "index"
NODES_DIR = "nodes"
DETAILS_DIR = "details"
COMMENTS_DIR = "comments"
META_DIR = "meta"

LAYOUT = (INDEX_DIR, NODES_DIR, DETAILS_DIR, COMMENTS_DIR, META_DIR)

LATEST_KEY = f"{INDEX_DIR}/latest.json"
HOT_KEY = f"{INDEX_DIR}/hot.json"
HOT_POOL_KEY = f"{INDEX_DIR}/hot_pool.json"
NODES_KEY = f"{NODES_DIR}/all.json"
STATE_KEY = f"{META_DIR}/state.json"
LAST_RUN_KEY = f"{META_DIR}/last_run.json"
BACKFILL_RUN_KEY = f"{META_DIR}/backfill_last_run.json"


def resolve_data_root(data_root: _Pathish | None = None) -> Path:
    """Return a :class:`Path` pointing at the data root.

    When ``None`` is provided, :data:`~topicmirror.config.DEFAULT_DATA_ROOT`
    is returned. The path is not created on disk.
    """

    if data_root is None:
        return DEFAULT_DATA_ROOT
    if isinstance(data_root, Path):
        return data_root
    return Path(data_root)


def details_key(item_id: int) -> str:
    return f"{DETAILS_DIR}/{item_id}.json"


def comments_key(item_id: int) -> str:
    return f"{COMMENTS_DIR}/{item_id}.json"


class DurableStore:
    """Reads and writes JSON documents by key below a data root.

    Writes go to ``<file>.tmp`` first and are then moved over the target with
    :func:`os.replace`, so readers only ever observe complete documents. A
    killed process may leave the temporary file behind.
    """

    def __init__(self, data_root: _Pathish | None = None) -> None:
        self.root = resolve_data_root(data_root)

    def path_for(self, key: str) -> Path:
        return self.root / key

    def ensure_layout(self, directories: Iterable[str] = LAYOUT) -> None:
        """Create the data root and its sub-directories."""

        for directory in directories:
            target = self.root / directory
            try:
                target.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise PersistenceError(f"Cannot create directory {target}: {exc}") from exc

    def read_json(self, key: str, default: Any = None) -> Any:
        """Return the decoded document stored under ``key`` or ``default``."""

        path = self.path_for(key)
        try:
            with path.open("r", encoding="utf-8") as file:
                return json.load(file)
        except FileNotFoundError:
            return default
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable document %s: %s", path, exc)
            return default

    def write_json(self, key: str, payload: Any) -> Path:
        """Atomically replace the document stored under ``key``."""

        path = self.path_for(key)
        tmp_path = path.with_name(f"{path.name}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as file:
                json.dump(payload, file, ensure_ascii=False, indent=2)
                file.write("\n")
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Cannot write {path}: {exc}") from exc
        return path

    def exists(self, key: str) -> bool:
        return self.path_for(key).exists()

    def load_model(self, key: str, model: Type[_Model]) -> _Model | None:
        """Load ``key`` as ``model``; absent or invalid documents yield ``None``."""

        raw = self.read_json(key)
        if raw is None:
            return None
        try:
            return model.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Document %s does not match %s: %s", key, model.__name__, exc.error_count())
            return None

    def save_model(self, key: str, document: BaseModel) -> Path:
        return self.write_json(key, document.model_dump(mode="json"))

    # Lists are stored exactly as the remote returned them.
    def load_list(self, key: str) -> list:
        raw = self.read_json(key, [])
        return raw if isinstance(raw, list) else []

    def load_item(self, item_id: int) -> ItemDocument | None:
        return self.load_model(details_key(item_id), ItemDocument)

    def save_item(self, item_id: int, document: ItemDocument) -> Path:
        return self.save_model(details_key(item_id), document)

    def load_comments(self, item_id: int) -> CommentsDocument | None:
        return self.load_model(comments_key(item_id), CommentsDocument)

    def save_comments(self, item_id: int, document: CommentsDocument) -> Path:
        return self.save_model(comments_key(item_id), document)

    def load_hot_pool(self) -> HotPoolDocument:
        return self.load_model(HOT_POOL_KEY, HotPoolDocument) or HotPoolDocument()

    def save_hot_pool(self, document: HotPoolDocument) -> Path:
        return self.save_model(HOT_POOL_KEY, document)

    def load_state(self) -> SyncState | None:
        return self.load_model(STATE_KEY, SyncState)

    def save_state(self, state: SyncState) -> Path:
        return self.save_model(STATE_KEY, state)

    def load_report(self, key: str = LAST_RUN_KEY) -> RunReport | None:
        return self.load_model(key, RunReport)

    def save_report(self, report: RunReport, key: str = LAST_RUN_KEY) -> Path:
        return self.save_model(key, report)


__all__ = [
    "BACKFILL_RUN_KEY",
    "DurableStore",
    "HOT_KEY",
    "HOT_POOL_KEY",
    "LAST_RUN_KEY",
    "LATEST_KEY",
    "LAYOUT",
    "NODES_KEY",
    "STATE_KEY",
    "comments_key",
    "details_key",
    "resolve_data_root",
]
