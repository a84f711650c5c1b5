"""Paginated fetching of node listings and comment threads."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Sequence

from topicmirror.config import Endpoints
from topicmirror.errors import NetworkError
from topicmirror.models import NodeSummary
from topicmirror.services.client import RateLimitedClient

__all__ = ["CommentsFetch", "PaginatedCollector", "unwrap_result"]

logger = logging.getLogger(__name__)


@dataclass
class CommentsFetch:
    comments: List[Any] = field(default_factory=list)
    source: str = ""
    elevated: bool = False
    pages: int = 0


def unwrap_result(payload: Any) -> List[Any] | None:
    """Return the record list of a response, or ``None`` for a non-list body.

    The v2 API wraps its data as ``{"success": ..., "result": [...]}`` while
    the public API answers with a bare list.
    """

    if isinstance(payload, dict):
        payload = payload.get("result")
    if isinstance(payload, list):
        return payload
    return None


class PaginatedCollector:
    """Walk page sequences until they run dry or a size cap is reached."""

    def __init__(
        self,
        client: RateLimitedClient,
        endpoints: Endpoints,
        *,
        pages_per_node: int = 3,
        max_items: int = 2000,
        comments_page_size: int = 20,
        comments_max_pages: int = 50,
        api_token: str | None = None,
    ) -> None:
        self.client = client
        self.endpoints = endpoints
        self.pages_per_node = pages_per_node
        self.max_items = max_items
        self.comments_page_size = comments_page_size
        self.comments_max_pages = comments_max_pages
        self.api_token = api_token

    @classmethod
    def from_config(cls, client: RateLimitedClient, config) -> "PaginatedCollector":
        return cls(
            client,
            config.endpoints(),
            pages_per_node=config.pages_per_node,
            max_items=config.max_topics,
            comments_page_size=config.comments_page_size,
            comments_max_pages=config.comments_max_pages,
            api_token=config.api_token,
        )

    def collect_node_item_ids(self, nodes: Sequence[NodeSummary]) -> List[int]:
        """Return distinct item ids found on the first pages of every node.

        Ids keep the order in which they were first seen. Collection stops as
        soon as ``max_items`` distinct ids are known.
        """

        seen: dict[int, None] = {}
        for node in nodes:
            for page in range(1, self.pages_per_node + 1):
                url = self.endpoints.node_items(node.name, page)
                try:
                    records = self.client.request(url)
                except NetworkError as exc:
                    logger.error("Node %s page %d failed, skipping the rest of it: %s", node.name, page, exc)
                    break

                if not isinstance(records, list) or not records:
                    if page == 1:
                        logger.warning("Node %s returned an empty first page", node.name)
                    break

                for record in records:
                    item_id = _record_id(record)
                    if item_id is None:
                        continue
                    seen.setdefault(item_id, None)
                    if len(seen) >= self.max_items:
                        logger.info("Reached the cap of %d items at node %s", self.max_items, node.name)
                        return list(seen)

        return list(seen)

    def fetch_comments(self, item_id: int) -> CommentsFetch:
        if self.api_token:
            return self._fetch_comments_paged(item_id)

        url = self.endpoints.comments(item_id)
        payload = self.client.request(url)
        comments = payload if isinstance(payload, list) else []
        return CommentsFetch(comments=comments, source=url, elevated=False, pages=1)

    def _fetch_comments_paged(self, item_id: int) -> CommentsFetch:
        headers = {"Authorization": f"Bearer {self.api_token}"}
        fetched = CommentsFetch(source=self.endpoints.comments_paged(item_id), elevated=True)

        for page in range(1, self.comments_max_pages + 1):
            payload = self.client.request(self.endpoints.comments_paged(item_id, page), headers=headers)
            records = unwrap_result(payload)
            if not records:
                break
            fetched.comments.extend(records)
            fetched.pages = page
            if len(records) < self.comments_page_size:
                break
        else:
            logger.warning(
                "Comments of item %d still had more pages after %d pages", item_id, self.comments_max_pages
            )

        return fetched


def _record_id(record: Any) -> int | None:
    if not isinstance(record, dict):
        return None
    try:
        item_id = int(record.get("id"))
    except (TypeError, ValueError):
        return None
    return item_id if item_id > 0 else None
